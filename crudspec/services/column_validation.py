from __future__ import annotations

import logging
from typing import Any, Iterable, Mapping, Optional

from crudspec.core.config import settings
from crudspec.core.errors import ColumnValidationError
from crudspec.models.metadata import ModelMetadata
from crudspec.schemas.query import FilterOption, PreloadOption, QueryOptions, SortOption
from crudspec.services.model_metadata import describe_model
from crudspec.services.sort_keys import extract_source_column, parse_sort_column

_LOG = logging.getLogger("crudspec.validation")


def _as_metadata(model: Any) -> ModelMetadata:
    if isinstance(model, ModelMetadata):
        return model
    return describe_model(model)


class ColumnValidator:
    """Whitelist of a model's SQL column names.

    ``relations`` maps a preload relation name to the model (or metadata) its
    columns are checked against; a relation without an entry is checked
    against this model.
    """

    def __init__(self, model: Any, relations: Optional[Mapping[str, Any]] = None):
        self.metadata = _as_metadata(model)
        self.table_name = self.metadata.table_name
        self._valid = set(self.metadata.valid_columns)
        self._relations: dict[str, ColumnValidator] = {}
        for name, related in (relations or {}).items():
            validator = related if isinstance(related, ColumnValidator) else ColumnValidator(related)
            self._relations[str(name).lower()] = validator

    def valid_columns(self) -> list[str]:
        return sorted(self._valid)

    def is_valid_column(self, column: str) -> bool:
        name = str(column or "").strip()
        if not name:
            return True
        prefix = str(settings.COMPUTED_COLUMN_PREFIX or "").lower()
        if prefix and name.lower().startswith(prefix):
            return True
        base = extract_source_column(name)
        qualifier, dot, bare = base.rpartition(".")
        if dot:
            if qualifier.lower() != self.table_name.lower():
                return False
            base = bare
        return base.strip().lower() in self._valid

    def validate_column(self, column: str) -> None:
        if not self.is_valid_column(column):
            raise ColumnValidationError([column])

    def validate_columns(self, columns: Iterable[str]) -> None:
        invalid = [column for column in columns if not self.is_valid_column(column)]
        if invalid:
            raise ColumnValidationError(invalid)

    def filter_valid_columns(self, columns: Iterable[str]) -> list[str]:
        valid: list[str] = []
        for column in columns:
            if self.is_valid_column(column):
                valid.append(column)
            else:
                _LOG.warning("Invalid column '%s' filtered out: column does not exist in model %s", column, self.table_name)
        return valid

    def is_valid_sort(self, sort: SortOption) -> bool:
        key = parse_sort_column(sort.column, sort.direction)
        if key.prefix and key.prefix.lower() != self.table_name.lower():
            # Relation columns are resolved against join definitions later.
            return True
        return self.is_valid_column(key.field)

    def _relation_validator(self, relation: str) -> "ColumnValidator":
        return self._relations.get(str(relation or "").lower(), self)

    def validate_options(self, options: QueryOptions) -> None:
        problems: list[tuple[str, str]] = []
        problems.extend(("select columns", c) for c in options.columns if not self.is_valid_column(c))
        problems.extend(("omit columns", c) for c in options.omit_columns if not self.is_valid_column(c))
        problems.extend(("filter", f.column) for f in options.filters if not self.is_valid_column(f.column))
        problems.extend(("sort", s.column) for s in options.sort if not self.is_valid_sort(s))
        for preload in options.preload:
            related = self._relation_validator(preload.relation)
            location = f"preload '{preload.relation}'"
            problems.extend((f"{location} columns", c) for c in preload.columns if not related.is_valid_column(c))
            problems.extend(
                (f"{location} omit columns", c) for c in preload.omit_columns if not related.is_valid_column(c)
            )
            problems.extend((f"{location} filter", f.column) for f in preload.filters if not related.is_valid_column(f.column))
        if not problems:
            return
        locations: list[str] = []
        for location, _ in problems:
            if location not in locations:
                locations.append(location)
        raise ColumnValidationError([column for _, column in problems], location=", ".join(locations))

    def _filter_filters(self, filters: Iterable[FilterOption], *, where: str = "") -> list[FilterOption]:
        valid: list[FilterOption] = []
        for item in filters:
            if self.is_valid_column(item.column):
                valid.append(item)
            else:
                _LOG.warning("Invalid column in %sfilter '%s' removed", where, item.column)
        return valid

    def filter_options(self, options: QueryOptions) -> QueryOptions:
        sorts: list[SortOption] = []
        for item in options.sort:
            if self.is_valid_sort(item):
                sorts.append(item)
            else:
                _LOG.warning("Invalid column in sort '%s' removed", item.column)
        preloads: list[PreloadOption] = []
        for preload in options.preload:
            related = self._relation_validator(preload.relation)
            preloads.append(
                preload.model_copy(
                    update={
                        "columns": related.filter_valid_columns(preload.columns),
                        "omit_columns": related.filter_valid_columns(preload.omit_columns),
                        "filters": related._filter_filters(preload.filters, where=f"preload '{preload.relation}' "),
                    }
                )
            )
        return options.model_copy(
            update={
                "columns": self.filter_valid_columns(options.columns),
                "omit_columns": self.filter_valid_columns(options.omit_columns),
                "filters": self._filter_filters(options.filters),
                "sort": sorts,
                "preload": preloads,
            }
        )
