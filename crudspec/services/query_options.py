from __future__ import annotations

import logging
from typing import Any, Mapping, Optional

from sqlalchemy import text
from sqlalchemy.orm import Query, load_only, selectinload
from sqlalchemy.sql.expression import Grouping

from crudspec.core.config import settings
from crudspec.models.metadata import ModelMetadata
from crudspec.schemas.query import PreloadOption, QueryOptions
from crudspec.services.column_validation import ColumnValidator
from crudspec.services.cursor import build_cursor_filter, build_order_by
from crudspec.services.filter_compiler import FilterCompiler
from crudspec.services.model_metadata import describe_model, mapper_for
from crudspec.services.model_registry import ModelRegistry
from crudspec.services.predicate import escape_bind_colons
from crudspec.services.where_sanitizer import sanitize_where_clause

_LOG = logging.getLogger("crudspec.query")


def _metadata(model: Any, registry: Optional[ModelRegistry]) -> ModelMetadata:
    if registry is not None:
        return registry.metadata_for_model(model)
    return describe_model(model)


def _relationships(model) -> dict[str, type]:
    mapper = mapper_for(model)
    if mapper is None:
        return {}
    return {rel.key: rel.mapper.class_ for rel in mapper.relationships}


def _selected_attrs(model, metadata: ModelMetadata, columns: list[str], omit: list[str]) -> list:
    if not columns and not omit:
        return []
    names = columns or metadata.column_names
    omitted = {name.lower() for name in omit}
    attrs: list = []
    keys: set[str] = set()
    for name in names:
        descriptor = metadata.column(name)
        if descriptor is None or descriptor.sql_name.lower() in omitted or descriptor.name.lower() in omitted:
            continue
        attr = getattr(model, descriptor.name, None)
        if attr is None or descriptor.name in keys:
            continue
        keys.add(descriptor.name)
        attrs.append(attr)
    if metadata.primary_key_attr and metadata.primary_key_attr not in keys:
        attrs.insert(0, getattr(model, metadata.primary_key_attr))
    return attrs


def _preload_loader(model, preload: PreloadOption, related: type, registry: Optional[ModelRegistry]):
    relationship = getattr(model, preload.relation)
    metadata = _metadata(related, registry)
    criteria = []
    where = sanitize_where_clause(preload.where, metadata.table_name, metadata.valid_columns)
    if where:
        criteria.append(text(escape_bind_colons(where)))
    predicate = FilterCompiler(metadata).compile_all(preload.filters)
    if predicate is not None:
        criteria.append(predicate.as_clause())
    if preload.limit is not None or preload.offset is not None:
        _LOG.debug("Preload %s: limit/offset are not applied to relationship loads", preload.relation)
    # Loader criteria must be column elements; a bare TextClause is rejected.
    loader = selectinload(relationship.and_(*[Grouping(c) for c in criteria]) if criteria else relationship)
    attrs = _selected_attrs(related, metadata, preload.columns, preload.omit_columns)
    if attrs:
        loader = loader.load_only(*attrs)
    return loader


def apply_query_options(
    query: Query,
    model,
    options: QueryOptions,
    registry: Optional[ModelRegistry] = None,
    expand_joins: Optional[Mapping[str, str]] = None,
) -> Query:
    metadata = _metadata(model, registry)
    relations = _relationships(model)
    options = ColumnValidator(metadata, relations=relations).filter_options(options)

    attrs = _selected_attrs(model, metadata, options.columns, options.omit_columns)
    if attrs:
        query = query.options(load_only(*attrs))

    for preload in options.preload:
        related = relations.get(preload.relation)
        if related is None:
            _LOG.warning("Unknown relation '%s' on %s, preload skipped", preload.relation, metadata.table_name)
            continue
        query = query.options(_preload_loader(model, preload, related, registry))

    predicate = FilterCompiler(metadata).compile_all(options.filters)
    if predicate is not None:
        query = query.filter(predicate.as_clause())

    expressions = dict(registry.expressions()) if registry is not None else {}
    if options.has_cursor:
        cursor = build_cursor_filter(
            options,
            metadata.table_name,
            metadata.primary_key,
            model_columns=metadata.column_names,
            expand_joins=expand_joins,
            expressions=expressions,
        )
        query = query.filter(cursor.as_clause())

    expressions.update(options.computed_map)
    order_by = build_order_by(options.sort, metadata.table_name, reverse=bool(options.cursor_backward), expressions=expressions)
    if order_by:
        query = query.order_by(*[text(item) for item in order_by])

    limit = min(options.limit or settings.DEFAULT_PAGE_LIMIT, settings.MAX_PAGE_LIMIT)
    query = query.limit(limit)
    if options.offset:
        query = query.offset(options.offset)
    return query
