from __future__ import annotations

import logging
import re
from threading import Lock
from typing import Any, Optional

from crudspec.core.errors import ModelNotFoundError, ModelRegistrationError
from crudspec.models.metadata import ModelMetadata
from crudspec.services.model_metadata import describe_model, normalize_table_name, table_name_for

_LOG = logging.getLogger("crudspec.registry")

_SEPARATORS = re.compile(r"[\s_\-]+")


def registry_key(name: str) -> str:
    return _SEPARATORS.sub("", str(name or "")).lower()


class ModelRegistry:
    """Models and their precomputed metadata, keyed by normalized name.

    Writers swap in new dicts under the lock; readers use whatever snapshot
    is current and never block.
    """

    def __init__(self):
        self._models: dict[str, type] = {}
        self._metadata: dict[str, ModelMetadata] = {}
        self._described: dict[type, ModelMetadata] = {}
        self._expressions: dict[str, str] = {}
        self._names: dict[str, str] = {}
        self._lock = Lock()

    def register(self, name: str, model: Any, *, table_name: str = "") -> ModelMetadata:
        key = registry_key(name)
        label = normalize_table_name(name)
        if not key:
            raise ModelRegistrationError("model name cannot be empty")
        if model is None:
            raise ModelRegistrationError(f"model {label} cannot be None")
        model_type = model if isinstance(model, type) else type(model)
        metadata = describe_model(model_type, table_name=table_name or table_name_for(model_type, default=label))
        if not metadata.columns:
            raise ModelRegistrationError(f"model {label} must declare at least one column, got {model_type.__name__}")
        with self._lock:
            if key in self._models:
                raise ModelRegistrationError(f"model {label} already registered")
            models = dict(self._models)
            models[key] = model_type
            registered = dict(self._metadata)
            registered[key] = metadata
            described = dict(self._described)
            described[model_type] = metadata
            names = dict(self._names)
            names[key] = label
            self._models, self._metadata, self._described, self._names = models, registered, described, names
        _LOG.debug("Registered model %s (table=%s, columns=%s)", label, metadata.table_name, len(metadata.columns))
        return metadata

    def find(self, name: str) -> Optional[type]:
        return self._models.get(registry_key(name))

    def get(self, name: str) -> type:
        model = self.find(name)
        if model is None:
            raise ModelNotFoundError(f"model {name} not found")
        return model

    def get_by_entity(self, schema: str, entity: str) -> type:
        if schema:
            model = self.find(f"{schema}.{entity}")
            if model is not None:
                return model
        return self.get(entity)

    def find_metadata(self, name: str) -> Optional[ModelMetadata]:
        return self._metadata.get(registry_key(name))

    def metadata(self, name: str) -> ModelMetadata:
        metadata = self.find_metadata(name)
        if metadata is None:
            raise ModelNotFoundError(f"model {name} not found")
        return metadata

    def metadata_for_model(self, model: Any) -> ModelMetadata:
        model_type = model if isinstance(model, type) else type(model)
        metadata = self._described.get(model_type)
        if metadata is not None:
            return metadata
        metadata = describe_model(model_type)
        with self._lock:
            described = dict(self._described)
            metadata = described.setdefault(model_type, metadata)
            self._described = described
        return metadata

    def valid_columns(self, name: str) -> Optional[frozenset[str]]:
        metadata = self.find_metadata(name)
        if metadata is None or not metadata.columns:
            return None
        return metadata.valid_columns

    def names(self) -> list[str]:
        return sorted(self._names.values())

    def register_expression(self, alias: str, expression: str) -> None:
        name = str(alias or "").strip()
        sql = str(expression or "").strip()
        if not name or not sql:
            raise ModelRegistrationError("computed expression needs an alias and SQL text")
        with self._lock:
            expressions = dict(self._expressions)
            expressions[name] = sql
            self._expressions = expressions

    def expression(self, alias: str) -> Optional[str]:
        return self._expressions.get(str(alias or "").strip())

    def expressions(self) -> dict[str, str]:
        return dict(self._expressions)
