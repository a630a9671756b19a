from __future__ import annotations

import dataclasses
import inspect
import logging
import types
import typing
import uuid
from datetime import date, datetime, time, timedelta
from decimal import Decimal
from typing import Any, Iterator, Optional

from sqlalchemy import Column
from sqlalchemy.inspection import inspect as sa_inspect
from sqlalchemy.orm import Mapper
from sqlalchemy.sql.sqltypes import (
    BigInteger,
    Boolean,
    Date,
    DateTime,
    Float,
    Integer,
    Interval,
    Numeric,
    SmallInteger,
    String,
    Time,
    Uuid,
)

from crudspec.models.fields import DB_HINT, EMBED_HINT, JSON_HINT, ORM_HINT, FieldSpec
from crudspec.models.metadata import ColumnDescriptor, ColumnKind, KeyKind, ModelMetadata, NumericWidth

_LOG = logging.getLogger("crudspec.metadata")

_MISSING = object()

_SQL_TYPE_KINDS: dict[str, tuple[ColumnKind, Optional[NumericWidth]]] = {
    "tinyint": (ColumnKind.NUMERIC, NumericWidth.INT8),
    "smallint": (ColumnKind.NUMERIC, NumericWidth.INT16),
    "int2": (ColumnKind.NUMERIC, NumericWidth.INT16),
    "smallserial": (ColumnKind.NUMERIC, NumericWidth.INT16),
    "int": (ColumnKind.NUMERIC, NumericWidth.INT32),
    "integer": (ColumnKind.NUMERIC, NumericWidth.INT32),
    "int4": (ColumnKind.NUMERIC, NumericWidth.INT32),
    "serial": (ColumnKind.NUMERIC, NumericWidth.INT32),
    "bigint": (ColumnKind.NUMERIC, NumericWidth.INT64),
    "int8": (ColumnKind.NUMERIC, NumericWidth.INT64),
    "bigserial": (ColumnKind.NUMERIC, NumericWidth.INT64),
    "real": (ColumnKind.NUMERIC, NumericWidth.FLOAT32),
    "float4": (ColumnKind.NUMERIC, NumericWidth.FLOAT32),
    "float": (ColumnKind.NUMERIC, NumericWidth.FLOAT64),
    "float8": (ColumnKind.NUMERIC, NumericWidth.FLOAT64),
    "double": (ColumnKind.NUMERIC, NumericWidth.FLOAT64),
    "double precision": (ColumnKind.NUMERIC, NumericWidth.FLOAT64),
    "numeric": (ColumnKind.NUMERIC, NumericWidth.DECIMAL),
    "decimal": (ColumnKind.NUMERIC, NumericWidth.DECIMAL),
    "money": (ColumnKind.NUMERIC, NumericWidth.DECIMAL),
    "text": (ColumnKind.STRING, None),
    "varchar": (ColumnKind.STRING, None),
    "char": (ColumnKind.STRING, None),
    "character": (ColumnKind.STRING, None),
    "character varying": (ColumnKind.STRING, None),
    "citext": (ColumnKind.STRING, None),
    "uuid": (ColumnKind.STRING, None),
    "bool": (ColumnKind.BOOLEAN, None),
    "boolean": (ColumnKind.BOOLEAN, None),
    "date": (ColumnKind.TEMPORAL, None),
    "datetime": (ColumnKind.TEMPORAL, None),
    "interval": (ColumnKind.TEMPORAL, None),
}


def normalize_table_name(table_name: str) -> str:
    raw = (table_name or "").strip().replace("-", "_")
    if not raw:
        return ""
    chars: list[str] = []
    for index, ch in enumerate(raw):
        if ch.isupper() and index > 0 and raw[index - 1].isalnum() and raw[index - 1] != "_":
            chars.append("_")
        chars.append(ch.lower())
    return "".join(chars)


# Hint parsing


def extract_column_from_db_hint(tag: str) -> str:
    text = str(tag or "").strip()
    if not text or text == "-":
        return ""
    lowered = text.lower()
    if lowered.startswith(("table:", "rel:", "join:")):
        return ""
    return text.split(",")[0].strip()


def extract_column_from_orm_hint(tag: str) -> str:
    return _orm_parts(tag).get("column", "")


def _db_flags(tag: str) -> set[str]:
    text = str(tag or "").strip()
    if not text or text == "-":
        return set()
    return {part.strip().lower() for part in text.split(",")[1:] if part.strip()}


def _orm_parts(tag: str) -> dict[str, str]:
    text = str(tag or "").strip()
    parts: dict[str, str] = {}
    if not text or text == "-":
        return parts
    for raw in text.split(";"):
        part = raw.strip()
        if not part:
            continue
        key, _, value = part.partition(":")
        parts[key.strip().lower()] = value.strip()
    return parts


def _json_name(spec: FieldSpec) -> str:
    text = str(spec.json or "").strip()
    if not text or text == "-":
        return ""
    return text.split(",")[0].strip()


def _is_db_scan_only(tag: str) -> bool:
    return "scanonly" in _db_flags(tag)


def _is_orm_read_only(tag: str) -> bool:
    parts = _orm_parts(tag)
    if "->" in parts and parts["->"] != "false":
        return True
    return parts.get("<-") == "false"


def _is_db_pk(spec: FieldSpec) -> bool:
    return "pk" in _db_flags(spec.db)


def _is_orm_pk(spec: FieldSpec) -> bool:
    parts = _orm_parts(spec.orm)
    return "primarykey" in parts or "primary_key" in parts


def column_name_for(spec: FieldSpec) -> str:
    name = extract_column_from_db_hint(spec.db)
    if name:
        return name
    name = extract_column_from_orm_hint(spec.orm)
    if name:
        return name
    name = _json_name(spec)
    if name:
        return name
    return spec.name.lower()


# Type mapping


def _unwrap_optional(annotation: Any) -> tuple[Any, bool]:
    origin = typing.get_origin(annotation)
    if origin is typing.Union or origin is types.UnionType:
        args = typing.get_args(annotation)
        rest = [arg for arg in args if arg is not type(None)]
        optional = len(rest) != len(args)
        if len(rest) == 1:
            return rest[0], optional
        return annotation, optional
    return annotation, False


def _kind_from_sql_type(type_name: str) -> tuple[ColumnKind, Optional[NumericWidth]]:
    base = str(type_name or "").split("(")[0].strip().lower()
    if base in _SQL_TYPE_KINDS:
        return _SQL_TYPE_KINDS[base]
    if base.startswith(("timestamp", "time")):
        return ColumnKind.TEMPORAL, None
    if base.startswith(("varchar", "character")):
        return ColumnKind.STRING, None
    return ColumnKind.OTHER, None


def _kind_from_python_type(annotation: Any) -> tuple[ColumnKind, Optional[NumericWidth]]:
    if not isinstance(annotation, type):
        return ColumnKind.OTHER, None
    if issubclass(annotation, bool):
        return ColumnKind.BOOLEAN, None
    if issubclass(annotation, int):
        return ColumnKind.NUMERIC, NumericWidth.INT64
    if issubclass(annotation, float):
        return ColumnKind.NUMERIC, NumericWidth.FLOAT64
    if issubclass(annotation, Decimal):
        return ColumnKind.NUMERIC, NumericWidth.DECIMAL
    if issubclass(annotation, (str, uuid.UUID)):
        return ColumnKind.STRING, None
    if issubclass(annotation, (datetime, date, time, timedelta)):
        return ColumnKind.TEMPORAL, None
    return ColumnKind.OTHER, None


def _kind_from_sqlalchemy_type(col_type: Any) -> tuple[ColumnKind, Optional[NumericWidth]]:
    if col_type is None:
        return ColumnKind.OTHER, None
    if isinstance(col_type, Boolean):
        return ColumnKind.BOOLEAN, None
    if isinstance(col_type, BigInteger):
        return ColumnKind.NUMERIC, NumericWidth.INT64
    if isinstance(col_type, SmallInteger):
        return ColumnKind.NUMERIC, NumericWidth.INT16
    if isinstance(col_type, Integer):
        return ColumnKind.NUMERIC, NumericWidth.INT32
    if isinstance(col_type, Float):
        return ColumnKind.NUMERIC, NumericWidth.FLOAT64
    if isinstance(col_type, Numeric):
        return ColumnKind.NUMERIC, NumericWidth.DECIMAL
    if isinstance(col_type, (DateTime, Date, Time, Interval)):
        return ColumnKind.TEMPORAL, None
    if isinstance(col_type, (String, Uuid)):
        return ColumnKind.STRING, None
    return ColumnKind.OTHER, None


# Field discovery


def mapper_for(model: Any) -> Optional[Mapper]:
    model_type = model if isinstance(model, type) else type(model)
    mapper = sa_inspect(model_type, raiseerr=False)
    return mapper if isinstance(mapper, Mapper) else None


def _dataclass_specs(model_type: type) -> tuple[FieldSpec, ...]:
    try:
        hints = typing.get_type_hints(model_type)
    except (NameError, TypeError):
        hints = {}
    specs: list[FieldSpec] = []
    for item in dataclasses.fields(model_type):
        annotation, optional = _unwrap_optional(hints.get(item.name, item.type))
        meta = item.metadata or {}
        embedded = None
        if meta.get(EMBED_HINT):
            if isinstance(annotation, type) and dataclasses.is_dataclass(annotation):
                embedded = _dataclass_specs(annotation)
            else:
                _LOG.warning("Embedded field %s.%s is not a dataclass; treated as a column", model_type.__name__, item.name)
        specs.append(
            FieldSpec(
                name=item.name,
                annotation=annotation,
                db=str(meta.get(DB_HINT) or ""),
                orm=str(meta.get(ORM_HINT) or ""),
                json=str(meta.get(JSON_HINT) or ""),
                embedded=embedded,
                optional=optional,
            )
        )
    return tuple(specs)


def field_specs(model: Any) -> tuple[FieldSpec, ...]:
    model_type = model if isinstance(model, type) else type(model)
    declared = getattr(model_type, "__crudspec_fields__", None)
    if declared is not None:
        return tuple(declared)
    if dataclasses.is_dataclass(model_type):
        return _dataclass_specs(model_type)
    return ()


def _iter_columns(specs: tuple[FieldSpec, ...], instance: Any = _MISSING) -> Iterator[tuple[FieldSpec, Any]]:
    for spec in specs:
        if spec.is_embedded:
            child = _MISSING
            if instance is not _MISSING:
                child = getattr(instance, spec.name, None)
                if child is None:
                    # Unset optional reference: nothing to flatten.
                    continue
            yield from _iter_columns(spec.embedded or (), child)
            continue
        value = _MISSING if instance is _MISSING else getattr(instance, spec.name, None)
        yield spec, value


def _instance_of(model: Any) -> Any:
    return _MISSING if isinstance(model, type) else model


def _provided_primary_key(model: Any) -> str:
    model_type = model if isinstance(model, type) else type(model)
    raw = inspect.getattr_static(model_type, "get_id_name", None)
    if raw is None:
        return ""
    if isinstance(model, type) and inspect.isfunction(raw):
        # Instance method: needs an instance to answer.
        return ""
    provider = getattr(model, "get_id_name")
    return str(provider() or "").strip()


def table_name_for(model: Any, default: str = "") -> str:
    model_type = model if isinstance(model, type) else type(model)
    mapper = mapper_for(model_type)
    if mapper is not None and getattr(mapper.local_table, "name", None):
        return str(mapper.local_table.name)
    explicit = getattr(model_type, "__tablename__", None)
    if explicit:
        return str(explicit)
    provider = getattr(model_type, "get_table_name", None)
    if callable(provider) and not inspect.isfunction(inspect.getattr_static(model_type, "get_table_name")):
        name = str(provider() or "").strip()
        if name:
            return name
    return default or normalize_table_name(model_type.__name__)


# Public resolution API


def primary_key_name(model: Any) -> str:
    if model is None:
        return ""
    provided = _provided_primary_key(model)
    if provided:
        return provided
    mapper = mapper_for(model)
    if mapper is not None:
        return _sqlalchemy_primary_key(mapper)[0]
    columns = list(_iter_columns(field_specs(model), _instance_of(model)))
    for spec, _ in columns:
        if _is_db_pk(spec):
            return column_name_for(spec)
    for spec, _ in columns:
        if _is_orm_pk(spec):
            return column_name_for(spec)
    return ""


def primary_key_value(instance: Any) -> Any:
    if instance is None or isinstance(instance, type):
        return None
    mapper = mapper_for(instance)
    if mapper is not None:
        provided = _provided_primary_key(instance)
        if provided:
            attr = _mapped_attribute(mapper, provided)
            if attr:
                return getattr(instance, attr, None)
        return getattr(instance, _sqlalchemy_primary_key(mapper)[1], None)
    columns = list(_iter_columns(field_specs(instance), instance))
    provided = _provided_primary_key(instance)
    if provided:
        for spec, value in columns:
            if column_name_for(spec) == provided:
                return value
    for spec, value in columns:
        if _is_db_pk(spec):
            return value
    for spec, value in columns:
        if _is_orm_pk(spec):
            return value
    for spec, value in columns:
        if spec.name.lower() == "id":
            return value
    if not columns and hasattr(instance, "__dict__"):
        for name, value in vars(instance).items():
            if name.lower() == "id":
                return value
    return None


def model_columns(model: Any) -> list[str]:
    return describe_model(model).column_names


def is_column_writable(model: Any, column: str) -> bool:
    return describe_model(model).is_writable(column)


def describe_model(model: Any, table_name: str = "") -> ModelMetadata:
    resolved_table = table_name or table_name_for(model)
    mapper = mapper_for(model)
    if mapper is not None:
        return _describe_sqlalchemy(mapper, resolved_table, _provided_primary_key(model))
    return _describe_fields(model, resolved_table)


def _describe_fields(model: Any, table_name: str) -> ModelMetadata:
    pk_name = primary_key_name(model)
    pk_attr = ""
    columns: list[ColumnDescriptor] = []
    seen: set[str] = set()
    for spec, _ in _iter_columns(field_specs(model), _instance_of(model)):
        sql_name = column_name_for(spec)
        if not sql_name or sql_name.lower() in seen:
            continue
        seen.add(sql_name.lower())
        db_flags = _db_flags(spec.db)
        orm = _orm_parts(spec.orm)
        if orm.get("type"):
            kind, width = _kind_from_sql_type(orm["type"])
        else:
            kind, width = _kind_from_python_type(spec.annotation)
        nullable = spec.optional and "notnull" not in db_flags and "not null" not in orm
        if pk_name and sql_name == pk_name:
            key = KeyKind.PRIMARY
            pk_attr = spec.name
        elif "unique" in db_flags or "unique" in orm or "uniqueindex" in orm:
            key = KeyKind.UNIQUE
        elif "fk" in db_flags or "foreignkey" in orm:
            key = KeyKind.FOREIGN
        else:
            key = KeyKind.NONE
        columns.append(
            ColumnDescriptor(
                name=spec.name,
                sql_name=sql_name,
                kind=kind,
                width=width,
                nullable=nullable,
                key=key,
                writable=not (_is_db_scan_only(spec.db) or _is_orm_read_only(spec.orm)),
            )
        )
    if not columns:
        _LOG.debug("Model %s exposes no columns", table_name)
    return ModelMetadata(table_name=table_name, columns=tuple(columns), primary_key=pk_name, primary_key_attr=pk_attr)


def _sqlalchemy_primary_key(mapper: Mapper) -> tuple[str, str]:
    if not mapper.primary_key:
        return "", ""
    pk_column = mapper.primary_key[0]
    prop = mapper.get_property_by_column(pk_column)
    return str(pk_column.name), prop.key


def _mapped_attribute(mapper: Mapper, column_name: str) -> str:
    lowered = column_name.lower()
    for prop in mapper.column_attrs:
        expr = prop.columns[0]
        if str(getattr(expr, "name", "")).lower() == lowered or prop.key.lower() == lowered:
            return prop.key
    return ""


def _describe_sqlalchemy(mapper: Mapper, table_name: str, provided_pk: str) -> ModelMetadata:
    pk_name, pk_attr = _sqlalchemy_primary_key(mapper)
    columns: list[ColumnDescriptor] = []
    for prop in mapper.column_attrs:
        expr = prop.columns[0]
        if isinstance(expr, Column):
            kind, width = _kind_from_sqlalchemy_type(expr.type)
            if expr.primary_key:
                key = KeyKind.PRIMARY
            elif expr.foreign_keys:
                key = KeyKind.FOREIGN
            elif expr.unique:
                key = KeyKind.UNIQUE
            else:
                key = KeyKind.NONE
            info = expr.info or {}
            writable = expr.computed is None and not (info.get("readonly") or info.get("scanonly"))
            columns.append(
                ColumnDescriptor(
                    name=prop.key,
                    sql_name=str(expr.name),
                    kind=kind,
                    width=width,
                    nullable=bool(expr.nullable),
                    key=key,
                    writable=bool(writable),
                )
            )
            if provided_pk and str(expr.name) == provided_pk:
                pk_attr = prop.key
            continue
        # column_property over an expression: readable, never written
        kind, width = _kind_from_sqlalchemy_type(getattr(expr, "type", None))
        columns.append(ColumnDescriptor(name=prop.key, sql_name=prop.key, kind=kind, width=width, writable=False))
    return ModelMetadata(
        table_name=table_name,
        columns=tuple(columns),
        primary_key=provided_pk or pk_name,
        primary_key_attr=pk_attr,
    )
