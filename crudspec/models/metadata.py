from __future__ import annotations

import enum
from dataclasses import dataclass, field
from typing import Optional


class ColumnKind(str, enum.Enum):
    NUMERIC = "numeric"
    STRING = "string"
    BOOLEAN = "boolean"
    TEMPORAL = "temporal"
    OTHER = "other"


class NumericWidth(str, enum.Enum):
    INT8 = "int8"
    INT16 = "int16"
    INT32 = "int32"
    INT64 = "int64"
    UINT8 = "uint8"
    UINT16 = "uint16"
    UINT32 = "uint32"
    UINT64 = "uint64"
    FLOAT32 = "float32"
    FLOAT64 = "float64"
    DECIMAL = "decimal"

    @property
    def is_integer(self) -> bool:
        return self not in {NumericWidth.FLOAT32, NumericWidth.FLOAT64, NumericWidth.DECIMAL}

    @property
    def is_unsigned(self) -> bool:
        return self.value.startswith("uint")

    @property
    def bits(self) -> int:
        digits = "".join(ch for ch in self.value if ch.isdigit())
        return int(digits) if digits else 0


class KeyKind(str, enum.Enum):
    NONE = "none"
    PRIMARY = "primary"
    UNIQUE = "unique"
    FOREIGN = "foreign"


@dataclass(frozen=True)
class ColumnDescriptor:
    name: str
    sql_name: str
    kind: ColumnKind = ColumnKind.OTHER
    width: Optional[NumericWidth] = None
    nullable: bool = True
    key: KeyKind = KeyKind.NONE
    writable: bool = True

    @property
    def is_numeric(self) -> bool:
        return self.kind is ColumnKind.NUMERIC

    @property
    def is_primary(self) -> bool:
        return self.key is KeyKind.PRIMARY


@dataclass(frozen=True)
class ModelMetadata:
    """Column table of one model, computed once at registration."""

    table_name: str
    columns: tuple[ColumnDescriptor, ...] = ()
    primary_key: str = ""
    primary_key_attr: str = ""
    _by_sql: dict[str, ColumnDescriptor] = field(default_factory=dict, init=False, repr=False, compare=False)
    _by_attr: dict[str, ColumnDescriptor] = field(default_factory=dict, init=False, repr=False, compare=False)

    def __post_init__(self) -> None:
        for column in self.columns:
            self._by_sql.setdefault(column.sql_name.lower(), column)
            self._by_attr.setdefault(column.name.lower(), column)

    @property
    def column_names(self) -> list[str]:
        return [column.sql_name for column in self.columns]

    @property
    def valid_columns(self) -> frozenset[str]:
        return frozenset(self._by_sql)

    def column(self, name: str) -> Optional[ColumnDescriptor]:
        key = str(name or "").strip().lower()
        if not key:
            return None
        return self._by_sql.get(key) or self._by_attr.get(key)

    def has_column(self, name: str) -> bool:
        return str(name or "").strip().lower() in self._by_sql

    def is_writable(self, name: str) -> bool:
        column = self.column(name)
        if column is None:
            # Unknown names may be computed or dynamic columns.
            return True
        return column.writable

    def writable_columns(self) -> list[str]:
        return [column.sql_name for column in self.columns if column.writable]

