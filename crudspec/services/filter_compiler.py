from __future__ import annotations

import logging
import math
import struct
from dataclasses import dataclass
from decimal import Decimal, InvalidOperation
from typing import Any, Iterable, Optional

from crudspec.core.errors import FieldError
from crudspec.models.metadata import ColumnKind, ModelMetadata, NumericWidth
from crudspec.schemas.query import FilterOption
from crudspec.services.predicate import Predicate
from crudspec.services.sort_keys import extract_source_column

_LOG = logging.getLogger("crudspec.filters")

_OPERATOR_ALIASES = {
    "eq": "eq",
    "equals": "eq",
    "neq": "neq",
    "ne": "neq",
    "not_equals": "neq",
    "gt": "gt",
    "greater_than": "gt",
    "gte": "gte",
    "ge": "gte",
    "greater_than_equals": "gte",
    "lt": "lt",
    "less_than": "lt",
    "lte": "lte",
    "le": "lte",
    "less_than_equals": "lte",
    "like": "like",
    "ilike": "ilike",
    "in": "in",
    "between": "between",
    "between_inclusive": "between_inclusive",
    "is_null": "is_null",
    "isnull": "is_null",
    "is_not_null": "is_not_null",
    "isnotnull": "is_not_null",
}
_COMPARISONS = {"eq": "=", "neq": "!=", "gt": ">", "gte": ">=", "lt": "<", "lte": "<="}
_BETWEEN = {"between": (">", "<"), "between_inclusive": (">=", "<=")}
_PATTERN_OPERATORS = {"like": "LIKE", "ilike": "ILIKE"}


@dataclass(frozen=True)
class CastInfo:
    needs_cast: bool
    is_numeric: bool
    value: Any = None


@dataclass(frozen=True)
class CompiledFilter:
    predicate: Predicate
    logic: str = "AND"


def normalize_operator(operator: str) -> str:
    name = str(operator or "eq").strip().lower()
    resolved = _OPERATOR_ALIASES.get(name)
    if resolved is None:
        _LOG.warning("Unknown filter operator: %s, defaulting to equals", operator)
        return "eq"
    return resolved


def _is_native_number(value: Any) -> bool:
    return isinstance(value, (int, float, Decimal)) and not isinstance(value, bool)


def _number_text(value: Any) -> Optional[str]:
    if _is_native_number(value):
        return str(value)
    if isinstance(value, str):
        text = value.strip().strip("%").strip()
        try:
            parsed = float(text)
        except ValueError:
            return None
        if math.isnan(parsed) or math.isinf(parsed):
            return None
        return text
    return None


def _to_int(text: str) -> int:
    try:
        return int(text)
    except ValueError:
        number = Decimal(text)
        if number != number.to_integral_value():
            raise ValueError(f"{text} is not an integer")
        return int(number)


def convert_to_width(value: Any, width: NumericWidth) -> Any:
    """Convert a numeric value (or numeric string) to the column's exact width.

    Raises ValueError when the value does not fit.
    """
    text = _number_text(value)
    if text is None:
        raise ValueError(f"{value!r} is not numeric")
    if width.is_integer:
        number = _to_int(text)
        if width.is_unsigned:
            low, high = 0, (1 << width.bits) - 1
        else:
            low, high = -(1 << (width.bits - 1)), (1 << (width.bits - 1)) - 1
        if not low <= number <= high:
            raise ValueError(f"{number} out of range for {width.value}")
        return number
    if width == NumericWidth.DECIMAL:
        try:
            return Decimal(text)
        except InvalidOperation as exc:
            raise ValueError(str(exc)) from exc
    number = float(text)
    if width == NumericWidth.FLOAT32:
        try:
            return struct.unpack("f", struct.pack("f", number))[0]
        except OverflowError as exc:
            raise ValueError(f"{number} out of range for float32") from exc
    return number


class FilterCompiler:
    def __init__(self, metadata: ModelMetadata, table_name: Optional[str] = None):
        self.metadata = metadata
        self.table_name = metadata.table_name if table_name is None else table_name

    def qualify(self, column: str) -> str:
        name = str(column or "").strip()
        if not self.table_name or "." in extract_source_column(name):
            return name
        return f"{self.table_name}.{name}"

    def _descriptor(self, column: str):
        base = extract_source_column(column)
        qualifier, dot, bare = base.rpartition(".")
        descriptor = self.metadata.column(bare if dot else base)
        if descriptor is None:
            return None
        if dot and qualifier.lower() != self.metadata.table_name.lower():
            return None
        return descriptor

    def cast_info(self, item: FilterOption, value: Any = None) -> CastInfo:
        value = item.value if value is None else value
        descriptor = self._descriptor(item.column)
        if descriptor is None:
            _LOG.debug("Column %s not found in model, skipping type validation", item.column)
            return CastInfo(needs_cast=False, is_numeric=False, value=value)
        if descriptor.kind == ColumnKind.STRING:
            return CastInfo(needs_cast=False, is_numeric=False, value=value)
        if descriptor.kind != ColumnKind.NUMERIC:
            _LOG.debug("Column %s is %s, will cast to text", item.column, descriptor.kind.value)
            return CastInfo(needs_cast=True, is_numeric=False, value=value)

        values = list(value) if isinstance(value, (list, tuple)) else [value]
        if not values or any(_number_text(v) is None for v in values):
            _LOG.debug("Non-numeric value for numeric column %s, will cast to text", item.column)
            return CastInfo(needs_cast=True, is_numeric=True, value=value)
        width = descriptor.width or NumericWidth.FLOAT64
        try:
            converted = [convert_to_width(v, width) for v in values]
        except ValueError:
            _LOG.debug("Failed to convert %r for column %s, will use text cast", value, item.column)
            return CastInfo(needs_cast=True, is_numeric=True, value=value)
        adjusted = converted if isinstance(value, (list, tuple)) else converted[0]
        return CastInfo(needs_cast=False, is_numeric=True, value=adjusted)

    def _pattern_cast(self, item: FilterOption) -> bool:
        descriptor = self._descriptor(item.column)
        return descriptor is not None and descriptor.kind != ColumnKind.STRING

    @staticmethod
    def _in_values(value: Any) -> list:
        if isinstance(value, (list, tuple, set, frozenset)):
            return list(value)
        if isinstance(value, str):
            return [part.strip() for part in value.split(",") if part.strip()]
        return [value]

    @staticmethod
    def _range_values(item: FilterOption) -> list:
        value = item.value
        if isinstance(value, (list, tuple)) and len(value) == 2:
            return list(value)
        raise FieldError(f"{item.operator} filter on {item.column} needs exactly two values", column=item.column)

    def compile(self, item: FilterOption) -> Optional[CompiledFilter]:
        operator = normalize_operator(item.operator)
        column = self.qualify(item.column)

        if operator in _PATTERN_OPERATORS:
            expr = f"CAST({column} AS TEXT)" if self._pattern_cast(item) else column
            predicate = Predicate(f"{expr} {_PATTERN_OPERATORS[operator]} ?", (item.value,))
            return CompiledFilter(predicate, item.logic_operator)

        if operator in _BETWEEN:
            try:
                values = self._range_values(item)
            except FieldError as exc:
                _LOG.warning("Invalid BETWEEN filter value format: %s", exc)
                return None
            info = self.cast_info(item, values)
            expr = f"CAST({column} AS TEXT)" if info.needs_cast else column
            low_op, high_op = _BETWEEN[operator]
            predicate = Predicate(f"{expr} {low_op} ? AND {expr} {high_op} ?", tuple(info.value))
            return CompiledFilter(predicate, item.logic_operator)

        if operator == "in":
            info = self.cast_info(item, self._in_values(item.value))
            expr = f"CAST({column} AS TEXT)" if info.needs_cast else column
            return CompiledFilter(Predicate(f"{expr} IN (?)", (list(info.value),)), item.logic_operator)

        info = self.cast_info(item)
        expr = f"CAST({column} AS TEXT)" if info.needs_cast else column
        if operator == "is_null":
            return CompiledFilter(Predicate(f"({expr} IS NULL OR {expr} = '')"), item.logic_operator)
        if operator == "is_not_null":
            return CompiledFilter(Predicate(f"({expr} IS NOT NULL AND {expr} != '')"), item.logic_operator)
        predicate = Predicate(f"{expr} {_COMPARISONS[operator]} ?", (info.value,))
        return CompiledFilter(predicate, item.logic_operator)

    def compile_all(self, filters: Iterable[FilterOption]) -> Optional[Predicate]:
        compiled = [self.compile(item) for item in filters]
        return Predicate.combine((c.predicate, c.logic) for c in compiled if c is not None)
