from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from typing import Iterable, Mapping, Optional, Sequence

from crudspec.core.config import settings
from crudspec.core.errors import ConfigurationError, FieldError, StructuralError
from crudspec.schemas.query import QueryOptions, SortOption
from crudspec.services.predicate import Predicate
from crudspec.services.sort_keys import SortKey, parse_sort_column

_LOG = logging.getLogger("crudspec.cursor")

_INTEGER_TOKEN = re.compile(r"^-?[0-9]+$")
_JOIN_TARGET = re.compile(r"(\bJOIN\s+)([\w.\"`]+)(?:(\s+(?:AS\s+)?)(?!ON\b|USING\b)(\w+))?", re.IGNORECASE)

CHAIN_MODES = ("keyset", "strict_prefix")


@dataclass(frozen=True)
class CursorComparison:
    anchor: str
    operator: str
    target: str

    @property
    def sql(self) -> str:
        return f"{self.anchor} {self.operator} {self.target}"

    @property
    def equality(self) -> str:
        return f"{self.anchor} = {self.target}"


def _qualified_ref(name: str) -> str:
    return rf"(?<![\w.]){re.escape(name)}\."


def rewrite_join(join_sql: str, main_table: str, alias: str) -> tuple[str, str]:
    """Point a join clause at the cursor row instead of the outer row.

    ``LEFT JOIN users author ON author.id = posts.author_id`` becomes
    ``LEFT JOIN users cursor_select_author ON cursor_select_author.id = cursor_select.author_id``.
    """
    cursor_table = settings.CURSOR_ALIAS
    cursor_alias = f"{cursor_table}_{alias}"
    sql = re.sub(_qualified_ref(main_table), f"{cursor_table}.", join_sql)

    match = _JOIN_TARGET.search(sql)
    if match is None:
        return re.sub(_qualified_ref(alias), f"{cursor_alias}.", sql), cursor_alias
    if match.group(4):
        if match.group(4).lower() == alias.lower():
            sql = f"{sql[: match.start(4)]}{cursor_alias}{sql[match.end(4):]}"
    elif match.group(2).strip('"`').split(".")[-1].lower() == alias.lower():
        # Unaliased join: the table name doubles as the alias.
        sql = f"{sql[: match.end(2)]} {cursor_alias}{sql[match.end(2):]}"

    match = _JOIN_TARGET.search(sql)
    head, tail = sql[: match.end()], sql[match.end() :]
    return head + re.sub(_qualified_ref(alias), f"{cursor_alias}.", tail), cursor_alias


def build_priority_chain(comparisons: Sequence[CursorComparison], mode: Optional[str] = None) -> str:
    chain_mode = (mode or settings.CURSOR_CHAIN_MODE or "keyset").lower()
    if chain_mode not in CHAIN_MODES:
        raise StructuralError(f"unknown cursor chain mode: {chain_mode}")
    branches: list[str] = []
    for index, comparison in enumerate(comparisons):
        if chain_mode == "strict_prefix":
            parts = [item.sql for item in comparisons[: index + 1]]
        else:
            parts = [item.equality for item in comparisons[:index]] + [comparison.sql]
        branches.append("(" + " AND ".join(parts) + ")")
    return " OR ".join(branches)


def _active_cursor(options: QueryOptions, table_name: str) -> tuple[str, bool]:
    forward = str(options.cursor_forward or "").strip()
    backward = str(options.cursor_backward or "").strip()
    if forward and backward:
        raise StructuralError("cursor_forward and cursor_backward cannot both be set")
    if not forward and not backward:
        raise StructuralError(f"no cursor provided for table {table_name}")
    return (forward, False) if forward else (backward, True)


def _lookup_expression(name: str, *sources: Optional[Mapping[str, str]]) -> Optional[str]:
    lowered = name.lower()
    for source in sources:
        if not source:
            continue
        if name in source:
            return source[name]
        for alias, expression in source.items():
            if alias.lower() == lowered:
                return expression
    return None


class _CursorBuilder:
    def __init__(self, options, table_name, primary_key, model_columns, expand_joins, expressions):
        self.options = options
        self.table_name = table_name
        self.primary_key = primary_key
        self.columns = None if model_columns is None else {str(c).lower() for c in model_columns}
        self.expand_joins = dict(expand_joins or {})
        self.expressions = expressions
        self.alias = settings.CURSOR_ALIAS
        self.joins: dict[str, str] = {}

    def _is_main_prefix(self, prefix: str) -> bool:
        return not prefix or prefix.lower() == self.table_name.lower()

    def _join_columns(self, key: SortKey) -> tuple[str, str]:
        join_sql = self.expand_joins.get(key.prefix)
        if join_sql is None:
            raise ConfigurationError(f"no join definition for relation {key.prefix}", column=key.field)
        if key.prefix not in self.joins:
            rewritten, _ = rewrite_join(join_sql, self.table_name, key.prefix)
            self.joins[key.prefix] = rewritten
            _LOG.debug("Rewrote join for cursor: '%s' -> '%s'", join_sql, rewritten)
        cursor_alias = f"{self.alias}_{key.prefix}"
        return f"{cursor_alias}.{key.field}", f"{key.prefix}.{key.field}"

    def resolve(self, key: SortKey) -> tuple[str, str]:
        if key.is_json:
            return f"{self.alias}.{key.field}", f"{self.table_name}.{key.field}"
        expression = _lookup_expression(key.field, self.options.computed_map, self.expressions)
        if expression is not None:
            anchor = re.sub(_qualified_ref(self.table_name), f"{self.alias}.", expression)
            return anchor, expression
        if self.columns is None or key.field.lower() in self.columns:
            return f"{self.alias}.{key.field}", f"{self.table_name}.{key.field}"
        if self._is_main_prefix(key.prefix):
            raise FieldError(f"invalid column: {key.field}", column=key.field)
        return self._join_columns(key)

    def comparisons(self, backward: bool) -> list[CursorComparison]:
        result: list[CursorComparison] = []
        for sort in self.options.sort:
            if not str(sort.column or "").strip():
                continue
            key = parse_sort_column(sort.column, sort.direction)
            if backward:
                key = key.reversed()
            try:
                anchor, target = self.resolve(key)
            except FieldError as exc:
                _LOG.warning("Skipping invalid sort column %r: %s", sort.column, exc)
                continue
            result.append(CursorComparison(anchor, ">" if key.descending else "<", target))
        return result


def build_cursor_filter(
    options: QueryOptions,
    table_name: str,
    primary_key: str,
    model_columns: Optional[Iterable[str]] = None,
    expand_joins: Optional[Mapping[str, str]] = None,
    expressions: Optional[Mapping[str, str]] = None,
) -> Predicate:
    token, backward = _active_cursor(options, table_name)
    if not options.sort:
        raise StructuralError("no sort columns defined")

    builder = _CursorBuilder(options, table_name, primary_key, model_columns, expand_joins, expressions)
    comparisons = builder.comparisons(backward)
    if not comparisons:
        raise StructuralError("no valid sort columns after filtering")

    chain = build_priority_chain(comparisons)
    params: tuple = ()
    if _INTEGER_TOKEN.match(token):
        anchor_value = token
    else:
        anchor_value = "?"
        params = (token,)
    joins = "".join(f" {sql}" for sql in builder.joins.values())
    alias = builder.alias
    sql = (
        f"EXISTS (SELECT 1 FROM {table_name} {alias}{joins} "
        f"WHERE {alias}.{primary_key} = {anchor_value} AND ({chain}))"
    )
    return Predicate(sql, params)


def build_order_by(
    sort: Iterable[SortOption],
    table_name: str,
    reverse: bool = False,
    expressions: Optional[Mapping[str, str]] = None,
) -> list[str]:
    items: list[str] = []
    for option in sort:
        if not str(option.column or "").strip():
            continue
        key = parse_sort_column(option.column, option.direction)
        if reverse:
            key = key.reversed()
        expression = _lookup_expression(key.field, expressions) if not key.is_json else None
        if expression is not None:
            column = expression
        elif key.prefix:
            column = f"{key.prefix}.{key.field}"
        elif table_name:
            column = f"{table_name}.{key.field}"
        else:
            column = key.field
        item = f"{column} {key.direction.upper()}"
        if key.nulls:
            item = f"{item} NULLS {key.nulls.upper()}"
        items.append(item)
    return items
