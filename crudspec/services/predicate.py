from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Any, Iterable, Optional

from sqlalchemy import bindparam, text
from sqlalchemy.sql.elements import TextClause

from crudspec.core.config import settings
from crudspec.core.errors import QueryCompileError

# Quoted literals are matched first so a "?" inside them is left alone.
_TOKENS = re.compile(r"'(?:[^']|'')*'|\(\s*\?\s*\)|\?")
_BIND_COLON = re.compile(r"(?<![:\w\\]):(?=\w)")

PARAMSTYLES = ("qmark", "format", "numeric", "named")


def escape_bind_colons(sql: str) -> str:
    """Escape ``:name`` sequences so ``text()`` does not read them as bind parameters."""
    return _BIND_COLON.sub(r"\\:", sql)


def _is_list(value: Any) -> bool:
    return isinstance(value, (list, tuple, set, frozenset))


@dataclass(frozen=True)
class Predicate:
    """SQL text with ``?`` placeholders and the values bound to them, in order."""

    sql: str
    params: tuple = ()

    def __post_init__(self):
        if not isinstance(self.params, tuple):
            object.__setattr__(self, "params", tuple(self.params))

    def and_(self, other: "Predicate") -> "Predicate":
        return Predicate(f"({self.sql}) AND ({other.sql})", self.params + other.params)

    def or_(self, other: "Predicate") -> "Predicate":
        return Predicate(f"({self.sql}) OR ({other.sql})", self.params + other.params)

    @classmethod
    def combine(cls, items: Iterable[tuple["Predicate", str]]) -> Optional["Predicate"]:
        result: Optional[Predicate] = None
        for predicate, logic in items:
            if result is None:
                result = predicate
            elif str(logic or "AND").upper() == "OR":
                result = result.or_(predicate)
            else:
                result = result.and_(predicate)
        return result

    def _substitute(self, placeholder) -> str:
        values = iter(self.params)
        used = 0

        def _replace(match: re.Match) -> str:
            nonlocal used
            token = match.group(0)
            if token.startswith("'"):
                return token
            try:
                value = next(values)
            except StopIteration:
                raise QueryCompileError(f"not enough parameters for SQL: {self.sql}") from None
            used += 1
            return placeholder(value, token != "?")

        sql = _TOKENS.sub(_replace, self.sql)
        if used != len(self.params):
            raise QueryCompileError(f"{len(self.params)} parameters bound to {used} placeholders: {self.sql}")
        return sql

    def render(self, paramstyle: Optional[str] = None) -> tuple[str, Any]:
        style = (paramstyle or settings.SQL_PARAMSTYLE or "qmark").lower()
        if style not in PARAMSTYLES:
            raise QueryCompileError(f"unsupported paramstyle: {style}")
        flat: list[Any] = []
        named: dict[str, Any] = {}

        def _marker() -> str:
            if style == "qmark":
                return "?"
            if style == "format":
                return "%s"
            if style == "numeric":
                return f"${len(flat)}"
            return f":p{len(flat)}"

        def _bind(value: Any) -> str:
            flat.append(value)
            named[f"p{len(flat)}"] = value
            return _marker()

        def _placeholder(value: Any, grouped: bool) -> str:
            if _is_list(value):
                items = list(value)
                inner = ", ".join(_bind(item) for item in items) if items else "NULL"
                return f"({inner})"
            marker = _bind(value)
            return f"({marker})" if grouped else marker

        if style == "format":
            # Literal percent signs must be doubled for pyformat drivers.
            sql = Predicate(self.sql.replace("%", "%%"), self.params)._substitute(_placeholder)
        else:
            sql = self._substitute(_placeholder)
        return sql, (named if style == "named" else flat)

    def as_clause(self) -> TextClause:
        binds: list = []

        def _placeholder(value: Any, grouped: bool) -> str:
            name = f"p{len(binds) + 1}"
            if _is_list(value):
                binds.append(bindparam(name, list(value), expanding=True, unique=True))
                return f":{name}"
            binds.append(bindparam(name, value, unique=True))
            return f"(:{name})" if grouped else f":{name}"

        escaped = Predicate(escape_bind_colons(self.sql), self.params)
        sql = escaped._substitute(_placeholder)
        return text(sql).bindparams(*binds)
