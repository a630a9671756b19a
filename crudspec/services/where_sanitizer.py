from __future__ import annotations

import logging
import re
from typing import Iterable, Optional

from crudspec.core.config import settings
from crudspec.core.errors import StructuralError

_LOG = logging.getLogger("crudspec.where")

_TRIVIAL_CONDITIONS = frozenset(
    {
        "1=1",
        "1 = 1",
        "1= 1",
        "1 =1",
        "true",
        "true = true",
        "true=true",
        "true= true",
        "true =true",
        "0=0",
        "0 = 0",
        "0= 0",
        "0 =0",
    }
)
_SQL_LITERALS = frozenset({"true", "false", "null", "1=1", "1 = 1", "0=0", "0 = 0"})
_SQL_KEYWORDS = frozenset(
    {"select", "from", "where", "and", "or", "not", "in", "is", "null", "true", "false", "like", "between", "exists"}
)
# Order matters: the first operator found in the condition wins.
_COMPARISON_OPERATORS = (" = ", " != ", " <> ", " > ", " >= ", " < ", " <= ", " LIKE ", " like ", " IN ", " in ", " IS ", " is ")
_AND_TOKENS = (" AND ", " and ", " And ")
_QUOTES = "`\"'"


def strip_outer_parentheses(text: str) -> str:
    value = str(text or "").strip()
    while len(value) >= 2 and value[0] == "(" and value[-1] == ")":
        depth = 0
        for index, ch in enumerate(value):
            if ch == "(":
                depth += 1
            elif ch == ")":
                depth -= 1
                if depth == 0 and index != len(value) - 1:
                    # "(a) AND (b)": the first paren closes early
                    return value
        if depth != 0:
            return value
        value = value[1:-1].strip()
    return value


def split_by_and(where: str) -> list[str]:
    """Split on the first AND spelling that produces more than one part.

    Parentheses are not tracked: ``a = 1 AND (b = 2 AND c = 3)`` splits
    inside the group.
    """
    for token in _AND_TOKENS:
        parts = where.split(token)
        if len(parts) > 1:
            return parts
    return [where]


def is_trivial_condition(condition: str) -> bool:
    return str(condition or "").strip().lower() in _TRIVIAL_CONDITIONS


def is_sql_expression(condition: str) -> bool:
    return str(condition or "").strip().lower() in _SQL_LITERALS


def is_sql_keyword(word: str) -> bool:
    value = str(word or "").strip().lower()
    return value in _SQL_KEYWORDS or value in settings.extra_sql_keywords_list


def has_table_prefix(condition: str) -> bool:
    return "." in str(condition or "")


def extract_column_name(condition: str) -> str:
    text = str(condition or "")
    for operator in _COMPARISON_OPERATORS:
        index = text.find(operator)
        if index > 0:
            return text[:index].strip().strip(_QUOTES)
    parts = text.split()
    if parts:
        column = parts[0].strip(_QUOTES)
        if not is_sql_keyword(column):
            return column
    return ""


def _qualify(condition: str, column: str, prefix: str) -> str:
    pattern = r"(?<![\w.])[`\"]?" + re.escape(column) + r"(?![\w])"
    match = re.search(pattern, condition)
    if match is None:
        return condition
    return f"{condition[: match.start()]}{prefix}.{condition[match.start():]}"


def _column_set(valid_columns: Optional[Iterable[str]]) -> Optional[set[str]]:
    if valid_columns is None:
        return None
    return {str(column).lower() for column in valid_columns}


def sanitize_where_clause(where: str, table_name: str = "", valid_columns: Optional[Iterable[str]] = None) -> str:
    text = str(where or "").strip()
    if not text:
        return ""
    text = strip_outer_parentheses(text)
    allowed = _column_set(valid_columns)

    kept: list[str] = []
    for raw in split_by_and(text):
        condition = raw.strip()
        if not condition:
            continue
        bare = strip_outer_parentheses(condition)
        if is_trivial_condition(bare):
            _LOG.debug("Removing trivial condition: '%s'", condition)
            continue
        if table_name and not has_table_prefix(bare) and not is_sql_expression(bare):
            column = extract_column_name(bare)
            if column:
                if allowed is None or column.lower() in allowed:
                    condition = _qualify(condition, column, table_name)
                    _LOG.debug("Prefixed column in condition: '%s'", condition)
                else:
                    _LOG.debug("Skipping prefix for '%s': not a valid column of %s", column, table_name)
        kept.append(condition)

    if not kept:
        return ""
    result = " AND ".join(kept)
    if result != text:
        _LOG.debug("Sanitized WHERE clause: '%s' -> '%s'", where, result)
    return result


def _references_relation(where: str, relation: str) -> bool:
    lowered = where.lower()
    name = relation.lower()
    return f"{name}." in lowered or f"`{name}`." in lowered or f'"{name}".' in lowered


def fix_preload_where(where: str, relation: str) -> str:
    """Standalone helper: qualify a preload WHERE with its relation name, rejecting clauses it cannot fix safely."""
    text = str(where or "").strip()
    if not text:
        return ""
    if _references_relation(text, relation):
        return text
    if " or " in text.lower() or "(" in text or ")" in text:
        raise StructuralError(
            f"preload WHERE condition must reference the relation '{relation}' (e.g. '{relation}.column_name'); "
            "complex WHERE clauses with OR or parentheses must use the relation prefix explicitly"
        )

    fixed: list[str] = []
    for raw in split_by_and(text):
        condition = raw.strip()
        if not condition:
            continue
        if has_table_prefix(condition) or is_sql_expression(condition):
            fixed.append(condition)
            continue
        column = extract_column_name(condition)
        if not column:
            raise StructuralError(
                f"preload WHERE condition must reference the relation '{relation}'; cannot fix condition: {condition}"
            )
        fixed.append(_qualify(condition, column, relation))

    result = " AND ".join(fixed)
    _LOG.debug("Fixed preload WHERE clause: '%s' -> '%s'", where, result)
    return result
