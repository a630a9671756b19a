from __future__ import annotations

from dataclasses import dataclass


@dataclass(frozen=True)
class SortKey:
    prefix: str
    field: str
    descending: bool
    nulls: str = ""

    @property
    def direction(self) -> str:
        return "desc" if self.descending else "asc"

    @property
    def is_json(self) -> bool:
        return "->" in self.field

    def reversed(self) -> "SortKey":
        flipped = {"first": "last", "last": "first"}.get(self.nulls, "")
        return SortKey(prefix=self.prefix, field=self.field, descending=not self.descending, nulls=flipped)


def extract_source_column(column: str) -> str:
    """Base column of a JSON navigation expression: ``data->>'a'`` -> ``data``."""
    text = str(column or "")
    index = text.find("->")
    if index != -1:
        return text[:index].strip()
    return text


def _strip_markers(column: str) -> tuple[str, str, str]:
    tokens = column.split()
    nulls = ""
    if len(tokens) >= 3 and tokens[-2].lower() == "nulls" and tokens[-1].lower() in {"first", "last"}:
        nulls = tokens[-1].lower()
        tokens = tokens[:-2]
    embedded = ""
    if len(tokens) >= 2 and tokens[-1].lower() in {"asc", "desc"}:
        embedded = tokens[-1].lower()
        tokens = tokens[:-1]
    return " ".join(tokens), embedded, nulls


def parse_sort_column(column: str, direction: str = "asc") -> SortKey:
    """Split ``"author.name desc nulls last"`` into prefix, field and ordering.

    An embedded direction marker wins over the explicit ``direction``.
    """
    text, embedded, nulls = _strip_markers(str(column or "").strip())
    head, operator, tail = text, "", ""
    index = text.find("->")
    if index != -1:
        operator = "->>" if text.startswith("->>", index) else "->"
        head, tail = text[:index], text[index + len(operator) :]
    prefix, _, field = head.strip().rpartition(".")
    field = f"{field.strip()}{operator}{tail}"
    resolved = embedded or str(direction or "asc").strip().lower()
    return SortKey(prefix=prefix.strip(), field=field, descending=resolved == "desc", nulls=nulls)
