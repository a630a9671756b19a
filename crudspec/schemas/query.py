from __future__ import annotations

from typing import Any, List, Literal, Optional

from pydantic import BaseModel, Field, field_validator, model_validator

Dir = Literal["asc", "desc"]
Logic = Literal["AND", "OR"]


class FilterOption(BaseModel):
    column: str
    operator: str = "eq"
    value: Any = None
    logic_operator: Logic = "AND"

    @field_validator("operator", mode="before")
    @classmethod
    def _normalize_operator(cls, value: Any) -> str:
        return str(value or "eq").strip().lower()

    @field_validator("logic_operator", mode="before")
    @classmethod
    def _normalize_logic(cls, value: Any) -> str:
        text = str(value or "AND").strip().upper()
        return "OR" if text == "OR" else "AND"


class SortOption(BaseModel):
    column: str
    direction: Dir = "asc"

    @field_validator("direction", mode="before")
    @classmethod
    def _normalize_direction(cls, value: Any) -> str:
        return "desc" if str(value or "").strip().lower() == "desc" else "asc"


class ComputedColumn(BaseModel):
    name: str
    expression: str


class PreloadOption(BaseModel):
    relation: str
    columns: List[str] = []
    omit_columns: List[str] = []
    filters: List[FilterOption] = []
    where: str = ""
    limit: Optional[int] = Field(default=None, ge=0)
    offset: Optional[int] = Field(default=None, ge=0)


class QueryOptions(BaseModel):
    columns: List[str] = []
    omit_columns: List[str] = []
    filters: List[FilterOption] = []
    sort: List[SortOption] = []
    preload: List[PreloadOption] = []
    computed_columns: List[ComputedColumn] = []
    limit: Optional[int] = Field(default=None, ge=0)
    offset: Optional[int] = Field(default=None, ge=0)
    cursor_forward: str = ""
    cursor_backward: str = ""

    @field_validator("columns", "omit_columns")
    @classmethod
    def _unique_columns(cls, value: List[str]) -> List[str]:
        seen: set[str] = set()
        unique: list[str] = []
        for item in value:
            name = str(item or "").strip()
            if not name or name in seen:
                continue
            seen.add(name)
            unique.append(name)
        return unique

    @field_validator("cursor_forward", "cursor_backward", mode="before")
    @classmethod
    def _strip_cursor(cls, value: Any) -> str:
        if value is None:
            return ""
        return str(value).strip()

    @model_validator(mode="after")
    def _single_cursor(self) -> "QueryOptions":
        if self.cursor_forward and self.cursor_backward:
            raise ValueError("cursor_forward and cursor_backward are mutually exclusive")
        return self

    @property
    def has_cursor(self) -> bool:
        return bool(self.cursor_forward or self.cursor_backward)

    @property
    def computed_map(self) -> dict[str, str]:
        return {item.name: item.expression for item in self.computed_columns}
