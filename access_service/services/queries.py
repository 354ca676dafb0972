"""Filtering and pagination over a closed set of allowed fields.

Each listing declares the filters it accepts as ``{name: builder}``; a builder
turns the user-supplied value into a SQLAlchemy clause, so values only ever
reach the database as bound parameters.
"""

import math
from dataclasses import dataclass
from typing import Any, Callable, Dict, Generic, List, Mapping, Optional, TypeVar

from sqlalchemy import Select, or_
from sqlalchemy.sql.elements import ColumnElement

from access_service.errors import ValidationFailed

T = TypeVar("T")

FilterBuilder = Callable[[Any], ColumnElement]

MAX_LIMIT = 100


def escape_like(term: str) -> str:
    return term.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")


def search_in(*columns) -> FilterBuilder:
    def build(term: str) -> ColumnElement:
        pattern = f"%{escape_like(term)}%"
        return or_(*(column.ilike(pattern, escape="\\") for column in columns))
    return build


def equals(column) -> FilterBuilder:
    return lambda value: column == value


@dataclass(frozen=True)
class PageParams:
    page: int = 1
    limit: int = 10

    def __post_init__(self):
        if self.page < 1:
            raise ValidationFailed("page must be >= 1")
        if not 1 <= self.limit <= MAX_LIMIT:
            raise ValidationFailed(f"limit must be between 1 and {MAX_LIMIT}")

    @property
    def offset(self) -> int:
        return (self.page - 1) * self.limit


@dataclass
class PageResult(Generic[T]):
    items: List[T]
    page: int
    limit: int
    total: int

    @property
    def total_pages(self) -> int:
        return math.ceil(self.total / self.limit) if self.total else 0

    def as_dict(self) -> Dict[str, Any]:
        return {
            "items": self.items,
            "page": self.page,
            "limit": self.limit,
            "total": self.total,
            "total_pages": self.total_pages,
            "has_next": self.page < self.total_pages,
            "has_prev": self.page > 1,
        }


def build_conditions(
    allowed: Mapping[str, FilterBuilder], filters: Optional[Mapping[str, Any]]
) -> List[ColumnElement]:
    conditions = []
    for key, value in (filters or {}).items():
        if value is None or value == "":
            continue
        builder = allowed.get(key)
        if builder is None:
            raise ValidationFailed(f"Unsupported filter '{key}'", allowed=sorted(allowed))
        conditions.append(builder(value))
    return conditions


def apply_filters(stmt: Select, conditions: List[ColumnElement]) -> Select:
    for condition in conditions:
        stmt = stmt.where(condition)
    return stmt
