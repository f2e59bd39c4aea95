from __future__ import annotations

import math
from collections.abc import Mapping, Sequence
from dataclasses import dataclass
from typing import Any

from sqlalchemy import Select, func, or_, select
from sqlalchemy.orm import Session
from sqlalchemy.sql.elements import ColumnElement


@dataclass(slots=True)
class ListParams:
    page: int
    limit: int
    search: str | None
    sort_by: str | None
    sort_order: str

    @property
    def offset(self) -> int:
        return (self.page - 1) * self.limit

    @property
    def ascending(self) -> bool:
        return self.sort_order == "asc"

    @classmethod
    def build(
        cls,
        *,
        page: int | None,
        limit: int | None,
        search: str | None,
        sort_by: str | None,
        sort_order: str | None,
        default_limit: int = 20,
        max_limit: int = 100,
    ) -> "ListParams":
        resolved_page = page if page is not None and page >= 1 else 1
        resolved_limit = default_limit if limit is None else limit
        resolved_limit = min(max(resolved_limit, 1), max_limit)
        term = search.strip() if search else None
        return cls(
            page=resolved_page,
            limit=resolved_limit,
            search=term or None,
            sort_by=sort_by.strip() if sort_by else None,
            sort_order="asc" if (sort_order or "").strip().lower() == "asc" else "desc",
        )


def _escape_like(term: str) -> str:
    return term.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")


def search_clause(term: str | None, columns: Sequence[Any]) -> ColumnElement[bool] | None:
    if not term:
        return None
    pattern = f"%{_escape_like(term)}%"
    return or_(*[column.ilike(pattern, escape="\\") for column in columns])


def equality_filters(filters: Mapping[Any, Any]) -> list[ColumnElement[bool]]:
    return [column == value for column, value in filters.items() if value not in (None, "")]


def resolve_sort_column(params: ListParams, sortable: Mapping[str, Any], default_key: str) -> Any:
    column = sortable.get(params.sort_by or "", sortable[default_key])
    ordered = column.asc() if params.ascending else column.desc()
    return ordered.nulls_last()


def count_rows(session: Session, stmt: Select[Any]) -> int:
    counted = select(func.count()).select_from(stmt.order_by(None).subquery())
    return int(session.scalar(counted) or 0)


def fetch_page(session: Session, stmt: Select[Any], params: ListParams, order_by: Sequence[Any]) -> tuple[list[Any], int]:
    total = count_rows(session, stmt)
    rows = session.execute(stmt.order_by(*order_by).offset(params.offset).limit(params.limit)).all()
    return list(rows), total


def total_pages(total: int, limit: int) -> int:
    return math.ceil(total / limit) if limit else 0


def page_payload(items: list[Any], total: int, params: ListParams) -> dict[str, Any]:
    return {
        "data": items,
        "total": total,
        "page": params.page,
        "limit": params.limit,
        "totalPages": total_pages(total, params.limit),
    }
