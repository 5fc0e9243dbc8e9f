"""Page/per_page handling shared by the list endpoints."""

from dataclasses import dataclass
from typing import Sequence, TypeVar

from fastapi import Query
from sqlalchemy.orm import Query as SQLAlchemyQuery


T = TypeVar("T")

DEFAULT_PAGE = 1
DEFAULT_PER_PAGE = 50
MAX_PER_PAGE = 200


@dataclass(frozen=True)
class PaginationParams:
    """1-indexed page window requested by the caller."""
    page: int
    per_page: int

    @property
    def offset(self) -> int:
        return (self.page - 1) * self.per_page

    def page_count(self, total: int) -> int:
        return -(-total // self.per_page) if self.per_page > 0 else 0

    def metadata(self, total: int) -> dict[str, int]:
        """total/page/per_page/pages fields for a list response body."""
        return {
            "total": total,
            "page": self.page,
            "per_page": self.per_page,
            "pages": self.page_count(total),
        }


def get_pagination(
    page: int = Query(DEFAULT_PAGE, ge=1, description="Page number (1-indexed)"),
    per_page: int = Query(
        DEFAULT_PER_PAGE, ge=1, le=MAX_PER_PAGE, description=f"Items per page (max {MAX_PER_PAGE})"
    ),
) -> PaginationParams:
    return PaginationParams(page=page, per_page=per_page)


def paginate_query(query: SQLAlchemyQuery, pagination: PaginationParams) -> tuple[list, int]:
    """(items on the requested page, total matching rows)."""
    total = query.count()
    items = query.offset(pagination.offset).limit(pagination.per_page).all()
    return items, total


def paginate_sequence(items: Sequence[T], pagination: PaginationParams) -> tuple[list[T], int]:
    """paginate_query for lists already built in Python (e.g. after dedup)."""
    start = pagination.offset
    return list(items[start : start + pagination.per_page]), len(items)
