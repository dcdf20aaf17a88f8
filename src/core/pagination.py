"""Page-number pagination shared by the registry and the delivery ledger."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Generic, TypeVar

from src.core.input_validation import ValidationError

T = TypeVar("T")

DEFAULT_PAGE_LIMIT = 20
MAX_PAGE_LIMIT = 100


@dataclass
class Page(Generic[T]):
    """One page of results plus the counters a client needs to navigate."""

    items: list[T] = field(default_factory=list)
    total: int = 0
    page: int = 1
    limit: int = DEFAULT_PAGE_LIMIT

    @property
    def has_next(self) -> bool:
        return self.page * self.limit < self.total

    @property
    def has_prev(self) -> bool:
        return self.page > 1


def normalize_page(page: int, limit: int) -> tuple[int, int]:
    """Validate 1-based page and limit (1..MAX_PAGE_LIMIT)."""
    if page < 1:
        raise ValidationError("page must be >= 1")
    if limit < 1 or limit > MAX_PAGE_LIMIT:
        raise ValidationError(f"limit must be between 1 and {MAX_PAGE_LIMIT}")
    return page, limit


def page_offset(page: int, limit: int) -> int:
    """Row offset of the first item on ``page``."""
    return (page - 1) * limit
