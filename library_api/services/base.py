from __future__ import annotations

import math
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable, Generic, List, Optional, Tuple, TypeVar

from ..config import Settings
from ..database import Database
from ..errors import ValidationError
from ..models import utcnow

T = TypeVar("T")

Clock = Callable[[], datetime]


@dataclass
class Page(Generic[T]):
    items: List[T]
    total: int
    page: int
    limit: int

    @property
    def total_pages(self) -> int:
        return math.ceil(self.total / self.limit) if self.limit else 0

    def to_dict(self, key: str) -> dict:
        return {
            key: [item.to_dict() for item in self.items],
            "total": self.total,
            "page": self.page,
            "limit": self.limit,
            "total_pages": self.total_pages,
        }


class Service:
    """Common plumbing: the database, the settings and a clock."""

    def __init__(self, db: Database, settings: Settings, clock: Optional[Clock] = None) -> None:
        self.db = db
        self.settings = settings
        self.clock: Clock = clock or utcnow

    def now(self) -> datetime:
        return self.clock()

    def paginate(self, page: Optional[int], limit: Optional[int]) -> Tuple[int, int, int]:
        """Validate page/limit and return (page, limit, offset)."""
        page = 1 if page is None else page
        limit = self.settings.default_page_size if limit is None else limit
        errors: List[dict[str, Any]] = []
        if page < 1:
            errors.append({"field": "page", "message": "page must be at least 1"})
        if limit < 1 or limit > self.settings.max_page_size:
            errors.append({
                "field": "limit",
                "message": f"limit must be between 1 and {self.settings.max_page_size}",
            })
        if errors:
            raise ValidationError("Invalid pagination parameters", errors)
        return page, limit, (page - 1) * limit
