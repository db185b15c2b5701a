from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

from mentor_platform.config import settings


def clamp_page(page_index: int | None, page_size: int | None) -> tuple[int, int]:
    index = max(1, int(page_index or 1))
    size = int(page_size or settings.default_page_size)
    size = max(1, min(settings.max_page_size, size))
    return index, size


@dataclass
class Page:
    items: list[Any] = field(default_factory=list)
    total_count: int = 0
    page_index: int = 1
    page_size: int = 10

    @property
    def total_pages(self) -> int:
        if self.total_count <= 0:
            return 0
        return (self.total_count + self.page_size - 1) // self.page_size

    @property
    def has_previous(self) -> bool:
        return self.page_index > 1

    @property
    def has_next(self) -> bool:
        return self.page_index < self.total_pages

    @property
    def offset(self) -> int:
        return (self.page_index - 1) * self.page_size

    def to_dict(self) -> dict:
        return {
            'items': list(self.items),
            'total_count': self.total_count,
            'page_index': self.page_index,
            'page_size': self.page_size,
            'total_pages': self.total_pages,
            'has_previous': self.has_previous,
            'has_next': self.has_next,
        }
