"""Pagination types shared by all list endpoints.

Paginated[T]   : plain dataclass for service-layer returns (not serializable).
PaginationMeta : wire model for ``meta.pagination`` (camelCase keys).
build_paginated(): the success envelope for a page of results.

A page/pageSize pair always comes from the client, so the arithmetic must
survive ``total == 0`` and ``page_size <= 0`` without dividing by zero.
"""

import math
from collections.abc import Sequence
from dataclasses import dataclass
from typing import Any, Generic, TypeVar

from ngurra_api.schemas.envelope import ApiSchema, build_success

T = TypeVar("T")


def total_pages(total: int, page_size: int) -> int:
    if page_size <= 0 or total <= 0:
        return 0
    return math.ceil(total / page_size)


class PaginationMeta(ApiSchema):
    page: int
    page_size: int
    total: int
    total_pages: int
    has_next: bool
    has_prev: bool

    @classmethod
    def compute(cls, total: int, page: int, page_size: int) -> "PaginationMeta":
        pages = total_pages(total, page_size)
        return cls(
            page=page,
            page_size=page_size,
            total=total,
            total_pages=pages,
            has_next=page < pages,
            has_prev=page > 1,
        )


@dataclass
class Paginated(Generic[T]):
    """Plain dataclass for paginated results inside the service layer.

    Services return this; routers hand it to ``build_paginated``::

        result = Paginated(items=rows, total=count, page=page, page_size=page_size)
        return build_paginated(result.items, result.total, result.page, result.page_size)
    """

    items: list[T]
    total: int
    page: int
    page_size: int

    @property
    def total_pages(self) -> int:
        return total_pages(self.total, self.page_size)

    @property
    def has_next(self) -> bool:
        return self.page < self.total_pages

    @property
    def has_prev(self) -> bool:
        return self.page > 1


def build_paginated(
    items: Sequence[Any],
    total: int,
    page: int,
    page_size: int,
    meta: dict[str, Any] | None = None,
) -> dict[str, Any]:
    """Success envelope with ``meta.pagination``.

    Extra ``meta`` keys are merged in; a caller-supplied ``pagination`` key is overwritten.
    """
    pagination = PaginationMeta.compute(total, page, page_size)
    merged = {**(meta or {}), "pagination": pagination.model_dump(by_alias=True)}
    return build_success(list(items), merged)
