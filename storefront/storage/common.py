"""Storage helpers shared between the memory and Mongo implementations."""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Any, Iterable, List, Optional, Sequence

from bson import ObjectId
from bson.errors import InvalidId

USER_SORT_FIELDS = frozenset({"account", "name", "role", "created_at", "updated_at"})
PRODUCT_SORT_FIELDS = frozenset(
    {"name", "price", "category", "sell", "created_at", "updated_at"}
)
ORDER_SORT_FIELDS = frozenset({"date", "created_at"})


def new_id() -> str:
    return str(ObjectId())


def is_valid_id(value: Any) -> bool:
    return isinstance(value, str) and ObjectId.is_valid(value) and len(value) == 24


def to_object_id(value: str) -> ObjectId:
    try:
        return ObjectId(value)
    except (InvalidId, TypeError) as exc:
        raise ValueError(f"invalid id: {value!r}") from exc


@dataclass(frozen=True)
class ListQuery:
    """Sort, page and search parameters for admin and catalog listings.

    ``limit`` of ``None`` returns every matching row from ``skip`` onward.
    """

    sort_by: str = "created_at"
    sort_order: int = -1
    limit: Optional[int] = 20
    page: int = 1
    search: Optional[str] = None

    @property
    def skip(self) -> int:
        if self.limit is None:
            return 0
        return (max(self.page, 1) - 1) * self.limit

    def search_regex(self) -> Optional[re.Pattern]:
        if not self.search:
            return None
        return re.compile(re.escape(self.search), re.IGNORECASE)


def matches_search(pattern: Optional[re.Pattern], values: Iterable[Optional[str]]) -> bool:
    if pattern is None:
        return True
    return any(value and pattern.search(value) for value in values)


def paginate(rows: Sequence[Any], query: ListQuery) -> List[Any]:
    """Sort and slice already-filtered rows the way the Mongo cursor would."""

    def _key(row: Any):
        value = getattr(row, query.sort_by, None)
        # None sorts first ascending, matching Mongo's null ordering
        return (value is not None, value)

    ordered = sorted(rows, key=_key, reverse=query.sort_order < 0)
    start = query.skip
    if query.limit is None:
        return ordered[start:]
    return ordered[start : start + query.limit]


__all__ = [
    "ListQuery",
    "ORDER_SORT_FIELDS",
    "PRODUCT_SORT_FIELDS",
    "USER_SORT_FIELDS",
    "is_valid_id",
    "matches_search",
    "new_id",
    "paginate",
    "to_object_id",
]
