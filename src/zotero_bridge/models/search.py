"""
Search, pagination and statistics models.
"""

from typing import Literal

from pydantic import Field

from zotero_bridge.models.items import Item, ZoteroModel

SortDirection = Literal["asc", "desc"]

DEFAULT_SORT = "dateModified"


class SearchFilters(ZoteroModel):
    """Narrowing and paging options shared by item queries."""

    item_type: str | None = Field(
        default=None, description="Single item type or comma-separated list"
    )
    tags: list[str] = Field(
        default_factory=list, description="Required tags (item must carry all of them)"
    )
    collection_key: str | None = None
    since_version: int | None = Field(
        default=None, ge=0, description="Only items modified after this library version"
    )
    include_trashed: bool = False
    sort: str = DEFAULT_SORT
    direction: SortDirection = "desc"
    limit: int | None = Field(default=None, ge=1, description="Page size (clamped)")
    start: int = Field(default=0, ge=0, description="Offset of the first result")

    @property
    def item_types(self) -> list[str]:
        if not self.item_type:
            return []
        return [t.strip() for t in self.item_type.split(",") if t.strip()]

    def effective_limit(self, default_limit: int, max_limit: int) -> int:
        """Requested page size, defaulted and clamped to ``max_limit``."""
        return max(1, min(self.limit or default_limit, max_limit))


class SearchResult(ZoteroModel):
    """One page of items plus the cursor for the next page."""

    items: list[Item] = Field(default_factory=list)
    total_results: int = 0
    has_more: bool = False
    next_start: int = 0

    @classmethod
    def paginate(cls, items: list[Item], start: int, total_results: int) -> "SearchResult":
        """Build a page so that next_start and has_more agree with the total."""
        next_start = start + len(items)
        total = max(total_results, next_start)
        return cls(
            items=items,
            total_results=total,
            has_more=next_start < total,
            next_start=next_start,
        )

    @property
    def keys(self) -> list[str]:
        return [item.key for item in self.items]


class TagCount(ZoteroModel):
    """A tag with the number of live items carrying it."""

    tag: str
    count: int = 0


class LibraryStats(ZoteroModel):
    """Summary counts for a library."""

    total_items: int = 0
    total_collections: int = 0
    total_tags: int = 0
    total_attachments: int = 0
    items_by_type: dict[str, int] = Field(default_factory=dict)
    recently_added: int = Field(default=0, description="Items added in the last 24 hours")
    recently_modified: int = Field(default=0, description="Items modified in the last 7 days")
