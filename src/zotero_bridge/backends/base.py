"""
Abstract interface shared by the Zotero backends.

Both implementations answer the same read-only queries for one library and
return the same models. They agree on:

- trashed items and collections are invisible unless explicitly requested
- attachments, notes and annotations are never top-level search results
- tag filters use AND semantics
- annotations belong to attachments, never directly to top-level items
"""

from abc import ABC, abstractmethod
from typing import Any

from zotero_bridge.models import (
    Annotation,
    Attachment,
    Collection,
    Item,
    LibraryStats,
    Note,
    SearchFilters,
    SearchResult,
    TagCount,
)

FULLTEXT_SEPARATOR = "\n\n---\n\n"

BIBLIOGRAPHY_UNAVAILABLE = (
    "Bibliography generation is not available in local mode: the local "
    "database has no citation engine. Switch to web mode (ZOTERO_MODE=web) "
    "to format bibliographies."
)


class ZoteroBackend(ABC):
    """Read-only query surface over one Zotero library."""

    name: str = "base"

    async def __aenter__(self) -> "ZoteroBackend":
        return self

    async def __aexit__(self, *args: Any) -> None:
        await self.close()

    @abstractmethod
    async def close(self) -> None:
        """Release the underlying connection."""

    # -------------------- Items --------------------

    @abstractmethod
    async def search_items(
        self,
        query: str | None = None,
        filters: SearchFilters | None = None,
    ) -> SearchResult:
        """Search top-level library items."""

    @abstractmethod
    async def get_item(self, key: str, include_children: bool = True) -> Item | None:
        """Get a single item, or None if it does not exist or is trashed."""

    @abstractmethod
    async def get_item_fulltext(self, key: str) -> str | None:
        """Combined text of an item's PDF attachments, or None."""

    @abstractmethod
    async def get_item_notes(self, key: str) -> list[Note]:
        """Notes owned by an item."""

    @abstractmethod
    async def get_item_attachments(self, key: str) -> list[Attachment]:
        """Attachments owned by an item."""

    @abstractmethod
    async def get_item_annotations(self, key: str) -> list[Annotation]:
        """Annotations on the item's PDF attachments."""

    @abstractmethod
    async def get_related_items(self, key: str) -> list[Item]:
        """Items linked to this one by an explicit relation, one hop, shallow."""

    @abstractmethod
    async def get_recent_items(self, days: int = 7, limit: int = 25) -> list[Item]:
        """Items added or modified within the trailing window, newest first."""

    # -------------------- Collections --------------------

    @abstractmethod
    async def get_collections(self) -> list[Collection]:
        """All live collections, ordered by name."""

    @abstractmethod
    async def get_collection(self, key: str) -> Collection | None:
        """A single collection, or None."""

    @abstractmethod
    async def get_collection_items(
        self,
        collection_key: str,
        recursive: bool = False,
        filters: SearchFilters | None = None,
    ) -> SearchResult:
        """Items in a collection, optionally including all sub-collections."""

    # -------------------- Tags & library --------------------

    @abstractmethod
    async def get_tags(self, filter_query: str | None = None) -> list[TagCount]:
        """Tags with live-item counts, most used first."""

    @abstractmethod
    async def get_library_stats(self) -> LibraryStats:
        """Summary counts for the library."""

    @abstractmethod
    async def get_bibliography(self, keys: list[str], style: str = "apa") -> str:
        """Formatted bibliography, or an explanatory message if unsupported."""

    @abstractmethod
    async def search_fulltext(self, query: str, limit: int = 25) -> list[Item]:
        """Distinct top-level items whose PDF content matches the query."""


def combine_fulltext(texts: list[str], max_length: int) -> str | None:
    """Join attachment texts and cap the result, or None if nothing was found."""
    texts = [t for t in texts if t and t.strip()]
    if not texts:
        return None
    return FULLTEXT_SEPARATOR.join(texts)[:max_length]


def sort_items(items: list[Item], sort: str, direction: str = "desc") -> list[Item]:
    """Order items by a canonical field name; missing values sort first ascending."""

    def sort_key(item: Item) -> tuple[str, str]:
        value = item.field(sort)
        return ("" if value is None else str(value).lower(), item.key)

    return sorted(items, key=sort_key, reverse=direction == "desc")


def collect_subcollection_keys(collections: list[Collection], root_key: str) -> list[str]:
    """
    Keys of ``root_key`` and every collection below it, depth-first.

    Uses an explicit stack; a key is visited at most once, so a malformed
    tree cannot loop.
    """
    children: dict[str, list[str]] = {}
    for collection in collections:
        if collection.parent_collection:
            children.setdefault(collection.parent_collection, []).append(collection.key)

    keys: list[str] = []
    seen: set[str] = set()
    stack = [root_key]
    while stack:
        key = stack.pop()
        if key in seen:
            continue
        seen.add(key)
        keys.append(key)
        # Reverse so the first child is visited first
        stack.extend(reversed(children.get(key, [])))
    return keys
