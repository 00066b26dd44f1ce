"""
Response caching layer for backends.
"""

from collections.abc import Awaitable, Callable
import copy
import logging
from typing import Any, TypeVar

from zotero_bridge.backends.base import ZoteroBackend
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
from zotero_bridge.utils.cache import TTLCache, make_cache_key

logger = logging.getLogger(__name__)

T = TypeVar("T")

_MISS = object()


def _filters_params(filters: SearchFilters | None) -> dict[str, Any] | None:
    return filters.model_dump() if filters is not None else None


class CachedBackend(ZoteroBackend):
    """
    Wraps another backend and memoizes every read for a fixed TTL.

    Not-found answers (None, empty lists) are cached like any other result;
    exceptions are not. Hits return deep copies so callers cannot mutate
    cached entries.
    """

    def __init__(self, backend: ZoteroBackend, ttl_seconds: float = 300):
        self.backend = backend
        self.name = backend.name
        self.cache: TTLCache[Any] = TTLCache(ttl_seconds)

    async def close(self) -> None:
        self.clear_cache()
        await self.backend.close()

    def clear_cache(self) -> None:
        """Drop every cached response."""
        self.cache.clear()

    async def _cached(
        self,
        operation: str,
        params: dict[str, Any],
        fetch: Callable[[], Awaitable[T]],
    ) -> T:
        key = make_cache_key(operation, params)
        cached = self.cache.get(key, _MISS)
        if cached is not _MISS:
            logger.debug(f"Cache hit for {operation}")
            return copy.deepcopy(cached)

        result = await fetch()
        self.cache.set(key, result)
        return copy.deepcopy(result)

    # -------------------- Items --------------------

    async def search_items(
        self,
        query: str | None = None,
        filters: SearchFilters | None = None,
    ) -> SearchResult:
        return await self._cached(
            "search_items",
            {"query": query, "filters": _filters_params(filters)},
            lambda: self.backend.search_items(query, filters),
        )

    async def get_item(self, key: str, include_children: bool = True) -> Item | None:
        return await self._cached(
            "get_item",
            {"key": key, "include_children": include_children},
            lambda: self.backend.get_item(key, include_children),
        )

    async def get_item_fulltext(self, key: str) -> str | None:
        return await self._cached(
            "get_item_fulltext", {"key": key}, lambda: self.backend.get_item_fulltext(key)
        )

    async def get_item_notes(self, key: str) -> list[Note]:
        return await self._cached(
            "get_item_notes", {"key": key}, lambda: self.backend.get_item_notes(key)
        )

    async def get_item_attachments(self, key: str) -> list[Attachment]:
        return await self._cached(
            "get_item_attachments", {"key": key}, lambda: self.backend.get_item_attachments(key)
        )

    async def get_item_annotations(self, key: str) -> list[Annotation]:
        return await self._cached(
            "get_item_annotations", {"key": key}, lambda: self.backend.get_item_annotations(key)
        )

    async def get_related_items(self, key: str) -> list[Item]:
        return await self._cached(
            "get_related_items", {"key": key}, lambda: self.backend.get_related_items(key)
        )

    async def get_recent_items(self, days: int = 7, limit: int = 25) -> list[Item]:
        return await self._cached(
            "get_recent_items",
            {"days": days, "limit": limit},
            lambda: self.backend.get_recent_items(days, limit),
        )

    # -------------------- Collections --------------------

    async def get_collections(self) -> list[Collection]:
        return await self._cached("get_collections", {}, self.backend.get_collections)

    async def get_collection(self, key: str) -> Collection | None:
        return await self._cached(
            "get_collection", {"key": key}, lambda: self.backend.get_collection(key)
        )

    async def get_collection_items(
        self,
        collection_key: str,
        recursive: bool = False,
        filters: SearchFilters | None = None,
    ) -> SearchResult:
        return await self._cached(
            "get_collection_items",
            {
                "collection_key": collection_key,
                "recursive": recursive,
                "filters": _filters_params(filters),
            },
            lambda: self.backend.get_collection_items(collection_key, recursive, filters),
        )

    # -------------------- Tags & library --------------------

    async def get_tags(self, filter_query: str | None = None) -> list[TagCount]:
        return await self._cached(
            "get_tags", {"filter_query": filter_query}, lambda: self.backend.get_tags(filter_query)
        )

    async def get_library_stats(self) -> LibraryStats:
        return await self._cached("get_library_stats", {}, self.backend.get_library_stats)

    async def get_bibliography(self, keys: list[str], style: str = "apa") -> str:
        return await self._cached(
            "get_bibliography",
            {"keys": list(keys), "style": style},
            lambda: self.backend.get_bibliography(keys, style),
        )

    async def search_fulltext(self, query: str, limit: int = 25) -> list[Item]:
        return await self._cached(
            "search_fulltext",
            {"query": query, "limit": limit},
            lambda: self.backend.search_fulltext(query, limit),
        )
