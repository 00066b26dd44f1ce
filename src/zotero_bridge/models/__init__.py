"""
Pydantic models for zotero-bridge.

Provides data models for Zotero items, collections, tags, and search results.
"""

from zotero_bridge.models.collections import Collection
from zotero_bridge.models.items import (
    LINK_MODES,
    NON_LIBRARY_ITEM_TYPES,
    Annotation,
    Attachment,
    Creator,
    Item,
    Note,
    Tag,
    ZoteroModel,
)
from zotero_bridge.models.search import (
    DEFAULT_SORT,
    LibraryStats,
    SearchFilters,
    SearchResult,
    TagCount,
)

__all__ = [
    "ZoteroModel",
    # Items
    "Item",
    "Creator",
    "Tag",
    "Attachment",
    "Note",
    "Annotation",
    "LINK_MODES",
    "NON_LIBRARY_ITEM_TYPES",
    # Collections
    "Collection",
    # Search
    "SearchFilters",
    "SearchResult",
    "TagCount",
    "LibraryStats",
    "DEFAULT_SORT",
]
