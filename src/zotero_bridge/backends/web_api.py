"""
Zotero web API backend.

Talks to the versioned Zotero REST API (v3) with httpx. Paging metadata
comes from the Total-Results and Link response headers, not the body.
"""

from datetime import datetime, timedelta, timezone
import logging
from typing import Any

import httpx

from zotero_bridge.backends.base import (
    ZoteroBackend,
    collect_subcollection_keys,
    combine_fulltext,
    sort_items,
)
from zotero_bridge.config import ZoteroSettings
from zotero_bridge.models import (
    NON_LIBRARY_ITEM_TYPES,
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
from zotero_bridge.utils.errors import APIError, NotFoundError, RateLimitError
from zotero_bridge.utils.helpers import parse_timestamp, recent_cutoff
from zotero_bridge.utils.logging_config import PerformanceMonitor
from zotero_bridge.utils.pagination import collect_all, iter_offset_batches

logger = logging.getLogger(__name__)

API_VERSION = "3"

# Request timeout in seconds
REQUEST_TIMEOUT = 30.0

# itemType expression matching top-level library items only
LIBRARY_ITEM_FILTER = "-attachment && -note"

# Entity types whose matches come from document content
CONTENT_HIT_TYPES = ("attachment", "annotation")

# Largest page the API serves
PAGE_SIZE = 100

Params = list[tuple[str, str]]


def _retry_after(headers: httpx.Headers) -> float | None:
    """Seconds the API asked us to wait, from Retry-After or Backoff."""
    for name in ("Retry-After", "Backoff"):
        value = headers.get(name)
        if value:
            try:
                return float(value)
            except ValueError:
                logger.debug(f"Ignoring unparseable {name} header: {value!r}")
    return None


def _flatten(raw: dict[str, Any]) -> dict[str, Any]:
    """Merge the API envelope's key/version with its data payload."""
    data = dict(raw.get("data") or {})
    data.setdefault("key", raw.get("key"))
    data.setdefault("version", raw.get("version"))
    return data


def _is_trashed(raw: dict[str, Any]) -> bool:
    return bool((raw.get("data") or {}).get("deleted"))


def _item_from_api(raw: dict[str, Any]) -> Item:
    data = _flatten(raw)
    data.pop("deleted", None)
    return Item.model_validate(data)


def _collection_from_api(raw: dict[str, Any]) -> Collection:
    data = _flatten(raw)
    meta = raw.get("meta") or {}
    data["numItems"] = meta.get("numItems")
    data["numCollections"] = meta.get("numCollections")
    return Collection.model_validate(data)


class WebAPIBackend(ZoteroBackend):
    """
    Backend for the Zotero web API.

    Not-found single-entity lookups return None. Throttling (429) raises
    RateLimitError carrying the advertised wait; retrying is up to the caller.
    """

    name = "web"

    def __init__(
        self,
        settings: ZoteroSettings,
        client: httpx.AsyncClient | None = None,
    ):
        """
        Initialize the backend.

        Args:
            settings: Validated settings (web mode)
            client: Pre-built httpx client, e.g. with a mock transport
        """
        self.settings = settings
        self.library_prefix = settings.library_prefix

        headers = {"Zotero-API-Version": API_VERSION}
        if settings.api_key:
            headers["Zotero-API-Key"] = settings.api_key

        if client is None:
            client = httpx.AsyncClient(
                base_url=settings.api_base_url,
                headers=headers,
                timeout=REQUEST_TIMEOUT,
            )
        else:
            client.headers.update(headers)
        self._client = client

    async def close(self) -> None:
        await self._client.aclose()

    # -------------------- HTTP --------------------

    async def _request(self, path: str, params: Params | None = None) -> httpx.Response:
        """
        GET a library-relative path.

        Raises:
            NotFoundError: On 404
            RateLimitError: On 429
            APIError: On any other non-2xx status
        """
        url = f"/{self.library_prefix}{path}"
        with PerformanceMonitor(logger, f"GET {url}"):
            response = await self._client.get(url, params=params)

        if response.status_code == 404:
            raise NotFoundError(f"Not found: {url}")
        if response.status_code == 429:
            retry_after = _retry_after(response.headers)
            logger.warning(f"Rate limited on {url}, retry after {retry_after}s")
            raise RateLimitError(retry_after)
        if not response.is_success:
            raise APIError(response.status_code, response.text[:200])
        return response

    async def _get_raw(self, path: str) -> dict[str, Any] | None:
        try:
            response = await self._request(path, [("format", "json")])
        except NotFoundError:
            return None
        return response.json()

    async def _collect(self, path: str, params: Params) -> list[dict[str, Any]]:
        """Read every page of a list endpoint."""

        async def fetch_page(offset: int, limit: int) -> list[dict[str, Any]]:
            page_params = params + [("start", str(offset)), ("limit", str(limit))]
            response = await self._request(path, page_params)
            return response.json()

        return await collect_all(fetch_page, batch_size=PAGE_SIZE)

    @staticmethod
    def _total(response: httpx.Response, fallback: int) -> int:
        value = response.headers.get("Total-Results")
        try:
            return int(value) if value is not None else fallback
        except ValueError:
            return fallback

    # -------------------- Parameter building --------------------

    def _item_params(
        self,
        filters: SearchFilters,
        query: str | None = None,
        limit: int | None = None,
        start: int | None = None,
    ) -> Params:
        if limit is None:
            limit = filters.effective_limit(self.settings.default_limit, self.settings.max_limit)
        params: Params = [
            ("format", "json"),
            ("limit", str(limit)),
            ("start", str(filters.start if start is None else start)),
            ("sort", filters.sort),
            ("direction", filters.direction),
        ]
        if query:
            params += [("q", query), ("qmode", "everything")]

        types = [t for t in filters.item_types if t not in NON_LIBRARY_ITEM_TYPES]
        if types:
            params.append(("itemType", " || ".join(types)))
        else:
            params.append(("itemType", LIBRARY_ITEM_FILTER))

        # Repeated tag parameters are ANDed by the API
        for tag in filters.tags:
            params.append(("tag", tag))
        if filters.since_version is not None:
            params.append(("since", str(filters.since_version)))
        if filters.include_trashed:
            params.append(("includeTrashed", "1"))
        return params

    def _library_items(self, raws: list[dict[str, Any]], include_trashed: bool = False) -> list[Item]:
        items = []
        for raw in raws:
            if _is_trashed(raw) and not include_trashed:
                continue
            item = _item_from_api(raw)
            # Guards against servers that ignore the itemType expression
            if item.is_library_item:
                items.append(item)
        return items

    @staticmethod
    def _only_excluded_types(filters: SearchFilters) -> bool:
        types = filters.item_types
        return bool(types) and all(t in NON_LIBRARY_ITEM_TYPES for t in types)

    # -------------------- Items --------------------

    async def search_items(
        self,
        query: str | None = None,
        filters: SearchFilters | None = None,
    ) -> SearchResult:
        filters = filters or SearchFilters()
        if self._only_excluded_types(filters):
            return SearchResult.paginate([], filters.start, 0)

        if filters.collection_key:
            # The API still serves the items of a collection in the trash
            if await self.get_collection(filters.collection_key) is None:
                return SearchResult.paginate([], filters.start, 0)
            path = f"/collections/{filters.collection_key}/items/top"
        else:
            path = "/items/top"

        try:
            response = await self._request(path, self._item_params(filters, query))
        except NotFoundError:
            return SearchResult.paginate([], filters.start, 0)

        raws = response.json()
        has_next = 'rel="next"' in response.headers.get("Link", "")
        total = self._total(response, filters.start + len(raws) + (1 if has_next else 0))
        items = self._library_items(raws, filters.include_trashed)
        return SearchResult.paginate(items, filters.start, total)

    async def get_item(self, key: str, include_children: bool = True) -> Item | None:
        raw = await self._get_raw(f"/items/{key}")
        if raw is None or _is_trashed(raw):
            return None

        item = _item_from_api(raw)
        if include_children:
            children = await self._children(key)
            item.attachments = [
                Attachment.model_validate(c) for c in children if c.get("itemType") == "attachment"
            ]
            item.notes = [Note.model_validate(c) for c in children if c.get("itemType") == "note"]
            item.annotations = await self._annotations_for(item.attachments)
        return item

    async def _children(self, key: str) -> list[dict[str, Any]]:
        """Live child entities of an item, flattened."""
        try:
            raws = await self._collect(f"/items/{key}/children", [("format", "json")])
        except NotFoundError:
            return []
        return [_flatten(raw) for raw in raws if not _is_trashed(raw)]

    async def get_item_fulltext(self, key: str) -> str | None:
        raw = await self._get_raw(f"/items/{key}")
        if raw is None or _is_trashed(raw):
            return None

        targets = [a.key for a in await self.get_item_attachments(key) if a.is_pdf]
        if (raw.get("data") or {}).get("itemType") == "attachment":
            targets.append(key)

        texts = []
        for attachment_key in targets:
            try:
                response = await self._request(f"/items/{attachment_key}/fulltext")
            except NotFoundError:
                # Not indexed
                continue
            content = response.json().get("content")
            if content:
                texts.append(content)

        return combine_fulltext(texts, self.settings.max_fulltext_length)

    async def get_item_notes(self, key: str) -> list[Note]:
        children = await self._children(key)
        return [Note.model_validate(c) for c in children if c.get("itemType") == "note"]

    async def get_item_attachments(self, key: str) -> list[Attachment]:
        children = await self._children(key)
        return [Attachment.model_validate(c) for c in children if c.get("itemType") == "attachment"]

    async def get_item_annotations(self, key: str) -> list[Annotation]:
        return await self._annotations_for(await self.get_item_attachments(key))

    async def _annotations_for(self, attachments: list[Attachment]) -> list[Annotation]:
        annotations: list[Annotation] = []
        for attachment in attachments:
            if not attachment.is_pdf:
                continue
            children = [
                c for c in await self._children(attachment.key) if c.get("itemType") == "annotation"
            ]
            # Reading order, as in the Zotero reader
            children.sort(key=lambda c: (c.get("annotationSortIndex") or "", c.get("key") or ""))
            for child in children:
                child["parentItem"] = attachment.key
                annotations.append(Annotation.model_validate(child))
        return annotations

    async def get_related_items(self, key: str) -> list[Item]:
        item = await self.get_item(key, include_children=False)
        if item is None:
            return []

        related = []
        for related_key in item.related_keys:
            related_item = await self.get_item(related_key, include_children=False)
            if related_item is not None:
                related.append(related_item)
        return related

    async def get_recent_items(self, days: int = 7, limit: int = 25) -> list[Item]:
        cutoff = recent_cutoff(days)
        limit = max(1, min(limit, self.settings.max_limit))
        params: Params = [
            ("format", "json"),
            ("sort", "dateModified"),
            ("direction", "desc"),
            ("itemType", LIBRARY_ITEM_FILTER),
        ]

        async def fetch_page(offset: int, page_size: int) -> list[dict[str, Any]]:
            page_params = params + [("start", str(offset)), ("limit", str(page_size))]
            response = await self._request("/items/top", page_params)
            return response.json()

        # Newest modification first: stop at the first item older than the cutoff
        recent: list[Item] = []
        async for _, page in iter_offset_batches(fetch_page, batch_size=PAGE_SIZE):
            for item in self._library_items(page):
                modified = parse_timestamp(item.date_modified)
                added = parse_timestamp(item.date_added)
                if modified is not None and modified < cutoff and (added is None or added < cutoff):
                    return recent
                recent.append(item)
                if len(recent) >= limit:
                    return recent
        return recent

    # -------------------- Collections --------------------

    async def get_collections(self) -> list[Collection]:
        raws = await self._collect("/collections", [("format", "json")])
        collections = [_collection_from_api(raw) for raw in raws if not _is_trashed(raw)]
        return sorted(collections, key=lambda c: (c.name.lower(), c.key))

    async def get_collection(self, key: str) -> Collection | None:
        raw = await self._get_raw(f"/collections/{key}")
        if raw is None or _is_trashed(raw):
            return None
        return _collection_from_api(raw)

    async def get_collection_items(
        self,
        collection_key: str,
        recursive: bool = False,
        filters: SearchFilters | None = None,
    ) -> SearchResult:
        filters = filters or SearchFilters()
        if not recursive:
            return await self.search_items(
                None, filters.model_copy(update={"collection_key": collection_key})
            )

        if self._only_excluded_types(filters):
            return SearchResult.paginate([], filters.start, 0)

        collections = await self.get_collections()
        if not any(c.key == collection_key for c in collections):
            # Missing or trashed root
            return SearchResult.paginate([], filters.start, 0)

        # The API has no subtree query: walk the tree and merge per-collection results
        keys = collect_subcollection_keys(collections, collection_key)
        merged: dict[str, Item] = {}
        for key in keys:
            for item in await self._all_collection_items(key, filters):
                merged.setdefault(item.key, item)

        ordered = sort_items(list(merged.values()), filters.sort, filters.direction)
        limit = filters.effective_limit(self.settings.default_limit, self.settings.max_limit)
        page = ordered[filters.start : filters.start + limit]
        return SearchResult.paginate(page, filters.start, len(ordered))

    async def _all_collection_items(self, collection_key: str, filters: SearchFilters) -> list[Item]:
        path = f"/collections/{collection_key}/items/top"

        async def fetch_page(offset: int, limit: int) -> list[dict[str, Any]]:
            response = await self._request(
                path, self._item_params(filters, limit=limit, start=offset)
            )
            return response.json()

        try:
            raws = await collect_all(fetch_page, batch_size=PAGE_SIZE)
        except NotFoundError:
            return []
        return self._library_items(raws, filters.include_trashed)

    # -------------------- Tags & library --------------------

    async def get_tags(self, filter_query: str | None = None) -> list[TagCount]:
        params: Params = [("format", "json")]
        if filter_query:
            params += [("q", filter_query), ("qmode", "contains")]
        raws = await self._collect("/tags", params)

        # A tag used both manually and automatically is listed once per type
        counts: dict[str, int] = {}
        for raw in raws:
            name = raw.get("tag")
            if not name:
                continue
            counts[name] = counts.get(name, 0) + int((raw.get("meta") or {}).get("numItems") or 0)

        tags = [TagCount(tag=name, count=count) for name, count in counts.items()]
        return sorted(tags, key=lambda t: (-t.count, t.tag))

    async def get_library_stats(self) -> LibraryStats:
        raws = await self._collect("/items/top", [("format", "json"), ("itemType", LIBRARY_ITEM_FILTER)])
        items = self._library_items(raws)

        now = datetime.now(timezone.utc)
        day_ago = now - timedelta(days=1)
        week_ago = now - timedelta(days=7)

        items_by_type: dict[str, int] = {}
        recently_added = 0
        recently_modified = 0
        for item in items:
            items_by_type[item.item_type] = items_by_type.get(item.item_type, 0) + 1
            added = parse_timestamp(item.date_added)
            modified = parse_timestamp(item.date_modified)
            if added and added >= day_ago:
                recently_added += 1
            if modified and modified >= week_ago:
                recently_modified += 1

        attachments_response = await self._request(
            "/items", [("format", "json"), ("itemType", "attachment"), ("limit", "1")]
        )

        return LibraryStats(
            total_items=len(items),
            total_collections=len(await self.get_collections()),
            total_tags=len(await self.get_tags()),
            total_attachments=self._total(attachments_response, len(attachments_response.json())),
            items_by_type=dict(sorted(items_by_type.items(), key=lambda kv: (-kv[1], kv[0]))),
            recently_added=recently_added,
            recently_modified=recently_modified,
        )

    async def get_bibliography(self, keys: list[str], style: str = "apa") -> str:
        if not keys:
            return ""
        params: Params = [
            ("itemKey", ",".join(keys)),
            ("format", "bib"),
            ("style", style),
        ]
        # Failures propagate: there is no fallback formatter
        response = await self._request("/items", params)
        return response.text

    async def search_fulltext(self, query: str, limit: int = 25) -> list[Item]:
        """
        Top-level items whose attachment content or annotations match.

        ``qmode=everything`` also matches metadata, so only attachment and
        annotation hits are kept. An attachment's own title still counts as
        a hit; the API does not say which field matched.
        """
        limit = max(1, min(limit, self.settings.max_limit))
        params: Params = [
            ("format", "json"),
            ("q", query),
            ("qmode", "everything"),
            ("itemType", " || ".join(CONTENT_HIT_TYPES)),
        ]

        async def fetch_page(offset: int, page_size: int) -> list[dict[str, Any]]:
            page_params = params + [("start", str(offset)), ("limit", str(page_size))]
            response = await self._request("/items", page_params)
            return response.json()

        results: list[Item] = []
        seen: set[str] = set()
        async for _, page in iter_offset_batches(fetch_page, batch_size=PAGE_SIZE):
            for raw in page:
                top = await self._resolve_top_level(raw)
                if top is None or top["key"] in seen:
                    continue
                seen.add(top["key"])
                item = _item_from_api(top)
                if item.is_library_item:
                    results.append(item)
                if len(results) >= limit:
                    return results
        return results

    async def _resolve_top_level(self, raw: dict[str, Any]) -> dict[str, Any] | None:
        """Follow parentItem links (annotation -> attachment -> item) to the top."""
        seen: set[str] = set()
        while True:
            if _is_trashed(raw):
                return None
            parent_key = (raw.get("data") or {}).get("parentItem")
            if not parent_key or parent_key in seen:
                return raw
            seen.add(parent_key)
            parent = await self._get_raw(f"/items/{parent_key}")
            if parent is None:
                return None
            raw = parent
