"""
Local Zotero database backend.

Reads zotero.sqlite directly in read-only mode. Zotero keeps the file open
while running; a read-only URI connection does not take write locks, so
this is safe alongside a running client.
"""

import asyncio
from collections.abc import Callable, Iterable, Iterator
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime, timedelta, timezone
from functools import partial
import logging
from pathlib import Path
import sqlite3
from types import MappingProxyType
from typing import Any, TypeVar

from zotero_bridge.backends.base import (
    BIBLIOGRAPHY_UNAVAILABLE,
    ZoteroBackend,
    collect_subcollection_keys,
    combine_fulltext,
)
from zotero_bridge.clients.pdf_extractor import extract_pdf_text
from zotero_bridge.config import ZoteroSettings
from zotero_bridge.models import (
    LINK_MODES,
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
from zotero_bridge.utils.errors import DatabaseError, DatabaseUnavailableError
from zotero_bridge.utils.helpers import recent_cutoff
from zotero_bridge.utils.logging_config import PerformanceMonitor

logger = logging.getLogger(__name__)

T = TypeVar("T")

# Lowercased schema field names -> canonical item field names
FIELD_NAME_MAP: MappingProxyType[str, str] = MappingProxyType(
    {
        "title": "title",
        "abstractnote": "abstractNote",
        "date": "date",
        "url": "url",
        "accessdate": "accessDate",
        "language": "language",
        "publicationtitle": "publicationTitle",
        "journalabbreviation": "journalAbbreviation",
        "volume": "volume",
        "issue": "issue",
        "pages": "pages",
        "edition": "edition",
        "series": "series",
        "seriesnumber": "seriesNumber",
        "seriestitle": "seriesTitle",
        "doi": "DOI",
        "isbn": "ISBN",
        "issn": "ISSN",
        "publisher": "publisher",
        "place": "place",
        "institution": "institution",
        "university": "university",
        "thesistype": "thesisType",
        "shorttitle": "shortTitle",
        "numpages": "numPages",
        "extra": "extra",
        "callnumber": "callNumber",
        "archive": "archive",
        "archivelocation": "archiveLocation",
        "librarycatalog": "libraryCatalog",
        "rights": "rights",
    }
)

ANNOTATION_TYPES: MappingProxyType[int, str] = MappingProxyType(
    {1: "highlight", 2: "note", 3: "image", 4: "ink", 5: "underline", 6: "text"}
)

# Zotero's cached full-text extraction inside each attachment's storage dir
FULLTEXT_CACHE_FILE = ".zotero-ft-cache"

SQL_TIMESTAMP_FORMAT = "%Y-%m-%d %H:%M:%S"

# Stay under SQLite's default host parameter limit
_CHUNK_SIZE = 500

_EXCLUDED_TYPES_SQL = ", ".join(f"'{t}'" for t in sorted(NON_LIBRARY_ITEM_TYPES))

_NOT_DELETED = "NOT EXISTS (SELECT 1 FROM deletedItems di WHERE di.itemID = i.itemID)"

_DATE_SORT_COLUMNS = {"dateAdded": "i.dateAdded", "dateModified": "i.dateModified"}


def canonical_field_name(field_name: str) -> str:
    """Map a schema field name to its item field name; unknown names pass through."""
    return FIELD_NAME_MAP.get(field_name.lower(), field_name)


def to_iso(timestamp: str | None) -> str | None:
    """Convert a SQLite "YYYY-MM-DD HH:MM:SS" UTC timestamp to ISO-8601 with Z."""
    if not timestamp:
        return None
    if "T" in timestamp:
        return timestamp
    return timestamp.replace(" ", "T") + "Z"


def _like_pattern(text: str) -> str:
    escaped = text.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")
    return f"%{escaped}%"


def _chunks(values: list[Any], size: int = _CHUNK_SIZE) -> Iterator[list[Any]]:
    for i in range(0, len(values), size):
        yield values[i : i + size]


def _placeholders(values: Iterable[Any]) -> str:
    return ", ".join("?" for _ in values)


class LocalBackend(ZoteroBackend):
    """
    Read-only backend over Zotero's local SQLite database.

    The connection is opened on construction so a missing or unreadable
    database fails fast with DatabaseUnavailableError. Queries and PDF
    extraction run on one worker thread that owns the connection, so the
    event loop never waits on disk and calls are serialized.
    """

    name = "local"

    def __init__(self, settings: ZoteroSettings):
        """
        Open the database and load lookup tables.

        Args:
            settings: Validated settings (local mode)

        Raises:
            DatabaseUnavailableError: If zotero.sqlite cannot be opened
        """
        self.settings = settings
        self.db_path: Path | None = settings.sqlite_path
        self.storage_dir: Path | None = settings.storage_path

        if self.db_path is None or not self.db_path.is_file():
            raise DatabaseUnavailableError(
                f"Zotero database not found: {self.db_path}",
                suggestion="Set ZOTERO_DATA_DIR to the directory containing zotero.sqlite",
            )

        self._connection: sqlite3.Connection | None = None
        self._executor: ThreadPoolExecutor | None = ThreadPoolExecutor(
            max_workers=1, thread_name_prefix="zotero-sqlite"
        )
        try:
            # Opened here, used from the worker thread
            self._connection = sqlite3.connect(
                f"file:{self.db_path}?mode=ro", uri=True, check_same_thread=False
            )
            self._connection.row_factory = sqlite3.Row
            self._load_lookups()
        except sqlite3.Error as e:
            self.close_sync()
            raise DatabaseUnavailableError(
                f"Cannot read Zotero database {self.db_path}: {e}",
                suggestion="Check that the file is a Zotero database and is readable",
            ) from e

        logger.info(f"Opened Zotero database: {self.db_path}")

    def _load_lookups(self) -> None:
        conn = self._conn
        self.fields = MappingProxyType(
            {row["fieldID"]: row["fieldName"] for row in conn.execute("SELECT fieldID, fieldName FROM fields")}
        )
        self.item_types = MappingProxyType(
            {row["itemTypeID"]: row["typeName"] for row in conn.execute("SELECT itemTypeID, typeName FROM itemTypes")}
        )
        self.creator_types = MappingProxyType(
            {
                row["creatorTypeID"]: row["creatorType"]
                for row in conn.execute("SELECT creatorTypeID, creatorType FROM creatorTypes")
            }
        )
        self.tables = frozenset(
            row["name"] for row in conn.execute("SELECT name FROM sqlite_master WHERE type = 'table'")
        )

    # -------------------- Connection --------------------

    @property
    def _conn(self) -> sqlite3.Connection:
        if self._connection is None:
            raise DatabaseError("Database connection is closed")
        return self._connection

    def _query(self, sql: str, params: Iterable[Any] = ()) -> list[sqlite3.Row]:
        try:
            return self._conn.execute(sql, tuple(params)).fetchall()
        except sqlite3.Error as e:
            raise DatabaseError(f"Query failed: {e}") from e

    def _scalar(self, sql: str, params: Iterable[Any] = ()) -> Any:
        rows = self._query(sql, params)
        return rows[0][0] if rows else None

    async def _run(self, func: Callable[..., T], *args: Any) -> T:
        """Run a blocking call on the database thread."""
        if self._executor is None:
            raise DatabaseError("Database connection is closed")
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(self._executor, partial(func, *args))

    def close_sync(self) -> None:
        """Wait for queued calls, then close the database connection."""
        if self._executor is not None:
            self._executor.shutdown(wait=True)
            self._executor = None
        if self._connection is not None:
            self._connection.close()
            self._connection = None

    async def close(self) -> None:
        # Shutdown blocks until queued calls finish
        loop = asyncio.get_running_loop()
        await loop.run_in_executor(None, self.close_sync)

    def __enter__(self) -> "LocalBackend":
        return self

    def __exit__(self, *args: Any) -> None:
        self.close_sync()

    # -------------------- Row mapping --------------------

    def _has_deleted_collections(self) -> bool:
        return "deletedCollections" in self.tables

    def _collection_not_deleted(self, alias: str) -> str:
        if not self._has_deleted_collections():
            return "1 = 1"
        return (
            f"NOT EXISTS (SELECT 1 FROM deletedCollections dc "
            f"WHERE dc.collectionID = {alias}.collectionID)"
        )

    def _item_id(self, key: str, include_trashed: bool = False) -> int | None:
        sql = "SELECT i.itemID FROM items i WHERE i.key = ?"
        if not include_trashed:
            sql += f" AND {_NOT_DELETED}"
        return self._scalar(sql, (key,))

    def _field_values(self, item_ids: list[int]) -> dict[int, dict[str, str]]:
        values: dict[int, dict[str, str]] = {item_id: {} for item_id in item_ids}
        for chunk in _chunks(item_ids):
            rows = self._query(
                f"""
                SELECT d.itemID, d.fieldID, v.value
                FROM itemData d
                JOIN itemDataValues v ON d.valueID = v.valueID
                WHERE d.itemID IN ({_placeholders(chunk)})
                """,
                chunk,
            )
            for row in rows:
                field_name = self.fields.get(row["fieldID"])
                if field_name:
                    values[row["itemID"]][canonical_field_name(field_name)] = row["value"]
        return values

    def _creators(self, item_ids: list[int]) -> dict[int, list[dict[str, Any]]]:
        creators: dict[int, list[dict[str, Any]]] = {item_id: [] for item_id in item_ids}
        for chunk in _chunks(item_ids):
            rows = self._query(
                f"""
                SELECT ic.itemID, ic.creatorTypeID, c.firstName, c.lastName, c.fieldMode
                FROM itemCreators ic
                JOIN creators c ON ic.creatorID = c.creatorID
                WHERE ic.itemID IN ({_placeholders(chunk)})
                ORDER BY ic.itemID, ic.orderIndex
                """,
                chunk,
            )
            for row in rows:
                creator: dict[str, Any] = {
                    "creatorType": self.creator_types.get(row["creatorTypeID"], "author")
                }
                # fieldMode 1 stores a single-field name in lastName
                if row["fieldMode"] == 1 or not row["firstName"]:
                    creator["name"] = row["lastName"] or ""
                else:
                    creator["firstName"] = row["firstName"]
                    creator["lastName"] = row["lastName"] or ""
                creators[row["itemID"]].append(creator)
        return creators

    def _tags(self, item_ids: list[int]) -> dict[int, list[dict[str, Any]]]:
        tags: dict[int, list[dict[str, Any]]] = {item_id: [] for item_id in item_ids}
        for chunk in _chunks(item_ids):
            rows = self._query(
                f"""
                SELECT it.itemID, t.name, it.type
                FROM itemTags it
                JOIN tags t ON it.tagID = t.tagID
                WHERE it.itemID IN ({_placeholders(chunk)})
                ORDER BY it.itemID, t.name
                """,
                chunk,
            )
            for row in rows:
                tags[row["itemID"]].append({"tag": row["name"], "type": row["type"] or 0})
        return tags

    def _collection_keys(self, item_ids: list[int]) -> dict[int, list[str]]:
        keys: dict[int, list[str]] = {item_id: [] for item_id in item_ids}
        for chunk in _chunks(item_ids):
            rows = self._query(
                f"""
                SELECT ci.itemID, c.key
                FROM collectionItems ci
                JOIN collections c ON ci.collectionID = c.collectionID
                WHERE ci.itemID IN ({_placeholders(chunk)})
                AND {self._collection_not_deleted("c")}
                ORDER BY ci.itemID, c.key
                """,
                chunk,
            )
            for row in rows:
                keys[row["itemID"]].append(row["key"])
        return keys

    def _relations(self, item_ids: list[int]) -> dict[int, dict[str, list[str]]]:
        relations: dict[int, dict[str, list[str]]] = {item_id: {} for item_id in item_ids}
        if "itemRelations" not in self.tables:
            return relations
        for chunk in _chunks(item_ids):
            rows = self._query(
                f"""
                SELECT ir.itemID, rp.predicate, ir.object
                FROM itemRelations ir
                JOIN relationPredicates rp ON ir.predicateID = rp.predicateID
                WHERE ir.itemID IN ({_placeholders(chunk)})
                """,
                chunk,
            )
            for row in rows:
                relations[row["itemID"]].setdefault(row["predicate"], []).append(row["object"])
        return relations

    def _load_items(self, item_ids: list[int]) -> list[Item]:
        """Build Item models for the given ids, preserving their order."""
        if not item_ids:
            return []

        base_rows: dict[int, sqlite3.Row] = {}
        for chunk in _chunks(item_ids):
            rows = self._query(
                f"""
                SELECT i.itemID, i.key, i.version, i.itemTypeID, i.dateAdded, i.dateModified
                FROM items i
                WHERE i.itemID IN ({_placeholders(chunk)})
                """,
                chunk,
            )
            base_rows.update((row["itemID"], row) for row in rows)

        ids = [item_id for item_id in item_ids if item_id in base_rows]
        fields = self._field_values(ids)
        creators = self._creators(ids)
        tags = self._tags(ids)
        collections = self._collection_keys(ids)
        relations = self._relations(ids)

        items = []
        for item_id in ids:
            row = base_rows[item_id]
            data: dict[str, Any] = dict(fields[item_id])
            data.update(
                key=row["key"],
                version=row["version"],
                itemType=self.item_types.get(row["itemTypeID"], "document"),
                creators=creators[item_id],
                tags=tags[item_id],
                collections=collections[item_id],
                relations=relations[item_id],
                dateAdded=to_iso(row["dateAdded"]),
                dateModified=to_iso(row["dateModified"]),
            )
            items.append(Item.model_validate(data))
        return items

    def _resolve_attachment_path(
        self, attachment_key: str, link_mode: str, stored_path: str | None
    ) -> str | None:
        """Turn a stored attachment path into a filesystem path."""
        if not stored_path:
            return None
        if stored_path.startswith("storage:"):
            if self.storage_dir is None:
                return None
            filename = stored_path.split(":", 1)[1]
            return str(self.storage_dir / attachment_key / Path(*[p for p in filename.split("/") if p]))
        if link_mode == "linked_file":
            return stored_path
        return None

    # -------------------- Search --------------------

    def _item_where(
        self,
        query: str | None,
        filters: SearchFilters,
        collection_keys: list[str] | None = None,
    ) -> tuple[str, list[Any]]:
        """WHERE clause and parameters shared by the count and page queries."""
        clauses = [f"it.typeName NOT IN ({_EXCLUDED_TYPES_SQL})"]
        params: list[Any] = []

        if not filters.include_trashed:
            clauses.append(_NOT_DELETED)

        types = [t for t in filters.item_types if t not in NON_LIBRARY_ITEM_TYPES]
        if types:
            clauses.append(f"it.typeName IN ({_placeholders(types)})")
            params.extend(types)

        if query:
            pattern = _like_pattern(query)
            clauses.append(
                """(
                EXISTS (
                    SELECT 1 FROM itemData d
                    JOIN itemDataValues v ON d.valueID = v.valueID
                    JOIN fields f ON d.fieldID = f.fieldID
                    WHERE d.itemID = i.itemID
                    AND f.fieldName IN ('title', 'abstractNote')
                    AND v.value LIKE ? ESCAPE '\\'
                )
                OR EXISTS (
                    SELECT 1 FROM itemCreators ic
                    JOIN creators c ON ic.creatorID = c.creatorID
                    WHERE ic.itemID = i.itemID
                    AND (c.firstName LIKE ? ESCAPE '\\' OR c.lastName LIKE ? ESCAPE '\\')
                ))"""
            )
            params.extend([pattern, pattern, pattern])

        # Each required tag is its own EXISTS: AND semantics
        for tag in filters.tags:
            clauses.append(
                """EXISTS (
                SELECT 1 FROM itemTags itg
                JOIN tags t ON itg.tagID = t.tagID
                WHERE itg.itemID = i.itemID AND t.name = ?
                )"""
            )
            params.append(tag)

        if collection_keys is None and filters.collection_key:
            collection_keys = [filters.collection_key]
        if collection_keys:
            clauses.append(
                f"""EXISTS (
                SELECT 1 FROM collectionItems ci
                JOIN collections c ON ci.collectionID = c.collectionID
                WHERE ci.itemID = i.itemID
                AND c.key IN ({_placeholders(collection_keys)})
                AND {self._collection_not_deleted("c")}
                )"""
            )
            params.extend(collection_keys)

        if filters.since_version is not None:
            clauses.append("i.version > ?")
            params.append(filters.since_version)

        return " AND ".join(clauses), params

    @staticmethod
    def _order_by(filters: SearchFilters) -> tuple[str, list[Any]]:
        direction = "ASC" if filters.direction == "asc" else "DESC"
        column = _DATE_SORT_COLUMNS.get(filters.sort)
        if column:
            return f"{column} {direction}, i.key {direction}", []
        # Any other sort is a descriptive field such as title or date
        return (
            f"""(
            SELECT v.value FROM itemData d
            JOIN itemDataValues v ON d.valueID = v.valueID
            JOIN fields f ON d.fieldID = f.fieldID
            WHERE d.itemID = i.itemID AND f.fieldName = ?
            ) COLLATE NOCASE {direction}, i.key {direction}""",
            [filters.sort],
        )

    def _search(
        self,
        query: str | None,
        filters: SearchFilters,
        collection_keys: list[str] | None = None,
    ) -> SearchResult:
        types = filters.item_types
        if types and all(t in NON_LIBRARY_ITEM_TYPES for t in types):
            return SearchResult.paginate([], filters.start, 0)

        where, params = self._item_where(query, filters, collection_keys)
        from_clause = "FROM items i JOIN itemTypes it ON i.itemTypeID = it.itemTypeID"
        limit = filters.effective_limit(self.settings.default_limit, self.settings.max_limit)

        with PerformanceMonitor(logger, "local search", query=query, start=filters.start):
            total = self._scalar(f"SELECT COUNT(*) {from_clause} WHERE {where}", params) or 0
            order_by, order_params = self._order_by(filters)
            rows = self._query(
                f"SELECT i.itemID {from_clause} WHERE {where} ORDER BY {order_by} LIMIT ? OFFSET ?",
                params + order_params + [limit, filters.start],
            )
            items = self._load_items([row["itemID"] for row in rows])

        return SearchResult.paginate(items, filters.start, total)

    async def search_items(
        self,
        query: str | None = None,
        filters: SearchFilters | None = None,
    ) -> SearchResult:
        return await self._run(self._search, query, filters or SearchFilters())

    # -------------------- Items --------------------

    async def get_item(self, key: str, include_children: bool = True) -> Item | None:
        return await self._run(self._get_item, key, include_children)

    def _get_item(self, key: str, include_children: bool) -> Item | None:
        item_id = self._item_id(key)
        if item_id is None:
            return None

        items = self._load_items([item_id])
        if not items:
            return None
        item = items[0]

        if include_children:
            item.attachments = self._attachments(item_id)
            item.notes = self._notes(item_id)
            item.annotations = self._annotations_for(item.attachments)
        return item

    def _fetch_attachments(self, condition: str, params: Iterable[Any]) -> list[tuple[int, Attachment]]:
        """(itemID, Attachment) pairs for live attachments matching ``condition``."""
        rows = self._query(
            f"""
            SELECT i.itemID, i.key, i.dateAdded, i.dateModified, p.key AS parentKey,
                   ia.linkMode, ia.contentType, ia.path, ia.storageModTime, ia.storageHash
            FROM itemAttachments ia
            JOIN items i ON ia.itemID = i.itemID
            LEFT JOIN items p ON ia.parentItemID = p.itemID
            WHERE {condition} AND {_NOT_DELETED}
            ORDER BY i.dateAdded, i.key
            """,
            params,
        )
        fields = self._field_values([row["itemID"] for row in rows])

        attachments = []
        for row in rows:
            link_mode_index = row["linkMode"]
            if isinstance(link_mode_index, int) and 0 <= link_mode_index < len(LINK_MODES):
                link_mode = LINK_MODES[link_mode_index]
            else:
                link_mode = "imported_file"

            stored_path = row["path"]
            filename = None
            if stored_path:
                if stored_path.startswith("storage:"):
                    stored_name = stored_path.split(":", 1)[1]
                else:
                    stored_name = stored_path
                filename = Path(stored_name).name

            values = fields.get(row["itemID"], {})
            attachment = Attachment(
                key=row["key"],
                title=values.get("title", ""),
                link_mode=link_mode,
                content_type=row["contentType"],
                filename=filename,
                path=self._resolve_attachment_path(row["key"], link_mode, stored_path),
                url=values.get("url"),
                md5=row["storageHash"],
                mtime=row["storageModTime"],
                parent_item=row["parentKey"],
                date_added=to_iso(row["dateAdded"]),
                date_modified=to_iso(row["dateModified"]),
            )
            attachments.append((row["itemID"], attachment))
        return attachments

    def _attachments(self, parent_id: int) -> list[Attachment]:
        return [a for _, a in self._fetch_attachments("ia.parentItemID = ?", (parent_id,))]

    def _notes(self, parent_id: int) -> list[Note]:
        rows = self._query(
            f"""
            SELECT i.itemID, i.key, i.dateAdded, i.dateModified, n.note, p.key AS parentKey
            FROM itemNotes n
            JOIN items i ON n.itemID = i.itemID
            JOIN items p ON n.parentItemID = p.itemID
            WHERE n.parentItemID = ? AND {_NOT_DELETED}
            ORDER BY i.dateAdded, i.key
            """,
            (parent_id,),
        )
        tags = self._tags([row["itemID"] for row in rows])
        return [
            Note(
                key=row["key"],
                note=row["note"] or "",
                parent_item=row["parentKey"],
                date_added=to_iso(row["dateAdded"]),
                date_modified=to_iso(row["dateModified"]),
                tags=tags[row["itemID"]],
            )
            for row in rows
        ]

    def _annotations_for(self, attachments: list[Attachment]) -> list[Annotation]:
        if "itemAnnotations" not in self.tables:
            return []

        annotations: list[Annotation] = []
        for attachment in attachments:
            if not attachment.is_pdf:
                continue
            rows = self._query(
                f"""
                SELECT i.itemID, i.key, i.dateAdded, i.dateModified,
                       a.type, a.text, a.comment, a.color, a.pageLabel, a.position
                FROM itemAnnotations a
                JOIN items i ON a.itemID = i.itemID
                JOIN items att ON a.parentItemID = att.itemID
                WHERE att.key = ? AND {_NOT_DELETED}
                ORDER BY a.sortIndex, i.key
                """,
                (attachment.key,),
            )
            tags = self._tags([row["itemID"] for row in rows])
            for row in rows:
                annotations.append(
                    Annotation(
                        key=row["key"],
                        annotation_type=ANNOTATION_TYPES.get(row["type"], str(row["type"])),
                        annotation_text=row["text"] or None,
                        annotation_comment=row["comment"] or None,
                        annotation_color=row["color"] or None,
                        annotation_page_label=row["pageLabel"] or None,
                        annotation_position=row["position"] or None,
                        parent_item=attachment.key,
                        date_added=to_iso(row["dateAdded"]),
                        date_modified=to_iso(row["dateModified"]),
                        tags=tags[row["itemID"]],
                    )
                )
        return annotations

    def _item_notes(self, key: str) -> list[Note]:
        item_id = self._item_id(key)
        return self._notes(item_id) if item_id is not None else []

    def _item_attachments(self, key: str) -> list[Attachment]:
        item_id = self._item_id(key)
        return self._attachments(item_id) if item_id is not None else []

    async def get_item_notes(self, key: str) -> list[Note]:
        return await self._run(self._item_notes, key)

    async def get_item_attachments(self, key: str) -> list[Attachment]:
        return await self._run(self._item_attachments, key)

    def _item_annotations(self, key: str) -> list[Annotation]:
        return self._annotations_for(self._item_attachments(key))

    async def get_item_annotations(self, key: str) -> list[Annotation]:
        return await self._run(self._item_annotations, key)

    def _related_items(self, key: str) -> list[Item]:
        item = self._get_item(key, include_children=False)
        if item is None:
            return []

        related = []
        for related_key in item.related_keys:
            related_item = self._get_item(related_key, include_children=False)
            if related_item is not None:
                related.append(related_item)
        return related

    async def get_related_items(self, key: str) -> list[Item]:
        return await self._run(self._related_items, key)

    async def get_recent_items(self, days: int = 7, limit: int = 25) -> list[Item]:
        return await self._run(self._recent_items, days, limit)

    def _recent_items(self, days: int, limit: int) -> list[Item]:
        cutoff = recent_cutoff(days).strftime(SQL_TIMESTAMP_FORMAT)
        limit = max(1, min(limit, self.settings.max_limit))
        rows = self._query(
            f"""
            SELECT i.itemID
            FROM items i
            JOIN itemTypes it ON i.itemTypeID = it.itemTypeID
            WHERE it.typeName NOT IN ({_EXCLUDED_TYPES_SQL})
            AND {_NOT_DELETED}
            AND (i.dateAdded >= ? OR i.dateModified >= ?)
            ORDER BY i.dateModified DESC, i.key DESC
            LIMIT ?
            """,
            (cutoff, cutoff, limit),
        )
        return self._load_items([row["itemID"] for row in rows])

    # -------------------- Full text --------------------

    def _indexed_ids(self, item_ids: list[int]) -> set[int]:
        if "fulltextItems" not in self.tables or not item_ids:
            return set()
        rows = self._query(
            f"SELECT itemID FROM fulltextItems WHERE itemID IN ({_placeholders(item_ids)})",
            item_ids,
        )
        return {row["itemID"] for row in rows}

    def _attachment_text(self, attachment: Attachment, indexed: bool) -> str | None:
        """Zotero's cached extraction if indexed, else the PDF itself."""
        if indexed and self.storage_dir is not None:
            cache_file = self.storage_dir / attachment.key / FULLTEXT_CACHE_FILE
            if cache_file.is_file():
                try:
                    text = cache_file.read_text(encoding="utf-8", errors="ignore").strip()
                except OSError as e:
                    logger.debug(f"Cannot read {cache_file}: {e}")
                else:
                    if text:
                        return text

        if self.settings.extract_pdf and attachment.path:
            return extract_pdf_text(attachment.path, self.settings.pdf_max_pages)
        return None

    async def get_item_fulltext(self, key: str) -> str | None:
        return await self._run(self._item_fulltext, key)

    def _item_fulltext(self, key: str) -> str | None:
        item_id = self._item_id(key)
        if item_id is None:
            return None

        # The item's own PDF children, plus the item itself if it is a PDF attachment
        candidates = self._fetch_attachments("ia.parentItemID = ?", (item_id,))
        candidates += self._fetch_attachments("ia.itemID = ?", (item_id,))
        pdfs = [(attachment_id, a) for attachment_id, a in candidates if a.is_pdf]
        if not pdfs:
            return None

        indexed = self._indexed_ids([attachment_id for attachment_id, _ in pdfs])

        texts = []
        with PerformanceMonitor(logger, "local fulltext", key=key, attachments=len(pdfs)):
            for attachment_id, attachment in pdfs:
                text = self._attachment_text(attachment, attachment_id in indexed)
                if text:
                    texts.append(text)

        return combine_fulltext(texts, self.settings.max_fulltext_length)

    def _top_level_id(self, item_id: int) -> int | None:
        """Walk parent links up to the owning top-level item; None if any link is trashed."""
        seen: set[int] = set()
        current = item_id
        while current not in seen:
            seen.add(current)
            if self._scalar("SELECT 1 FROM deletedItems WHERE itemID = ?", (current,)):
                return None
            parent = None
            for table in ("itemAnnotations", "itemAttachments", "itemNotes"):
                if table not in self.tables:
                    continue
                parent = self._scalar(f"SELECT parentItemID FROM {table} WHERE itemID = ?", (current,))
                if parent is not None:
                    break
            if parent is None:
                return current
            current = parent
        return None

    def _indexed_word_hits(self, words: list[str]) -> list[int]:
        """Attachment ids whose index contains every word."""
        if not words or not {"fulltextWords", "fulltextItemWords"} <= self.tables:
            return []
        rows = self._query(
            f"""
            SELECT fiw.itemID
            FROM fulltextItemWords fiw
            JOIN fulltextWords fw ON fiw.wordID = fw.wordID
            WHERE fw.word IN ({_placeholders(words)})
            GROUP BY fiw.itemID
            HAVING COUNT(DISTINCT fw.word) = ?
            ORDER BY fiw.itemID
            """,
            words + [len(words)],
        )
        return [row["itemID"] for row in rows]

    def _annotation_hits(self, query: str) -> list[int]:
        if "itemAnnotations" not in self.tables:
            return []
        pattern = _like_pattern(query)
        rows = self._query(
            """
            SELECT itemID FROM itemAnnotations
            WHERE text LIKE ? ESCAPE '\\' OR comment LIKE ? ESCAPE '\\'
            ORDER BY itemID
            """,
            (pattern, pattern),
        )
        return [row["itemID"] for row in rows]

    def _extracted_text_hits(self, words: list[str]) -> list[int]:
        """Scan PDF attachments directly when there is no word index."""
        if not self.settings.extract_pdf or not words:
            return []
        rows = self._query(
            f"""
            SELECT ia.parentItemID
            FROM itemAttachments ia
            JOIN items i ON ia.itemID = i.itemID
            WHERE ia.contentType = 'application/pdf'
            AND ia.parentItemID IS NOT NULL
            AND {_NOT_DELETED}
            ORDER BY i.itemID
            """
        )
        hits = []
        for parent_id in dict.fromkeys(row["parentItemID"] for row in rows):
            for attachment in self._attachments(parent_id):
                if not attachment.is_pdf or not attachment.path:
                    continue
                text = extract_pdf_text(attachment.path, self.settings.pdf_max_pages)
                if text and all(word in text.lower() for word in words):
                    hits.append(parent_id)
                    break
        return hits

    async def search_fulltext(self, query: str, limit: int = 25) -> list[Item]:
        return await self._run(self._search_fulltext, query, limit)

    def _search_fulltext(self, query: str, limit: int) -> list[Item]:
        limit = max(1, min(limit, self.settings.max_limit))
        words = [w for w in query.lower().split() if w]

        with PerformanceMonitor(logger, "local fulltext search", query=query):
            if {"fulltextWords", "fulltextItemWords"} <= self.tables:
                hits = self._indexed_word_hits(words)
            else:
                hits = self._extracted_text_hits(words)
            hits += self._annotation_hits(query)

            top_ids: list[int] = []
            for hit in hits:
                top_id = self._top_level_id(hit)
                if top_id is not None and top_id not in top_ids:
                    top_ids.append(top_id)

            results = [item for item in self._load_items(top_ids) if item.is_library_item]
        return results[:limit]

    # -------------------- Collections --------------------

    def _collection_rows(self, key: str | None = None) -> list[sqlite3.Row]:
        sql = f"""
            SELECT c.collectionID, c.key, c.collectionName, c.version, p.key AS parentKey,
                (SELECT COUNT(*) FROM collectionItems ci
                 JOIN items i ON ci.itemID = i.itemID
                 WHERE ci.collectionID = c.collectionID AND {_NOT_DELETED}) AS numItems,
                (SELECT COUNT(*) FROM collections s
                 WHERE s.parentCollectionID = c.collectionID
                 AND {self._collection_not_deleted("s")}) AS numCollections
            FROM collections c
            LEFT JOIN collections p ON c.parentCollectionID = p.collectionID
            WHERE {self._collection_not_deleted("c")}
        """
        params: list[Any] = []
        if key is not None:
            sql += " AND c.key = ?"
            params.append(key)
        return self._query(sql, params)

    @staticmethod
    def _collection_from_row(row: sqlite3.Row) -> Collection:
        return Collection(
            key=row["key"],
            name=row["collectionName"],
            version=row["version"],
            parent_collection=row["parentKey"],
            num_items=row["numItems"],
            num_collections=row["numCollections"],
        )

    def _collections(self) -> list[Collection]:
        collections = [self._collection_from_row(row) for row in self._collection_rows()]
        return sorted(collections, key=lambda c: (c.name.lower(), c.key))

    def _collection(self, key: str) -> Collection | None:
        rows = self._collection_rows(key)
        return self._collection_from_row(rows[0]) if rows else None

    def _collection_items(self, collection_key: str, recursive: bool, filters: SearchFilters) -> SearchResult:
        keys = [collection_key]
        if recursive:
            keys = collect_subcollection_keys(self._collections(), collection_key)
        return self._search(None, filters, collection_keys=keys)

    async def get_collections(self) -> list[Collection]:
        return await self._run(self._collections)

    async def get_collection(self, key: str) -> Collection | None:
        return await self._run(self._collection, key)

    async def get_collection_items(
        self,
        collection_key: str,
        recursive: bool = False,
        filters: SearchFilters | None = None,
    ) -> SearchResult:
        return await self._run(
            self._collection_items, collection_key, recursive, filters or SearchFilters()
        )

    # -------------------- Tags & library --------------------

    async def get_tags(self, filter_query: str | None = None) -> list[TagCount]:
        return await self._run(self._tag_counts, filter_query)

    def _tag_counts(self, filter_query: str | None) -> list[TagCount]:
        sql = f"""
            SELECT t.name AS tag, COUNT(DISTINCT itg.itemID) AS count
            FROM tags t
            JOIN itemTags itg ON t.tagID = itg.tagID
            JOIN items i ON itg.itemID = i.itemID
            WHERE {_NOT_DELETED}
        """
        params: list[Any] = []
        if filter_query:
            sql += " AND t.name LIKE ? ESCAPE '\\'"
            params.append(_like_pattern(filter_query))
        sql += " GROUP BY t.name ORDER BY count DESC, t.name"
        return [TagCount(tag=row["tag"], count=row["count"]) for row in self._query(sql, params)]

    async def get_library_stats(self) -> LibraryStats:
        return await self._run(self._library_stats)

    def _library_stats(self) -> LibraryStats:
        now = datetime.now(timezone.utc)
        day_ago = (now - timedelta(days=1)).strftime(SQL_TIMESTAMP_FORMAT)
        week_ago = (now - timedelta(days=7)).strftime(SQL_TIMESTAMP_FORMAT)
        library_where = f"it.typeName NOT IN ({_EXCLUDED_TYPES_SQL}) AND {_NOT_DELETED}"
        from_clause = "FROM items i JOIN itemTypes it ON i.itemTypeID = it.itemTypeID"

        with PerformanceMonitor(logger, "local library stats"):
            by_type = self._query(
                f"""
                SELECT it.typeName, COUNT(*) AS count {from_clause}
                WHERE {library_where}
                GROUP BY it.typeName
                ORDER BY count DESC, it.typeName
                """
            )
            items_by_type = {row["typeName"]: row["count"] for row in by_type}

            return LibraryStats(
                total_items=sum(items_by_type.values()),
                total_collections=len(self._collection_rows()),
                total_tags=self._scalar(
                    f"""
                    SELECT COUNT(DISTINCT itg.tagID) FROM itemTags itg
                    JOIN items i ON itg.itemID = i.itemID
                    WHERE {_NOT_DELETED}
                    """
                )
                or 0,
                total_attachments=self._scalar(
                    f"SELECT COUNT(*) {from_clause} WHERE it.typeName = 'attachment' AND {_NOT_DELETED}"
                )
                or 0,
                items_by_type=items_by_type,
                recently_added=self._scalar(
                    f"SELECT COUNT(*) {from_clause} WHERE {library_where} AND i.dateAdded >= ?",
                    (day_ago,),
                )
                or 0,
                recently_modified=self._scalar(
                    f"SELECT COUNT(*) {from_clause} WHERE {library_where} AND i.dateModified >= ?",
                    (week_ago,),
                )
                or 0,
            )

    async def get_bibliography(self, keys: list[str], style: str = "apa") -> str:
        if not keys:
            return ""
        return BIBLIOGRAPHY_UNAVAILABLE
