"""
Shared fixtures: one sample library served by both backends.

The library is described once as plain records and loaded into a miniature
zotero.sqlite schema (local backend) and into an in-memory fake of the Zotero
web API mounted on httpx.MockTransport (web backend).
"""

from datetime import datetime, timezone
import os
from pathlib import Path
import re
import sqlite3
from typing import Any

import httpx
import pytest

from zotero_bridge.backends.local import ANNOTATION_TYPES, FULLTEXT_CACHE_FILE, LocalBackend
from zotero_bridge.backends.web_api import WebAPIBackend
from zotero_bridge.config import ZoteroSettings, reset_settings
from zotero_bridge.models import LINK_MODES

CHILD_TYPES = {"attachment", "note", "annotation"}

OLD_ADDED = datetime(2020, 1, 1, 9, 0, 0, tzinfo=timezone.utc)
OLD_MODIFIED = datetime(2020, 1, 2, 9, 0, 0, tzinfo=timezone.utc)


def utc_now() -> datetime:
    return datetime.now(timezone.utc).replace(microsecond=0)


def build_library(now: datetime) -> dict[str, Any]:
    """A small library exercising children, trash, relations and sub-collections."""
    items = [
        {
            "key": "ABC123",
            "itemType": "journalArticle",
            "version": 5,
            "dateAdded": now,
            "dateModified": now,
            "fields": {
                "title": "Research Methods in Practice",
                "abstractNote": "A study of qualitative methodology.",
                "date": "2021-05-01",
                "DOI": "10.1000/abc123",
                "customField": "kept",
            },
            "creators": [
                {"creatorType": "author", "firstName": "Jane", "lastName": "Doe"},
                {"creatorType": "editor", "firstName": "Bob", "lastName": "Smith"},
            ],
            "tags": [{"tag": "methodology", "type": 0}, {"tag": "ml", "type": 1}],
            "collections": ["COL1"],
            "relations": {
                "dc:relation": [
                    "http://zotero.org/users/1/items/BOOK0001",
                    "not-a-uri",
                    "http://zotero.org/users/1/items/TRASH001",
                ]
            },
        },
        {
            "key": "ATT0001",
            "itemType": "attachment",
            "parentItem": "ABC123",
            "dateAdded": now,
            "dateModified": now,
            "fields": {"title": "Full Text PDF"},
            "contentType": "application/pdf",
            "linkMode": "imported_file",
            "filename": "paper.pdf",
        },
        {
            "key": "LINK0001",
            "itemType": "attachment",
            "parentItem": "ABC123",
            "dateAdded": now,
            "dateModified": now,
            "fields": {"title": "Publisher page", "url": "https://example.org/paper"},
            "contentType": "text/html",
            "linkMode": "linked_url",
        },
        {
            "key": "NOTE0001",
            "itemType": "note",
            "parentItem": "ABC123",
            "dateAdded": now,
            "dateModified": now,
            "note": "<p>Summary &amp; notes</p>",
        },
        {
            "key": "ANN0001",
            "itemType": "annotation",
            "parentItem": "ATT0001",
            "dateAdded": now,
            "dateModified": now,
            "annotationType": "highlight",
            "annotationText": "key finding",
            "annotationComment": "important",
            "annotationColor": "#ffd400",
            "annotationPageLabel": "3",
            "annotationSortIndex": "00002|000100|00200",
        },
        {
            "key": "ANN0002",
            "itemType": "annotation",
            "parentItem": "ATT0001",
            "dateAdded": now,
            "dateModified": now,
            "annotationType": "note",
            "annotationComment": "see also chapter 2",
            "annotationSortIndex": "00001|000050|00100",
        },
        {
            "key": "BOOK0001",
            "itemType": "book",
            "version": 2,
            "dateAdded": OLD_ADDED,
            "dateModified": OLD_MODIFIED,
            "fields": {"title": "Deep Learning Handbook", "date": "2019"},
            "creators": [{"creatorType": "author", "name": "World Health Organization"}],
            "tags": [{"tag": "survey", "type": 0}],
            "collections": ["SUB1"],
        },
        {
            "key": "ATT0002",
            "itemType": "attachment",
            "parentItem": "BOOK0001",
            "dateAdded": OLD_ADDED,
            "dateModified": OLD_MODIFIED,
            "fields": {"title": "Book PDF"},
            "contentType": "application/pdf",
            "linkMode": "imported_file",
            "filename": "book.pdf",
        },
        {
            "key": "ANN0003",
            "itemType": "annotation",
            "parentItem": "ATT0002",
            "dateAdded": OLD_ADDED,
            "dateModified": OLD_MODIFIED,
            "annotationType": "underline",
            "annotationText": "transformer architecture",
            "annotationSortIndex": "00001|000001|00001",
        },
        {
            "key": "TRASH001",
            "itemType": "journalArticle",
            "version": 4,
            "deleted": True,
            "dateAdded": now,
            "dateModified": now,
            "fields": {"title": "Retracted Methods Paper"},
            "tags": [{"tag": "methodology", "type": 0}],
            "collections": ["COL1"],
        },
        {
            "key": "NOTE0002",
            "itemType": "note",
            "dateAdded": now,
            "dateModified": now,
            "note": "<p>Standalone reminder</p>",
        },
    ]
    collections = [
        {"key": "COL1", "name": "Reading List"},
        {"key": "SUB1", "name": "Deep Dive", "parentCollection": "COL1"},
        {"key": "SUB2", "name": "Deeper", "parentCollection": "SUB1"},
        {"key": "OLDCOL", "name": "Old Stuff", "deleted": True},
    ]
    fulltext = {"ATT0001": "Indexed text about neural networks and methodology."}
    return {"items": items, "collections": collections, "fulltext": fulltext}


def build_scenario_library(now: datetime) -> dict[str, Any]:
    """One article tagged "methodology" in one collection, added today."""
    return {
        "items": [
            {
                "key": "ABC123",
                "itemType": "journalArticle",
                "version": 1,
                "dateAdded": now,
                "dateModified": now,
                "fields": {"title": "On Methodology"},
                "tags": [{"tag": "methodology", "type": 0}],
                "collections": ["COL1"],
            }
        ],
        "collections": [{"key": "COL1", "name": "Methods"}],
        "fulltext": {},
    }


# -------------------- Local store --------------------

SCHEMA = """
CREATE TABLE itemTypes (itemTypeID INTEGER PRIMARY KEY, typeName TEXT);
CREATE TABLE fields (fieldID INTEGER PRIMARY KEY, fieldName TEXT);
CREATE TABLE creatorTypes (creatorTypeID INTEGER PRIMARY KEY, creatorType TEXT);
CREATE TABLE items (
    itemID INTEGER PRIMARY KEY, itemTypeID INT, dateAdded TEXT, dateModified TEXT,
    clientDateModified TEXT, libraryID INT, key TEXT, version INT, synced INT
);
CREATE TABLE itemDataValues (valueID INTEGER PRIMARY KEY, value);
CREATE TABLE itemData (itemID INT, fieldID INT, valueID INT);
CREATE TABLE creators (creatorID INTEGER PRIMARY KEY, firstName TEXT, lastName TEXT, fieldMode INT);
CREATE TABLE itemCreators (itemID INT, creatorID INT, creatorTypeID INT, orderIndex INT);
CREATE TABLE tags (tagID INTEGER PRIMARY KEY, name TEXT);
CREATE TABLE itemTags (itemID INT, tagID INT, type INT);
CREATE TABLE collections (
    collectionID INTEGER PRIMARY KEY, collectionName TEXT, parentCollectionID INT,
    clientDateModified TEXT, libraryID INT, key TEXT, version INT, synced INT
);
CREATE TABLE collectionItems (collectionID INT, itemID INT, orderIndex INT);
CREATE TABLE deletedItems (itemID INTEGER PRIMARY KEY, dateDeleted TEXT);
CREATE TABLE deletedCollections (collectionID INTEGER PRIMARY KEY, dateDeleted TEXT);
CREATE TABLE itemNotes (itemID INTEGER PRIMARY KEY, parentItemID INT, note TEXT, title TEXT);
CREATE TABLE itemAttachments (
    itemID INTEGER PRIMARY KEY, parentItemID INT, linkMode INT, contentType TEXT,
    charsetID INT, path TEXT, syncState INT, storageModTime INT, storageHash TEXT
);
CREATE TABLE itemAnnotations (
    itemID INTEGER PRIMARY KEY, parentItemID INT, type INT, authorName TEXT, text TEXT,
    comment TEXT, color TEXT, pageLabel TEXT, sortIndex TEXT, position TEXT, isExternal INT
);
CREATE TABLE relationPredicates (predicateID INTEGER PRIMARY KEY, predicate TEXT);
CREATE TABLE itemRelations (itemID INT, predicateID INT, object TEXT);
CREATE TABLE fulltextItems (
    itemID INTEGER PRIMARY KEY, indexedPages INT, totalPages INT, indexedChars INT,
    totalChars INT, version INT, synced INT
);
CREATE TABLE fulltextWords (wordID INTEGER PRIMARY KEY, word TEXT);
CREATE TABLE fulltextItemWords (wordID INT, itemID INT);
"""

_ANNOTATION_CODES = {name: code for code, name in ANNOTATION_TYPES.items()}


def _sql_timestamp(value: datetime) -> str:
    return value.strftime("%Y-%m-%d %H:%M:%S")


class ZoteroDatabaseBuilder:
    """Writes a library description into a fresh zotero.sqlite."""

    def __init__(self, data_dir: Path):
        self.data_dir = data_dir
        self.data_dir.mkdir(parents=True, exist_ok=True)
        self.conn = sqlite3.connect(data_dir / "zotero.sqlite")
        self.conn.executescript(SCHEMA)
        self._ids: dict[tuple[str, str], int] = {}
        self.item_ids: dict[str, int] = {}
        self.collection_ids: dict[str, int] = {}

    def _lookup(self, table: str, column: str, value: str) -> int:
        """Id of a lookup row, inserting it on first use."""
        key = (table, value)
        if key not in self._ids:
            cursor = self.conn.execute(f"INSERT INTO {table} ({column}) VALUES (?)", (value,))
            self._ids[key] = cursor.lastrowid
        return self._ids[key]

    def build(self, library: dict[str, Any]) -> Path:
        for collection in library["collections"]:
            self._add_collection(collection)
        for collection in library["collections"]:
            if collection.get("parentCollection"):
                self.conn.execute(
                    "UPDATE collections SET parentCollectionID = ? WHERE collectionID = ?",
                    (
                        self.collection_ids[collection["parentCollection"]],
                        self.collection_ids[collection["key"]],
                    ),
                )
        for record in library["items"]:
            self._add_item(record)
        for record in library["items"]:
            self._add_children_links(record)
        for key, text in library["fulltext"].items():
            self._index_fulltext(key, text)
        self.conn.commit()
        self.conn.close()
        return self.data_dir

    def _add_collection(self, collection: dict[str, Any]) -> None:
        cursor = self.conn.execute(
            "INSERT INTO collections (collectionName, libraryID, key, version) VALUES (?, 1, ?, ?)",
            (collection["name"], collection["key"], collection.get("version", 1)),
        )
        self.collection_ids[collection["key"]] = cursor.lastrowid
        if collection.get("deleted"):
            self.conn.execute(
                "INSERT INTO deletedCollections (collectionID, dateDeleted) VALUES (?, ?)",
                (cursor.lastrowid, "2024-01-01 00:00:00"),
            )

    def _add_item(self, record: dict[str, Any]) -> None:
        type_id = self._lookup("itemTypes", "typeName", record["itemType"])
        cursor = self.conn.execute(
            """
            INSERT INTO items (itemTypeID, dateAdded, dateModified, libraryID, key, version)
            VALUES (?, ?, ?, 1, ?, ?)
            """,
            (
                type_id,
                _sql_timestamp(record["dateAdded"]),
                _sql_timestamp(record["dateModified"]),
                record["key"],
                record.get("version", 1),
            ),
        )
        item_id = cursor.lastrowid
        self.item_ids[record["key"]] = item_id

        for field_name, value in record.get("fields", {}).items():
            field_id = self._lookup("fields", "fieldName", field_name)
            value_id = self.conn.execute(
                "INSERT INTO itemDataValues (value) VALUES (?)", (value,)
            ).lastrowid
            self.conn.execute(
                "INSERT INTO itemData (itemID, fieldID, valueID) VALUES (?, ?, ?)",
                (item_id, field_id, value_id),
            )

        for index, creator in enumerate(record.get("creators", [])):
            type_id = self._lookup("creatorTypes", "creatorType", creator["creatorType"])
            if "name" in creator:
                row = (None, creator["name"], 1)
            else:
                row = (creator["firstName"], creator["lastName"], 0)
            creator_id = self.conn.execute(
                "INSERT INTO creators (firstName, lastName, fieldMode) VALUES (?, ?, ?)", row
            ).lastrowid
            self.conn.execute(
                "INSERT INTO itemCreators (itemID, creatorID, creatorTypeID, orderIndex) VALUES (?, ?, ?, ?)",
                (item_id, creator_id, type_id, index),
            )

        for tag in record.get("tags", []):
            tag_id = self._lookup("tags", "name", tag["tag"])
            self.conn.execute(
                "INSERT INTO itemTags (itemID, tagID, type) VALUES (?, ?, ?)",
                (item_id, tag_id, tag.get("type", 0)),
            )

        for collection_key in record.get("collections", []):
            self.conn.execute(
                "INSERT INTO collectionItems (collectionID, itemID, orderIndex) VALUES (?, ?, 0)",
                (self.collection_ids[collection_key], item_id),
            )

        for predicate, objects in record.get("relations", {}).items():
            predicate_id = self._lookup("relationPredicates", "predicate", predicate)
            for obj in objects:
                self.conn.execute(
                    "INSERT INTO itemRelations (itemID, predicateID, object) VALUES (?, ?, ?)",
                    (item_id, predicate_id, obj),
                )

        if record.get("deleted"):
            self.conn.execute(
                "INSERT INTO deletedItems (itemID, dateDeleted) VALUES (?, ?)",
                (item_id, "2024-01-01 00:00:00"),
            )

    def _add_children_links(self, record: dict[str, Any]) -> None:
        item_id = self.item_ids[record["key"]]
        parent_id = self.item_ids.get(record.get("parentItem", ""))
        item_type = record["itemType"]

        if item_type == "attachment":
            link_mode = record["linkMode"]
            path = f"storage:{record['filename']}" if record.get("filename") else None
            self.conn.execute(
                """
                INSERT INTO itemAttachments (itemID, parentItemID, linkMode, contentType, path)
                VALUES (?, ?, ?, ?, ?)
                """,
                (item_id, parent_id, LINK_MODES.index(link_mode), record["contentType"], path),
            )
        elif item_type == "note":
            self.conn.execute(
                "INSERT INTO itemNotes (itemID, parentItemID, note) VALUES (?, ?, ?)",
                (item_id, parent_id, record["note"]),
            )
        elif item_type == "annotation":
            self.conn.execute(
                """
                INSERT INTO itemAnnotations
                    (itemID, parentItemID, type, text, comment, color, pageLabel, sortIndex)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    item_id,
                    parent_id,
                    _ANNOTATION_CODES[record["annotationType"]],
                    record.get("annotationText"),
                    record.get("annotationComment"),
                    record.get("annotationColor"),
                    record.get("annotationPageLabel"),
                    record["annotationSortIndex"],
                ),
            )

    def _index_fulltext(self, attachment_key: str, text: str) -> None:
        item_id = self.item_ids[attachment_key]
        self.conn.execute(
            "INSERT INTO fulltextItems (itemID, indexedPages, totalPages) VALUES (?, 1, 1)",
            (item_id,),
        )
        for word in sorted(set(re.findall(r"[a-z0-9]+", text.lower()))):
            word_id = self._lookup("fulltextWords", "word", word)
            self.conn.execute(
                "INSERT INTO fulltextItemWords (wordID, itemID) VALUES (?, ?)", (word_id, item_id)
            )

        cache_dir = self.data_dir / "storage" / attachment_key
        cache_dir.mkdir(parents=True, exist_ok=True)
        (cache_dir / FULLTEXT_CACHE_FILE).write_text(text, encoding="utf-8")


# -------------------- Fake web API --------------------


def _api_timestamp(value: datetime) -> str:
    return value.strftime("%Y-%m-%dT%H:%M:%SZ")


def to_api_item(record: dict[str, Any]) -> dict[str, Any]:
    """Render a library record the way the web API returns it."""
    data: dict[str, Any] = {
        "key": record["key"],
        "version": record.get("version", 1),
        "itemType": record["itemType"],
    }
    data.update(record.get("fields", {}))
    item_type = record["itemType"]

    if item_type not in CHILD_TYPES:
        data["creators"] = list(record.get("creators", []))
        data["collections"] = list(record.get("collections", []))
        data["relations"] = dict(record.get("relations", {}))
    if record.get("parentItem"):
        data["parentItem"] = record["parentItem"]
    if item_type == "attachment":
        data["linkMode"] = record["linkMode"]
        data["contentType"] = record["contentType"]
        if record.get("filename"):
            data["filename"] = record["filename"]
    elif item_type == "note":
        data["note"] = record["note"]
    elif item_type == "annotation":
        for name in (
            "annotationType",
            "annotationText",
            "annotationComment",
            "annotationColor",
            "annotationPageLabel",
            "annotationSortIndex",
        ):
            if record.get(name) is not None:
                data[name] = record[name]

    data["tags"] = [{"tag": t["tag"], "type": t.get("type", 0)} for t in record.get("tags", [])]
    data["dateAdded"] = _api_timestamp(record["dateAdded"])
    data["dateModified"] = _api_timestamp(record["dateModified"])
    if record.get("deleted"):
        data["deleted"] = 1
    return {"key": record["key"], "version": data["version"], "meta": {}, "data": data}


class FakeZoteroAPI:
    """
    In-memory stand-in for the Zotero web API v3, enough for the backend.

    Requests are recorded in ``requests``; ``fail(path, status, headers)``
    makes a path answer with an error instead.
    """

    def __init__(self, library: dict[str, Any], prefix: str = "/users/1"):
        self.prefix = prefix
        self.items = {record["key"]: to_api_item(record) for record in library["items"]}
        self.collections = {c["key"]: c for c in library["collections"]}
        self.fulltext = dict(library["fulltext"])
        self.requests: list[httpx.Request] = []
        self.failures: dict[str, tuple[int, dict[str, str]]] = {}

    def fail(self, path: str, status: int, headers: dict[str, str] | None = None) -> None:
        self.failures[path] = (status, headers or {})

    def client(self, base_url: str = "https://api.zotero.org") -> httpx.AsyncClient:
        return httpx.AsyncClient(transport=httpx.MockTransport(self.handler), base_url=base_url)

    # Routing

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        path = request.url.path
        if not path.startswith(self.prefix):
            return httpx.Response(403, text="Forbidden")
        path = path[len(self.prefix) :]
        params = request.url.params

        if path in self.failures:
            status, headers = self.failures[path]
            return httpx.Response(status, headers=headers, text="failure")

        parts = [p for p in path.split("/") if p]
        if parts == ["items", "top"]:
            return self._page(self._filter_items(self._top_level(params), params), params)
        if parts == ["items"]:
            return self._items(params)
        if len(parts) == 2 and parts[0] == "items":
            return self._single_item(parts[1])
        if len(parts) == 3 and parts[0] == "items" and parts[2] == "children":
            if parts[1] not in self.items:
                return httpx.Response(404)
            children = [i for i in self.items.values() if i["data"].get("parentItem") == parts[1]]
            return self._page(children, params)
        if len(parts) == 3 and parts[0] == "items" and parts[2] == "fulltext":
            if parts[1] not in self.fulltext:
                return httpx.Response(404)
            return httpx.Response(
                200, json={"content": self.fulltext[parts[1]], "indexedPages": 1, "totalPages": 1}
            )
        if parts == ["collections"]:
            return self._page([self._api_collection(k) for k in self.collections], params)
        if len(parts) == 2 and parts[0] == "collections":
            if parts[1] not in self.collections:
                return httpx.Response(404)
            return httpx.Response(200, json=self._api_collection(parts[1]))
        if len(parts) == 4 and parts[0] == "collections" and parts[2:] == ["items", "top"]:
            if parts[1] not in self.collections:
                return httpx.Response(404)
            items = [
                i for i in self._top_level(params) if parts[1] in i["data"].get("collections", [])
            ]
            return self._page(self._filter_items(items, params), params)
        if parts == ["tags"]:
            return self._page(self._tags(params), params)
        return httpx.Response(404)

    # Helpers

    def _live(self, items: list[dict], params: httpx.QueryParams) -> list[dict]:
        if params.get("includeTrashed") == "1":
            return items
        return [i for i in items if not i["data"].get("deleted")]

    def _top_level(self, params: httpx.QueryParams) -> list[dict]:
        return self._live(
            [i for i in self.items.values() if "parentItem" not in i["data"]], params
        )

    @staticmethod
    def _type_matches(expression: str | None, item_type: str) -> bool:
        """Evaluate an itemType expression: ``&&``-joined clauses of ``-x`` or ``a || b``."""
        if not expression:
            return True
        for clause in expression.split("&&"):
            clause = clause.strip()
            if clause.startswith("-"):
                if item_type == clause[1:].strip():
                    return False
            elif item_type not in {t.strip() for t in clause.split("||")}:
                return False
        return True

    def _filter_items(self, items: list[dict], params: httpx.QueryParams) -> list[dict]:
        item_type = params.get("itemType")
        items = [i for i in items if self._type_matches(item_type, i["data"]["itemType"])]

        for tag in params.get_list("tag"):
            items = [i for i in items if tag in {t["tag"] for t in i["data"]["tags"]}]

        query = (params.get("q") or "").lower()
        if query:
            items = [i for i in items if query in self._quick_text(i)]

        if params.get("since"):
            since = int(params["since"])
            items = [i for i in items if i["version"] > since]

        sort = params.get("sort", "dateModified")
        items = sorted(
            items,
            key=lambda i: (str(i["data"].get(sort) or "").lower(), i["key"]),
            reverse=params.get("direction", "desc") == "desc",
        )
        return items

    @staticmethod
    def _quick_text(item: dict) -> str:
        data = item["data"]
        names = []
        for creator in data.get("creators", []):
            names += [creator.get("firstName", ""), creator.get("lastName", ""), creator.get("name", "")]
        return " ".join([data.get("title", "")] + names).lower()

    def _everything_text(self, item: dict) -> str:
        data = item["data"]
        parts = [
            self._quick_text(item),
            data.get("note", ""),
            data.get("annotationText", ""),
            data.get("annotationComment", ""),
            self.fulltext.get(item["key"], ""),
        ]
        return " ".join(parts).lower()

    def _page(self, results: list[dict], params: httpx.QueryParams) -> httpx.Response:
        start = int(params.get("start", 0))
        limit = int(params.get("limit", 25))
        page = results[start : start + limit]
        headers = {"Total-Results": str(len(results))}
        if start + limit < len(results):
            headers["Link"] = f'<https://api.zotero.org/?start={start + limit}>; rel="next"'
        return httpx.Response(200, json=page, headers=headers)

    def _single_item(self, key: str) -> httpx.Response:
        if key not in self.items:
            return httpx.Response(404, text="Not found")
        return httpx.Response(200, json=self.items[key])

    def _items(self, params: httpx.QueryParams) -> httpx.Response:
        if params.get("format") == "bib":
            keys = params.get("itemKey", "").split(",")
            entries = [
                f'<div class="csl-entry">{self.items[k]["data"].get("title", "")}</div>'
                for k in keys
                if k in self.items
            ]
            style = params.get("style", "")
            body = f'<div class="csl-bib-body" data-style="{style}">{"".join(entries)}</div>'
            return httpx.Response(200, text=body, headers={"Content-Type": "text/html"})

        items = self._live(list(self.items.values()), params)
        items = [i for i in items if self._type_matches(params.get("itemType"), i["data"]["itemType"])]
        query = (params.get("q") or "").lower()
        if query and params.get("qmode") == "everything":
            items = [i for i in items if query in self._everything_text(i)]
        return self._page(items, params)

    def _api_collection(self, key: str) -> dict:
        collection = self.collections[key]
        live_items = [i for i in self.items.values() if not i["data"].get("deleted")]
        data = {
            "key": key,
            "version": collection.get("version", 1),
            "name": collection["name"],
            "parentCollection": collection.get("parentCollection") or False,
        }
        if collection.get("deleted"):
            data["deleted"] = True
        return {
            "key": key,
            "version": data["version"],
            "meta": {
                "numItems": sum(key in i["data"].get("collections", []) for i in live_items),
                "numCollections": sum(
                    c.get("parentCollection") == key and not c.get("deleted")
                    for c in self.collections.values()
                ),
            },
            "data": data,
        }

    def _tags(self, params: httpx.QueryParams) -> list[dict]:
        counts: dict[tuple[str, int], int] = {}
        for item in self.items.values():
            if item["data"].get("deleted"):
                continue
            for tag in item["data"]["tags"]:
                key = (tag["tag"], tag.get("type", 0))
                counts[key] = counts.get(key, 0) + 1
        query = (params.get("q") or "").lower()
        return [
            {"tag": name, "meta": {"type": tag_type, "numItems": count}}
            for (name, tag_type), count in sorted(counts.items())
            if query in name.lower()
        ]


# -------------------- Fixtures --------------------


@pytest.fixture(autouse=True)
def clean_zotero_env(monkeypatch):
    """Keep the developer's ZOTERO_* environment out of the tests."""
    for key in list(os.environ):
        if key.startswith("ZOTERO_"):
            monkeypatch.delenv(key, raising=False)
    reset_settings()
    yield
    reset_settings()


@pytest.fixture
def now():
    return utc_now()


@pytest.fixture
def library(now):
    return build_library(now)


@pytest.fixture
def scenario_library(now):
    return build_scenario_library(now)


@pytest.fixture
def make_local_settings(tmp_path):
    def make(library: dict[str, Any], name: str = "zotero", **overrides) -> ZoteroSettings:
        data_dir = ZoteroDatabaseBuilder(tmp_path / name).build(library)
        values = {"mode": "local", "data_dir": data_dir, "cache_enabled": False}
        values.update(overrides)
        return ZoteroSettings(_env_file=None, **values)

    return make


@pytest.fixture
def web_settings():
    return ZoteroSettings(
        _env_file=None, mode="web", api_key="secret-key", user_id="1", cache_enabled=False
    )


@pytest.fixture
def make_local_backend(make_local_settings):
    backends: list[LocalBackend] = []

    def make(library: dict[str, Any], **overrides) -> LocalBackend:
        backend = LocalBackend(make_local_settings(library, name=f"zotero{len(backends)}", **overrides))
        backends.append(backend)
        return backend

    yield make
    for backend in backends:
        backend.close_sync()


@pytest.fixture
def make_web_backend(web_settings):
    def make(library: dict[str, Any]) -> tuple[WebAPIBackend, FakeZoteroAPI]:
        api = FakeZoteroAPI(library)
        return WebAPIBackend(web_settings, client=api.client()), api

    return make


@pytest.fixture
def local_backend(make_local_backend, library):
    return make_local_backend(library)


@pytest.fixture
def fake_api(library):
    return FakeZoteroAPI(library)


@pytest.fixture
def web_backend(web_settings, fake_api):
    return WebAPIBackend(web_settings, client=fake_api.client())


@pytest.fixture(params=["local", "web"])
def backend(request):
    """Each backend over the same sample library."""
    return request.getfixturevalue(f"{request.param}_backend")


@pytest.fixture(params=["local", "web"])
def scenario_backend(request, scenario_library, make_local_backend, make_web_backend):
    if request.param == "local":
        return make_local_backend(scenario_library)
    backend, _ = make_web_backend(scenario_library)
    return backend
