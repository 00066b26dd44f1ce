"""
Common helper functions for Zotero Bridge.
"""

from collections.abc import Iterable, Mapping
from datetime import datetime, timedelta, timezone
import re
from typing import Any

from bs4 import BeautifulSoup

# Trailing item key of a relation URI, e.g. http://zotero.org/users/1/items/ABCD2345
_RELATION_KEY_PATTERN = re.compile(r"/items/([A-Z0-9]+)$")
_YEAR_PATTERN = re.compile(r"\d{4}")
_WHITESPACE_PATTERN = re.compile(r"\s+")

RELATION_PREDICATE = "dc:relation"


def get_creator_display_name(creator: Mapping[str, Any]) -> str:
    """
    Get the display name for a single creator.

    Args:
        creator: Creator mapping with either a single 'name' or
            'firstName'/'lastName' keys.

    Returns:
        "First Last" for split names, the single name otherwise.

    Examples:
        >>> get_creator_display_name({"firstName": "Ada", "lastName": "Lovelace"})
        'Ada Lovelace'
        >>> get_creator_display_name({"name": "World Health Organization"})
        'World Health Organization'
    """
    if creator.get("name"):
        return creator["name"]
    parts = [creator.get("firstName"), creator.get("lastName")]
    return " ".join(part for part in parts if part)


def note_to_plain_text(html: str) -> str:
    """
    Extract plain text from HTML note content.

    Tags are dropped and entities decoded.

    Examples:
        >>> note_to_plain_text("<p>Fish &amp; chips</p>")
        'Fish & chips'
    """
    if not html:
        return ""
    text = BeautifulSoup(html, "html.parser").get_text()
    return text.replace("\xa0", " ").strip()


def generate_citation_key(creators: Iterable[Mapping[str, Any]] | None, date: str | None) -> str:
    """
    Derive a simple citation key from the first creator and the year.

    Examples:
        >>> generate_citation_key([{"lastName": "Van Rossum"}], "1991-02-20")
        'vanrossum1991'
    """
    author = ""
    creators = list(creators or [])
    if creators:
        first = creators[0]
        author = first.get("lastName") or first.get("name") or ""

    year = ""
    if date:
        match = _YEAR_PATTERN.search(date)
        if match:
            year = match.group(0)

    return _WHITESPACE_PATTERN.sub("", f"{author}{year}".lower())


def extract_item_key(uri: str) -> str | None:
    """
    Extract the item key from a relation URI.

    Returns:
        The trailing key segment, or None if the URI is malformed.

    Examples:
        >>> extract_item_key("http://zotero.org/users/12/items/ABCD2345")
        'ABCD2345'
        >>> extract_item_key("not-a-uri") is None
        True
    """
    if not isinstance(uri, str):
        return None
    match = _RELATION_KEY_PATTERN.search(uri)
    return match.group(1) if match else None


def relation_item_keys(relations: Mapping[str, Any] | None) -> list[str]:
    """
    Collect related item keys from a relations mapping.

    Malformed URIs are skipped; order is preserved and duplicates dropped.
    """
    if not relations:
        return []

    uris = relations.get(RELATION_PREDICATE)
    if not uris:
        return []
    if isinstance(uris, str):
        uris = [uris]

    keys: list[str] = []
    for uri in uris:
        key = extract_item_key(uri)
        if key and key not in keys:
            keys.append(key)
    return keys


def parse_timestamp(value: str | None) -> datetime | None:
    """
    Parse a Zotero timestamp into an aware UTC datetime.

    Accepts both the API form ("2024-01-31T10:00:00Z") and the SQLite
    form ("2024-01-31 10:00:00"). Returns None for empty or invalid input.
    """
    if not value:
        return None
    try:
        parsed = datetime.fromisoformat(value.strip().replace("Z", "+00:00"))
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


def recent_cutoff(days: int, now: datetime | None = None) -> datetime:
    """
    Start of the trailing window used by recent-item queries.

    The window is counted in whole UTC days and includes today, so
    ``days=0`` covers everything since midnight.
    """
    now = now or datetime.now(timezone.utc)
    start_of_today = now.astimezone(timezone.utc).replace(
        hour=0, minute=0, second=0, microsecond=0
    )
    return start_of_today - timedelta(days=max(days, 0))
