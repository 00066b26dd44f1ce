"""
Utility functions and helpers for Zotero Bridge.
"""

from .cache import TTLCache, make_cache_key
from .errors import (
    APIError,
    ConfigurationError,
    DatabaseError,
    DatabaseUnavailableError,
    NotFoundError,
    RateLimitError,
    ZoteroBridgeError,
    format_api_error,
)
from .helpers import (
    extract_item_key,
    generate_citation_key,
    get_creator_display_name,
    note_to_plain_text,
    parse_timestamp,
    recent_cutoff,
    relation_item_keys,
)
from .logging_config import PerformanceMonitor

__all__ = [
    # Cache
    "TTLCache",
    "make_cache_key",
    # Errors
    "ZoteroBridgeError",
    "ConfigurationError",
    "NotFoundError",
    "APIError",
    "RateLimitError",
    "DatabaseError",
    "DatabaseUnavailableError",
    "format_api_error",
    # Helpers
    "get_creator_display_name",
    "note_to_plain_text",
    "generate_citation_key",
    "extract_item_key",
    "relation_item_keys",
    "parse_timestamp",
    "recent_cutoff",
    # Logging
    "PerformanceMonitor",
]
