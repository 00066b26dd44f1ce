"""
Backends for reading a Zotero library.

Use ``create_backend()`` to get the backend selected by configuration.
"""

import logging

from zotero_bridge.backends.base import (
    BIBLIOGRAPHY_UNAVAILABLE,
    FULLTEXT_SEPARATOR,
    ZoteroBackend,
    collect_subcollection_keys,
)
from zotero_bridge.backends.cached import CachedBackend
from zotero_bridge.backends.local import LocalBackend
from zotero_bridge.backends.web_api import WebAPIBackend
from zotero_bridge.config import ZoteroSettings, get_settings

logger = logging.getLogger(__name__)


def create_backend(settings: ZoteroSettings | None = None) -> ZoteroBackend:
    """
    Build the backend for the configured mode.

    Args:
        settings: Settings to use (defaults to the global settings)

    Returns:
        A WebAPIBackend or LocalBackend, wrapped in CachedBackend when
        caching is enabled

    Raises:
        ConfigurationError: If the settings are incomplete for the mode
        DatabaseUnavailableError: If local mode cannot open the database
    """
    settings = (settings or get_settings()).require_valid()

    backend: ZoteroBackend
    if settings.is_local:
        backend = LocalBackend(settings)
    else:
        backend = WebAPIBackend(settings)
    logger.info(f"Using {backend.name} backend")

    if settings.cache_enabled:
        return CachedBackend(backend, ttl_seconds=settings.cache_ttl)
    return backend


__all__ = [
    "ZoteroBackend",
    "WebAPIBackend",
    "LocalBackend",
    "CachedBackend",
    "create_backend",
    "collect_subcollection_keys",
    "FULLTEXT_SEPARATOR",
    "BIBLIOGRAPHY_UNAVAILABLE",
]
