"""
Zotero Bridge.

Read-only access to a Zotero library through either the Zotero web API or
the local zotero.sqlite database, behind one async interface.
"""

from importlib.metadata import PackageNotFoundError, version

try:
    __version__ = version("zotero-bridge")
except PackageNotFoundError:
    __version__ = "unknown"

from .backends import ZoteroBackend, create_backend
from .config import ZoteroSettings, get_settings

__all__ = ["__version__", "ZoteroBackend", "ZoteroSettings", "create_backend", "get_settings"]
