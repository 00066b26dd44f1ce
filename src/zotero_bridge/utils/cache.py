"""
Expiring in-memory cache.
"""

from collections.abc import Callable
import hashlib
import json
import time
from typing import Any, Generic, TypeVar

V = TypeVar("V")


def make_cache_key(operation: str, params: dict[str, Any]) -> str:
    """Generate cache key from operation name and parameters."""
    # Sort params for consistent hashing
    param_str = json.dumps(params, sort_keys=True, default=str)
    key_str = f"{operation}:{param_str}"
    return hashlib.md5(key_str.encode()).hexdigest()


class TTLCache(Generic[V]):
    """
    Key/value store whose entries expire a fixed time after being set.

    Expired entries are dropped lazily on ``get`` and eagerly by ``cleanup``.
    """

    def __init__(
        self,
        ttl_seconds: float = 300,
        clock: Callable[[], float] = time.monotonic,
    ):
        """
        Initialize cache.

        Args:
            ttl_seconds: Time-to-live for cache entries (default: 5 minutes)
            clock: Monotonic time source, overridable in tests
        """
        if ttl_seconds <= 0:
            raise ValueError("ttl_seconds must be positive")
        self._store: dict[str, tuple[V, float]] = {}
        self._ttl = ttl_seconds
        self._clock = clock

    @property
    def ttl(self) -> float:
        return self._ttl

    def __len__(self) -> int:
        return len(self._store)

    def get(self, key: str, default: Any = None) -> V | Any:
        """Get a value if present and not expired."""
        entry = self._store.get(key)
        if entry is None:
            return default

        value, expires = entry
        if self._clock() >= expires:
            del self._store[key]
            return default
        return value

    def set(self, key: str, value: V) -> None:
        """Store a value, refreshing its expiry."""
        self._store[key] = (value, self._clock() + self._ttl)

    def has(self, key: str) -> bool:
        sentinel = object()
        return self.get(key, sentinel) is not sentinel

    def delete(self, key: str) -> bool:
        """Remove a key. Returns True if it was present."""
        return self._store.pop(key, None) is not None

    def clear(self) -> None:
        """Clear all cached entries."""
        self._store.clear()

    def cleanup(self) -> int:
        """Remove every expired entry. Returns the number removed."""
        now = self._clock()
        expired = [key for key, (_, expires) in self._store.items() if now >= expires]
        for key in expired:
            del self._store[key]
        return len(expired)
