"""
In-process TTL caches used to absorb repeated UI polling.

This module provides two layers:
1. ``TTLCache`` - a thread-safe key/value store whose entries expire after a
   per-entry TTL. Writes are last-write-wins.
2. ``ResultCache`` - folder page results keyed by
   ``emails:{user_id}:{folder}:{page}:{limit}`` with prefix invalidation for a
   single page, a user+folder, or a whole user.

Instances are constructed once at process start (see ``webmail.service``) and
injected into the components that need them. Nothing here is shared across
processes; a distributed deployment substitutes an external cache behind the
same interface.
"""

import logging
import threading
import time
from typing import Any, Callable, Dict, Optional, Tuple

from webmail.models import PageResult

logger = logging.getLogger(__name__)

KEY_PREFIX = "emails"


class TTLCache:
    """Thread-safe in-memory cache with per-entry expiry."""

    def __init__(
        self,
        default_ttl: float = 300,
        clock: Callable[[], float] = time.monotonic,
    ):
        """
        Initialize the cache.

        Args:
            default_ttl: TTL in seconds used when ``set`` is called without one
            clock: Monotonic time source, injectable for tests
        """
        self.default_ttl = default_ttl
        self._clock = clock
        self._entries: Dict[str, Tuple[Any, float]] = {}
        self._lock = threading.Lock()
        self._last_purge = clock()

    def get(self, key: str) -> Optional[Any]:
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return None
            value, expires_at = entry
            if self._clock() >= expires_at:
                del self._entries[key]
                return None
            return value

    def set(self, key: str, value: Any, ttl: Optional[float] = None) -> None:
        ttl = self.default_ttl if ttl is None else ttl
        now = self._clock()
        # Keys that are never read again are swept once per default TTL.
        if now - self._last_purge > self.default_ttl:
            self._last_purge = now
            self.purge_expired()
        with self._lock:
            self._entries[key] = (value, now + ttl)

    def invalidate(self, key: str) -> bool:
        with self._lock:
            return self._entries.pop(key, None) is not None

    def invalidate_prefix(self, prefix: str) -> int:
        """Drop every entry whose key starts with ``prefix``. Returns the count."""
        with self._lock:
            matching = [k for k in self._entries if k.startswith(prefix)]
            for key in matching:
                del self._entries[key]
        if matching:
            logger.debug(f"Invalidated {len(matching)} cache entries for {prefix}")
        return len(matching)

    def purge_expired(self) -> int:
        now = self._clock()
        with self._lock:
            expired = [k for k, (_, exp) in self._entries.items() if now >= exp]
            for key in expired:
                del self._entries[key]
        return len(expired)

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)


def page_key(user_id: str, folder: str, page: int, limit: int) -> str:
    return f"{KEY_PREFIX}:{user_id}:{folder}:{page}:{limit}"


def folder_prefix(user_id: str, folder: Optional[str] = None) -> str:
    # Trailing separator keeps user "1" from matching user "12".
    if folder is None:
        return f"{KEY_PREFIX}:{user_id}:"
    return f"{KEY_PREFIX}:{user_id}:{folder}:"


class ResultCache:
    """Short-TTL memoization of folder pages."""

    def __init__(self, store: Optional[TTLCache] = None, ttl: float = 60):
        self.store = store if store is not None else TTLCache(default_ttl=ttl)
        self.ttl = ttl

    def get(
        self,
        user_id: str,
        folder: str,
        page: int,
        limit: int,
        refresh: bool = False,
    ) -> Optional[PageResult]:
        """Return the cached page, or None.

        ``refresh=True`` drops the entry and always reports a miss so the
        caller fetches live and rewrites it.
        """
        key = page_key(user_id, folder, page, limit)
        if refresh:
            self.store.invalidate(key)
            return None
        return self.store.get(key)

    def set(
        self,
        user_id: str,
        folder: str,
        page: int,
        limit: int,
        result: PageResult,
        ttl: Optional[float] = None,
    ) -> None:
        if not result.success:
            return
        self.store.set(
            page_key(user_id, folder, page, limit),
            result,
            self.ttl if ttl is None else ttl,
        )

    def invalidate_page(self, user_id: str, folder: str, page: int, limit: int) -> bool:
        return self.store.invalidate(page_key(user_id, folder, page, limit))

    def invalidate_folder(self, user_id: str, folder: str) -> int:
        return self.store.invalidate_prefix(folder_prefix(user_id, folder))

    def invalidate_user(self, user_id: str) -> int:
        return self.store.invalidate_prefix(folder_prefix(user_id))
