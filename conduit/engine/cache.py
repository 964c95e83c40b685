"""
conduit.engine.cache — TTL Cache with an Injectable Clock
===========================================================

Small thread-safe key/value cache used by the bot to remember
``(guild_id, command_type, command_name) → workflow_id`` lookups, so a
prefix message does not cost a database round trip every time.

The clock is injected so tests can advance time without sleeping::

    now = [0.0]
    cache = TTLCache(ttl_seconds=60, clock=lambda: now[0])
    cache.set("k", 1)
    now[0] = 61
    assert cache.get("k") is None

Entries are dropped explicitly on ``workflow_changed`` events
(:meth:`invalidate_where`); the TTL only bounds staleness when an event
is missed.  Keys come from user input, so the cache is also capped at
*max_entries*: a full cache sheds expired entries, then the oldest.
"""

from __future__ import annotations

import threading
import time
from collections.abc import Callable, Hashable
from typing import Generic, TypeVar

K = TypeVar("K", bound=Hashable)
V = TypeVar("V")

_MISSING = object()


class TTLCache(Generic[K, V]):
    """Key/value store whose entries expire *ttl_seconds* after being set."""

    def __init__(
        self,
        ttl_seconds: float,
        *,
        max_entries: int = 1024,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        if ttl_seconds <= 0:
            raise ValueError("ttl_seconds must be positive")
        if max_entries < 1:
            raise ValueError("max_entries must be at least 1")
        self._ttl = ttl_seconds
        self._max_entries = max_entries
        self._clock = clock
        self._lock = threading.Lock()
        # key → (expires_at, value), oldest first
        self._entries: dict[K, tuple[float, V]] = {}

    def __len__(self) -> int:
        with self._lock:
            self._purge_expired()
            return len(self._entries)

    def get(self, key: K, default: V | None = None) -> V | None:
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return default
            expires_at, value = entry
            if self._clock() >= expires_at:
                del self._entries[key]
                return default
            return value

    def set(self, key: K, value: V) -> None:
        with self._lock:
            # Re-inserting moves the key to the back of the eviction order.
            self._entries.pop(key, None)
            if len(self._entries) >= self._max_entries:
                self._purge_expired()
            while len(self._entries) >= self._max_entries:
                del self._entries[next(iter(self._entries))]
            self._entries[key] = (self._clock() + self._ttl, value)

    def get_or_load(self, key: K, loader: Callable[[], V]) -> V:
        """Return the cached value for *key*, calling *loader* on a miss.

        ``None`` results are cached too (a known-absent command stays
        absent until invalidated or expired).  The loader runs outside the
        lock, so two threads may both load the same key.
        """
        cached = self.get(key, _MISSING)  # type: ignore[arg-type]
        if cached is not _MISSING:
            return cached  # type: ignore[return-value]
        value = loader()
        self.set(key, value)
        return value

    def invalidate(self, key: K) -> None:
        with self._lock:
            self._entries.pop(key, None)

    def invalidate_where(self, predicate: Callable[[K], bool]) -> int:
        """Drop every key matching *predicate*; returns how many were dropped."""
        with self._lock:
            doomed = [k for k in self._entries if predicate(k)]
            for k in doomed:
                del self._entries[k]
            return len(doomed)

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()

    def _purge_expired(self) -> None:
        now = self._clock()
        expired = [k for k, (exp, _) in self._entries.items() if now >= exp]
        for k in expired:
            del self._entries[k]
