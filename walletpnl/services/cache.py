from __future__ import annotations

import logging
import threading
import time
from concurrent.futures import Future
from dataclasses import dataclass
from typing import Any, Callable, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")


def system_clock_ms() -> int:
    return int(time.time() * 1000)


@dataclass(frozen=True)
class CacheEntry:
    key: str
    value: Any
    expires_at_ms: int


class TTLCache:
    """Process-wide keyed store with per-entry TTL and prefix invalidation.

    Individual reads, writes and deletes are atomic. ``compute`` always runs
    outside the lock, so two concurrent misses for one key may both compute
    and the last write wins. With ``single_flight=True`` the first caller
    computes and concurrent callers for the same key wait on its result.
    """

    def __init__(
        self,
        clock: Callable[[], int] = system_clock_ms,
        single_flight: bool = False,
    ) -> None:
        self._clock = clock
        self._single_flight = single_flight
        self._lock = threading.Lock()
        self._entries: dict[str, CacheEntry] = {}
        self._in_flight: dict[str, Future] = {}

    def get(self, key: str) -> CacheEntry | None:
        """Return the live entry for ``key``, dropping it when expired."""
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return None
            if self._clock() > entry.expires_at_ms:
                del self._entries[key]
                return None
            return entry

    def set(self, key: str, value: Any, ttl_ms: int) -> None:
        entry = CacheEntry(key=key, value=value, expires_at_ms=self._clock() + ttl_ms)
        with self._lock:
            self._entries[key] = entry

    def cached(self, key: str, ttl_ms: int, compute: Callable[[], T]) -> T:
        """Return the live value for ``key`` or compute, store and return it."""
        hit = self.get(key)
        if hit is not None:
            logger.debug("cache hit key=%s", key)
            return hit.value

        if not self._single_flight:
            logger.debug("cache miss key=%s", key)
            value = compute()
            self.set(key, value, ttl_ms)
            return value

        with self._lock:
            pending = self._in_flight.get(key)
            owner = pending is None
            if owner:
                pending = Future()
                self._in_flight[key] = pending

        if not owner:
            logger.debug("cache wait key=%s", key)
            return pending.result()

        logger.debug("cache miss key=%s", key)
        try:
            value = compute()
        except BaseException as exc:
            with self._lock:
                self._in_flight.pop(key, None)
            pending.set_exception(exc)
            raise

        self.set(key, value, ttl_ms)
        with self._lock:
            self._in_flight.pop(key, None)
        pending.set_result(value)
        return value

    def invalidate(self, prefix: str | None = None) -> int:
        """Drop every entry whose key starts with ``prefix`` (all when empty)."""
        with self._lock:
            if not prefix:
                removed = len(self._entries)
                self._entries.clear()
            else:
                doomed = [key for key in self._entries if key.startswith(prefix)]
                for key in doomed:
                    del self._entries[key]
                removed = len(doomed)
        logger.debug("cache invalidate prefix=%s removed=%s", prefix, removed)
        return removed

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)


def cache_key(operation: str, address: str, *parts: str) -> str:
    """Build ``<operation>:<address>[:<part>...]`` with lowercased addresses."""
    segments = [operation, address.lower()]
    segments.extend(part.lower() if part.startswith("0x") else part for part in parts if part)
    return ":".join(segments)


def address_prefix(operation: str, address: str) -> str:
    return f"{operation}:{address.lower()}"
