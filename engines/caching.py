"""Keyed cache of computed views with pattern invalidation and single-flight fills."""

from __future__ import annotations

import fnmatch
import logging
import time
from collections import OrderedDict
from concurrent.futures import Future
from dataclasses import dataclass
from threading import Lock
from typing import Any, Callable, Dict, Optional

_LOGGER = logging.getLogger(__name__)


@dataclass(frozen=True)
class CacheEntry:
    key: str
    value: Any
    created_at: float
    version: int


class _Flight:
    __slots__ = ("future",)

    def __init__(self) -> None:
        self.future: Future = Future()


class Cache:
    """Thread-safe cache; entries are replaced or removed, never mutated.

    ``get_or_compute`` funnels concurrent callers for the same missing key
    through one computation. A flight that is overtaken by ``set`` or
    ``invalidate`` still answers its waiters but does not store its result.
    The compute function must not call back into the cache for its own key.
    """

    def __init__(
        self,
        max_entries: Optional[int] = None,
        ttl_seconds: Optional[float] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self._entries: "OrderedDict[str, CacheEntry]" = OrderedDict()
        self._inflight: Dict[str, _Flight] = {}
        self._max_entries = max_entries if max_entries and max_entries > 0 else None
        self._ttl = ttl_seconds if ttl_seconds and ttl_seconds > 0 else None
        self._clock = clock
        self._lock = Lock()
        self._version = 0
        self._hits = 0
        self._misses = 0
        self._computations = 0
        self._evictions = 0

    def get(self, key: str, default: Any = None) -> Any:
        with self._lock:
            entry = self._live_entry(key)
            if entry is None:
                self._misses += 1
                return default
            self._hits += 1
            return entry.value

    def set(self, key: str, value: Any) -> CacheEntry:
        with self._lock:
            # A pending fill for this key is now older than this value.
            self._inflight.pop(key, None)
            return self._store(key, value)

    def invalidate(self, key_pattern: str) -> int:
        """Remove every entry whose key matches the glob ``key_pattern``."""
        with self._lock:
            doomed = [key for key in self._entries if fnmatch.fnmatchcase(key, key_pattern)]
            for key in doomed:
                del self._entries[key]
            for key in [k for k in self._inflight if fnmatch.fnmatchcase(k, key_pattern)]:
                del self._inflight[key]
        if doomed:
            _LOGGER.debug("Invalidated %s cache entries for %s", len(doomed), key_pattern)
        return len(doomed)

    def get_or_compute(self, key: str, compute_fn: Callable[[], Any]) -> Any:
        with self._lock:
            entry = self._live_entry(key)
            if entry is not None:
                self._hits += 1
                return entry.value
            flight = self._inflight.get(key)
            owner = flight is None
            if owner:
                flight = _Flight()
                self._inflight[key] = flight
                self._misses += 1
            else:
                self._hits += 1

        if not owner:
            return flight.future.result()

        try:
            value = compute_fn()
        except BaseException as exc:
            with self._lock:
                if self._inflight.get(key) is flight:
                    del self._inflight[key]
            flight.future.set_exception(exc)
            raise

        with self._lock:
            self._computations += 1
            if self._inflight.get(key) is flight:
                del self._inflight[key]
                self._store(key, value)
        flight.future.set_result(value)
        return value

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()
            self._inflight.clear()

    def stats(self) -> Dict[str, int]:
        with self._lock:
            return {
                "hits": self._hits,
                "misses": self._misses,
                "keys": len(self._entries),
                "computations": self._computations,
                "evictions": self._evictions,
                "inflight": len(self._inflight),
            }

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    # -- internal, caller holds the lock --
    def _live_entry(self, key: str) -> Optional[CacheEntry]:
        entry = self._entries.get(key)
        if entry is None:
            return None
        if self._ttl is not None and self._clock() - entry.created_at >= self._ttl:
            del self._entries[key]
            self._evictions += 1
            return None
        return entry

    def _store(self, key: str, value: Any) -> CacheEntry:
        self._version += 1
        entry = CacheEntry(key=key, value=value, created_at=self._clock(), version=self._version)
        self._entries.pop(key, None)
        self._entries[key] = entry
        if self._max_entries is not None:
            while len(self._entries) > self._max_entries:
                self._entries.popitem(last=False)
                self._evictions += 1
        return entry
