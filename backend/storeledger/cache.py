"""
Read cache with explicit, tag-indexed invalidation.

Reads go through ReadCache.get_or_compute(); every cached key is recorded
under the tags of the entities it contains (store, product, user, sale,
refund). A mutation invalidates its tags and exactly the keys indexed under
them are deleted, so no wildcard scan is ever needed.

The cache is never a source of failures: backend errors on read fall
through to the source of truth, and errors on write or invalidation are
logged and swallowed.
"""

from __future__ import annotations

import copy
import logging
import threading
import time
from typing import Any, Callable, Iterable, Protocol


# -----------------------------------------------------------------------------
# Tags
# -----------------------------------------------------------------------------

STOCK_SUMMARY_TAG = "stock:summary"


def stock_tags(store_id: int, product_id: int) -> tuple[str, ...]:
    """Everything that can contain the quantity of one (store, product)."""
    return (
        f"stock:{store_id}:{product_id}",
        f"store:{store_id}:stock",
        f"product:{product_id}:stock",
        STOCK_SUMMARY_TAG,
    )


def sale_tags(sale_id: int, store_id: int, user_id: int) -> tuple[str, ...]:
    return (f"sale:{sale_id}", f"store:{store_id}:sales", f"user:{user_id}:sales")


def refund_tags(sale_id: int, store_id: int, user_id: int, refund_id: int | None = None) -> tuple[str, ...]:
    tags = [
        f"sale:{sale_id}",
        f"sale:{sale_id}:refunds",
        f"store:{store_id}:refunds",
        f"store:{store_id}:sales",
        f"user:{user_id}:refunds",
        f"user:{user_id}:sales",
    ]
    if refund_id is not None:
        tags.append(f"refund:{refund_id}")
    return tuple(tags)


# -----------------------------------------------------------------------------
# Backends
# -----------------------------------------------------------------------------

class CacheBackend(Protocol):
    def get(self, key: str) -> Any | None: ...
    def set(self, key: str, value: Any, ttl: int) -> None: ...
    def delete_many(self, keys: Iterable[str]) -> int: ...
    def add_to_index(self, tag: str, key: str) -> None: ...
    def pop_index(self, tag: str) -> set[str]: ...
    def clear(self) -> None: ...
    def ping(self) -> bool: ...


class MemoryCacheBackend:
    """
    Thread-safe in-process TTL cache.

    Values are deep-copied in and out so callers can never mutate a cached
    entry by accident. Expired entries (and their index memberships) are
    swept on write at most every sweep_interval seconds, and the store never
    holds more than max_entries keys: the soonest-expiring are evicted first.
    """

    def __init__(
        self,
        clock: Callable[[], float] = time.monotonic,
        *,
        max_entries: int = 10000,
        sweep_interval: float = 30.0,
    ):
        self._entries: dict[str, tuple[float, Any]] = {}
        self._index: dict[str, set[str]] = {}
        self._lock = threading.Lock()
        self._clock = clock
        self.max_entries = max_entries
        self.sweep_interval = sweep_interval
        self._next_sweep = clock() + sweep_interval

    def get(self, key: str) -> Any | None:
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return None
            expires_at, value = entry
            if self._clock() >= expires_at:
                del self._entries[key]
                return None
            return copy.deepcopy(value)

    def set(self, key: str, value: Any, ttl: int) -> None:
        with self._lock:
            now = self._clock()
            self._entries[key] = (now + ttl, copy.deepcopy(value))
            if now >= self._next_sweep or len(self._entries) > self.max_entries:
                self._sweep(now)

    def _sweep(self, now: float) -> None:
        # Caller holds the lock. Runs after the new entry is written, so a key
        # indexed just before its set() keeps its index membership.
        for key in [k for k, (expires_at, _) in self._entries.items() if now >= expires_at]:
            del self._entries[key]
        overflow = len(self._entries) - self.max_entries
        if overflow > 0:
            soonest = sorted(self._entries, key=lambda k: self._entries[k][0])[:overflow]
            for key in soonest:
                del self._entries[key]
        for tag in list(self._index):
            live = {key for key in self._index[tag] if key in self._entries}
            if live:
                self._index[tag] = live
            else:
                del self._index[tag]
        self._next_sweep = now + self.sweep_interval

    def delete_many(self, keys: Iterable[str]) -> int:
        deleted = 0
        with self._lock:
            for key in keys:
                if self._entries.pop(key, None) is not None:
                    deleted += 1
        return deleted

    def add_to_index(self, tag: str, key: str) -> None:
        with self._lock:
            self._index.setdefault(tag, set()).add(key)

    def pop_index(self, tag: str) -> set[str]:
        with self._lock:
            return self._index.pop(tag, set())

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()
            self._index.clear()

    def ping(self) -> bool:
        return True

    def index_size(self) -> int:
        with self._lock:
            return sum(len(keys) for keys in self._index.values())

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)


class NullCacheBackend:
    """Caching disabled: every read goes to the source of truth."""

    def get(self, key: str) -> Any | None:
        return None

    def set(self, key: str, value: Any, ttl: int) -> None:
        return None

    def delete_many(self, keys: Iterable[str]) -> int:
        return 0

    def add_to_index(self, tag: str, key: str) -> None:
        return None

    def pop_index(self, tag: str) -> set[str]:
        return set()

    def clear(self) -> None:
        return None

    def ping(self) -> bool:
        return True


BACKENDS = {
    "memory": MemoryCacheBackend,
    "null": NullCacheBackend,
}


def build_backend(name: str) -> CacheBackend:
    try:
        return BACKENDS[name]()
    except KeyError:
        raise ValueError(f"Unknown CACHE_BACKEND {name!r}; expected one of: {', '.join(BACKENDS)}")


# -----------------------------------------------------------------------------
# Read cache
# -----------------------------------------------------------------------------

class ReadCache:
    """
    get-or-compute reads and tag invalidation over a CacheBackend.

    Each tag carries a generation number that invalidate() bumps. A read
    records the generations of its tags before computing and only stores its
    value if none of them moved, so a value computed before a mutation is
    never cached after that mutation's invalidation.
    """

    def __init__(
        self,
        backend: CacheBackend,
        *,
        ttls: dict[str, int] | None = None,
        logger: logging.Logger | None = None,
    ):
        self.backend = backend
        self.ttls = {"stock": 60, "list": 300, "history": 600}
        if ttls:
            self.ttls.update(ttls)
        self.logger = logger or logging.getLogger(__name__)
        self._generations: dict[str, int] = {}
        # Serialises store-vs-invalidate; never held while computing.
        self._lock = threading.Lock()

    def ttl_for(self, kind: str) -> int:
        return self.ttls[kind]

    def get_or_compute(
        self,
        key: str,
        compute: Callable[[], Any],
        *,
        kind: str,
        tags: Iterable[str] = (),
    ) -> Any:
        tags = tuple(tags)
        try:
            cached = self.backend.get(key)
        except Exception:
            self.logger.warning("Cache read failed for %s; reading source of truth", key, exc_info=True)
            return compute()

        if cached is not None:
            return cached

        seen = self._snapshot(tags)
        value = compute()
        self._store(key, value, self.ttl_for(kind), tags, seen)
        return value

    def _snapshot(self, tags: tuple[str, ...]) -> tuple[int, ...]:
        with self._lock:
            return tuple(self._generations.get(tag, 0) for tag in tags)

    def _store(self, key: str, value: Any, ttl: int, tags: tuple[str, ...], seen: tuple[int, ...]) -> None:
        with self._lock:
            if tuple(self._generations.get(tag, 0) for tag in tags) != seen:
                self.logger.debug("Cache store skipped for %s: invalidated while computing", key)
                return
            try:
                for tag in tags:
                    self.backend.add_to_index(tag, key)
                self.backend.set(key, value, ttl)
            except Exception:
                self.logger.warning("Cache write failed for %s", key, exc_info=True)

    def invalidate(self, *tags: str) -> int:
        """
        Delete every key indexed under the given tags.

        Fire-and-forget: failures are logged and never raised.
        """
        deleted = 0
        with self._lock:
            for tag in dict.fromkeys(tags):
                self._generations[tag] = self._generations.get(tag, 0) + 1
                try:
                    keys = self.backend.pop_index(tag)
                    if keys:
                        deleted += self.backend.delete_many(keys)
                except Exception:
                    self.logger.warning("Cache invalidation failed for tag %s", tag, exc_info=True)
        if deleted:
            self.logger.debug("Cache invalidated %d keys for tags %s", deleted, ", ".join(tags))
        return deleted

    def clear(self) -> None:
        with self._lock:
            for tag in self._generations:
                self._generations[tag] += 1
            try:
                self.backend.clear()
            except Exception:
                self.logger.warning("Cache clear failed", exc_info=True)

    def is_available(self) -> bool:
        try:
            return bool(self.backend.ping())
        except Exception:
            return False
