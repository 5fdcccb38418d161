"""
Read cache tests: TTLs, tag-indexed invalidation, and backend failures
never reaching the caller.
"""

import logging

import pytest

from storeledger.cache import (
    STOCK_SUMMARY_TAG,
    MemoryCacheBackend,
    NullCacheBackend,
    ReadCache,
    build_backend,
    refund_tags,
    stock_tags,
)


class FakeClock:
    def __init__(self):
        self.now = 1000.0

    def __call__(self):
        return self.now


class BrokenBackend:
    """Every call fails, like an unreachable cache server."""

    def get(self, key):
        raise ConnectionError("cache down")

    def set(self, key, value, ttl):
        raise ConnectionError("cache down")

    def delete_many(self, keys):
        raise ConnectionError("cache down")

    def add_to_index(self, tag, key):
        raise ConnectionError("cache down")

    def pop_index(self, tag):
        raise ConnectionError("cache down")

    def clear(self):
        raise ConnectionError("cache down")

    def ping(self):
        raise ConnectionError("cache down")


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def cache(clock):
    return ReadCache(MemoryCacheBackend(clock=clock), ttls={"stock": 60, "list": 300})


class TestMemoryBackend:
    def test_entries_expire(self, clock):
        backend = MemoryCacheBackend(clock=clock)
        backend.set("k", {"a": 1}, ttl=10)
        clock.now += 9
        assert backend.get("k") == {"a": 1}
        clock.now += 1
        assert backend.get("k") is None

    def test_values_are_copied(self, clock):
        backend = MemoryCacheBackend(clock=clock)
        value = {"items": [1]}
        backend.set("k", value, ttl=10)
        value["items"].append(2)
        backend.get("k")["items"].append(3)
        assert backend.get("k") == {"items": [1]}

    def test_expired_keys_leave_the_index(self, clock):
        backend = MemoryCacheBackend(clock=clock, sweep_interval=30)
        for limit in range(50):
            key = f"sales:store:1:limit={limit}"
            backend.add_to_index("store:1:sales", key)
            backend.set(key, [], ttl=10)
        assert len(backend) == 50

        clock.now += 31
        backend.add_to_index("store:1:sales", "sales:store:1:limit=50")
        backend.set("sales:store:1:limit=50", [], ttl=10)

        assert len(backend) == 1
        assert backend.index_size() == 1
        assert backend.pop_index("store:1:sales") == {"sales:store:1:limit=50"}

    def test_entry_count_is_capped(self, clock):
        backend = MemoryCacheBackend(clock=clock, max_entries=3)
        for i in range(10):
            backend.add_to_index("t", f"k{i}")
            backend.set(f"k{i}", i, ttl=100 + i)

        assert len(backend) == 3
        assert backend.index_size() == 3
        assert backend.get("k9") == 9
        assert backend.get("k0") is None


class TestReadCache:
    def test_get_or_compute_caches(self, cache):
        calls = []

        def compute():
            calls.append(1)
            return 42

        assert cache.get_or_compute("a", compute, kind="stock") == 42
        assert cache.get_or_compute("a", compute, kind="stock") == 42
        assert len(calls) == 1

    def test_ttl_per_kind(self, cache, clock):
        cache.get_or_compute("s", lambda: 1, kind="stock")
        cache.get_or_compute("l", lambda: 1, kind="list")
        clock.now += 61
        assert cache.backend.get("s") is None
        assert cache.backend.get("l") == 1

    def test_invalidate_deletes_only_tagged_keys(self, cache):
        cache.get_or_compute("qty:1:3", lambda: 5, kind="stock", tags=stock_tags(1, 3))
        cache.get_or_compute("qty:1:4", lambda: 6, kind="stock", tags=stock_tags(1, 4))
        cache.get_or_compute("sales:user:7", lambda: [], kind="list", tags=("user:7:sales",))

        deleted = cache.invalidate("stock:1:3")

        assert deleted == 1
        assert cache.backend.get("qty:1:3") is None
        assert cache.backend.get("qty:1:4") == 6
        assert cache.backend.get("sales:user:7") == []

    def test_shared_tag_invalidates_every_member(self, cache):
        cache.get_or_compute("summary:all", lambda: {}, kind="stock", tags=(STOCK_SUMMARY_TAG,))
        cache.get_or_compute("summary:1", lambda: {}, kind="stock", tags=(STOCK_SUMMARY_TAG,))
        assert cache.invalidate(*stock_tags(2, 9)) == 2

    def test_compute_errors_are_not_cached(self, cache):
        def boom():
            raise LookupError("missing")

        with pytest.raises(LookupError):
            cache.get_or_compute("x", boom, kind="list")
        assert cache.get_or_compute("x", lambda: "ok", kind="list") == "ok"

    def test_invalidation_during_compute_is_not_cached(self, cache):
        truth = {"qty": 1}

        def compute_then_mutate():
            seen = truth["qty"]
            # A mutation commits and invalidates while this read is in flight.
            truth["qty"] = 2
            cache.invalidate(*stock_tags(1, 1))
            return seen

        assert cache.get_or_compute("stock:qty:1:1", compute_then_mutate, kind="stock", tags=stock_tags(1, 1)) == 1
        assert cache.backend.get("stock:qty:1:1") is None
        assert cache.get_or_compute("stock:qty:1:1", lambda: truth["qty"], kind="stock", tags=stock_tags(1, 1)) == 2

    def test_unrelated_invalidation_does_not_block_store(self, cache):
        def compute():
            cache.invalidate(*stock_tags(9, 9))
            return 5

        cache.get_or_compute("stock:qty:1:1", compute, kind="stock", tags=stock_tags(1, 1))
        assert cache.backend.get("stock:qty:1:1") == 5


    def test_refund_tags_cover_sale_store_and_user(self):
        tags = refund_tags(sale_id=5, store_id=1, user_id=7, refund_id=11)
        for tag in ("sale:5", "sale:5:refunds", "store:1:refunds", "store:1:sales",
                    "user:7:refunds", "user:7:sales", "refund:11"):
            assert tag in tags


class TestBackendFailures:
    def test_read_falls_through_to_source(self, caplog):
        cache = ReadCache(BrokenBackend(), logger=logging.getLogger("test.cache"))
        with caplog.at_level(logging.WARNING, logger="test.cache"):
            assert cache.get_or_compute("k", lambda: "fresh", kind="stock", tags=("t",)) == "fresh"
        assert any("Cache read failed" in r.getMessage() for r in caplog.records)

    def test_invalidate_and_clear_never_raise(self):
        cache = ReadCache(BrokenBackend(), logger=logging.getLogger("test.cache"))
        assert cache.invalidate("a", "b") == 0
        cache.clear()
        assert cache.is_available() is False

    def test_null_backend_always_computes(self):
        cache = ReadCache(NullCacheBackend())
        calls = []
        cache.get_or_compute("k", lambda: calls.append(1), kind="stock")
        cache.get_or_compute("k", lambda: calls.append(1), kind="stock")
        assert len(calls) == 2


def test_build_backend():
    assert isinstance(build_backend("memory"), MemoryCacheBackend)
    assert isinstance(build_backend("null"), NullCacheBackend)
    with pytest.raises(ValueError):
        build_backend("redis")
