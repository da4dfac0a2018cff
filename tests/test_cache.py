"""
Unit tests for the dashboard TTL cache.
"""
import math
import re
import threading
import time
from datetime import datetime, timezone

import pytest

from billing_dashboard.cache import CacheService, format_bytes
from billing_dashboard.models import PaymentStats


class TestGetSet:

    def test_round_trip(self, cache):
        cache.set("a", {"x": 1}, 60)
        assert cache.get("a") == {"x": 1}

    def test_missing_key_is_none(self, cache):
        assert cache.get("never-set") is None

    def test_missing_key_returns_default(self, cache):
        sentinel = object()
        assert cache.get("never-set", sentinel) is sentinel

    def test_stored_none_is_distinguishable_with_default(self, cache):
        sentinel = object()
        cache.set("empty", None, 60)
        assert cache.get("empty", sentinel) is None

    def test_expired_entry_is_absent(self, cache):
        cache.set("b", "v", 0.001)
        time.sleep(0.01)
        assert cache.get("b") is None
        assert cache.has("b") is False

    def test_zero_ttl_expires_immediately(self, cache):
        cache.set("z", "v", 0)
        assert cache.get("z") is None

    def test_lazy_read_evicts_stale_entry(self):
        service = CacheService(cleanup_interval_ms=60_000)
        try:
            service.set("stale", 1, 0.001)
            time.sleep(0.01)
            assert service.size() == 1
            assert service.get("stale") is None
            assert service.size() == 0
        finally:
            service.destroy()

    def test_overwrite_last_write_wins(self, cache):
        cache.set("x", 1, 60)
        cache.set("x", 2, 60)
        assert cache.get("x") == 2

    def test_overwrite_uses_new_ttl(self, cache):
        cache.set("k", "long", 60)
        cache.set("k", "short", 0.001)
        time.sleep(0.01)
        assert cache.get("k") is None

    def test_overwrite_extends_short_ttl(self, cache):
        cache.set("k", "short", 0.001)
        cache.set("k", "long", 60)
        time.sleep(0.01)
        assert cache.get("k") == "long"

    def test_default_ttl_is_used(self):
        service = CacheService(default_ttl=0.001, cleanup_interval_ms=60_000)
        try:
            service.set("d", "v")
            time.sleep(0.01)
            assert service.get("d") is None
        finally:
            service.destroy()

    def test_typed_models_come_back_unchanged(self, cache):
        stats = [PaymentStats(date="2024-05-01", amount=1500.0, count=3)]
        cache.set("dashboard:payments", stats, 60)
        assert cache.get("dashboard:payments") == stats

    def test_negative_ttl_is_rejected(self, cache):
        with pytest.raises(ValueError):
            cache.set("k", "v", -1)

    @pytest.mark.parametrize("bad_ttl", [math.nan, math.inf, -math.inf, "60", True])
    def test_non_finite_or_non_numeric_ttl_is_rejected(self, cache, bad_ttl):
        with pytest.raises(ValueError):
            cache.set("n", "v", bad_ttl)
        assert cache.size() == 0

    @pytest.mark.parametrize("bad_key", [1, None, ("a",), b"bytes"])
    def test_non_string_keys_fail_fast(self, cache, bad_key):
        with pytest.raises(TypeError):
            cache.set(bad_key, "v", 60)
        with pytest.raises(TypeError):
            cache.get(bad_key)
        with pytest.raises(TypeError):
            cache.has(bad_key)
        with pytest.raises(TypeError):
            cache.delete(bad_key)


class TestRemoval:

    def test_delete(self, cache):
        cache.set("k", "v", 60)
        cache.delete("k")
        assert cache.get("k") is None
        assert cache.has("k") is False

    def test_delete_absent_key_is_noop(self, cache):
        cache.delete("nothing-here")
        assert cache.size() == 0

    def test_delete_updates_size(self, cache):
        cache.set("k1", "v1", 60)
        cache.set("k2", "v2", 60)
        assert cache.size() == 2
        cache.delete("k1")
        assert cache.size() == 1

    def test_clear(self, cache):
        cache.set("key1", "value1", 60)
        cache.set("key2", "value2", 60)
        cache.clear()
        assert cache.size() == 0
        assert cache.get("key1") is None
        assert cache.get("key2") is None

    def test_delete_pattern(self, cache):
        cache.set("dashboard:payments:a:b", 1, 60)
        cache.set("dashboard:payments:c:d", 2, 60)
        cache.set("dashboard:stats", 3, 60)
        assert cache.delete_pattern("dashboard:payments:*") == 2
        assert cache.keys() == ["dashboard:stats"]


class TestIntrospection:

    def test_has(self, cache):
        cache.set("k", "v", 60)
        assert cache.has("k") is True
        assert "k" in cache
        assert cache.has("other") is False

    def test_size_matches_keys(self, cache):
        for i in range(5):
            cache.set(f"k{i}", i, 60)
        assert cache.size() == len(cache.keys()) == len(cache) == 5

    def test_size_counts_unswept_stale_entries(self):
        service = CacheService(cleanup_interval_ms=60_000)
        try:
            service.set("fresh", 1, 60)
            service.set("stale", 2, 0.001)
            time.sleep(0.01)
            assert service.size() == 2
            assert sorted(service.keys()) == ["fresh", "stale"]
        finally:
            service.destroy()

    def test_stats(self, cache):
        cache.set("key1", "value1", 60)
        cache.set("key2", {"complex": "object"}, 60)

        stats = cache.stats()

        assert stats["size"] == 2
        assert set(stats["keys"]) == {"key1", "key2"}
        assert re.fullmatch(r"\d+(\.\d+)? (Bytes|KB|MB|GB)", stats["memoryUsage"])

    def test_stats_on_empty_cache(self, cache):
        assert cache.stats() == {"size": 0, "keys": [], "memoryUsage": "2 Bytes"}

    def test_stats_handles_datetimes_and_models(self, cache):
        cache.set("ts", datetime(2024, 5, 1, tzinfo=timezone.utc), 60)
        cache.set("model", PaymentStats(date="2024-05-01", amount=10, count=1), 60)
        assert cache.stats()["size"] == 2


class TestFormatBytes:

    @pytest.mark.parametrize(
        "num_bytes, expected",
        [
            (0, "0 Bytes"),
            (512, "512 Bytes"),
            (1024, "1 KB"),
            (1536, "1.5 KB"),
            (12636, "12.34 KB"),
            (1024 ** 2, "1 MB"),
            (5 * 1024 ** 3, "5 GB"),
            (2048 * 1024 ** 3, "2048 GB"),
        ],
    )
    def test_units(self, num_bytes, expected):
        assert format_bytes(num_bytes) == expected


class TestSweepAndLifecycle:

    def test_sweep_removes_unread_expired_entries(self, cache):
        cache.set("write-once", "v", 0.001)
        cache.set("kept", "v", 60)
        deadline = time.time() + 2
        while cache.size() > 1 and time.time() < deadline:
            time.sleep(0.02)
        assert cache.keys() == ["kept"]

    def test_sweep_survives_a_failing_pass(self, cache, monkeypatch):
        calls = {"n": 0}
        original = cache._evict_expired

        def flaky():
            calls["n"] += 1
            if calls["n"] == 1:
                raise RuntimeError("boom")
            return original()

        monkeypatch.setattr(cache, "_evict_expired", flaky)
        cache.set("gone", "v", 0.001)

        deadline = time.time() + 2
        while cache.size() and time.time() < deadline:
            time.sleep(0.02)

        assert calls["n"] >= 2
        assert cache.size() == 0

    def test_destroy_stops_sweep_and_clears(self):
        service = CacheService(cleanup_interval_ms=50)
        service.set("k", "v", 60)
        service.destroy()
        assert service.destroyed
        assert service.size() == 0
        assert not service._sweeper.is_alive()

    def test_double_destroy_is_safe(self):
        service = CacheService(cleanup_interval_ms=50)
        service.destroy()
        service.destroy()

    def test_context_manager_destroys(self):
        with CacheService(cleanup_interval_ms=50) as service:
            service.set("k", "v", 60)
        assert service.destroyed
        assert service.size() == 0

    def test_invalid_cleanup_interval(self):
        with pytest.raises(ValueError):
            CacheService(cleanup_interval_ms=0)


class TestConcurrency:

    def test_parallel_writers_do_not_corrupt_store(self, cache):
        def writer(n: int) -> None:
            for i in range(200):
                cache.set(f"w{n}:{i % 20}", i, 60)
                cache.get(f"w{(n + 1) % 8}:{i % 20}")

        threads = [threading.Thread(target=writer, args=(n,)) for n in range(8)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert cache.size() == 8 * 20
        assert all(cache.get(f"w{n}:19") == 199 for n in range(8))
