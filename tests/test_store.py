"""Tests for the TTL store and the manual clock."""

from datetime import datetime, timezone

from tradegate.clock import ManualClock, today
from tradegate.store import TTLStore


class TestManualClock:
    def test_default_start_is_utc(self):
        clock = ManualClock()
        assert clock.now() == datetime(2025, 1, 1, tzinfo=timezone.utc)

    def test_naive_start_treated_as_utc(self):
        clock = ManualClock(datetime(2025, 3, 1, 12))
        assert clock.now().tzinfo is timezone.utc

    def test_advance_and_today(self):
        clock = ManualClock()
        clock.advance(days=1, hours=2)
        assert today(clock).isoformat() == "2025-01-02"


class TestTTLStore:
    def test_get_within_ttl(self):
        clock = ManualClock()
        store = TTLStore(30, clock)
        store.set("USDT", 100.0)
        clock.advance(seconds=29)
        assert store.get("USDT") == 100.0
        assert "USDT" in store

    def test_expires_at_ttl(self):
        clock = ManualClock()
        store = TTLStore(30, clock)
        store.set("USDT", 100.0)
        clock.advance(seconds=30)
        assert store.get("USDT") is None
        assert "USDT" not in store
        assert len(store) == 0

    def test_peek_ignores_expiry(self):
        clock = ManualClock()
        store = TTLStore(30, clock)
        store.set("USDT", 100.0)
        clock.advance(minutes=5)
        assert store.peek("USDT") == 100.0
        assert store.age_seconds("USDT") == 300

    def test_no_ttl_never_expires(self):
        clock = ManualClock()
        store = TTLStore(None, clock)
        store.set("BTCUSDT", "trade")
        clock.advance(days=365)
        assert store.items() == [("BTCUSDT", "trade")]

    def test_delete_and_evict(self):
        clock = ManualClock()
        store = TTLStore(10, clock)
        store.set("a", 1)
        store.set("b", 2)
        assert store.delete("a") is True
        assert store.delete("a") is False
        clock.advance(seconds=11)
        store.set("c", 3)
        assert store.evict_expired() == 1
        assert store.keys() == ["c"]
        assert list(store) == ["c"]

    def test_get_default(self):
        store = TTLStore(10, ManualClock())
        assert store.get("missing", 0.0) == 0.0
