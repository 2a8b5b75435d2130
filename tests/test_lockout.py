"""Tests for the sliding-window counter, lock store and request rate limit."""

import threading
from datetime import datetime, timedelta, timezone

import pytest

from database import LOCKOUTS, SECURITY_LOGS
from errors import LockedOutError
from lockout import IP_SCOPE, USER_SCOPE, LockoutStore, SlidingWindowCounter

T0 = datetime(2026, 3, 2, 12, 0, tzinfo=timezone.utc)


class TestSlidingWindowCounter:
    def test_exceeds_after_limit(self):
        counter = SlidingWindowCounter(3, timedelta(seconds=10))
        assert [counter.hit("k", T0) for _ in range(4)] == [False, False, False, True]

    def test_old_events_fall_out(self):
        counter = SlidingWindowCounter(2, timedelta(seconds=10))
        counter.hit("k", T0)
        counter.hit("k", T0 + timedelta(seconds=1))
        assert not counter.hit("k", T0 + timedelta(seconds=10))
        assert counter.count("k") == 2

    def test_keys_are_independent(self):
        counter = SlidingWindowCounter(1, timedelta(seconds=10))
        counter.hit("a", T0)
        assert not counter.hit("b", T0)
        assert counter.hit("a", T0)

    def test_reset(self):
        counter = SlidingWindowCounter(1, timedelta(seconds=10))
        counter.hit("a", T0)
        counter.reset("a")
        assert counter.count("a") == 0

    def test_idle_keys_are_dropped(self):
        counter = SlidingWindowCounter(5, timedelta(seconds=10))
        for n in range(100):
            counter.hit(f"10.0.0.{n}", T0)
        assert len(counter) == 100
        counter.hit("10.0.1.1", T0 + timedelta(seconds=11))
        assert len(counter) == 1
        assert counter.count("10.0.0.1") == 0

    def test_concurrent_hits(self):
        counter = SlidingWindowCounter(1000, timedelta(seconds=10))
        errors = []

        def worker(offset):
            try:
                for i in range(200):
                    counter.hit("shared", T0 + timedelta(milliseconds=offset + i))
                    counter.hit(f"own-{offset}", T0)
                    counter.count("shared")
            except Exception as e:
                errors.append(e)

        threads = [threading.Thread(target=worker, args=(n,)) for n in range(8)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()
        assert errors == []
        assert counter.count("shared") == 1600
        assert len(counter) == 9


class TestLockoutStore:
    def test_lock_and_expire(self, db):
        store = LockoutStore(db)
        until = store.lock(IP_SCOPE, "10.0.0.1", "burst", T0)
        assert until == T0 + timedelta(minutes=5)
        assert store.locked_until(IP_SCOPE, "10.0.0.1", T0 + timedelta(minutes=4)) == until
        assert store.locked_until(IP_SCOPE, "10.0.0.1", T0 + timedelta(minutes=5)) is None
        assert db[LOCKOUTS].count_documents({}) == 0

    def test_ensure_unlocked_raises(self, db):
        store = LockoutStore(db)
        store.lock(USER_SCOPE, "owner", "test", T0)
        with pytest.raises(LockedOutError) as exc_info:
            store.ensure_unlocked(USER_SCOPE, "owner", T0)
        assert exc_info.value.locked_until == T0 + timedelta(minutes=5)

    def test_lock_survives_new_store(self, db):
        LockoutStore(db).lock(USER_SCOPE, "owner", "test", T0)
        assert LockoutStore(db).locked_until(USER_SCOPE, "owner", T0) is not None

    def test_second_failure_locks(self, db):
        store = LockoutStore(db)
        assert store.record_failed_login("owner", T0) is None
        until = store.record_failed_login("owner", T0 + timedelta(seconds=30))
        assert until == T0 + timedelta(seconds=30, minutes=5)

    def test_clear_failed_logins(self, db):
        store = LockoutStore(db)
        store.record_failed_login("owner", T0)
        store.clear_failed_logins("owner")
        assert store.record_failed_login("owner", T0) is None

    def test_transitions_are_logged(self, db):
        store = LockoutStore(db)
        store.lock(USER_SCOPE, "owner", "test", T0)
        store.locked_until(USER_SCOPE, "owner", T0 + timedelta(minutes=6))
        reasons = [log["reason"] for log in db[SECURITY_LOGS].find()]
        assert reasons == ["Locked user owner: test", "Lockout expired for user owner"]


class TestRequestRateLimit:
    def test_fifty_calls_allowed_then_locked(self, api_client, db):
        for _ in range(50):
            assert api_client.get("/api/products").status_code == 200
        response = api_client.get("/api/products")
        assert response.status_code == 429
        assert "more than 50 requests" in response.json()["message"]
        assert db[LOCKOUTS].find_one({"scope": IP_SCOPE})["key"] == "testclient"

        # every endpoint is blocked while locked
        assert api_client.post("/api/contact", json={}).status_code == 429

    def test_lock_lifts_after_five_minutes(self, api_client, clock):
        for _ in range(51):
            api_client.get("/api/products")
        clock.advance(minutes=4)
        assert api_client.get("/api/products").status_code == 429
        clock.advance(minutes=1)
        assert api_client.get("/api/products").status_code == 200

    def test_calls_spread_over_window_are_fine(self, api_client, clock):
        for _ in range(60):
            clock.advance(seconds=1)
            assert api_client.get("/api/products").status_code == 200
