"""
Lockout heuristics.

Two independent triggers put a key into a five-minute lock:

* two consecutive failed logins for one username inside the failure window;
* more than fifty requests from one client inside any ten-second window.

Locks are persisted in MongoDB so a restart does not lift them, and every
transition is appended to the security log. Request timestamps for the rate
limit are kept in process memory.
"""
import logging
import threading
from collections import deque
from datetime import datetime, timedelta
from typing import Callable, Optional

from fastapi import Depends, Request
from pymongo.database import Database

from database import LOCKOUTS, LOGIN_ATTEMPTS, SECURITY_LOGS, as_utc, get_db, utcnow
from errors import LockedOutError

logger = logging.getLogger(__name__)

LOCKOUT_DURATION = timedelta(minutes=5)
FAILED_LOGIN_LIMIT = 2
FAILED_LOGIN_WINDOW = timedelta(minutes=5)
RATE_LIMIT_MAX_CALLS = 50
RATE_LIMIT_WINDOW = timedelta(seconds=10)

USER_SCOPE = "user"
IP_SCOPE = "ip"


class SlidingWindowCounter:
    """
    Counts events per key over a trailing time window.

    Safe to share between request threads. Keys with no event inside the
    window are dropped, at most once per window, so idle clients do not
    accumulate.
    """

    def __init__(self, limit: int, window: timedelta):
        self.limit = limit
        self.window = window
        self._events: dict[str, deque] = {}
        self._lock = threading.Lock()
        self._last_sweep: Optional[datetime] = None

    def __len__(self) -> int:
        with self._lock:
            return len(self._events)

    def _sweep(self, cutoff: datetime) -> None:
        stale = [key for key, events in self._events.items() if not events or events[-1] <= cutoff]
        for key in stale:
            del self._events[key]

    def hit(self, key: str, now: datetime) -> bool:
        """Record an event; True once the window holds more than ``limit`` events."""
        cutoff = now - self.window
        with self._lock:
            if self._last_sweep is None or now - self._last_sweep >= self.window:
                self._sweep(cutoff)
                self._last_sweep = now
            events = self._events.setdefault(key, deque())
            events.append(now)
            while events and events[0] <= cutoff:
                events.popleft()
            return len(events) > self.limit

    def count(self, key: str) -> int:
        with self._lock:
            return len(self._events.get(key, ()))

    def reset(self, key: str) -> None:
        with self._lock:
            self._events.pop(key, None)


class LockoutStore:
    """Lock state and failed-login counters kept in MongoDB."""

    def __init__(self, db: Database):
        self.locks = db[LOCKOUTS]
        self.attempts = db[LOGIN_ATTEMPTS]
        self.logs = db[SECURITY_LOGS]

    def locked_until(self, scope: str, key: str, now: datetime) -> Optional[datetime]:
        doc = self.locks.find_one({"scope": scope, "key": key})
        if doc is None:
            return None
        until = as_utc(doc["lockedUntil"])
        if until <= now:
            self.locks.delete_one({"_id": doc["_id"]})
            self.write_log(f"Lockout expired for {scope} {key}", now)
            return None
        return until

    def ensure_unlocked(self, scope: str, key: str, now: datetime) -> None:
        until = self.locked_until(scope, key, now)
        if until is not None:
            raise LockedOutError(until)

    def lock(self, scope: str, key: str, reason: str, now: datetime) -> datetime:
        until = now + LOCKOUT_DURATION
        self.locks.update_one(
            {"scope": scope, "key": key},
            {"$set": {"lockedUntil": until, "reason": reason}},
            upsert=True,
        )
        logger.warning("Locked %s %s until %s: %s", scope, key, until.isoformat(), reason)
        self.write_log(f"Locked {scope} {key}: {reason}", now)
        return until

    def record_failed_login(self, username: str, now: datetime) -> Optional[datetime]:
        """Count a failure; returns the lock expiry when this failure triggers a lock."""
        doc = self.attempts.find_one({"username": username}) or {}
        cutoff = now - FAILED_LOGIN_WINDOW
        failures = [as_utc(ts) for ts in doc.get("failures", []) if as_utc(ts) > cutoff]
        failures.append(now)
        if len(failures) >= FAILED_LOGIN_LIMIT:
            self.attempts.delete_one({"username": username})
            return self.lock(
                USER_SCOPE, username, f"{len(failures)} consecutive failed logins", now
            )
        self.attempts.update_one(
            {"username": username}, {"$set": {"failures": failures}}, upsert=True
        )
        return None

    def clear_failed_logins(self, username: str) -> None:
        self.attempts.delete_one({"username": username})

    def write_log(self, reason: str, now: datetime) -> None:
        self.logs.insert_one({"reason": reason, "timestamp": now})


class RequestRateLimiter:
    """Per-client request counter backing the rate-limit lock."""

    def __init__(
        self,
        max_calls: int = RATE_LIMIT_MAX_CALLS,
        window: timedelta = RATE_LIMIT_WINDOW,
    ):
        self.counter = SlidingWindowCounter(max_calls, window)

    def check(self, client_key: str, store: LockoutStore, now: datetime) -> None:
        store.ensure_unlocked(IP_SCOPE, client_key, now)
        if self.counter.hit(client_key, now):
            self.counter.reset(client_key)
            reason = (
                f"more than {self.counter.limit} requests in "
                f"{int(self.counter.window.total_seconds())}s"
            )
            until = store.lock(IP_SCOPE, client_key, reason, now)
            raise LockedOutError(until, reason)


_rate_limiter = RequestRateLimiter()


def get_rate_limiter() -> RequestRateLimiter:
    return _rate_limiter


def get_clock() -> Callable[[], datetime]:
    return utcnow


def get_lockout_store(db: Database = Depends(get_db)) -> LockoutStore:
    return LockoutStore(db)


def enforce_rate_limit(
    request: Request,
    store: LockoutStore = Depends(get_lockout_store),
    limiter: RequestRateLimiter = Depends(get_rate_limiter),
    clock: Callable[[], datetime] = Depends(get_clock),
) -> None:
    client_key = request.client.host if request.client else "unknown"
    limiter.check(client_key, store, clock())
