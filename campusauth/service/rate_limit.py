from __future__ import annotations

import threading
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Dict, List, Protocol

from campusauth.logging import get_logger
from campusauth.service.errors import TooManyAttemptsError

logger = get_logger(__name__)

RATE_LIMITED_MESSAGE = "Too many login attempts. Please try again later."


class LoginRateLimiter(Protocol):
    def check_allowed(self, key: str) -> None: ...

    def record_failure(self, key: str) -> int: ...


@dataclass
class LoginRateRecord:
    window_start: datetime
    attempts: int = 0


class RateLimiter:
    """Fixed-window counter of failed logins per client key.

    Keys are spread over ``stripes`` independent locks, each guarding its own
    shard of records, so updates to one key are atomic and unrelated keys do
    not contend on a single global lock. State is process-local and is lost
    on restart.
    """

    def __init__(
        self,
        max_attempts: int = 10,
        window_seconds: int = 900,
        *,
        stripes: int = 64,
    ) -> None:
        if stripes <= 0:
            raise ValueError("stripes must be positive")
        self.max_attempts = max_attempts
        self.window_seconds = window_seconds
        self._locks: List[threading.Lock] = [threading.Lock() for _ in range(stripes)]
        self._shards: List[Dict[str, LoginRateRecord]] = [{} for _ in range(stripes)]

    def _now(self) -> datetime:
        return datetime.now(timezone.utc)

    def _stripe(self, key: str) -> int:
        return hash(key) % len(self._locks)

    def _current(self, shard: Dict[str, LoginRateRecord], key: str, now: datetime) -> LoginRateRecord:
        """Return the live window for ``key``, opening a new one if stale or absent.

        Caller must hold the stripe lock.
        """
        record = shard.get(key)
        if record is None:
            record = LoginRateRecord(window_start=now)
            shard[key] = record
        elif (now - record.window_start).total_seconds() > self.window_seconds:
            record.window_start = now
            record.attempts = 0
        return record

    def check_allowed(self, key: str) -> None:
        now = self._now()
        idx = self._stripe(key)
        with self._locks[idx]:
            attempts = self._current(self._shards[idx], key, now).attempts
        if attempts >= self.max_attempts:
            logger.warning("login_rate_limited", key=key, attempts=attempts, backend="memory")
            raise TooManyAttemptsError(RATE_LIMITED_MESSAGE)

    def record_failure(self, key: str) -> int:
        now = self._now()
        idx = self._stripe(key)
        with self._locks[idx]:
            record = self._current(self._shards[idx], key, now)
            record.attempts += 1
            return record.attempts

    def attempts(self, key: str) -> int:
        idx = self._stripe(key)
        with self._locks[idx]:
            record = self._shards[idx].get(key)
            return record.attempts if record else 0

    def cleanup_expired(self) -> int:
        """Drop records whose window has elapsed; returns how many were removed."""
        now = self._now()
        removed = 0
        for lock, shard in zip(self._locks, self._shards):
            with lock:
                stale = [
                    key
                    for key, record in shard.items()
                    if (now - record.window_start).total_seconds() > self.window_seconds
                ]
                for key in stale:
                    del shard[key]
                removed += len(stale)
        if removed:
            logger.debug("login_rate_cleanup", removed=removed)
        return removed
