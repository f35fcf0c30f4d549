from __future__ import annotations

from typing import Optional

from redis import Redis

from campusauth.logging import get_logger
from campusauth.service.errors import TooManyAttemptsError
from campusauth.service.rate_limit import RATE_LIMITED_MESSAGE

logger = get_logger(__name__)


class RedisLoginRateLimiter:
    """Fixed-window login failure counter shared by every API worker.

    The window opens on the first recorded failure for a key and closes when
    the Redis key expires, so counters survive process restarts.
    """

    DEFAULT_OPERATION_TIMEOUT = 5.0

    # Atomic increment; the TTL is only set when the window opens
    _RECORD_FAILURE_SCRIPT = """
local attempts = redis.call('INCR', KEYS[1])
if attempts == 1 then
  redis.call('EXPIRE', KEYS[1], tonumber(ARGV[1]))
end
return attempts
"""

    def __init__(
        self,
        redis_url: str,
        *,
        max_attempts: int = 10,
        window_seconds: int = 900,
        socket_timeout: float = DEFAULT_OPERATION_TIMEOUT,
        client: Optional[Redis] = None,
        key_prefix: str = "login_rate",
    ) -> None:
        self.redis_url = redis_url
        self.max_attempts = max_attempts
        self.window_seconds = window_seconds
        self.key_prefix = key_prefix
        self.client = client or Redis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )
        self._record_failure = self.client.register_script(self._RECORD_FAILURE_SCRIPT)

    def verify_connection(self) -> None:
        self.client.ping()

    def _key(self, key: str) -> str:
        return f"{self.key_prefix}:{key}"

    def attempts(self, key: str) -> int:
        raw = self.client.get(self._key(key))
        return int(raw) if raw else 0

    def check_allowed(self, key: str) -> None:
        attempts = self.attempts(key)
        if attempts >= self.max_attempts:
            logger.warning("login_rate_limited", key=key, attempts=attempts, backend="redis")
            raise TooManyAttemptsError(RATE_LIMITED_MESSAGE)

    def record_failure(self, key: str) -> int:
        return int(
            self._record_failure(keys=[self._key(key)], args=[self.window_seconds])
        )
