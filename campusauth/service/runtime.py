from __future__ import annotations

import threading
from typing import Optional, Union
from urllib.parse import urlparse, urlunparse

from campusauth.config import RateLimitBackend, get_settings, reset_settings_cache
from campusauth.logging import get_logger
from campusauth.service.audit import StoreAuditSink
from campusauth.service.auth import AuthSessionManager
from campusauth.service.email import EmailService
from campusauth.service.passwords import PasswordHashing, PasswordPolicy
from campusauth.service.rate_limit import RateLimiter
from campusauth.service.refresh_tokens import RefreshTokenStore
from campusauth.service.tokens import TokenCodec, make_ledger
from campusauth.storage.memory import MemoryStore
from campusauth.storage.postgres import PostgresStore
from campusauth.storage.redis_cache import RedisLoginRateLimiter

logger = get_logger(__name__)


def _mask_url_password(url: Optional[str]) -> Optional[str]:
    """Replace the password component of a URL with ``***`` for logging."""
    if not url:
        return url
    try:
        parsed = urlparse(url)
    except ValueError:
        return "***url_parse_error***"
    if not parsed.password:
        return url
    netloc = parsed.hostname or ""
    if parsed.port:
        netloc = f"{netloc}:{parsed.port}"
    netloc = f"{parsed.username or ''}:***@{netloc}"
    return urlunparse(
        (parsed.scheme, netloc, parsed.path, parsed.params, parsed.query, parsed.fragment)
    )


class Runtime:
    """Holds singleton service instances for the FastAPI app."""

    def __init__(self):
        self.settings = get_settings()
        logger.info(
            "runtime_init_started",
            use_memory_store=self.settings.use_memory_store,
            rate_limit_backend=self.settings.rate_limit_backend.value,
            test_mode=self.settings.test_mode,
        )

        store_type = "memory" if self.settings.use_memory_store else "postgres"
        try:
            self.store: Union[MemoryStore, PostgresStore] = (
                MemoryStore(fs_root=self.settings.shared_fs_root)
                if self.settings.use_memory_store
                else PostgresStore(
                    self.settings.database_url, fs_root=self.settings.shared_fs_root
                )
            )
        except Exception as exc:
            logger.error(
                "runtime_store_init_failed",
                store_type=store_type,
                database_url=_mask_url_password(self.settings.database_url),
                error_type=type(exc).__name__,
                error=str(exc),
            )
            raise
        logger.info("runtime_store_initialized", store_type=store_type)

        self.rate_limiter = self._build_rate_limiter()
        self.passwords = PasswordHashing()
        self.tokens = TokenCodec(self.settings)
        self.refresh_tokens = RefreshTokenStore(
            self.store, ttl_days=self.settings.refresh_token_ttl_days
        )
        self.email = EmailService(
            smtp_host=self.settings.smtp_host,
            smtp_port=self.settings.smtp_port,
            smtp_user=self.settings.smtp_user,
            smtp_password=self.settings.smtp_password,
            smtp_use_tls=self.settings.smtp_use_tls,
            from_email=self.settings.email_from_address,
            from_name=self.settings.email_from_name,
        )
        self.auth = AuthSessionManager(
            self.store,
            self.tokens,
            self.refresh_tokens,
            self.rate_limiter,
            StoreAuditSink(self.store),
            self.email,
            self.settings,
            passwords=self.passwords,
            policy=PasswordPolicy(),
            reset_ledger=make_ledger(self.settings),
        )

    def _build_rate_limiter(self) -> Union[RateLimiter, RedisLoginRateLimiter]:
        settings = self.settings
        if settings.rate_limit_backend == RateLimitBackend.REDIS:
            if not settings.redis_url:
                raise RuntimeError("RATE_LIMIT_BACKEND=redis requires REDIS_URL")
            try:
                limiter = RedisLoginRateLimiter(
                    settings.redis_url,
                    max_attempts=settings.login_rate_limit_attempts,
                    window_seconds=settings.login_rate_limit_window_seconds,
                )
                limiter.verify_connection()
                return limiter
            except Exception as exc:
                logger.error(
                    "redis_rate_limiter_unavailable",
                    redis_url=_mask_url_password(settings.redis_url),
                    error=str(exc),
                )
                if not settings.test_mode:
                    raise RuntimeError(
                        "Redis is required for RATE_LIMIT_BACKEND=redis; start Redis "
                        "or set RATE_LIMIT_BACKEND=memory."
                    ) from exc
                logger.warning("rate_limiter_fallback_memory")
        return RateLimiter(
            settings.login_rate_limit_attempts,
            settings.login_rate_limit_window_seconds,
        )


runtime: Optional[Runtime] = None
_runtime_lock = threading.Lock()


def get_runtime() -> Runtime:
    """Get or create the Runtime singleton (double-checked locking)."""
    global runtime
    if runtime is not None:
        return runtime
    with _runtime_lock:
        if runtime is None:
            runtime = Runtime()
        return runtime


def reset_runtime_for_tests() -> Runtime:
    """Reinitialize the runtime singleton for isolated test runs."""
    global runtime

    with _runtime_lock:
        if runtime is not None and isinstance(runtime.rate_limiter, RedisLoginRateLimiter):
            runtime.rate_limiter.client.close()
        reset_settings_cache()
        settings = get_settings()
        if not settings.test_mode:
            raise RuntimeError("runtime reset is only allowed in TEST_MODE")
        runtime = Runtime()
        return runtime
