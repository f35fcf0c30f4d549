from __future__ import annotations

import asyncio
import contextlib
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any, Dict, List

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from campusauth.api.error_handling import register_exception_handlers
from campusauth.api.routes import router
from campusauth.config import get_settings
from campusauth.logging import get_logger, set_correlation_id
from campusauth.service.rate_limit import RateLimiter

logger = get_logger(__name__)

_settings = get_settings()

__version__ = "0.1.0"

RATE_LIMIT_CLEANUP_INTERVAL_SECONDS = 300
HEALTH_CHECK_TIMEOUT_SECONDS = 3

_cleanup_task: asyncio.Task | None = None


async def _run_rate_limit_cleanup(interval_seconds: int) -> None:
    """Drop elapsed login windows so the in-process limiter stays bounded."""
    from campusauth.service.runtime import get_runtime

    while True:
        await asyncio.sleep(interval_seconds)
        limiter = get_runtime().rate_limiter
        if isinstance(limiter, RateLimiter):
            limiter.cleanup_expired()


@asynccontextmanager
async def lifespan(app: FastAPI):
    global _cleanup_task
    from campusauth.service.runtime import get_runtime

    runtime = get_runtime()
    if isinstance(runtime.rate_limiter, RateLimiter):
        _cleanup_task = asyncio.create_task(
            _run_rate_limit_cleanup(RATE_LIMIT_CLEANUP_INTERVAL_SECONDS)
        )

    yield

    if _cleanup_task:
        _cleanup_task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await _cleanup_task
        _cleanup_task = None
    logger.info("runtime_shutdown_complete")


app = FastAPI(title="Campus LMS Auth", version=__version__, lifespan=lifespan)


def _allowed_origins() -> List[str]:
    if _settings.cors_allow_origins:
        return _settings.cors_allow_origins
    # The refresh cookie needs credentials, so never a wildcard
    return ["http://localhost:5173", "http://127.0.0.1:5173"]


app.add_middleware(
    CORSMiddleware,
    allow_origins=_allowed_origins(),
    allow_credentials=True,
    allow_methods=["GET", "POST", "OPTIONS"],
    allow_headers=["Content-Type", "Authorization", "X-Request-ID"],
    expose_headers=["X-Request-ID"],
    max_age=3600,
)


@app.middleware("http")
async def add_correlation_id(request, call_next):
    """Tag logs with the caller's X-Request-ID (or a fresh uuid) and echo it back."""
    correlation_id = set_correlation_id(request.headers.get("X-Request-ID"))
    response = await call_next(request)
    response.headers["X-Request-ID"] = correlation_id
    return response


@app.middleware("http")
async def add_security_headers(request, call_next):
    response = await call_next(request)
    response.headers.setdefault("X-Frame-Options", "DENY")
    response.headers.setdefault("X-Content-Type-Options", "nosniff")
    response.headers.setdefault("Referrer-Policy", "strict-origin-when-cross-origin")
    if request.url.path.startswith("/api/auth/"):
        response.headers.setdefault("Cache-Control", "no-store")
    return response


register_exception_handlers(app)
app.include_router(router)


@app.get("/healthz")
async def health() -> Dict[str, Any]:
    """Report store and rate-limiter reachability."""
    from campusauth.service.runtime import get_runtime

    runtime = get_runtime()
    checks: Dict[str, Dict[str, Any]] = {}

    async def _run_bounded(label: str, func) -> bool:
        try:
            await asyncio.wait_for(asyncio.to_thread(func), HEALTH_CHECK_TIMEOUT_SECONDS)
            return True
        except asyncio.TimeoutError:
            logger.error(
                "health_check_timeout", component=label, timeout=HEALTH_CHECK_TIMEOUT_SECONDS
            )
        except Exception as exc:
            logger.error("health_check_failed", component=label, error=str(exc))
        return False

    if hasattr(runtime.store, "_connect"):
        def _db_probe() -> None:
            with runtime.store._connect() as conn:
                conn.execute("SELECT 1").fetchone()

        db_ok = await _run_bounded("database", _db_probe)
        checks["database"] = {"status": "healthy" if db_ok else "unhealthy"}
    else:
        db_ok = True
        checks["database"] = {"status": "healthy", "type": "memory"}

    limiter = runtime.rate_limiter
    if hasattr(limiter, "verify_connection"):
        redis_ok = await _run_bounded("redis", limiter.verify_connection)
        checks["rate_limiter"] = {
            "status": "healthy" if redis_ok else "unhealthy",
            "type": "redis",
        }
    else:
        redis_ok = True
        checks["rate_limiter"] = {"status": "healthy", "type": "memory"}

    return {
        "status": "healthy" if db_ok and redis_ok else "unhealthy",
        "checks": checks,
        "version": __version__,
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }
