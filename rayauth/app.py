from __future__ import annotations

import asyncio
import contextlib
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from rayauth.api.error_handling import register_exception_handlers
from rayauth.api.routes import router
from rayauth.config import Settings
from rayauth.logging import bind_request_id, get_logger

logger = get_logger(__name__)

_settings = Settings.from_env()

__version__ = "0.1.0"

_sweep_task: asyncio.Task | None = None


async def _run_session_sweep(runtime, interval_seconds: int) -> None:
    """Deactivate expired sessions every ``interval_seconds`` until cancelled."""
    while True:
        await asyncio.sleep(interval_seconds)
        try:
            await asyncio.to_thread(runtime.auth.cleanup_expired_sessions)
        except Exception as exc:
            logger.error("session_sweep_failed", error_type=type(exc).__name__, error=str(exc))


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Start the expired-session sweep; drain notifications on shutdown."""
    global _sweep_task
    from rayauth.service.runtime import get_runtime

    runtime = get_runtime()
    interval = runtime.settings.session_cleanup_interval_seconds
    if interval > 0 and not runtime.settings.test_mode:
        _sweep_task = asyncio.create_task(_run_session_sweep(runtime, interval))
        logger.info("session_sweep_started", interval_seconds=interval)

    yield

    if _sweep_task:
        _sweep_task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await _sweep_task
        _sweep_task = None
    await runtime.auth.drain_notifications()
    if runtime.cache is not None:
        await runtime.cache.close()
    if hasattr(runtime.store, "close"):
        runtime.store.close()
    logger.info("runtime_cleanup_complete")


app = FastAPI(title="Raya Auth", version=__version__, lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=_settings.cors_origins,
    allow_credentials=True,
    allow_methods=["GET", "POST", "DELETE", "OPTIONS"],
    allow_headers=["Content-Type", "Authorization", "X-Request-ID", "X-Session-ID"],
    expose_headers=[
        "X-Request-ID",
        "X-RateLimit-Limit",
        "X-RateLimit-Remaining",
        "X-RateLimit-Reset",
        "Retry-After",
    ],
    max_age=3600,
)


@app.middleware("http")
async def add_request_id(request, call_next):
    """Propagate ``X-Request-ID`` (or a fresh UUID) into logs and the response."""
    request_id = bind_request_id(request.headers.get("X-Request-ID"))
    response = await call_next(request)
    response.headers["X-Request-ID"] = request_id
    return response


@app.middleware("http")
async def add_security_headers(request, call_next):
    response = await call_next(request)
    response.headers.setdefault("X-Frame-Options", "DENY")
    response.headers.setdefault("X-Content-Type-Options", "nosniff")
    response.headers.setdefault("Referrer-Policy", "strict-origin-when-cross-origin")
    # Token-bearing responses must never be cached
    if request.url.path.startswith("/v1/") or request.url.path == "/healthz":
        response.headers.setdefault("Cache-Control", "no-store, no-cache, must-revalidate, private")
    if request.url.scheme == "https":
        response.headers.setdefault(
            "Strict-Transport-Security", "max-age=63072000; includeSubDomains"
        )
    return response


register_exception_handlers(app)
app.include_router(router)


HEALTH_CHECK_TIMEOUT_SECONDS = 3


@app.get("/healthz")
async def health() -> Dict[str, Any]:
    """Dependency checks for the store, Redis and the state directory."""
    from rayauth.service.runtime import get_runtime

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

    runtime = get_runtime()
    if hasattr(runtime.store, "verify_connection"):
        db_ok = await _run_bounded("database", runtime.store.verify_connection)
        checks["database"] = {"status": "healthy" if db_ok else "unhealthy"}
    else:
        db_ok = True
        checks["database"] = {"status": "healthy", "type": "memory"}

    redis_ok = True
    if runtime.cache is not None:
        redis_ok = await _run_bounded("redis", runtime.cache.verify_connection)
        checks["redis"] = {"status": "healthy" if redis_ok else "unhealthy"}
    else:
        checks["redis"] = {"status": "not_configured"}

    fs_path = Path(runtime.settings.shared_fs_root)

    def _fs_check() -> None:
        if not fs_path.is_dir():
            raise FileNotFoundError(fs_path)

    fs_ok = await _run_bounded("filesystem", _fs_check)
    checks["filesystem"] = {"status": "healthy" if fs_ok else "unhealthy"}

    healthy = db_ok and redis_ok and fs_ok
    return {
        "status": "healthy" if healthy else "unhealthy",
        "checks": checks,
        "version": __version__,
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }
