from __future__ import annotations

import asyncio
import threading
from datetime import datetime, timedelta
from typing import Dict, Optional, Tuple, Union
from urllib.parse import urlparse, urlunparse

from rayauth.config import get_settings, reset_settings_cache
from rayauth.logging import get_logger
from rayauth.service.auth import AuthService
from rayauth.service.email import EmailService
from rayauth.service.otp import OtpService
from rayauth.storage.memory import MemoryStore
from rayauth.storage.models import utcnow
from rayauth.storage.postgres import PostgresStore
from rayauth.storage.redis_cache import RedisCache, SyncRedisCache

logger = get_logger(__name__)


def _mask_url_password(url: Optional[str]) -> Optional[str]:
    """Mask the password component of a URL for logging.

    Example: redis://:mypassword@localhost:6379 -> redis://:***@localhost:6379
    """
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
    if parsed.username:
        netloc = f"{parsed.username}:***@{netloc}"
    else:
        netloc = f":***@{netloc}"
    return urlunparse(
        (parsed.scheme, netloc, parsed.path, parsed.params, parsed.query, parsed.fragment)
    )


class Runtime:
    """Holds singleton service instances for the FastAPI app."""

    def __init__(self):
        self.settings = get_settings()
        use_memory = self.settings.use_memory_store or self.settings.test_mode
        logger.info(
            "runtime_init_started",
            use_memory_store=use_memory,
            test_mode=self.settings.test_mode,
            environment=self.settings.environment.value,
        )

        try:
            self.store = (
                MemoryStore(fs_root=self.settings.shared_fs_root)
                if use_memory
                else PostgresStore(
                    self.settings.database_url, fs_root=self.settings.shared_fs_root
                )
            )
            logger.info(
                "runtime_store_initialized",
                store_type="memory" if use_memory else "postgres",
            )
        except Exception as exc:
            logger.error(
                "runtime_store_init_failed",
                store_type="memory" if use_memory else "postgres",
                error_type=type(exc).__name__,
                error=str(exc),
            )
            raise

        self.cache: Optional[Union[RedisCache, SyncRedisCache]] = None
        redis_error: Exception | None = None
        if self.settings.redis_url:
            try:
                # Sync client in test mode avoids binding to a closed event loop
                if self.settings.test_mode:
                    cache = SyncRedisCache(self.settings.redis_url)
                else:
                    cache = RedisCache(self.settings.redis_url)
                cache.verify_connection()
                self.cache = cache
            except Exception as exc:
                redis_error = exc
                self.cache = None

        if not self.cache:
            if not self.settings.test_mode and not self.settings.allow_redis_fallback_dev:
                raise RuntimeError(
                    "Redis is required for rate limits, OAuth state and OTP codes; "
                    "start Redis or set TEST_MODE=true/ALLOW_REDIS_FALLBACK_DEV=true for local fallback."
                ) from redis_error

            fallback_mode = "TEST_MODE" if self.settings.test_mode else "ALLOW_REDIS_FALLBACK_DEV"
            logger.warning(
                "redis_disabled_fallback",
                redis_url=_mask_url_password(self.settings.redis_url),
                error=str(redis_error) if redis_error else "redis_url_missing",
                message=(
                    f"Running without Redis under {fallback_mode}; rate limits, OAuth "
                    "state and OTP codes are in-memory only."
                ),
                mode=fallback_mode,
            )

        self.email = EmailService(
            smtp_host=self.settings.smtp_host,
            smtp_port=self.settings.smtp_port,
            smtp_user=self.settings.smtp_user,
            smtp_password=self.settings.smtp_password,
            smtp_use_tls=self.settings.smtp_use_tls,
            from_email=self.settings.smtp_from,
            app_name=self.settings.app_name,
            frontend_url=self.settings.frontend_url,
            reset_ttl_minutes=self.settings.password_reset_ttl_minutes,
        )
        self.auth = AuthService(self.store, self.cache, self.settings, email=self.email)
        self.sessions = self.auth.sessions
        self.otp = OtpService(self.cache, self.settings)

        # key -> (tokens, last refill, moment the bucket is full again)
        self._local_rate_limits: Dict[str, Tuple[float, datetime, datetime]] = {}
        self._local_rate_limit_lock = asyncio.Lock()

        logger.info(
            "runtime_initialized",
            redis_enabled=self.cache is not None,
            email_configured=self.email.is_configured,
            max_sessions_per_user=self.settings.max_sessions_per_user,
        )


runtime: Runtime | None = None
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
        if runtime is not None and runtime.cache is not None:
            try:
                if isinstance(runtime.cache, SyncRedisCache):
                    runtime.cache.client.close()
                else:
                    try:
                        loop = asyncio.get_running_loop()
                        loop.create_task(runtime.cache.close())
                    except RuntimeError:
                        asyncio.run(runtime.cache.close())
            except (ConnectionError, OSError) as exc:
                logger.debug("runtime_cache_close_failed", error=str(exc))

        reset_settings_cache()
        settings = get_settings()
        if not settings.test_mode:
            raise RuntimeError("runtime reset is only allowed in TEST_MODE")
        runtime = Runtime()
        return runtime


def _prune_local_rate_limits(runtime: Runtime, now: datetime) -> None:
    """Drop buckets that have refilled; a missing key starts full anyway."""
    stale = [k for k, (_, _, full_at) in runtime._local_rate_limits.items() if full_at <= now]
    for key in stale:
        runtime._local_rate_limits.pop(key, None)


async def check_rate_limit(
    runtime: Runtime,
    key: str,
    limit: int,
    window_seconds: int,
    *,
    return_remaining: bool = False,
    cost: int = 1,
) -> Union[bool, Tuple[bool, int, int]]:
    """Token-bucket rate limit, backed by Redis or an in-process bucket.

    Returns a bool, or ``(allowed, remaining, reset_seconds)`` when
    ``return_remaining`` is set.
    """
    if limit <= 0:
        return (True, limit, 0) if return_remaining else True
    if window_seconds <= 0:
        logger.warning(
            "rate_limit_invalid_window",
            key=key,
            window_seconds=window_seconds,
            message="Invalid rate limit window_seconds; defaulting to 60 seconds",
        )
        window_seconds = 60
    if runtime.cache:
        return await runtime.cache.check_rate_limit(
            key, limit, window_seconds, return_remaining=return_remaining, cost=cost
        )
    now = utcnow()
    refill_rate = float(limit) / float(window_seconds)
    async with runtime._local_rate_limit_lock:
        tokens, last_ts, _ = runtime._local_rate_limits.get(key, (float(limit), now, now))
        elapsed = max(0.0, (now - last_ts).total_seconds())
        tokens = min(float(limit), tokens + elapsed * refill_rate)
        allowed = tokens >= cost
        if allowed:
            tokens -= cost
        _prune_local_rate_limits(runtime, now)
        full_at = now + timedelta(seconds=(float(limit) - tokens) / refill_rate)
        runtime._local_rate_limits[key] = (tokens, now, full_at)
        reset_seconds = (
            int((cost - tokens) / refill_rate) if not allowed and refill_rate > 0 else 0
        )
        remaining = int(tokens)
    if return_remaining:
        return (allowed, remaining, reset_seconds)
    return allowed

