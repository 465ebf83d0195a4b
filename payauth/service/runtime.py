from __future__ import annotations

import asyncio
import threading
import time
from typing import Dict, Optional, Tuple
from urllib.parse import urlparse, urlunparse

from payauth.config import Settings, get_settings, reset_settings_cache
from payauth.logging import get_logger
from payauth.service.auth import AuthService
from payauth.service.email import EmailService
from payauth.service.tokens import TokenCodec
from payauth.storage.memory import MemoryStore
from payauth.storage.postgres import PostgresStore
from payauth.storage.redis_cache import RedisCache

logger = get_logger(__name__)

DEFAULT_RATE_WINDOW_SECONDS = 60


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
    """Holds the process-wide service instances for the FastAPI app."""

    def __init__(self, settings: Optional[Settings] = None):
        self.settings = settings or get_settings()
        store_type = "memory" if self.settings.use_memory_store else "postgres"
        logger.info(
            "runtime_init_started",
            store_type=store_type,
            test_mode=self.settings.test_mode,
        )

        try:
            self.store = (
                MemoryStore(fs_root=self.settings.shared_fs_root)
                if self.settings.use_memory_store
                else PostgresStore(self.settings.database_url)
            )
        except Exception as exc:
            logger.error(
                "runtime_store_init_failed",
                store_type=store_type,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            raise

        self.cache: Optional[RedisCache] = None
        if self.settings.redis_url:
            try:
                cache = RedisCache(self.settings.redis_url)
                cache.verify_connection()
                self.cache = cache
            except Exception as exc:
                if not (self.settings.test_mode or self.settings.allow_redis_fallback_dev):
                    raise RuntimeError(
                        "REDIS_URL is set but Redis is unreachable; start Redis, unset "
                        "REDIS_URL, or set ALLOW_REDIS_FALLBACK_DEV=true"
                    ) from exc
                logger.warning(
                    "redis_disabled_fallback",
                    redis_url=_mask_url_password(self.settings.redis_url),
                    error=str(exc),
                )
        if self.cache is None:
            logger.info("rate_limits_in_process")

        self.codec = TokenCodec.from_settings(self.settings)
        self.email = EmailService.from_settings(self.settings)
        self.auth = AuthService(self.store, self.codec, self.settings, email=self.email)

        # key -> (window_start_monotonic, hits, window_seconds)
        self._local_rate_limits: Dict[str, Tuple[float, int, int]] = {}
        self._local_rate_limits_swept_at = 0.0
        self._local_rate_limit_lock = asyncio.Lock()
        logger.info("runtime_init_complete", store_type=store_type)

    async def close(self) -> None:
        await self.auth.wait_for_pending_mail()
        if self.cache is not None:
            await self.cache.close()
        if hasattr(self.store, "close"):
            self.store.close()


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
    """Rebuild the runtime from the current environment. TEST_MODE only."""
    global runtime

    with _runtime_lock:
        reset_settings_cache()
        settings = get_settings()
        if not settings.test_mode:
            raise RuntimeError("runtime reset is only allowed in TEST_MODE")
        runtime = Runtime(settings)
        return runtime


def _sweep_expired_windows(runtime: Runtime, now: float) -> None:
    """Drop counters whose window has closed, at most once per minute."""
    if now - runtime._local_rate_limits_swept_at < DEFAULT_RATE_WINDOW_SECONDS:
        return
    runtime._local_rate_limits_swept_at = now
    expired = [
        key
        for key, (started, _, window) in runtime._local_rate_limits.items()
        if now - started >= window
    ]
    for key in expired:
        del runtime._local_rate_limits[key]


async def check_rate_limit(
    runtime: Runtime, key: str, limit: int, window_seconds: int
) -> Tuple[bool, int, int]:
    """Count one hit against a fixed window.

    Uses Redis when configured so every worker shares the counter, otherwise
    a per-process table.

    Returns:
        ``(allowed, remaining, reset_seconds)``
    """
    if limit <= 0:
        return True, limit, 0
    if window_seconds <= 0:
        logger.warning(
            "rate_limit_invalid_window",
            key=key,
            window_seconds=window_seconds,
        )
        window_seconds = DEFAULT_RATE_WINDOW_SECONDS
    if runtime.cache:
        return await runtime.cache.check_rate_limit(key, limit, window_seconds)

    now = time.monotonic()
    async with runtime._local_rate_limit_lock:
        started, hits, _ = runtime._local_rate_limits.get(key, (now, 0, window_seconds))
        if hits == 0 or now - started >= window_seconds:
            started, hits = now, 0
            _sweep_expired_windows(runtime, now)
        hits += 1
        runtime._local_rate_limits[key] = (started, hits, window_seconds)
        reset_seconds = max(0, int(started + window_seconds - now))
    return hits <= limit, max(0, limit - hits), reset_seconds
