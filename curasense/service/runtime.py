from __future__ import annotations

import threading
import time
from typing import Dict, Optional, Tuple
from urllib.parse import urlsplit

from curasense.config import get_settings, reset_settings_cache
from curasense.logging import get_logger
from curasense.service.auth import AuthService
from curasense.service.email import EmailService
from curasense.storage.memory import MemoryStore
from curasense.storage.postgres import PostgresStore
from curasense.storage.redis_cache import RedisCache

logger = get_logger(__name__)


def _mask_url_password(url: Optional[str]) -> Optional[str]:
    """``redis://:secret@host:6379`` becomes ``redis://:***@host:6379`` in logs."""
    if not url:
        return url
    try:
        parts = urlsplit(url)
        if not parts.password:
            return url
        host = parts.hostname or ""
        if parts.port:
            host = f"{host}:{parts.port}"
        return parts._replace(netloc=f"{parts.username or ''}:***@{host}").geturl()
    except ValueError:
        return "***url_parse_error***"



class Runtime:
    """Everything one API process shares: settings, store, Redis, email and the auth facade."""

    def __init__(self):
        self.settings = get_settings()
        self.store = self._open_store()
        self.cache: Optional[RedisCache] = self._open_cache()
        self.email = EmailService.from_settings(self.settings)
        self.auth = AuthService(self.store, self.settings, email_service=self.email)
        # key -> (tokens, last refill on the monotonic clock)
        self._local_rate_limits: Dict[str, Tuple[float, float]] = {}
        self._local_rate_limit_lock = threading.Lock()
        logger.info(
            "runtime_initialized",
            store_type=self.store_type,
            redis_enabled=self.cache is not None,
            email_configured=self.email.is_configured,
            rotate_refresh_tokens=self.settings.rotate_refresh_tokens,
            test_mode=self.settings.test_mode,
        )

    @property
    def store_type(self) -> str:
        return "memory" if self.settings.use_memory_store else "postgres"

    def _open_store(self):
        s = self.settings
        try:
            if s.use_memory_store:
                return MemoryStore(fs_root=s.shared_fs_root, persist=s.persist_memory_store)
            return PostgresStore(s.database_url, timeout_seconds=s.db_timeout_seconds)
        except Exception as exc:
            logger.error(
                "runtime_store_init_failed",
                store_type=self.store_type,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            raise

    def _open_cache(self) -> Optional[RedisCache]:
        """Connect to Redis, or fall back to per-process buckets where that is allowed.

        Production refuses to start without Redis: per-process buckets would let
        each worker grant its own share of login attempts.
        """
        s = self.settings
        failure: Optional[Exception] = None
        if s.redis_url and not s.test_mode:
            try:
                cache = RedisCache(s.redis_url)
                cache.verify_connection()
                return cache
            except Exception as exc:
                failure = exc

        if not (s.test_mode or s.allow_redis_fallback_dev):
            raise RuntimeError(
                "Redis is unreachable and auth rate limits must be shared; start Redis, "
                "or set TEST_MODE / ALLOW_REDIS_FALLBACK_DEV for a single-process setup."
            ) from failure
        logger.warning(
            "redis_disabled_fallback",
            redis_url=_mask_url_password(s.redis_url),
            error=str(failure) if failure else "redis_not_used",
            mode="TEST_MODE" if s.test_mode else "ALLOW_REDIS_FALLBACK_DEV",
        )
        return None

    async def close(self) -> None:
        if self.cache is not None:
            await self.cache.close()
            self.cache = None
        close_store = getattr(self.store, "close", None)
        if close_store:
            close_store()
        logger.info("runtime_closed")


runtime: Runtime | None = None
_runtime_lock = threading.Lock()


def get_runtime() -> Runtime:
    global runtime
    if runtime is None:
        with _runtime_lock:
            if runtime is None:
                runtime = Runtime()
    return runtime


def reset_runtime_for_tests() -> Runtime:
    """Re-read the environment and rebuild the runtime. Refused outside TEST_MODE."""
    global runtime

    with _runtime_lock:
        reset_settings_cache()
        if not get_settings().test_mode:
            raise RuntimeError("runtime reset is only allowed in TEST_MODE")
        runtime = Runtime()
        return runtime


def _spend_local(runtime: Runtime, key: str, limit: int, window_seconds: int, cost: int) -> Tuple[bool, int, int]:
    rate = limit / window_seconds
    now = time.monotonic()
    with runtime._local_rate_limit_lock:
        level, seen = runtime._local_rate_limits.get(key, (float(limit), now))
        level = min(float(limit), level + max(0.0, now - seen) * rate)
        granted = level >= cost
        if granted:
            level -= cost
        runtime._local_rate_limits[key] = (level, now)
    wait = 0 if granted else int((cost - level) / rate) + 1
    return granted, int(level), wait


async def check_rate_limit(
    runtime: Runtime,
    key: str,
    limit: int,
    window_seconds: int,
    *,
    cost: int = 1,
) -> Tuple[bool, int, int]:
    """Spend from the token bucket for ``key``.

    Returns ``(allowed, remaining, retry_after_seconds)``. A ``limit`` of zero
    or less disables the check.
    """
    if limit <= 0:
        return (True, limit, 0)
    if window_seconds <= 0:
        logger.warning("rate_limit_invalid_window", key=key, window_seconds=window_seconds)
        window_seconds = 60
    if runtime.cache:
        return await runtime.cache.check_rate_limit(key, limit, window_seconds, cost=cost)
    return _spend_local(runtime, key, limit, window_seconds, cost)
