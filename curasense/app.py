from __future__ import annotations

import asyncio
import contextlib
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware

from curasense.api.error_handling import register_exception_handlers
from curasense.api.routes import router
from curasense.config import Settings
from curasense.logging import get_logger, set_correlation_id
from curasense.service.runtime import get_runtime

logger = get_logger(__name__)

__version__ = "0.1.0"

HEALTH_CHECK_TIMEOUT_SECONDS = 3.0

# Used when CORS_ALLOW_ORIGINS is unset; a wildcard is not allowed with cookies
DEV_ORIGINS = [
    "http://localhost",
    "http://localhost:3000",
    "http://localhost:5173",
    "http://127.0.0.1:3000",
    "http://127.0.0.1:5173",
]

_NO_STORE = "no-store, no-cache, must-revalidate, private"


async def _sweep_forever(interval_seconds: int) -> None:
    """Drop expired sessions, spent reset tokens and aged audit rows on a timer."""
    pause = max(interval_seconds, 60)
    while True:
        try:
            await get_runtime().auth.cleanup()
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            logger.warning("auth_sweep_failed", error=str(exc))
        await asyncio.sleep(pause)


@asynccontextmanager
async def lifespan(app: FastAPI):
    runtime = get_runtime()
    sweeper = asyncio.create_task(_sweep_forever(runtime.settings.cleanup_interval_seconds))
    logger.info("auth_service_started", version=__version__)
    try:
        yield
    finally:
        sweeper.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await sweeper
        try:
            await get_runtime().close()
        except Exception as exc:
            logger.error("runtime_close_failed", error=str(exc))
        logger.info("auth_service_stopped")


async def _probe(component: str, check: Callable[[], Any]) -> bool:
    try:
        await asyncio.wait_for(asyncio.to_thread(check), HEALTH_CHECK_TIMEOUT_SECONDS)
    except asyncio.TimeoutError:
        logger.error("health_probe_timeout", component=component, timeout=HEALTH_CHECK_TIMEOUT_SECONDS)
        return False
    except Exception as exc:
        logger.error("health_probe_failed", component=component, error=str(exc))
        return False
    return True


async def health() -> Dict[str, Any]:
    """Liveness plus reachability of Postgres and Redis when they are configured."""
    runtime = get_runtime()
    checks: Dict[str, Dict[str, Any]] = {}

    ping_db = getattr(runtime.store, "verify_connection", None)
    if ping_db is None:
        checks["database"] = {"status": "healthy", "type": "memory"}
    else:
        db_up = await _probe("database", ping_db)
        checks["database"] = {"status": "healthy" if db_up else "unhealthy", "type": "postgres"}

    if runtime.cache is None:
        checks["redis"] = {"status": "not_configured"}
    else:
        redis_up = await _probe("redis", runtime.cache.verify_connection)
        checks["redis"] = {"status": "healthy" if redis_up else "unhealthy", "degraded": not redis_up}

    overall = all(c["status"] in {"healthy", "not_configured"} for c in checks.values())
    return {
        "status": "healthy" if overall else "unhealthy",
        "checks": checks,
        "version": __version__,
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }


def create_app(settings: Optional[Settings] = None) -> FastAPI:
    """Assemble the auth API: middleware, error envelopes, routes and /healthz."""
    settings = settings or Settings.from_env()
    application = FastAPI(title="CuraSense Auth", version=__version__, lifespan=lifespan)

    origins: List[str] = settings.cors_allow_origins or DEV_ORIGINS
    application.add_middleware(
        CORSMiddleware,
        allow_origins=origins,
        allow_credentials=settings.cors_allow_credentials,
        allow_methods=["GET", "POST", "PATCH", "OPTIONS"],
        allow_headers=["Content-Type", "Authorization", "X-Request-ID"],
        expose_headers=["X-Request-ID", "X-RateLimit-Limit", "X-RateLimit-Remaining", "Retry-After"],
        max_age=3600,
    )

    @application.middleware("http")
    async def request_id(request: Request, call_next):
        # Reuse the caller's X-Request-ID so logs line up across services
        rid = set_correlation_id(request.headers.get("X-Request-ID"))
        response = await call_next(request)
        response.headers["X-Request-ID"] = rid
        return response

    @application.middleware("http")
    async def hardening_headers(request: Request, call_next):
        response = await call_next(request)
        headers = response.headers
        headers.setdefault("X-Frame-Options", "DENY")
        headers.setdefault("X-Content-Type-Options", "nosniff")
        headers.setdefault("Referrer-Policy", "strict-origin-when-cross-origin")
        headers.setdefault("Content-Security-Policy", "default-src 'none'; frame-ancestors 'none'")
        path = request.url.path
        if path.startswith("/v1/") or path == "/healthz":
            # Bodies carry bearer tokens and patient identity
            headers.setdefault("Cache-Control", _NO_STORE)
        if settings.enable_hsts and request.url.scheme == "https":
            headers.setdefault("Strict-Transport-Security", "max-age=63072000; includeSubDomains")
        return response

    register_exception_handlers(application)
    application.include_router(router)
    application.add_api_route("/healthz", health, methods=["GET"])
    return application


app = create_app()
