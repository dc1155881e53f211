from __future__ import annotations

import asyncio
import contextlib
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any, Dict, List

import uvicorn
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from taskauth.api.error_handling import register_exception_handlers
from taskauth.api.routes import router
from taskauth.config import Settings
from taskauth.logging import get_logger, set_correlation_id

logger = get_logger(__name__)

_settings = Settings.from_env()

__version__ = "0.1.0"

THROTTLE_SWEEP_INTERVAL_SECONDS = 300
HEALTH_CHECK_TIMEOUT_SECONDS = 3

_background_tasks: List[asyncio.Task] = []


async def _run_session_reaper(interval_seconds: int) -> None:
    """Background loop deleting expired and long-deactivated sessions."""
    from taskauth.service.runtime import get_runtime

    try:
        while True:
            await asyncio.sleep(interval_seconds)
            auth = get_runtime().auth
            if auth is None:
                continue
            try:
                await asyncio.to_thread(auth.cleanup_expired_sessions)
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                logger.warning("session_reaper_failed", error=str(exc))
    except asyncio.CancelledError:
        logger.info("session_reaper_cancelled")


async def _run_throttle_sweeper(interval_seconds: int) -> None:
    from taskauth.service.runtime import get_runtime

    try:
        while True:
            await asyncio.sleep(interval_seconds)
            try:
                await get_runtime().throttle.sweep()
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                logger.warning("throttle_sweep_failed", error=str(exc))
    except asyncio.CancelledError:
        logger.info("throttle_sweeper_cancelled")


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Start the session reaper and throttle sweeper; close connections on shutdown."""
    from taskauth.service.runtime import get_runtime

    runtime = get_runtime()
    _background_tasks.append(
        asyncio.create_task(
            _run_session_reaper(runtime.settings.session_cleanup_interval_seconds)
        )
    )
    _background_tasks.append(
        asyncio.create_task(_run_throttle_sweeper(THROTTLE_SWEEP_INTERVAL_SECONDS))
    )
    logger.info("background_tasks_started", count=len(_background_tasks))

    yield

    while _background_tasks:
        task = _background_tasks.pop()
        task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await task
    try:
        runtime = get_runtime()
        if runtime.cache is not None:
            await runtime.cache.close()
        runtime.close()
        logger.info("runtime_cleanup_complete")
    except Exception as exc:
        logger.error("shutdown_failed", error=str(exc))


app = FastAPI(title="Task Manager Auth", version=__version__, lifespan=lifespan)


app.add_middleware(
    CORSMiddleware,
    allow_origins=_settings.cors_allow_origins,
    allow_credentials=_settings.cors_allow_credentials,
    allow_methods=["GET", "POST", "PUT", "DELETE", "OPTIONS"],
    allow_headers=["Content-Type", "Authorization", "X-Request-ID"],
    expose_headers=["X-Request-ID", "Retry-After"],
    max_age=3600,
)


@app.middleware("http")
async def add_correlation_id(request, call_next):
    """Take ``X-Request-ID`` from the client or mint one, and echo it back."""
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
    # Token-bearing responses must never be cached
    if request.url.path.startswith("/auth") or request.url.path == "/health":
        response.headers.setdefault("Cache-Control", "no-store")
    if request.url.scheme == "https" and _settings.enable_hsts:
        response.headers.setdefault(
            "Strict-Transport-Security", "max-age=63072000; includeSubDomains"
        )
    return response


register_exception_handlers(app)
app.include_router(router)


@app.get("/health")
async def health():
    """Report store and cache status; 503 when the auth store is unavailable."""
    from taskauth.service.runtime import get_runtime

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
    checks: Dict[str, Dict[str, Any]] = {}

    if runtime.store is None:
        store_ok = False
        checks["store"] = {"status": "unavailable", "error": runtime.store_error}
    elif hasattr(runtime.store, "verify_connection"):
        store_ok = await _run_bounded("store", runtime.store.verify_connection)
        checks["store"] = {"status": "healthy" if store_ok else "unhealthy", "type": "postgres"}
    else:
        store_ok = True
        checks["store"] = {"status": "healthy", "type": "memory"}

    if runtime.cache is not None:
        redis_ok = await _run_bounded("redis", runtime.cache.verify_connection)
        # Redis outage degrades health without failing it
        checks["redis"] = {"status": "healthy" if redis_ok else "unhealthy", "degraded": not redis_ok}
    else:
        checks["redis"] = {"status": "not_configured"}

    body = {
        "status": "healthy" if store_ok else "unhealthy",
        "checks": checks,
        "version": __version__,
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }
    return JSONResponse(status_code=200 if store_ok else 503, content=body)


def main() -> None:
    """Serve the app with uvicorn on ``HOST``/``PORT``."""
    uvicorn.run(app, host=_settings.host, port=_settings.port)


if __name__ == "__main__":
    main()
