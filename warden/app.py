from __future__ import annotations

import asyncio
import contextlib
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List

from fastapi import FastAPI

from warden.api.error_handling import register_exception_handlers
from warden.api.routes import router
from warden.config import check_startup, get_settings
from warden.logging import get_logger, set_correlation_id
from warden.service.runtime import get_runtime

logger = get_logger(__name__)

__version__ = "0.1.0"

HEALTH_CHECK_TIMEOUT_SECONDS = 3

_sweep_tasks: List[asyncio.Task] = []


async def _run_periodic(label: str, func: Callable[[], Any], interval_seconds: int) -> None:
    """Run a blocking maintenance job every ``interval_seconds`` until cancelled."""
    while True:
        await asyncio.sleep(interval_seconds)
        try:
            removed = await asyncio.to_thread(func)
            logger.info("maintenance_sweep_complete", job=label, removed=removed)
        except Exception as exc:
            logger.warning("maintenance_sweep_failed", job=label, error=str(exc))


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Validate configuration, build the runtime and schedule maintenance sweeps."""
    settings = get_settings()
    startup = check_startup(settings)
    if startup.fatal is not None:
        raise startup.fatal

    runtime = get_runtime()
    jobs = [
        ("sessions", runtime.sessions.sweep_expired, settings.session_sweep_interval_seconds),
        ("login_attempts", runtime.lockout.purge, settings.attempt_purge_interval_seconds),
        ("oauth_transactions", runtime.oauth.sweep, settings.oauth_sweep_interval_seconds),
    ]
    for label, func, interval in jobs:
        _sweep_tasks.append(asyncio.create_task(_run_periodic(label, func, interval)))
    logger.info("startup_complete", auth_mode=settings.auth_mode.value, version=__version__)

    yield

    for task in _sweep_tasks:
        task.cancel()
    for task in _sweep_tasks:
        with contextlib.suppress(asyncio.CancelledError):
            await task
    _sweep_tasks.clear()
    close = getattr(runtime.store, "close", None)
    if close is not None:
        try:
            close()
        except Exception as exc:
            logger.error("shutdown_failed", error=str(exc))
    logger.info("runtime_cleanup_complete")


app = FastAPI(title="Warden", version=__version__, lifespan=lifespan)


@app.middleware("http")
async def add_correlation_id(request, call_next):
    """Tag each request with the client's X-Request-ID or a fresh one."""
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
    if request.url.path.startswith("/v1/") or request.url.path == "/healthz":
        response.headers.setdefault("Cache-Control", "no-store, no-cache, must-revalidate, private")
    if request.url.scheme == "https" and get_settings().is_production:
        response.headers.setdefault(
            "Strict-Transport-Security", "max-age=63072000; includeSubDomains"
        )
    return response


register_exception_handlers(app)
app.include_router(router)


@app.get("/healthz")
async def health() -> Dict[str, Any]:
    """Report store connectivity and the running version."""
    runtime = get_runtime()
    try:
        db_ok = await asyncio.wait_for(
            asyncio.to_thread(runtime.store.verify_connection), HEALTH_CHECK_TIMEOUT_SECONDS
        )
    except asyncio.TimeoutError:
        logger.error("health_check_timeout", component="store", timeout=HEALTH_CHECK_TIMEOUT_SECONDS)
        db_ok = False
    return {
        "status": "healthy" if db_ok else "unhealthy",
        "checks": {
            "store": {
                "status": "healthy" if db_ok else "unhealthy",
                "type": type(runtime.store).__name__,
            }
        },
        "auth_mode": runtime.settings.auth_mode.value,
        "version": __version__,
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }
