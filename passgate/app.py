from __future__ import annotations

import asyncio
import contextlib
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any, Dict, List

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from passgate.api.error_handling import register_exception_handlers
from passgate.api.routes import router
from passgate.config import Settings
from passgate.logging import get_logger, set_correlation_id
from passgate.service.csrf import CSRFGuard

logger = get_logger(__name__)

_settings = Settings.from_env()

__version__ = "0.1.0"


_maintenance_task: asyncio.Task | None = None


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Lifespan context manager for startup and shutdown events."""
    global _maintenance_task
    from passgate.service.runtime import get_runtime

    try:
        runtime = get_runtime()
        _maintenance_task = asyncio.create_task(
            _run_maintenance(runtime, runtime.settings.deletion_sweep_interval_seconds)
        )
    except Exception as exc:
        logger.error("startup_maintenance_failed", error=str(exc))

    yield

    try:
        runtime = get_runtime()
        if _maintenance_task:
            _maintenance_task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await _maintenance_task
        await runtime.close()
        logger.info("runtime_cleanup_complete")
    except Exception as exc:
        logger.error("shutdown_failed", error=str(exc))


app = FastAPI(title="Passgate", version=__version__, lifespan=lifespan)


def _allowed_origins() -> List[str]:
    if _settings.cors_allow_origins:
        return _settings.cors_allow_origins
    # Local dev hosts; no wildcard while credentials are allowed
    return [
        "http://localhost",
        "http://localhost:3000",
        "http://localhost:5173",
        "http://127.0.0.1:3000",
        "http://127.0.0.1:5173",
    ]


app.add_middleware(
    CORSMiddleware,
    allow_origins=_allowed_origins(),
    allow_credentials=_settings.cors_allow_credentials,
    allow_methods=["GET", "POST", "OPTIONS"],
    allow_headers=[
        "Content-Type",
        "Authorization",
        _settings.csrf_header_name,
        "X-Request-ID",
    ],
    expose_headers=[
        "X-Request-ID",
        "Retry-After",
        "RateLimit-Limit",
        "RateLimit-Remaining",
        "RateLimit-Reset",
    ],
    max_age=3600,
)


@app.middleware("http")
async def add_correlation_id(request, call_next):
    """Propagate or mint an X-Request-ID and bind it to the logging context."""
    client_request_id = request.headers.get("X-Request-ID")
    correlation_id = set_correlation_id(client_request_id)
    response = await call_next(request)
    response.headers["X-Request-ID"] = correlation_id
    return response


def _csrf_rejection() -> JSONResponse:
    return JSONResponse(
        status_code=403,
        content={
            "status": "error",
            "error": {"code": "forbidden", "message": "missing or invalid CSRF token"},
        },
    )


@app.middleware("http")
async def enforce_csrf_token(request: Request, call_next):
    if CSRFGuard.is_exempt(request.method):
        return await call_next(request)
    # Bearer tokens are not sent ambiently by browsers; other schemes fall back to cookies
    if request.headers.get("Authorization", "").lower().startswith("bearer "):
        return await call_next(request)
    header_token = request.headers.get(_settings.csrf_header_name)
    cookie_token = request.cookies.get(_settings.csrf_cookie_name)
    if not CSRFGuard.verify(header_token, cookie_token):
        logger.warning(
            "csrf_rejected",
            path=request.url.path,
            method=request.method,
            header_present=bool(header_token),
            cookie_present=bool(cookie_token),
        )
        return _csrf_rejection()
    return await call_next(request)


_NO_STORE_PREFIXES = ("/credentials", "/account", "/csrf", "/logout", "/healthz")


@app.middleware("http")
async def add_security_headers(request, call_next):
    response = await call_next(request)
    response.headers.setdefault("X-Frame-Options", "DENY")
    response.headers.setdefault("X-Content-Type-Options", "nosniff")
    response.headers.setdefault("X-XSS-Protection", "1; mode=block")
    response.headers.setdefault("Referrer-Policy", "strict-origin-when-cross-origin")
    if request.url.path.startswith(_NO_STORE_PREFIXES):
        response.headers.setdefault("Cache-Control", "no-store, no-cache, must-revalidate, private")
    response.headers.setdefault(
        "Permissions-Policy", "camera=(), microphone=(), geolocation=(), payment=()"
    )
    if request.url.scheme == "https" and _settings.enable_hsts:
        response.headers.setdefault(
            "Strict-Transport-Security", "max-age=63072000; includeSubDomains"
        )
    response.headers.setdefault(
        "Content-Security-Policy",
        "default-src 'self'; frame-ancestors 'none'; base-uri 'self'; form-action 'self'",
    )
    return response


register_exception_handlers(app)
app.include_router(router)


HEALTH_CHECK_TIMEOUT_SECONDS = 3


@app.get("/healthz")
async def health() -> Dict[str, Any]:
    """Report store and Redis reachability with bounded probes."""
    from passgate.service.runtime import get_runtime

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
            logger.error(f"health_check_{label}_failed", error=str(exc))
        return False

    runtime = get_runtime()
    store_type = "memory" if runtime.settings.use_memory_store else "postgres"
    db_ok = await _run_bounded("database", runtime.store.ping)
    checks["database"] = {"status": "healthy" if db_ok else "unhealthy", "type": store_type}

    redis_ok = True
    if runtime.cache is not None:
        redis_ok = await _run_bounded("redis", runtime.cache.verify_connection)
        checks["redis"] = {"status": "healthy" if redis_ok else "unhealthy", "degraded": not redis_ok}
    else:
        checks["redis"] = {"status": "not_configured"}

    return {
        "status": "healthy" if db_ok and redis_ok else "unhealthy",
        "checks": checks,
        "version": __version__,
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }


async def _run_maintenance(runtime, interval_seconds: int) -> None:
    """Background loop sweeping due deletions and stale credentials."""

    interval = max(interval_seconds, 60)
    try:
        while True:
            try:
                summary = await runtime.run_maintenance()
                if any(summary.values()):
                    logger.info("maintenance_completed", **summary)
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                logger.warning("maintenance_failed", error=str(exc))
            await asyncio.sleep(interval)
    except asyncio.CancelledError:
        logger.info("maintenance_task_cancelled")
