from __future__ import annotations

import asyncio
import contextlib
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional
from urllib.parse import parse_qsl

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from storeguard.api.error_handling import register_exception_handlers
from storeguard.api.routes import router
from storeguard.api.schemas import Envelope, ErrorBody
from storeguard.config import get_settings
from storeguard.logging import get_logger, set_correlation_id
from storeguard.service.csrf import CsrfTokenService
from storeguard.service.notifications import drain_notifications

logger = get_logger(__name__)

__version__ = "0.1.0"

SESSION_CLEANUP_INTERVAL_SECONDS = 15 * 60
HEALTH_CHECK_TIMEOUT_SECONDS = 3

_cleanup_task: asyncio.Task | None = None


async def _run_session_cleanup(interval_seconds: int) -> None:
    """Periodically drop expired and idle sessions from the session store."""
    from storeguard.service.runtime import get_runtime

    try:
        while True:
            await asyncio.sleep(interval_seconds)
            try:
                await get_runtime().sessions.cleanup_expired()
            except Exception as exc:
                logger.warning("session_cleanup_failed", error=str(exc))
    except asyncio.CancelledError:
        logger.info("session_cleanup_task_cancelled")


@asynccontextmanager
async def lifespan(app: FastAPI):
    global _cleanup_task
    from storeguard.service.runtime import get_runtime

    # Fail fast on a missing database or Redis rather than on the first request
    get_runtime()
    _cleanup_task = asyncio.create_task(_run_session_cleanup(SESSION_CLEANUP_INTERVAL_SECONDS))

    yield

    try:
        runtime = get_runtime()
        if _cleanup_task:
            _cleanup_task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await _cleanup_task
        await drain_notifications()
        await runtime.close()
        logger.info("runtime_cleanup_complete")
    except Exception as exc:
        logger.error("shutdown_failed", error=str(exc))


app = FastAPI(title="storeguard", version=__version__, lifespan=lifespan)


def _allowed_origins() -> List[str]:
    settings = get_settings()
    if settings.cors_allow_origins:
        return settings.cors_allow_origins
    # Local dev hosts; never a wildcard while credentials are allowed
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
    allow_credentials=get_settings().cors_allow_credentials,
    allow_methods=["GET", "POST", "PUT", "PATCH", "DELETE", "OPTIONS"],
    allow_headers=[
        "Content-Type",
        "X-CSRF-Token",
        "X-Request-ID",
    ],
    expose_headers=["X-Request-ID", "X-RateLimit-Limit", "X-RateLimit-Remaining"],
    max_age=3600,
)


@app.middleware("http")
async def add_correlation_id(request, call_next):
    """Tag every log line of a request with the caller's X-Request-ID, or a fresh one."""
    client_request_id = request.headers.get("X-Request-ID")
    correlation_id = set_correlation_id(client_request_id)
    response = await call_next(request)
    response.headers["X-Request-ID"] = correlation_id
    return response


def _csrf_rejection() -> JSONResponse:
    envelope = Envelope(
        status="error",
        error=ErrorBody(code="CSRF_VALIDATION_FAILED", message="CSRF token validation failed"),
    )
    return JSONResponse(status_code=403, content=envelope.model_dump())


_FORM_CONTENT_TYPE = "application/x-www-form-urlencoded"


async def _submitted_csrf_token(request: Request) -> Optional[str]:
    """Header token, else the ``csrf_token`` field of a URL-encoded form body."""
    token = CsrfTokenService.extract(request.headers)
    if token:
        return token
    content_type = request.headers.get("content-type", "").split(";", 1)[0].strip().lower()
    if content_type != _FORM_CONTENT_TYPE:
        return None
    # Starlette replays the cached body to the route
    body = await request.body()
    form = dict(parse_qsl(body.decode("utf-8", errors="replace"), keep_blank_values=True))
    return CsrfTokenService.extract(request.headers, form)


@app.middleware("http")
async def enforce_csrf_token(request: Request, call_next):
    # Only state-changing requests that ride on a session cookie are exposed to CSRF
    if not CsrfTokenService.requires_protection(request.method):
        return await call_next(request)
    from storeguard.service.runtime import get_runtime

    runtime = get_runtime()
    if not request.cookies.get(runtime.settings.session_cookie_name):
        return await call_next(request)
    submitted_token = await _submitted_csrf_token(request)
    cookie_token = request.cookies.get(runtime.settings.csrf_cookie_name)
    if not runtime.csrf.verify(cookie_token, submitted_token):
        logger.warning(
            "csrf_validation_failed",
            path=request.url.path,
            method=request.method,
            token_present=bool(submitted_token),
            cookie_present=bool(cookie_token),
        )
        return _csrf_rejection()
    return await call_next(request)


@app.middleware("http")
async def add_security_headers(request, call_next):
    response = await call_next(request)
    response.headers.setdefault("X-Frame-Options", "DENY")
    response.headers.setdefault("X-Content-Type-Options", "nosniff")
    response.headers.setdefault("Referrer-Policy", "strict-origin-when-cross-origin")
    if request.url.path.startswith("/v1/") or request.url.path == "/healthz":
        response.headers.setdefault("Cache-Control", "no-store, no-cache, must-revalidate, private")
    response.headers.setdefault(
        "Permissions-Policy", "camera=(), microphone=(), geolocation=(), payment=()"
    )
    if get_settings().enable_hsts:
        response.headers.setdefault(
            "Strict-Transport-Security", "max-age=63072000; includeSubDomains"
        )
    response.headers.setdefault(
        "Content-Security-Policy", "default-src 'none'; frame-ancestors 'none'"
    )
    return response


register_exception_handlers(app)
app.include_router(router)


@app.get("/healthz")
async def health() -> Dict[str, Any]:
    """Report store and Redis reachability along with the build version."""
    from storeguard.service.runtime import get_runtime

    checks: Dict[str, Dict[str, Any]] = {}
    overall_healthy = True

    async def _run_bounded(label: str, func) -> bool:
        try:
            result = await asyncio.wait_for(
                asyncio.to_thread(func), HEALTH_CHECK_TIMEOUT_SECONDS
            )
            return result is not False
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
    overall_healthy = overall_healthy and db_ok

    if runtime.cache is not None:
        try:
            redis_ok = await asyncio.wait_for(runtime.cache.ping(), HEALTH_CHECK_TIMEOUT_SECONDS)
        except asyncio.TimeoutError:
            logger.error(
                "health_check_timeout", component="redis", timeout=HEALTH_CHECK_TIMEOUT_SECONDS
            )
            redis_ok = False
        checks["redis"] = {"status": "healthy" if redis_ok else "unhealthy"}
        overall_healthy = overall_healthy and redis_ok
    else:
        checks["redis"] = {"status": "not_configured"}

    status = "healthy" if overall_healthy else "unhealthy"
    body = {
        "status": status,
        "checks": checks,
        "version": __version__,
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }
    if not overall_healthy:
        return JSONResponse(status_code=503, content=body)
    return body


def create_app() -> FastAPI:
    return app
