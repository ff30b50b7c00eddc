from __future__ import annotations

import asyncio
import contextlib
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware

from wedding_admin.api.error_handling import register_exception_handlers
from wedding_admin.api.routes import router
from wedding_admin.config import Settings, get_settings
from wedding_admin.logging import get_logger, set_correlation_id
from wedding_admin.service.runtime import Runtime

logger = get_logger(__name__)

__version__ = "0.1.0"

_CONTENT_SECURITY_POLICY = (
    "default-src 'self'; script-src 'self'; style-src 'self'; img-src 'self' data:; "
    "connect-src 'self'; font-src 'self'; frame-ancestors 'none'; base-uri 'self'; "
    "form-action 'self'"
)


async def _run_reclaim(runtime: Runtime, interval_seconds: int) -> None:
    """Periodically drop expired sessions and counters from in-memory stores."""
    while True:
        await asyncio.sleep(interval_seconds)
        try:
            await runtime.sessions.reclaim_expired()
        except Exception as exc:
            logger.error("reclaim_failed", error=str(exc), error_type=type(exc).__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    runtime: Runtime = app.state.runtime
    runtime.audit.start()
    reclaim_task: asyncio.Task | None = None
    interval = runtime.settings.reclaim_interval_seconds
    if interval > 0 and not runtime.redis_enabled:
        reclaim_task = asyncio.create_task(_run_reclaim(runtime, interval))
    logger.info("admin_service_started", reclaim_interval=interval)

    yield

    if reclaim_task:
        reclaim_task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await reclaim_task
    try:
        await runtime.close()
        logger.info("runtime_cleanup_complete")
    except Exception as exc:
        logger.error("shutdown_failed", error=str(exc))


def create_app(runtime: Runtime | None = None, settings: Settings | None = None) -> FastAPI:
    """Build the admin API around an explicitly constructed runtime.

    Serve with ``uvicorn --factory wedding_admin.app:create_app``.
    """
    if runtime is None:
        runtime = Runtime(settings or get_settings())
    settings = runtime.settings

    app = FastAPI(title="Wedding Admin Access Control", version=__version__, lifespan=lifespan)
    app.state.runtime = runtime

    if settings.cors_allow_origins:
        app.add_middleware(
            CORSMiddleware,
            allow_origins=settings.cors_allow_origins,
            allow_credentials=True,
            allow_methods=["GET", "POST", "DELETE"],
            allow_headers=["Content-Type", settings.csrf_header_name, "X-Request-ID"],
        )

    @app.middleware("http")
    async def add_security_headers(request: Request, call_next):
        response = await call_next(request)
        response.headers.setdefault("X-Frame-Options", "DENY")
        response.headers.setdefault("X-Content-Type-Options", "nosniff")
        response.headers.setdefault("Referrer-Policy", "strict-origin-when-cross-origin")
        if request.url.path.startswith("/v1/"):
            response.headers.setdefault(
                "Cache-Control", "no-store, no-cache, must-revalidate, private"
            )
        response.headers.setdefault(
            "Permissions-Policy", "camera=(), microphone=(), geolocation=(), payment=()"
        )
        if request.url.scheme == "https" and settings.enable_hsts:
            response.headers.setdefault(
                "Strict-Transport-Security", "max-age=31536000; includeSubDomains"
            )
        response.headers.setdefault("Content-Security-Policy", _CONTENT_SECURITY_POLICY)
        return response

    # Registered last so it runs first and every log line carries the id
    @app.middleware("http")
    async def add_correlation_id(request: Request, call_next):
        correlation_id = set_correlation_id(request.headers.get("X-Request-ID"))
        response = await call_next(request)
        response.headers["X-Request-ID"] = correlation_id
        return response

    @app.get("/healthz", include_in_schema=False)
    async def healthz():
        return {"status": "ok", "version": __version__}

    register_exception_handlers(app)
    app.include_router(router)
    return app
