from __future__ import annotations

import asyncio
import contextlib
from contextlib import asynccontextmanager
from typing import List

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from sessiongate.api.admin import router as admin_router
from sessiongate.api.error_handling import error_response, register_exception_handlers
from sessiongate.api.gate import RequestGate
from sessiongate.api.routes import router as auth_router
from sessiongate.config import Settings
from sessiongate.logging import (
    bind_request_context,
    clear_request_context,
    get_logger,
    set_correlation_id,
)
from sessiongate.service.errors import ErrorCode

logger = get_logger(__name__)

_settings = Settings.from_env()

__version__ = "0.1.0"


_maintenance_task: asyncio.Task | None = None


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Start the rate limiter sweep and session maintenance; stop both on shutdown."""
    global _maintenance_task
    from sessiongate.service.runtime import get_runtime

    runtime = get_runtime()
    await runtime.start()
    interval = runtime.settings.session_cleanup_interval_seconds
    if interval > 0 and not runtime.settings.test_mode:
        _maintenance_task = asyncio.create_task(runtime.maintenance.run_forever(interval))
        logger.info("session_maintenance_scheduled", interval_seconds=interval)

    yield

    try:
        if _maintenance_task:
            _maintenance_task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await _maintenance_task
            _maintenance_task = None
        await runtime.close()
        logger.info("runtime_cleanup_complete")
    except Exception as exc:
        logger.error("shutdown_failed", error=str(exc))


def _allowed_origins() -> List[str]:
    if _settings.cors_allow_origins:
        return _settings.cors_allow_origins
    # Credentials are allowed, so never fall back to a wildcard
    return [
        "http://localhost",
        "http://localhost:3000",
        "http://127.0.0.1:3000",
    ]


def create_app() -> FastAPI:
    application = FastAPI(title="Session Gate", version=__version__, lifespan=lifespan)

    # Registered first so it runs innermost; the correlation id wraps everything
    application.middleware("http")(RequestGate())

    @application.middleware("http")
    async def add_correlation_id(request, call_next):
        """Tag logs with X-Request-ID (or a fresh id) and echo it back."""
        correlation_id = set_correlation_id(request.headers.get("X-Request-ID"))
        bind_request_context(
            request.method,
            request.url.path,
            request.client.host if request.client else None,
        )
        try:
            response = await call_next(request)
        finally:
            clear_request_context()
        response.headers["X-Request-ID"] = correlation_id
        return response

    application.add_middleware(
        CORSMiddleware,
        allow_origins=_allowed_origins(),
        allow_credentials=True,
        allow_methods=["GET", "POST", "PUT", "PATCH", "DELETE", "OPTIONS"],
        allow_headers=["Content-Type", "Authorization", "X-Request-ID"],
        expose_headers=[
            "Authorization",
            "X-Request-ID",
            "X-RateLimit-Limit",
            "X-RateLimit-Remaining",
            "X-RateLimit-Reset",
        ],
        max_age=3600,
    )

    register_exception_handlers(application)
    application.include_router(auth_router)
    application.include_router(admin_router)

    @application.get("/healthz")
    async def healthz():
        from sessiongate.service.runtime import get_runtime

        runtime = get_runtime()
        store_name = type(runtime.store).__name__
        ping = getattr(runtime.store, "ping", None)
        if callable(ping):
            try:
                ping()
            except Exception as exc:
                logger.error("healthz_store_unreachable", store=store_name, error=str(exc))
                return error_response(503, ErrorCode.UNKNOWN_ERROR, "store unreachable")
        return {"status": "ok", "version": __version__, "store": store_name}

    return application


app = create_app()
