"""Entry-point for the tempadmin ASGI app.

This module constructs the FastAPI instance, builds the lifecycle services,
wires global middleware and error handlers, registers all route groups, and
exposes the ``app`` variable that uvicorn imports.

Start-up order matters: the lifespan hook revokes overdue grants and re-arms
every pending revocation *before* the server accepts its first request.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import os
import traceback
from contextvars import ContextVar
from time import perf_counter
from typing import Any, AsyncIterator, Awaitable, Callable, Dict, Iterable, Optional

from fastapi import FastAPI, Request, Response, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware
from slowapi import Limiter
from slowapi.middleware import SlowAPIMiddleware
from slowapi.util import get_remote_address

from tempadmin import __version__
from tempadmin.errors import (
    BackendError,
    InvalidTransitionError,
    NotFoundError,
    StoreError,
    TokenError,
    ValidationError,
)
from tempadmin.settings import ALLOWED_ORIGINS, Settings
from tempadmin.utils.backend import PrivilegeBackend
from tempadmin.utils.channels import ApprovalChannel
from tempadmin.utils.dependencies import Services, build_services

# Router imports live *inside* create_app() because approval_routes imports
# `limiter` from this module.
from tempadmin.utils.logger import configure_logging, logger

# ---------------------------------------------------------------------------
# Rate limiting and request context
# ---------------------------------------------------------------------------


# Rate limiter (IP-based by default)
limiter = Limiter(key_func=get_remote_address, default_limits=["120/minute"])


class RequestContextMiddleware(BaseHTTPMiddleware):
    """Attach request-level context vars for structured logging."""

    _request_id_ctx: ContextVar[str] = ContextVar("request_id", default="-")

    async def dispatch(self, request: Request, call_next: Callable[[Request], Awaitable[Response]]) -> Response:  # type: ignore[override]
        start = perf_counter()
        request_id = request.headers.get("X-Request-Id", os.urandom(4).hex())
        token = self._request_id_ctx.set(request_id)
        status_code = 500
        try:
            response = await call_next(request)
            status_code = response.status_code
        finally:
            duration_ms = (perf_counter() - start) * 1000
            logger.info(
                "request.complete",
                extra={
                    "extra": {
                        "path": request.url.path,
                        "method": request.method,
                        "status_code": status_code,
                        "duration_ms": round(duration_ms, 2),
                        "request_id": request_id,
                    }
                },
            )
            self._request_id_ctx.reset(token)
        return response


# ---------------------------------------------------------------------------
# Error mapping: detail codes only, never internals
# ---------------------------------------------------------------------------


def _install_error_handlers(app: FastAPI) -> None:
    @app.exception_handler(ValidationError)
    async def _validation(_: Request, exc: ValidationError) -> JSONResponse:
        return JSONResponse(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            content={"detail": "validation_failed", "errors": exc.violations},
        )

    @app.exception_handler(TokenError)
    async def _token(_: Request, exc: TokenError) -> JSONResponse:
        gone = exc.code in {"TOKEN_EXPIRED", "TOKEN_ALREADY_USED"}
        return JSONResponse(
            status_code=status.HTTP_410_GONE if gone else status.HTTP_400_BAD_REQUEST,
            content={"detail": exc.code.lower()},
        )

    @app.exception_handler(NotFoundError)
    async def _not_found(request: Request, exc: NotFoundError) -> JSONResponse:
        logger.warning("request.not_found", extra={"extra": {"path": request.url.path, **exc.details}})
        return JSONResponse(status_code=status.HTTP_404_NOT_FOUND, content={"detail": "request_failed"})

    @app.exception_handler(InvalidTransitionError)
    async def _transition(request: Request, exc: InvalidTransitionError) -> JSONResponse:
        logger.warning("request.invalid_transition", extra={"extra": {"path": request.url.path, **exc.details}})
        return JSONResponse(status_code=status.HTTP_409_CONFLICT, content={"detail": "request_failed"})

    @app.exception_handler(BackendError)
    async def _backend(request: Request, exc: BackendError) -> JSONResponse:
        logger.error(
            "privilege_backend.failed",
            extra={"extra": {"path": request.url.path, "error": exc.message, **exc.details}},
        )
        return JSONResponse(status_code=status.HTTP_502_BAD_GATEWAY, content={"detail": "privilege_backend_failed"})

    @app.exception_handler(StoreError)
    async def _store(request: Request, exc: StoreError) -> JSONResponse:
        logger.error("store.failed", extra={"extra": {"path": request.url.path, "error": exc.message, **exc.details}})
        return JSONResponse(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, content={"detail": "store_unavailable"})

    # Global exception handler - logs full tracebacks for any unhandled 500s
    @app.exception_handler(Exception)
    async def log_unhandled_exceptions(request: Request, exc: Exception):
        """Log full traceback for any unhandled exception that would become a 500."""
        error_logger = logging.getLogger("uvicorn.error")
        error_logger.error(
            "UNHANDLED %s at %s %s\n%s",
            type(exc).__name__,
            request.method,
            request.url.path,
            "".join(traceback.format_tb(exc.__traceback__)),
        )
        return JSONResponse(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, content={"detail": "internal_error"})


# ---------------------------------------------------------------------------
# Lifespan: recovery first, then background sweeps
# ---------------------------------------------------------------------------


@contextlib.asynccontextmanager
async def _lifespan(app: FastAPI) -> AsyncIterator[None]:
    services: Services = app.state.services
    summary = await services.scheduler.recover_all()
    app.state.recovery = summary

    sweeper = asyncio.create_task(
        services.issuer.run_sweeper(services.settings.token_sweep_interval_seconds),
        name="token-sweeper",
    )
    logger.info("Service started", extra={"extra": {"version": __version__, "env": services.settings.app_env}})
    try:
        yield
    finally:
        sweeper.cancel()
        try:
            await sweeper
        except asyncio.CancelledError:
            pass
        await services.scheduler.shutdown()
        logger.info("Service stopped")


def create_app(
    settings: Optional[Settings] = None,
    *,
    backend: Optional[PrivilegeBackend] = None,
    channels: Iterable[ApprovalChannel] = (),
) -> FastAPI:  # noqa: C901
    configure_logging()

    settings = settings or Settings.from_env()
    services = build_services(settings, backend=backend, channels=channels)

    app = FastAPI(
        title="tempadmin",
        description="Time-boxed admin privileges with human approval",
        version=__version__,
        docs_url="/docs" if settings.app_env != "production" else None,
        redoc_url=None,
        openapi_url="/openapi.json" if settings.app_env != "production" else None,
        lifespan=_lifespan,
    )
    app.state.services = services

    # Global middleware
    app.add_middleware(RequestContextMiddleware)
    # Rate limiting middleware (SlowAPI expects limiter via app.state)
    app.state.limiter = limiter
    app.add_middleware(SlowAPIMiddleware)

    # Register default handler for 429 responses from SlowAPI
    from slowapi.errors import RateLimitExceeded  # noqa: WPS433  (runtime import)
    from slowapi import _rate_limit_exceeded_handler

    app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)
    _install_error_handlers(app)

    # -------------------------------------------------------------------
    # Dashboard CORS (env-driven allow-list)
    # -------------------------------------------------------------------

    app.add_middleware(
        CORSMiddleware,
        allow_origins=ALLOWED_ORIGINS,
        allow_credentials=True,
        allow_methods=["GET", "POST", "OPTIONS"],
        allow_headers=["Authorization", "Content-Type", "X-Approver-Identity", "X-Request-Id"],
        max_age=600,
    )

    @app.get("/")
    async def root() -> Dict[str, Any]:  # pylint: disable=unused-variable
        return {"status": "ok", "version": __version__}

    # Expose OpenAPI YAML for dashboard client generation
    from tempadmin.openapi import install_openapi_route  # noqa: WPS433 (runtime import)

    install_openapi_route(app)

    from tempadmin.routers import admin_routes, approval_routes, requests_routes, ws_routes

    app.include_router(approval_routes.router)
    app.include_router(requests_routes.router)
    app.include_router(admin_routes.router)
    app.include_router(ws_routes.router)

    return app


# The object uvicorn imports (`uvicorn tempadmin.main:app`)
app = create_app()
