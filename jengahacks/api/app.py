"""FastAPI application factory for the registration service.

Routers, the client-context middleware, CORS and the error envelope are all
wired here. Stores can be injected for tests; otherwise they come from
settings (Postgres when a database URL is configured).
"""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import AsyncIterator, Optional

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from jengahacks import __version__
from jengahacks.abuse.ratelimit import Clock
from jengahacks.captcha import CaptchaVerifier
from jengahacks.config.core import Settings, load_settings
from jengahacks.errors import (
    InternalError,
    RateLimitExceeded,
    RegistrationError,
    ValidationError,
)
from jengahacks.services import Services
from jengahacks.shared.log_colors import LogColors
from jengahacks.store.base import AbuseStore, RegistrationStore

from . import admin, routes
from .middleware import ClientContextMiddleware

logger = logging.getLogger(__name__)


async def _registration_error(request: Request, exc: RegistrationError) -> JSONResponse:
    headers = {}
    if isinstance(exc, RateLimitExceeded) and exc.retry_after_seconds:
        headers["Retry-After"] = str(exc.retry_after_seconds)
    if isinstance(exc, InternalError):
        logger.error(
            {
                "request": getattr(request.state, "request_id", None),
                "internal_error": exc.message,
                "context": exc.context,
            }
        )
    return JSONResponse(exc.to_payload(), status_code=exc.status_code, headers=headers or None)


async def _request_validation_error(request: Request, exc: RequestValidationError) -> JSONResponse:
    errors = exc.errors()
    field: Optional[str] = None
    message = "Invalid request"
    if errors:
        first = errors[0]
        loc = [str(part) for part in first.get("loc", ()) if part not in ("body", "query", "path")]
        field = loc[-1] if loc else None
        message = first.get("msg") or message
    return JSONResponse(ValidationError(message, field=field).to_payload(), status_code=400)


async def _unhandled_error(request: Request, exc: Exception) -> JSONResponse:
    logger.exception(
        f"{LogColors.NETWORK_LABEL} unhandled_error: path={request.url.path} error={type(exc).__name__}"
    )
    return JSONResponse(InternalError().to_payload(), status_code=500)


def create_app(
    settings: Optional[Settings] = None,
    *,
    abuse_store: Optional[AbuseStore] = None,
    registration_store: Optional[RegistrationStore] = None,
    captcha_verifier: Optional[CaptchaVerifier] = None,
    clock: Optional[Clock] = None,
) -> FastAPI:
    settings = settings or load_settings()
    services = Services.build(
        settings,
        abuse_store=abuse_store,
        registration_store=registration_store,
        captcha_verifier=captcha_verifier,
        clock=clock,
    )

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        logger.info(
            {
                "app": "startup",
                "stores": type(services.abuse_store).__name__,
                "capacity": settings.registration.capacity,
                "admin_api": bool(settings.api.admin_key),
            }
        )
        try:
            yield
        finally:
            await services.close()

    app = FastAPI(
        title="JengaHacks Registration API",
        description="Hackathon registration with layered abuse control.",
        version=__version__,
        lifespan=lifespan,
    )
    app.state.services = services

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.api.cors_origins,
        allow_credentials=True,
        allow_methods=["GET", "POST", "PATCH", "DELETE"],
        allow_headers=["*"],
    )
    # Added last so it wraps CORS; request.state is populated before routing
    app.add_middleware(ClientContextMiddleware, trust_proxy=settings.api.trust_proxy)

    app.add_exception_handler(RegistrationError, _registration_error)
    app.add_exception_handler(RequestValidationError, _request_validation_error)
    app.add_exception_handler(Exception, _unhandled_error)

    app.include_router(routes.router)
    app.include_router(admin.router)
    return app


__all__ = ["create_app"]
