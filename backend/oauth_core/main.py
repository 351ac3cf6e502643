"""
FastAPI application: OAuth integration endpoints and background cleanup.
"""

import asyncio
import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request, status
from fastapi.responses import JSONResponse

from oauth_core.api.routes.v1.router import router as v1_router
from oauth_core.core.config import settings
from oauth_core.core.db import get_session, init_db
from oauth_core.core.exceptions import (
    IntegrationNotFoundError,
    OAuthCoreError,
    ReauthorizationRequired,
    TransientFailure,
    UnknownProviderError,
)
from oauth_core.core.logging import configure_logging
from oauth_core.services.oauth_state_cleanup import run_cleanup_task
from oauth_core.services.token_service import TokenService

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    configure_logging(settings.LOG_LEVEL)
    init_db()

    # Fails fast on a missing encryption key or half-configured provider
    app.state.token_service = TokenService.from_settings(settings)

    stop_event = asyncio.Event()
    cleanup_task = asyncio.create_task(
        run_cleanup_task(
            get_session=get_session,
            interval_seconds=settings.STATE_CLEANUP_INTERVAL_SECONDS,
            ttl_minutes=settings.STATE_EXPIRATION_MINUTES,
            stop_event=stop_event,
        )
    )
    logger.info("%s %s started", settings.PROJECT_NAME, settings.APP_VERSION)

    try:
        yield
    finally:
        stop_event.set()
        await cleanup_task
        await app.state.token_service.aclose()


app = FastAPI(
    title=settings.PROJECT_NAME,
    version=settings.APP_VERSION,
    openapi_url=f"{settings.API_V1_STR}/openapi.json",
    lifespan=lifespan,
)


def _error_response(status_code: int, exc: OAuthCoreError) -> JSONResponse:
    body = {"detail": exc.user_message}
    if exc.provider:
        body["provider"] = exc.provider
    return JSONResponse(status_code=status_code, content=body)


@app.exception_handler(UnknownProviderError)
async def unknown_provider_handler(request: Request, exc: UnknownProviderError):
    return _error_response(status.HTTP_400_BAD_REQUEST, exc)


@app.exception_handler(IntegrationNotFoundError)
async def integration_not_found_handler(request: Request, exc: IntegrationNotFoundError):
    return _error_response(status.HTTP_404_NOT_FOUND, exc)


@app.exception_handler(ReauthorizationRequired)
async def reauthorization_required_handler(request: Request, exc: ReauthorizationRequired):
    return _error_response(status.HTTP_409_CONFLICT, exc)


@app.exception_handler(TransientFailure)
async def transient_failure_handler(request: Request, exc: TransientFailure):
    logger.warning("Transient failure serving %s: %s", request.url.path, exc)
    return _error_response(status.HTTP_503_SERVICE_UNAVAILABLE, exc)


app.include_router(v1_router, prefix=settings.API_V1_STR)
