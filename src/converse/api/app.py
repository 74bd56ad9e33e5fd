"""
Application factory.

Collaborators (cache service, backend client, authenticator) are built in
the lifespan handler from settings unless the caller injects them, and are
stored on app.state for the Depends providers in converse.api.deps.
"""

from __future__ import annotations

from contextlib import asynccontextmanager
from typing import AsyncIterator

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from converse import __version__
from converse.api.routes import router
from converse.auth import Authenticator
from converse.backend.client import BackendClient
from converse.cache.factory import create_cache_service
from converse.cache.service import CacheService
from converse.config import Settings, get_settings
from converse.exceptions import (
    AuthenticationError,
    ConverseError,
    InvalidRequestError,
    NotFoundError,
)
from converse.logging import get_logger, log_context
from converse.types import generate_id

logger = get_logger(__name__)

REQUEST_ID_HEADER = "X-Request-ID"


def _error(status_code: int, message: str) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"error": message})


def _status_for(error: ConverseError) -> int:
    if isinstance(error, AuthenticationError):
        return 401
    if isinstance(error, NotFoundError):
        return 404
    if isinstance(error, InvalidRequestError):
        return 400
    return 500


def create_app(
    settings: Settings | None = None,
    *,
    cache: CacheService | None = None,
    backend: BackendClient | None = None,
    authenticator: Authenticator | None = None,
) -> FastAPI:
    """Build the FastAPI application.

    Args:
        settings: Application settings, loaded from the environment if omitted.
        cache: Cache service to use instead of one built from settings.
        backend: Backend client to use instead of one built from settings.
        authenticator: Authenticator to use instead of one built from settings.

    Returns:
        The configured application.
    """
    settings = settings or get_settings()

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        owned: list[CacheService | BackendClient | Authenticator] = []

        app.state.settings = settings
        if cache is None:
            app.state.cache = await create_cache_service(settings)
            owned.append(app.state.cache)
        else:
            app.state.cache = cache
        if backend is None:
            app.state.backend = BackendClient.from_settings(settings)
            owned.append(app.state.backend)
        else:
            app.state.backend = backend
        if authenticator is None:
            app.state.authenticator = Authenticator.from_settings(settings)
            owned.append(app.state.authenticator)
        else:
            app.state.authenticator = authenticator

        logger.info(
            "Service started",
            cache_backend=app.state.cache.store.name,
            backend_url=settings.backend_url,
        )
        try:
            yield
        finally:
            for collaborator in owned:
                await collaborator.close()
            logger.info("Service stopped")

    app = FastAPI(title="Converse Cache API", version=__version__, lifespan=lifespan)

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.CORS_ORIGINS,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.middleware("http")
    async def request_context(request: Request, call_next):
        request_id = request.headers.get(REQUEST_ID_HEADER) or generate_id("req")
        with log_context(request_id=request_id):
            try:
                response = await call_next(request)
            except Exception:
                logger.exception(
                    "Unhandled error", method=request.method, path=request.url.path
                )
                response = _error(500, "Internal server error")
        response.headers[REQUEST_ID_HEADER] = request_id
        return response

    @app.exception_handler(ConverseError)
    async def converse_error_handler(request: Request, exc: ConverseError) -> JSONResponse:
        status_code = _status_for(exc)
        if status_code == 500:
            logger.error("Request failed", path=request.url.path, error=str(exc))
        else:
            logger.info(
                "Request rejected",
                path=request.url.path,
                status_code=status_code,
                error=exc.message,
            )
        return _error(status_code, exc.message)

    @app.exception_handler(RequestValidationError)
    async def validation_error_handler(
        request: Request, exc: RequestValidationError
    ) -> JSONResponse:
        details = "; ".join(
            f"{'.'.join(str(part) for part in err.get('loc', ()))}: {err.get('msg')}"
            for err in exc.errors()
        )
        return _error(400, f"Invalid request: {details}")

    @app.exception_handler(StarletteHTTPException)
    async def http_error_handler(request: Request, exc: StarletteHTTPException) -> JSONResponse:
        return _error(exc.status_code, str(exc.detail))

    app.include_router(router)
    return app
