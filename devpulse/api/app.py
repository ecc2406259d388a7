"""
DevPulse Local API - FastAPI Application
=========================================

Application factory for the local read-model server.
"""

from contextlib import asynccontextmanager
from typing import AsyncGenerator, Optional

import structlog
from fastapi import FastAPI, Request, WebSocket, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from devpulse.api import routes
from devpulse.api.websocket_hub import ConnectionManager, websocket_endpoint
from devpulse.core.api_client import DevPulseClient
from devpulse.core.config import settings
from devpulse.core.credentials import EncryptedFileCredentialStore
from devpulse.core.exceptions import (
    ApiError,
    AuthenticationError,
    DevPulseError,
    PreconditionFailed,
    TransportError,
)
from devpulse.core.schemas import ErrorResponse, HealthResponse
from devpulse.core.session import SessionStore
from devpulse.core.tracking import AnalysisTracker

logger = structlog.get_logger()


def _error(status_code: int, error: str, code: str, detail: Optional[str] = None) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content=ErrorResponse(error=error, detail=detail, code=code).model_dump(),
    )


def create_app(tracker: Optional[AnalysisTracker] = None, load_on_startup: bool = True) -> FastAPI:
    """
    Create and configure the FastAPI application.

    Args:
        tracker: Tracker to serve. When omitted one is built from settings
            (file-backed session and credential stores) and closed on shutdown
            together with its API client.
        load_on_startup: Run the initial listing + poller discovery.

    Returns:
        Configured FastAPI application
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
        # Startup
        logger.info("local_api_starting", version=settings.APP_VERSION)

        owned_api: Optional[DevPulseClient] = None
        active = tracker
        if active is None:
            owned_api = DevPulseClient(session=SessionStore.default())
            active = AnalysisTracker(owned_api, credentials=EncryptedFileCredentialStore.default())

        app.state.tracker = active
        app.state.connections = ConnectionManager(active.store)
        await app.state.connections.start()

        if load_on_startup:
            try:
                await active.load()
            except DevPulseError as e:
                # Serve anyway; POST /refresh retries
                logger.warning("initial_load_failed", error=str(e))

        yield

        # Shutdown
        logger.info("local_api_stopping")
        await active.close()
        await app.state.connections.stop()
        if owned_api is not None:
            await owned_api.aclose()

    app = FastAPI(
        title=f"{settings.APP_NAME} Local API",
        version=settings.APP_VERSION,
        docs_url="/docs" if settings.is_development else None,
        redoc_url=None,
        lifespan=lifespan,
    )

    # ==========================================================================
    # Middleware
    # ==========================================================================

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.CORS_ORIGINS,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # ==========================================================================
    # Exception Handlers
    # ==========================================================================

    @app.exception_handler(PreconditionFailed)
    async def precondition_handler(request: Request, exc: PreconditionFailed) -> JSONResponse:
        return _error(status.HTTP_412_PRECONDITION_FAILED, str(exc), "PRECONDITION_FAILED")

    @app.exception_handler(AuthenticationError)
    async def authentication_handler(request: Request, exc: AuthenticationError) -> JSONResponse:
        return _error(status.HTTP_401_UNAUTHORIZED, exc.message, "SESSION_EXPIRED")

    @app.exception_handler(ApiError)
    async def api_error_handler(request: Request, exc: ApiError) -> JSONResponse:
        detail = f"Upstream status {exc.status_code}" if exc.status_code is not None else None
        return _error(status.HTTP_502_BAD_GATEWAY, exc.message, "UPSTREAM_REJECTED", detail)

    @app.exception_handler(TransportError)
    async def transport_error_handler(request: Request, exc: TransportError) -> JSONResponse:
        logger.warning("upstream_unreachable", path=request.url.path, error=str(exc))
        return _error(status.HTTP_503_SERVICE_UNAVAILABLE, "DevPulse service unreachable", "UPSTREAM_UNAVAILABLE", str(exc))

    # ==========================================================================
    # Routers
    # ==========================================================================

    @app.get("/health", response_model=HealthResponse, tags=["Health"])
    async def health_check(request: Request) -> HealthResponse:
        active: AnalysisTracker = request.app.state.tracker
        return HealthResponse(
            status="healthy",
            version=settings.APP_VERSION,
            environment=settings.ENVIRONMENT,
            api_base_url=active.api.base_url,
            analyses=len(active.store),
            active_pollers=len(active.registry),
        )

    app.include_router(routes.router)

    # ==========================================================================
    # WebSocket Endpoints
    # ==========================================================================

    @app.websocket("/ws")
    async def state_websocket(websocket: WebSocket):
        """Live StateStore changes."""
        await websocket_endpoint(websocket, websocket.app.state.connections)

    return app
