"""FastAPI application factory.

Creates the app with logging middleware, metrics middleware, CORS, the
datasource error handler, lifespan events for database initialization and
service wiring, and the v1 API router.
"""

from __future__ import annotations

from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

import structlog
from fastapi import FastAPI, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.requests import Request
from fastapi.responses import JSONResponse, Response

from src.app.api.middleware.logging import LoggingMiddleware, configure_structlog
from src.app.api.v1.router import router as v1_router
from src.app.config import get_settings
from src.app.core.database import close_db, get_session, init_db
from src.app.core.monitoring import MetricsMiddleware, get_metrics_response
from src.app.core.security import get_secret_store
from src.app.datasources.errors import DatasourceError, UpstreamError
from src.app.datasources.repository import SqlDatasourceStore
from src.app.datasources.service import DatasourceService


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Application lifespan: init DB and wire services on startup, close on shutdown."""
    log = structlog.get_logger(__name__)
    configure_structlog()
    await init_db()

    store = SqlDatasourceStore(session_factory=get_session)
    app.state.datasource_service = DatasourceService(store=store, secrets=get_secret_store())
    log.info("datasource.service_initialized")

    yield

    app.state.datasource_service = None
    await close_db()
    log.info("app.shutdown_complete")


async def datasource_error_handler(request: Request, exc: DatasourceError) -> JSONResponse:
    """Map engine errors to HTTP: tracker failures are 502, the rest 400."""
    status_code = (
        status.HTTP_502_BAD_GATEWAY
        if isinstance(exc, UpstreamError)
        else status.HTTP_400_BAD_REQUEST
    )
    return JSONResponse(status_code=status_code, content={"detail": exc.message})


def create_app() -> FastAPI:
    """Create and configure the FastAPI application."""
    settings = get_settings()

    app = FastAPI(
        title="Roadmap Datasource API",
        version="0.1.0",
        description="External work tracker sync for roadmaps with a cached snapshot",
        lifespan=lifespan,
    )

    # Middleware is added in reverse order (last added = outermost)

    # CORS middleware
    if settings.CORS_ALLOWED_ORIGINS == "*":
        origins = ["*"]
    else:
        origins = [o.strip() for o in settings.CORS_ALLOWED_ORIGINS.split(",")]
    app.add_middleware(
        CORSMiddleware,
        allow_origins=origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # Logging middleware (logs every request with timing)
    app.add_middleware(LoggingMiddleware)

    # Metrics middleware (outermost -- records Prometheus metrics for all requests)
    app.add_middleware(MetricsMiddleware)

    app.add_exception_handler(DatasourceError, datasource_error_handler)

    app.include_router(v1_router)

    # Prometheus metrics endpoint (infrastructure route, outside v1 router)
    @app.get("/metrics", include_in_schema=False)
    async def metrics(request: Request) -> Response:
        """Prometheus metrics endpoint."""
        return get_metrics_response()

    return app


# Module-level app for uvicorn
app = create_app()
