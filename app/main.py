"""FastAPI application factory."""

from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from app.config import configure_structlog, get_settings
from app.core.row_scope import RowScopeMiddleware
from app.db.session import dispose_engine
from app.error_handlers import register_exception_handlers
from app.middleware.correlation_id import CorrelationIdMiddleware
from app.middleware.logging import LoggingMiddleware
from app.middleware.rate_limit import RateLimitMiddleware
from app.middleware.security_headers import SecurityHeadersMiddleware
from app.routers import admin, auth, friends, health, notes, notifications, sharing


@asynccontextmanager
async def lifespan(_: FastAPI) -> AsyncIterator[None]:
    """Release pooled database connections on shutdown."""
    yield
    await dispose_engine()


def create_app() -> FastAPI:
    """Create and configure the FastAPI application."""
    settings = get_settings()
    configure_structlog(settings)

    app = FastAPI(title=settings.app.service, lifespan=lifespan)
    # Row-scoped transactions must be finalized before any outer layer sees the response.
    app.add_middleware(RowScopeMiddleware)
    app.add_middleware(RateLimitMiddleware)
    app.add_middleware(LoggingMiddleware)
    app.add_middleware(
        SecurityHeadersMiddleware, hsts=settings.app.environment != "development"
    )
    app.add_middleware(
        CORSMiddleware,
        allow_origins=[settings.app.frontend_origin],
        allow_credentials=True,
        allow_methods=["GET", "POST", "PUT", "DELETE"],
        allow_headers=["Content-Type", "X-Correlation-ID"],
    )
    app.add_middleware(CorrelationIdMiddleware)
    register_exception_handlers(app, environment=settings.app.environment)

    app.include_router(auth.router)
    app.include_router(notes.router)
    app.include_router(friends.router)
    app.include_router(sharing.router)
    app.include_router(notifications.router)
    app.include_router(admin.router)
    app.include_router(health.router)
    return app


app = create_app()
