"""GitPulse REST API — FastAPI application factory."""

from __future__ import annotations

from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from gitpulse.api.deps import (
    dispose_engine,
    get_github_client,
    get_limiters,
    get_orchestrator,
    get_status_service,
    get_sync_service,
    init_session_factory,
)
from gitpulse.api.errors import register_error_handlers
from gitpulse.api.middleware.request_id import RequestIDMiddleware
from gitpulse.api.routers import sync
from gitpulse.core.config import env_str
from gitpulse.core.logging import setup_logging
from gitpulse.scheduler import create_scheduler


@asynccontextmanager
async def _lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Startup: init DB, start sweeps. Shutdown: stop sweeps, dispose engine."""
    factory = init_session_factory()
    scheduler = create_scheduler(
        factory,
        orchestrator=get_orchestrator(),
        sync_service=get_sync_service(),
        status_service=get_status_service(),
        github_client=get_github_client(),
        limiters=get_limiters(),
    )
    await scheduler.start()
    yield
    await scheduler.stop()
    await dispose_engine()


def create_app() -> FastAPI:
    """Build and return the FastAPI application."""
    setup_logging()

    app = FastAPI(
        title="GitPulse Sync",
        docs_url="/api/v1/docs",
        openapi_url="/api/v1/openapi.json",
        lifespan=_lifespan,
    )

    register_error_handlers(app)

    cors_origins = env_str("CORS_ORIGINS", "http://localhost:3000")
    app.add_middleware(
        CORSMiddleware,
        allow_origins=[o.strip() for o in cors_origins.split(",")],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.add_middleware(RequestIDMiddleware)

    @app.get("/health", tags=["ops"])
    async def health() -> JSONResponse:
        return JSONResponse({"status": "ok"})

    app.include_router(sync.router, prefix="/api/v1", tags=["sync"])

    return app
