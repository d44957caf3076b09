"""
FastAPI application for the Storyloom API.

This module sets up the FastAPI app with routes, middleware, error
handlers and the service lifespan.
"""

from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from storyloom.api.services import Services, build_services, start_services, stop_services
from storyloom.config import config
from storyloom.errors import StoryEngineError
from storyloom.routes.admin import router as admin_router
from storyloom.routes.stories import router as stories_router, status_for_error
from storyloom.utils.logging import api_logger, configure_logging


def create_app(services: Optional[Services] = None) -> FastAPI:
    """
    Build the app.

    Args:
        services: Pre-built services (tests). When omitted the lifespan
            builds them from config and owns their start/stop.
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        if services is not None:
            app.state.services = services
            yield
            return

        configure_logging(config.LOG_LEVEL)
        api_logger.info(
            "Storyloom API starting",
            environment=config.ENVIRONMENT,
            narrative_api=config.NARRATIVE_API_BASE_URL,
            story_db=config.story_db_path,
            offline_queue_db=config.offline_queue_db_path,
        )

        built = await build_services()
        await start_services(built)
        app.state.services = built
        try:
            yield
        finally:
            await stop_services(built)
            app.state.services = None
            api_logger.info("Storyloom API stopped")

    app = FastAPI(
        title="Storyloom API",
        description="Journal entries woven into a persistent, offline-tolerant story graph",
        version="1.0.0",
        docs_url="/docs",
        redoc_url="/redoc",
        lifespan=lifespan,
    )

    # CORS middleware for frontend access
    app.add_middleware(
        CORSMiddleware,
        allow_origins=config.allowed_origins_list,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.include_router(stories_router)
    app.include_router(admin_router)

    # ===== Health Check =====

    @app.get("/health")
    async def health_check(request: Request):
        """Health check endpoint. Always answers 200."""
        current = getattr(request.app.state, "services", None)
        if current is None:
            return {"status": "starting"}

        return {
            "status": "healthy",
            "connected": current.monitor.is_connected,
            "offline_pending": await current.offline_queue.pending_count(),
            "replaying": current.worker.is_processing,
            "story_graph": await current.persistence.counts(),
        }

    # ===== Error Handlers =====

    @app.exception_handler(StoryEngineError)
    async def story_error_handler(request: Request, exc: StoryEngineError):
        api_logger.error(
            "Request failed",
            path=request.url.path,
            kind=exc.kind,
            error=str(exc),
        )
        return JSONResponse(
            status_code=status_for_error(exc),
            content={
                "error": exc.kind,
                "detail": exc.user_message,
            }
        )

    @app.exception_handler(Exception)
    async def global_exception_handler(request: Request, exc: Exception):
        """Global exception handler."""
        api_logger.error("Unhandled error", path=request.url.path, error=repr(exc))
        return JSONResponse(
            status_code=500,
            content={
                "error": "Internal server error",
                "detail": str(exc) if config.DEBUG else "An error occurred",
                "type": type(exc).__name__
            }
        )

    return app


app = create_app()
