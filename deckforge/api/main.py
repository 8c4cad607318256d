"""
FastAPI application for deckforge.

Provides REST API for:
- Queueing and monitoring flashcard generation jobs
- Reading published flashcards per module
- Reviewing cards that failed evidence verification
"""

from __future__ import annotations

from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any, Optional

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from loguru import logger

from config import Settings, get_settings
from deckforge import __version__
from deckforge.api.errors import register_exception_handlers
from deckforge.api.routers import flashcards_router, modules_router, orchestrator_router
from deckforge.container import Container, build_container


def _check_database_health(container: Optional[Container]) -> tuple[str, Optional[str]]:
    """
    Check database connectivity.

    Returns:
        Tuple of (status, error_message). Status is "ok", "error" or "not_used".
    """
    if container is None or container.engine is None:
        return "not_used", None

    from deckforge.db.database import check_database_health

    return check_database_health(container.engine)


def create_app(settings: Optional[Settings] = None, container: Optional[Container] = None) -> FastAPI:
    """
    Build the application.

    Args:
        settings: Settings to use; the cached environment settings by default
        container: Pre-built collaborators (tests inject fakes here)
    """
    settings = settings or get_settings()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Application lifespan handler for startup/shutdown events."""
        # Startup
        logger.info("Starting deckforge service...")
        if app.state.container is None:
            app.state.container = build_container(settings)
        await app.state.container.orchestrator.start()
        logger.info(f"Service started on {settings.api_host}:{settings.api_port}")

        yield

        # Shutdown
        logger.info("Shutting down deckforge service...")
        await app.state.container.aclose()

    app = FastAPI(
        title="deckforge",
        description="""
    Flashcard generation orchestrator.

    ## Data Flow

    ```
    Module content (chunks)
        ↓ Stage A: summaries, objectives, key terms
        ↓ Stage B: candidate cards with cited evidence
        ↓ Evidence verification
    Published deck  /  Review queue (flagged cards)
    ```
    """,
        version=__version__,
        lifespan=lifespan,
    )
    app.state.container = container
    app.state.settings = settings

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.get_cors_origins(),
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    register_exception_handlers(app)

    # ========================================
    # Health & Status Endpoints
    # ========================================

    @app.get("/", tags=["Health"])
    def root() -> dict[str, str]:
        """Root endpoint returning service info."""
        return {
            "service": "deckforge",
            "version": __version__,
            "status": "ok",
        }

    @app.get("/health", tags=["Health"])
    def health_check(request: Request) -> dict[str, Any]:
        """Health check with database connectivity and worker state."""
        active: Optional[Container] = request.app.state.container
        db_status, db_error = _check_database_health(active)
        workers_running = bool(active and active.orchestrator.is_running)

        overall_status = "healthy" if db_status != "error" and workers_running else "unhealthy"
        result: dict[str, Any] = {
            "status": overall_status,
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "components": {
                "database": db_status,
                "orchestrator": "running" if workers_running else "stopped",
                "llm": "configured" if settings.has_llm_configured() else "mock",
            },
        }
        if db_error:
            result["errors"] = {"database": db_error}
        return result

    # ========================================
    # Routers
    # ========================================

    prefix = settings.api_prefix.rstrip("/")
    app.include_router(orchestrator_router.router, prefix=f"{prefix}/orchestrator", tags=["Orchestrator"])
    app.include_router(modules_router.router, prefix=f"{prefix}/modules", tags=["Modules"])
    app.include_router(flashcards_router.router, prefix=f"{prefix}/flashcards", tags=["Review"])

    return app


app = create_app()
