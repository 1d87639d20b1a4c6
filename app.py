"""
app.py - FastAPI application factory and startup lifecycle.

This is the ASGI application object imported by uvicorn.
It wires all services, registers routers, and runs startup initialization.

Usage (via launcher):
    python main.py

Usage (direct uvicorn):
    uvicorn app:app --reload
"""

from __future__ import annotations

from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI

from elms.controllers.timetable_controller import router as timetable_router
from elms.repository.data_repository import DataRepository
from elms.services.auth_service import AuthService
from elms.services.timetable_service import TimetableService
from elms.utils.config import Settings, get_settings
from elms.utils.logger import get_logger


logger = get_logger(__name__)


def create_app(settings: Optional[Settings] = None) -> FastAPI:
    """
    Build and wire the FastAPI application.

    Services are created here and handed to routes through app.state.
    """
    settings = settings or get_settings()

    # --- Repository (SQLite connection factory) ---
    repository = DataRepository(settings)

    # --- Services ---
    auth_service = AuthService(settings=settings)
    timetable_service = TimetableService(repository=repository, settings=settings)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Run startup initialization before accepting requests."""
        _startup(app)
        yield

    app = FastAPI(
        title=settings.app_name,
        version=settings.app_version,
        lifespan=lifespan,
    )

    # --- Routers ---
    app.include_router(timetable_router)

    # --- Inject services into app.state for dependency resolution ---
    app.state.settings = settings
    app.state.repository = repository
    app.state.auth_service = auth_service
    app.state.timetable_service = timetable_service

    return app


def _startup(app: FastAPI) -> None:
    """
    Idempotent startup sequence. Safe to re-run on server restarts.

    The schema must exist before seeding; seeding is skipped on a
    populated database.
    """
    repository: DataRepository = app.state.repository
    settings: Settings = app.state.settings

    logger.info("Startup: initializing database schema")
    repository.initialize_database()

    if settings.seed_demo_data:
        logger.info("Startup: seeding demo rooms, staff and exam requirements")
        repository.seed_demo_data()

    logger.info("Startup complete, system ready")


# Module-level app object for uvicorn
app = create_app()
