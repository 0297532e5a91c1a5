"""
FastAPI application entry point.

This module initializes the FastAPI application, configures middleware,
and registers the equipment import routers.
"""
import logging
import os
from contextlib import asynccontextmanager
from datetime import datetime

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from .api.dependencies import get_session_store
from .api.routers import equipment_imports, import_history
from .core.config import settings
from .core.logging_config import configure_logging
from .domain.imports.advisor import shutdown_advisor_pool
from .domain.imports.sessions import SessionSweeper

# Ensure logging is configured before the application starts serving requests.
configure_logging(settings.log_level, settings.log_timezone)

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Manage application lifecycle - startup and shutdown events."""
    if os.getenv("SKIP_DB_INIT") == "1":
        logger.info("SKIP_DB_INIT=1 detected; skipping database bootstrap during startup")
    else:
        from .db.schema import create_import_tables
        from .db.session import get_engine

        try:
            create_import_tables(get_engine())
        except Exception:
            logger.exception("Failed to initialize database tables; the application cannot start")
            raise

    sweeper = None
    if settings.import_sweep_interval_seconds > 0:
        sweeper = SessionSweeper(get_session_store(), settings.import_sweep_interval_seconds)
        sweeper.start()

    yield  # Application runs here

    if sweeper is not None:
        sweeper.stop()
    shutdown_advisor_pool()


# Initialize FastAPI application
app = FastAPI(
    title="Equipment Import API",
    version="1.0.0",
    description="Bulk import of equipment records from spreadsheets with assisted column mapping",
    lifespan=lifespan
)

# Allow origins from environment variable or defaults for development
allowed_origins = os.getenv("ALLOWED_ORIGINS", "http://localhost:5173,http://localhost:3000").split(",")
allowed_origins = [origin.strip() for origin in allowed_origins]

app.add_middleware(
    CORSMiddleware,
    allow_origins=allowed_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(equipment_imports.router)
app.include_router(import_history.router)


@app.get("/")
async def root():
    """Root endpoint returning API information."""
    return {
        "message": "Equipment Import API",
        "version": "1.0.0"
    }


@app.get("/health")
async def health_check():
    """Health check endpoint for deployment monitoring."""
    return {
        "status": "healthy",
        "timestamp": datetime.now().isoformat(),
        "service": "equipment-import-api"
    }
