"""
FastAPI application entry point.

This module initializes the FastAPI application, configures middleware,
and registers all API routers.
"""
import logging
import os
from contextlib import asynccontextmanager
from datetime import datetime

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from .api.routers import imports, mapping, templates
from .core.config import settings
from .core.logging_config import configure_logging

# Ensure logging is configured before the application starts serving requests.
configure_logging(settings.log_level)

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Manage application lifecycle - startup and shutdown events."""
    from .domain.imports.orchestrator import shutdown_import_runner

    if os.getenv("SKIP_DB_INIT") == "1":
        logger.info("SKIP_DB_INIT=1 detected; skipping database bootstrap during startup")
    else:
        from .db.models import create_import_tables
        from .db.session import get_engine

        try:
            create_import_tables(get_engine())
            logger.info("Import tables ready")
        except Exception as e:
            logger.exception(f"Failed to initialize database tables: {e}")
            raise  # Refuse to start with a broken database

    yield  # Application runs here

    shutdown_import_runner()


# Initialize FastAPI application
app = FastAPI(
    title="Portfolio Import API",
    version="1.0.0",
    description="Multi-tenant CSV/Excel import of debt portfolios into persons and accounts",
    lifespan=lifespan,
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

# Templates first: /api/import/templates must win over /api/import/{job_id}
app.include_router(templates.router)
app.include_router(imports.router)
app.include_router(mapping.router)


@app.get("/health")
async def health_check():
    """Health check endpoint for deployment monitoring."""
    return {
        "status": "healthy",
        "timestamp": datetime.now().isoformat(),
        "service": "portfolio-import-api",
    }
