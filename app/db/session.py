import logging
import os
import socket
from contextlib import closing
from typing import Optional

from sqlalchemy import create_engine, text
from sqlalchemy.engine import Engine
from sqlalchemy.engine.url import make_url

from app.core.config import settings

logger = logging.getLogger(__name__)

_engine: Optional[Engine] = None


def _report_connection_failure(exc: Exception) -> None:
    """Log high-signal diagnostics when the service cannot reach the database."""
    logger.warning(f"Could not connect to database: {exc}")
    logger.warning("The service will start but import operations will fail until the connection succeeds.")

    try:
        url = make_url(settings.database_url)
    except Exception as parse_error:  # pragma: no cover
        logger.warning(f"Unable to parse DATABASE_URL ({parse_error}); skipping detailed diagnostics.")
        return

    logger.warning(
        "Database connection settings: dialect=%s driver=%s host=%s port=%s database=%s SKIP_DB_INIT=%r",
        url.get_backend_name(),
        url.get_driver_name() or "default",
        url.host or "localhost",
        url.port or "(default)",
        url.database,
        os.getenv("SKIP_DB_INIT"),
    )

    if url.get_backend_name() == "sqlite":
        return

    host = url.host or "localhost"
    port = url.port or 5432
    try:
        with closing(socket.create_connection((host, port), timeout=2)):
            logger.warning(f"Socket check: able to reach {host}:{port}")
    except OSError as socket_err:
        logger.warning(f"Socket check: unable to reach {host}:{port} ({socket_err})")


def get_engine() -> Engine:
    global _engine
    if _engine is None:
        try:
            _engine = create_engine(settings.database_url, pool_pre_ping=True)
            # Test connection eagerly so failures surface immediately.
            with _engine.connect() as conn:
                conn.execute(text("SELECT 1"))
        except Exception as e:
            _report_connection_failure(e)
            # Keep the engine so callers can proceed (may still fail later).
            _engine = create_engine(settings.database_url, pool_pre_ping=True)
    return _engine


def get_db_engine() -> Engine:
    """FastAPI dependency returning the shared engine."""
    return get_engine()
