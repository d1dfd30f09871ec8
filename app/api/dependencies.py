"""
Shared dependencies and helpers for the API routers.

The engine, object store and import runner are resolved through FastAPI
dependencies so tests can override them with SQLite, an in-memory store and
a synchronous runner.
"""
import logging

from fastapi import HTTPException, status

from app.core.security import get_current_principal  # noqa: F401
from app.db.session import get_db_engine  # noqa: F401
from app.domain.imports.errors import (
    DeleteConfirmationError,
    DuplicateTemplateError,
    ImportPermissionError,
    InvalidJobTransitionError,
    JobNotFoundError,
    MappingConflictError,
    MappingError,
    ParseError,
    StagingError,
    TemplateNotFoundError,
)
from app.domain.imports.orchestrator import get_import_runner  # noqa: F401
from app.integrations.storage import StorageError, get_object_store  # noqa: F401

logger = logging.getLogger(__name__)


def to_http_exception(exc: Exception) -> HTTPException:
    """
    Map a pipeline error onto the HTTP status the API reports for it.

    Unknown errors become 500 with the message; callers log them first.
    """
    if isinstance(exc, (JobNotFoundError, TemplateNotFoundError)):
        return HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=exc.message)
    if isinstance(exc, ImportPermissionError):
        return HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=exc.message)
    if isinstance(exc, MappingConflictError):
        return HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail={"message": exc.message, "dropped_fields": exc.dropped_fields},
        )
    if isinstance(exc, (InvalidJobTransitionError, DuplicateTemplateError)):
        return HTTPException(status_code=status.HTTP_409_CONFLICT, detail=exc.message)
    if isinstance(exc, MappingError):
        return HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail={"message": exc.message, "missing_fields": exc.missing_fields},
        )
    if isinstance(exc, (ParseError, DeleteConfirmationError, StagingError)):
        return HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=exc.message)
    if isinstance(exc, ValueError):
        return HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc))
    if isinstance(exc, StorageError):
        return HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail=str(exc))
    return HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail=str(exc))
