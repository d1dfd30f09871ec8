"""
Persistent tracking for import jobs.

A job moves ``pending -> processing -> uploaded -> validating -> completed``.
``failed`` is reachable from ``processing``, ``uploaded`` and ``validating``;
``cancelled`` from ``pending`` and ``processing``. Every transition is a
compare-and-set on the current status, so a job cancelled while a worker is
still running cannot be moved forward again by that worker.
"""
from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional, Tuple

from sqlalchemy import text
from sqlalchemy.engine import Engine

from app.core.events import emit
from app.db.models import new_id, utcnow_text
from app.domain.imports.errors import InvalidJobTransitionError, JobNotFoundError
from app.utils.serialization import dump_json, load_json, to_iso

logger = logging.getLogger(__name__)

PENDING = "pending"
PROCESSING = "processing"
UPLOADED = "uploaded"
VALIDATING = "validating"
COMPLETED = "completed"
FAILED = "failed"
CANCELLED = "cancelled"

JOB_STATUSES = (PENDING, PROCESSING, UPLOADED, VALIDATING, COMPLETED, FAILED, CANCELLED)
TERMINAL_STATUSES = {COMPLETED, FAILED, CANCELLED}
ACTIVE_STATUSES = {PENDING, PROCESSING}

ALLOWED_TRANSITIONS: Dict[str, set] = {
    PENDING: {PROCESSING, CANCELLED},
    PROCESSING: {UPLOADED, FAILED, CANCELLED},
    UPLOADED: {VALIDATING, FAILED},
    VALIDATING: {COMPLETED, FAILED},
    COMPLETED: set(),
    FAILED: set(),
    CANCELLED: set(),
}

_JSON_FIELDS = {"field_mapping", "validation_results", "errors"}
_UPDATABLE_FIELDS = {
    "file_path",
    "file_type",
    "progress",
    "total_rows",
    "processed_rows",
    "successful_rows",
    "failed_rows",
    "duplicate_rows",
    "skipped_empty_rows",
    "field_mapping",
    "validation_results",
    "errors",
    "error_message",
    "failed_rows_csv_path",
}


def can_transition(current: Optional[str], target: str) -> bool:
    return target in ALLOWED_TRANSITIONS.get(current or "", set())


def _row_to_job(row: Any) -> Dict[str, Any]:
    return {
        "id": str(row["id"]),
        "user_id": row["user_id"],
        "organization_id": row["organization_id"],
        "file_name": row["file_name"],
        "file_size": row["file_size"] or 0,
        "file_type": row["file_type"],
        "file_path": row["file_path"],
        "import_type": row["import_type"],
        "template_id": row["template_id"],
        "portfolio_id": row["portfolio_id"],
        "status": row["status"],
        "progress": row["progress"] or 0,
        "total_rows": row["total_rows"] or 0,
        "processed_rows": row["processed_rows"] or 0,
        "successful_rows": row["successful_rows"] or 0,
        "failed_rows": row["failed_rows"] or 0,
        "duplicate_rows": row["duplicate_rows"] or 0,
        "skipped_empty_rows": row["skipped_empty_rows"] or 0,
        "field_mapping": load_json(row["field_mapping"], default={}),
        "validation_results": load_json(row["validation_results"]),
        "errors": load_json(row["errors"], default=[]),
        "error_message": row["error_message"],
        "failed_rows_csv_path": row["failed_rows_csv_path"],
        "created_at": to_iso(row["created_at"]),
        "updated_at": to_iso(row["updated_at"]),
        "completed_at": to_iso(row["completed_at"]),
    }


def _encode_fields(fields: Dict[str, Any]) -> Dict[str, Any]:
    unknown = set(fields) - _UPDATABLE_FIELDS
    if unknown:
        raise ValueError(f"Unknown import job field(s): {sorted(unknown)}")
    return {
        key: dump_json(value) if key in _JSON_FIELDS else value
        for key, value in fields.items()
    }


def create_import_job(
    engine: Engine,
    *,
    user_id: str,
    file_name: str,
    organization_id: Optional[str] = None,
    file_size: int = 0,
    file_type: Optional[str] = None,
    import_type: str = "accounts",
    template_id: Optional[str] = None,
    portfolio_id: Optional[str] = None,
    field_mapping: Optional[Dict[str, str]] = None,
) -> Dict[str, Any]:
    """Persist a new job in ``pending`` status."""
    job_id = new_id()
    now = utcnow_text()

    insert_sql = """
    INSERT INTO import_jobs (
        id, user_id, organization_id, file_name, file_size, file_type,
        import_type, template_id, portfolio_id, status, progress,
        field_mapping, errors, created_at, updated_at
    )
    VALUES (
        :id, :user_id, :organization_id, :file_name, :file_size, :file_type,
        :import_type, :template_id, :portfolio_id, 'pending', 0,
        :field_mapping, '[]', :now, :now
    )
    """
    with engine.begin() as conn:
        conn.execute(
            text(insert_sql),
            {
                "id": job_id,
                "user_id": user_id,
                "organization_id": organization_id,
                "file_name": file_name,
                "file_size": file_size,
                "file_type": file_type,
                "import_type": import_type,
                "template_id": template_id,
                "portfolio_id": portfolio_id,
                "field_mapping": dump_json(field_mapping or {}),
                "now": now,
            },
        )

    logger.info(f"Created import job {job_id} for '{file_name}' (user {user_id})")
    emit("import.job.created", job_id=job_id, file_name=file_name, user_id=user_id)
    return require_import_job(engine, job_id)


def get_import_job(engine: Engine, job_id: str) -> Optional[Dict[str, Any]]:
    """Fetch a single job by ID."""
    with engine.connect() as conn:
        row = conn.execute(
            text("SELECT * FROM import_jobs WHERE id = :job_id"),
            {"job_id": job_id},
        ).mappings().first()
    return _row_to_job(row) if row else None


def require_import_job(engine: Engine, job_id: str) -> Dict[str, Any]:
    job = get_import_job(engine, job_id)
    if job is None:
        raise JobNotFoundError(job_id)
    return job


def list_import_jobs(
    engine: Engine,
    *,
    user_id: Optional[str] = None,
    status: Optional[str] = None,
    limit: int = 50,
    offset: int = 0,
) -> Tuple[List[Dict[str, Any]], int]:
    """List jobs newest first, optionally restricted to one user and/or status."""
    conditions = []
    params: Dict[str, Any] = {}
    if user_id:
        conditions.append("user_id = :user_id")
        params["user_id"] = user_id
    if status:
        conditions.append("status = :status")
        params["status"] = status
    where_clause = f"WHERE {' AND '.join(conditions)}" if conditions else ""

    query_sql = f"""
    SELECT *
    FROM import_jobs
    {where_clause}
    ORDER BY created_at DESC, id
    LIMIT :limit OFFSET :offset
    """
    count_sql = f"SELECT COUNT(*) FROM import_jobs {where_clause}"

    with engine.connect() as conn:
        rows = conn.execute(text(query_sql), {**params, "limit": limit, "offset": offset}).mappings().all()
        total = conn.execute(text(count_sql), params).scalar() or 0
    return [_row_to_job(row) for row in rows], int(total)


def update_import_job(engine: Engine, job_id: str, **fields: Any) -> Dict[str, Any]:
    """Update counters and metadata without touching the status."""
    if not fields:
        return require_import_job(engine, job_id)

    params = _encode_fields(fields)
    assignments = [f"{key} = :{key}" for key in params]
    assignments.append("updated_at = :now")
    params.update({"job_id": job_id, "now": utcnow_text()})

    with engine.begin() as conn:
        updated = conn.execute(
            text(f"UPDATE import_jobs SET {', '.join(assignments)} WHERE id = :job_id"),
            params,
        ).rowcount
    if updated == 0:
        raise JobNotFoundError(job_id)
    return require_import_job(engine, job_id)


def transition_job(engine: Engine, job_id: str, target: str, **fields: Any) -> Dict[str, Any]:
    """
    Move a job to ``target`` and apply ``fields`` in the same statement.

    The update only matches while the job is still in the status it was read
    in, so concurrent writers cannot both win.

    Raises:
        JobNotFoundError: the job does not exist.
        InvalidJobTransitionError: the move is not allowed from the current status,
            or another writer changed the status first.
    """
    job = require_import_job(engine, job_id)
    current = job["status"]
    if not can_transition(current, target):
        raise InvalidJobTransitionError(job_id, current, target)

    params = _encode_fields(fields)
    assignments = [f"{key} = :{key}" for key in params]
    assignments.extend(["status = :target", "updated_at = :now"])
    if target in TERMINAL_STATUSES:
        assignments.append("completed_at = :now")
    params.update({"job_id": job_id, "target": target, "expected": current, "now": utcnow_text()})

    update_sql = f"""
    UPDATE import_jobs
    SET {", ".join(assignments)}
    WHERE id = :job_id AND status = :expected
    """
    with engine.begin() as conn:
        updated = conn.execute(text(update_sql), params).rowcount
    if updated == 0:
        latest = get_import_job(engine, job_id)
        raise InvalidJobTransitionError(job_id, latest["status"] if latest else None, target)

    logger.info(f"Import job {job_id}: {current} -> {target}")
    emit("import.job.status_changed", job_id=job_id, previous=current, status=target)
    return require_import_job(engine, job_id)


def mark_job_failed(engine: Engine, job_id: str, error_message: str) -> Optional[Dict[str, Any]]:
    """
    Record a job-fatal error.

    Returns None (and leaves the job alone) when the job already reached a
    state that cannot fail, e.g. it was cancelled while the worker ran.
    """
    try:
        job = transition_job(engine, job_id, FAILED, error_message=error_message)
    except InvalidJobTransitionError as exc:
        logger.warning(f"Not marking import job {job_id} failed: {exc.message}")
        return None
    emit("import.job.failed", job_id=job_id, error=error_message)
    return job
