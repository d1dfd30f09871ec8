"""
Staging area for parsed import rows.

Each row of an uploaded file is written to ``import_staging_data`` with its
1-based row number, the mapping in force when it was staged, the mapped
field projection and the raw row. The validator and the materializer read
it back page by page.
"""
import logging
from datetime import timedelta
from dataclasses import dataclass
from typing import Any, Dict, Iterable, Iterator, List, Optional

from sqlalchemy import text
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError

from app.core.config import settings
from app.core.events import emit
from app.db.models import new_id, utcnow_text
from app.domain.imports.errors import StagingError
from app.utils.serialization import dump_json, load_json

logger = logging.getLogger(__name__)

STAGING_TABLES = {"accounts": "accounts_staging"}


@dataclass
class StagingResult:
    job_id: str
    rows_staged: int
    batches: int


@dataclass
class StagedRow:
    job_id: str
    row_number: int
    field_mapping: Dict[str, str]
    mapped_data: Dict[str, str]
    original_data: Dict[str, str]
    materialize_error: Optional[str] = None


def staging_table_for(import_type: str) -> str:
    return STAGING_TABLES.get(import_type, f"{import_type}_staging")


def project_row(row: Dict[str, Any], mapping: Dict[str, str]) -> Dict[str, Any]:
    """Mapped field -> value for every field whose source header exists in ``row``."""
    return {
        field: row[header]
        for field, header in mapping.items()
        if header and header in row and row[header] is not None
    }


def _batched(rows: Iterable[Dict[str, Any]], size: int) -> Iterator[List[Dict[str, Any]]]:
    batch: List[Dict[str, Any]] = []
    for row in rows:
        batch.append(row)
        if len(batch) >= size:
            yield batch
            batch = []
    if batch:
        yield batch


def write_staged_rows(
    engine: Engine,
    job_id: str,
    mapping: Dict[str, str],
    rows: Iterable[Dict[str, Any]],
    *,
    staging_table: str = "accounts_staging",
    batch_size: Optional[int] = None,
) -> StagingResult:
    """
    Stage ``rows`` for ``job_id`` in batches, one transaction per batch.

    Raises:
        StagingError: a batch insert failed. Earlier batches stay committed;
            the error carries the row range of the failed batch.
    """
    batch_size = batch_size or settings.staging_batch_size
    active_mapping = {field: header for field, header in mapping.items() if header}
    mapping_json = dump_json(active_mapping)

    insert_sql = text("""
        INSERT INTO import_staging_data (
            id, job_id, staging_table, row_number, field_mapping,
            mapped_data, original_data, created_at
        ) VALUES (
            :id, :job_id, :staging_table, :row_number, :field_mapping,
            :mapped_data, :original_data, :created_at
        )
    """)

    staged = 0
    batches = 0
    for batch in _batched(rows, batch_size):
        first_row = staged + 1
        last_row = staged + len(batch)
        now = utcnow_text()
        params = [
            {
                "id": new_id(),
                "job_id": job_id,
                "staging_table": staging_table,
                "row_number": first_row + offset,
                "field_mapping": mapping_json,
                "mapped_data": dump_json(project_row(row, active_mapping)),
                "original_data": dump_json(row),
                "created_at": now,
            }
            for offset, row in enumerate(batch)
        ]
        try:
            with engine.begin() as conn:
                conn.execute(insert_sql, params)
        except SQLAlchemyError as e:
            logger.error(f"Staging batch rows {first_row}-{last_row} failed for job {job_id}: {e}")
            raise StagingError(
                f"Failed to stage rows {first_row}-{last_row}: {e}",
                job_id=job_id,
                first_row=first_row,
                last_row=last_row,
            ) from e
        staged = last_row
        batches += 1
        logger.debug(f"Staged rows {first_row}-{last_row} for job {job_id}")

    logger.info(f"Staged {staged} rows in {batches} batch(es) for job {job_id}")
    emit("import.job.staged", job_id=job_id, rows=staged, batches=batches)
    return StagingResult(job_id=job_id, rows_staged=staged, batches=batches)


def _row_to_staged(row: Any) -> StagedRow:
    return StagedRow(
        job_id=row["job_id"],
        row_number=int(row["row_number"]),
        field_mapping=load_json(row["field_mapping"], default={}),
        mapped_data=load_json(row["mapped_data"], default={}),
        original_data=load_json(row["original_data"], default={}),
        materialize_error=row["materialize_error"],
    )


def fetch_staged_rows(engine: Engine, job_id: str, *, offset: int = 0, limit: int = 100) -> List[StagedRow]:
    """One page of staged rows in row-number order."""
    query_sql = text("""
        SELECT job_id, row_number, field_mapping, mapped_data, original_data, materialize_error
        FROM import_staging_data
        WHERE job_id = :job_id
        ORDER BY row_number
        LIMIT :limit OFFSET :offset
    """)
    with engine.connect() as conn:
        rows = conn.execute(query_sql, {"job_id": job_id, "limit": limit, "offset": offset}).mappings().all()
    return [_row_to_staged(row) for row in rows]


def iter_staged_rows(engine: Engine, job_id: str, *, page_size: int = 1000) -> Iterator[StagedRow]:
    offset = 0
    while True:
        page = fetch_staged_rows(engine, job_id, offset=offset, limit=page_size)
        if not page:
            return
        yield from page
        if len(page) < page_size:
            return
        offset += page_size


def count_staged_rows(engine: Engine, job_id: str) -> int:
    with engine.connect() as conn:
        total = conn.execute(
            text("SELECT COUNT(*) FROM import_staging_data WHERE job_id = :job_id"),
            {"job_id": job_id},
        ).scalar()
    return int(total or 0)


def record_row_error(engine: Engine, job_id: str, row_number: int, message: Optional[str]) -> None:
    """Store (or clear, with None) the materialization error of one staged row."""
    with engine.begin() as conn:
        conn.execute(
            text("""
                UPDATE import_staging_data
                SET materialize_error = :message
                WHERE job_id = :job_id AND row_number = :row_number
            """),
            {"job_id": job_id, "row_number": row_number, "message": message},
        )


def fetch_failed_rows(engine: Engine, job_id: str) -> List[StagedRow]:
    query_sql = text("""
        SELECT job_id, row_number, field_mapping, mapped_data, original_data, materialize_error
        FROM import_staging_data
        WHERE job_id = :job_id AND materialize_error IS NOT NULL
        ORDER BY row_number
    """)
    with engine.connect() as conn:
        rows = conn.execute(query_sql, {"job_id": job_id}).mappings().all()
    return [_row_to_staged(row) for row in rows]


def delete_staged_rows(engine: Engine, job_id: str) -> int:
    with engine.begin() as conn:
        deleted = conn.execute(
            text("DELETE FROM import_staging_data WHERE job_id = :job_id"),
            {"job_id": job_id},
        ).rowcount
    logger.info(f"Deleted {deleted} staged rows for job {job_id}")
    return deleted


def purge_staged_rows(engine: Engine, *, older_than_days: Optional[int] = None) -> int:
    """
    Delete staged rows of finished jobs (completed, failed or cancelled) whose
    last update is older than the retention window.
    """
    days = settings.staging_retention_days if older_than_days is None else older_than_days
    cutoff = utcnow_text(-timedelta(days=days))

    purge_sql = text("""
        DELETE FROM import_staging_data
        WHERE job_id IN (
            SELECT id FROM import_jobs
            WHERE status IN ('completed', 'failed', 'cancelled')
              AND COALESCE(completed_at, updated_at) < :cutoff
        )
    """)
    with engine.begin() as conn:
        deleted = conn.execute(purge_sql, {"cutoff": cutoff}).rowcount
    logger.info(f"Purged {deleted} staged rows older than {days} day(s)")
    emit("import.staging.purged", rows=deleted, older_than_days=days)
    return deleted
