"""
Import orchestration: one uploaded file from ``pending`` to ``completed``.

``start_import`` stores the upload and queues the job on an
:class:`ImportRunner`; ``run_import_job`` does the work on a runner thread:

1. download the file and parse it,
2. settle the field mapping (request, then template, then auto-match),
3. stage every row (parse + staging bounded by ``staging_timeout_seconds``),
4. validate the staged rows,
5. materialize the first ``materialize_row_cap`` rows.

Parse, mapping, staging and download errors fail the job with a readable
``error_message``. The HTTP caller never waits; it polls the job record.
"""

import logging
import threading
from concurrent.futures import Future, ThreadPoolExecutor, TimeoutError as FuturesTimeoutError
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Tuple

from sqlalchemy import text
from sqlalchemy.engine import Engine

from app.core.config import settings
from app.core.events import emit
from app.core.security import UPLOAD_ROLES, Principal
from app.domain.imports import jobs
from app.domain.imports.errors import (
    ImportPermissionError,
    InvalidJobTransitionError,
    JobNotFoundError,
    MappingError,
    ParseError,
    StagingError,
    TemplateNotFoundError,
)
from app.domain.imports.field_matcher import ACCOUNT_IMPORT_FIELDS, REQUIRED_ACCOUNT_FIELDS, match_fields
from app.domain.imports.materializer import MaterializationSummary, materialize_job
from app.domain.imports.processors.spreadsheet import (
    CONTENT_TYPE_BY_FILE_TYPE,
    ParsedSpreadsheet,
    detect_spreadsheet_type,
    read_spreadsheet,
)
from app.domain.imports.staging import StagingResult, staging_table_for, write_staged_rows
from app.domain.imports.templates import get_template
from app.domain.imports.validators import validate_staged_rows
from app.integrations.storage import ObjectStore, StorageError, build_object_path

logger = logging.getLogger(__name__)


@dataclass
class ImportOutcome:
    job_id: str
    status: str
    rows_staged: int = 0
    materialization: Optional[MaterializationSummary] = None
    error: Optional[str] = None


def resolve_job_mapping(
    engine: Engine,
    job: Dict[str, Any],
    headers: List[str],
) -> Tuple[Dict[str, str], List[str]]:
    """
    Settle the mapping for a job and the fields it must cover.

    Precedence: the mapping sent with the upload, then the job's template,
    then auto-matching against the account-import fields.

    Raises:
        MappingError: a required field has no source column.
    """
    required = list(REQUIRED_ACCOUNT_FIELDS)
    mapping: Dict[str, str] = dict(job.get("field_mapping") or {})
    source = "request"

    if job.get("template_id"):
        try:
            template = get_template(engine, job["template_id"])
        except TemplateNotFoundError as exc:
            raise MappingError(exc.message) from exc
        required = list(template["required_columns"] or required)
        if not mapping:
            mapping = dict(template["field_mappings"] or {})
            source = "template"

    if not mapping:
        mapping = match_fields(headers, ACCOUNT_IMPORT_FIELDS)
        source = "auto-match"

    header_set = set(headers)
    missing_headers = {field: header for field, header in mapping.items() if header and header not in header_set}
    if missing_headers:
        logger.warning(f"Job {job['id']}: mapped columns not present in file: {missing_headers}")
    mapping = {field: header for field, header in mapping.items() if header and header in header_set}

    missing = [field for field in required if field not in mapping]
    if missing:
        raise MappingError(
            f"Required field(s) not mapped to any column: {', '.join(missing)}",
            missing_fields=missing,
        )

    logger.info(f"Job {job['id']}: using {source} mapping for {len(mapping)} field(s)")
    return mapping, required


def _parse_and_stage(
    engine: Engine,
    job: Dict[str, Any],
    content: bytes,
) -> Tuple[ParsedSpreadsheet, Dict[str, str], List[str], StagingResult]:
    content_type = CONTENT_TYPE_BY_FILE_TYPE.get(job.get("file_type") or "")
    parsed = read_spreadsheet(content, content_type, job["file_name"])
    mapping, required = resolve_job_mapping(engine, job, parsed.headers)
    jobs.update_import_job(
        engine,
        job["id"],
        file_type=parsed.file_type,
        total_rows=parsed.row_count,
        skipped_empty_rows=parsed.skipped_empty_rows,
        field_mapping=mapping,
        progress=15,
    )
    result = write_staged_rows(
        engine,
        job["id"],
        mapping,
        parsed.iter_rows(),
        staging_table=staging_table_for(job["import_type"]),
    )
    return parsed, mapping, required, result


def stage_with_timeout(
    engine: Engine,
    job: Dict[str, Any],
    content: bytes,
    timeout_seconds: Optional[float] = None,
) -> Tuple[ParsedSpreadsheet, Dict[str, str], List[str], StagingResult]:
    """
    Parse and stage on a dedicated worker, waiting at most ``timeout_seconds``.

    On timeout the worker is left to finish on its own; batches it commits
    after the deadline land under a job that is already marked failed.

    Raises:
        StagingError: the deadline passed. Errors raised by the worker
            (ParseError, MappingError, StagingError) propagate unchanged.
    """
    timeout = settings.staging_timeout_seconds if timeout_seconds is None else timeout_seconds
    executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix=f"import-stage-{job['id'][:8]}")
    future = executor.submit(_parse_and_stage, engine, job, content)
    try:
        return future.result(timeout=timeout if timeout and timeout > 0 else None)
    except FuturesTimeoutError as exc:
        logger.error(f"Staging for job {job['id']} exceeded {timeout} seconds")
        raise StagingError(f"Staging timed out after {timeout} seconds", job_id=job["id"]) from exc
    finally:
        executor.shutdown(wait=False)


def run_import_job(
    engine: Engine,
    store: ObjectStore,
    job_id: str,
    *,
    timeout_seconds: Optional[float] = None,
    row_cap: Optional[int] = None,
) -> ImportOutcome:
    """Process one pending job through staging, validation and the first materialization run."""
    try:
        job = jobs.transition_job(engine, job_id, jobs.PROCESSING, progress=5)
    except InvalidJobTransitionError as exc:
        logger.warning(f"Skipping import job {job_id}: {exc.message}")
        return ImportOutcome(job_id=job_id, status=exc.current_status or "unknown", error=exc.message)
    except JobNotFoundError as exc:
        logger.warning(f"Skipping import job {job_id}: {exc.message}")
        return ImportOutcome(job_id=job_id, status="deleted", error=exc.message)

    try:
        content = store.download(job["file_path"])
        _, _, required, staged = stage_with_timeout(engine, job, content, timeout_seconds)

        jobs.transition_job(engine, job_id, jobs.UPLOADED, progress=40)
        jobs.transition_job(engine, job_id, jobs.VALIDATING, progress=50)

        validation = validate_staged_rows(engine, job_id, required)
        jobs.update_import_job(engine, job_id, validation_results=validation, progress=60)

        summary = materialize_job(engine, job_id, store=store, row_cap=row_cap)
        return ImportOutcome(
            job_id=job_id,
            status=summary.status,
            rows_staged=staged.rows_staged,
            materialization=summary,
        )
    except (ParseError, MappingError, StagingError) as exc:
        logger.error(f"Import job {job_id} failed: {exc.message}")
        return _fail(engine, job_id, exc.message)
    except StorageError as exc:
        logger.error(f"Import job {job_id} could not read its file: {exc}")
        return _fail(engine, job_id, f"Could not read uploaded file: {exc}")
    except InvalidJobTransitionError as exc:
        # Cancelled (or deleted) while this worker was running
        logger.info(f"Import job {job_id} stopped: {exc.message}")
        return ImportOutcome(job_id=job_id, status=exc.current_status or "unknown", error=exc.message)
    except JobNotFoundError as exc:
        logger.info(f"Import job {job_id} was deleted while running")
        return ImportOutcome(job_id=job_id, status="deleted", error=exc.message)


def _fail(engine: Engine, job_id: str, message: str) -> ImportOutcome:
    failed = jobs.mark_job_failed(engine, job_id, message)
    if failed is None:
        current = jobs.get_import_job(engine, job_id)
        status = current["status"] if current else "unknown"
    else:
        status = failed["status"]
    return ImportOutcome(job_id=job_id, status=status, error=message)


class ImportRunner:
    """Runs import jobs on a bounded thread pool and hands back futures."""

    def __init__(self, engine: Engine, store: ObjectStore, *, max_workers: Optional[int] = None):
        self.engine = engine
        self.store = store
        self._executor = ThreadPoolExecutor(
            max_workers=max_workers or settings.import_max_workers,
            thread_name_prefix="import-job",
        )

    def submit(self, job_id: str) -> "Future[ImportOutcome]":
        return self._executor.submit(self._run, job_id)

    def _run(self, job_id: str) -> ImportOutcome:
        try:
            return run_import_job(self.engine, self.store, job_id)
        except Exception as exc:
            logger.exception(f"Unexpected error while importing job {job_id}")
            jobs.mark_job_failed(self.engine, job_id, f"Unexpected error: {exc}")
            raise

    def shutdown(self, wait: bool = True) -> None:
        self._executor.shutdown(wait=wait)


_runner: Optional[ImportRunner] = None
_runner_lock = threading.Lock()


def get_import_runner() -> ImportRunner:
    """FastAPI dependency returning the process-wide runner."""
    global _runner
    if _runner is None:
        with _runner_lock:
            if _runner is None:
                from app.db.session import get_engine
                from app.integrations.storage import get_object_store

                _runner = ImportRunner(get_engine(), get_object_store())
    return _runner


def shutdown_import_runner() -> None:
    global _runner
    with _runner_lock:
        if _runner is not None:
            _runner.shutdown(wait=False)
            _runner = None


def start_import(
    engine: Engine,
    store: ObjectStore,
    runner: ImportRunner,
    principal: Principal,
    *,
    file_name: str,
    content: bytes,
    content_type: Optional[str] = None,
    import_type: str = "accounts",
    template_id: Optional[str] = None,
    portfolio_id: Optional[str] = None,
    field_mapping: Optional[Dict[str, str]] = None,
) -> Dict[str, Any]:
    """
    Create a job for an uploaded file, store the file and queue processing.

    Raises:
        ImportPermissionError: the caller's role may not import.
        ParseError: the file is empty, too large or not a spreadsheet.
        StorageError: the file could not be stored; the job is removed again.
    """
    if not principal.has_role(UPLOAD_ROLES):
        raise ImportPermissionError("Insufficient permissions to import files")

    file_type = detect_spreadsheet_type(content_type, file_name)
    if not content:
        raise ParseError("Uploaded file is empty", file_name=file_name)
    max_bytes = settings.upload_max_file_size_mb * 1024 * 1024
    if len(content) > max_bytes:
        raise ParseError(
            f"File exceeds the {settings.upload_max_file_size_mb} MB upload limit",
            file_name=file_name,
        )

    job = jobs.create_import_job(
        engine,
        user_id=principal.id,
        organization_id=principal.organization_id,
        file_name=file_name,
        file_size=len(content),
        file_type=file_type,
        import_type=import_type,
        template_id=template_id,
        portfolio_id=portfolio_id,
        field_mapping=field_mapping,
    )

    path = build_object_path(principal.id, job["id"], file_name)
    try:
        store.upload(path, content, content_type)
    except StorageError:
        logger.error(f"Upload failed for job {job['id']}; removing job record")
        _discard_job(engine, job["id"])
        raise

    job = jobs.update_import_job(engine, job["id"], file_path=path)
    runner.submit(job["id"])
    emit("import.job.queued", job_id=job["id"], file_name=file_name, size=len(content))
    return job


def _discard_job(engine: Engine, job_id: str) -> None:
    with engine.begin() as conn:
        conn.execute(text("DELETE FROM import_jobs WHERE id = :job_id"), {"job_id": job_id})
