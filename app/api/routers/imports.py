"""
Import job endpoints: upload, progress, materialization runs and deletion.
"""
import json
import logging
from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends, File, Form, HTTPException, Query, Response, UploadFile
from sqlalchemy.engine import Engine

from app.api.dependencies import (
    get_current_principal,
    get_db_engine,
    get_import_runner,
    get_object_store,
    to_http_exception,
)
from app.api.schemas.shared import (
    DeleteImportResponse,
    ImportJobListResponse,
    ImportJobResponse,
    ImportUploadResponse,
    MaterializeResponse,
    PurgeStagingRequest,
    PurgeStagingResponse,
)
from app.core.security import DELETE_ROLES, Principal
from app.domain.imports import jobs
from app.domain.imports.errors import ImportPermissionError, ImportPipelineError
from app.domain.imports.materializer import materialize_job
from app.domain.imports.orchestrator import ImportRunner, start_import
from app.domain.imports.rollback import cancel_import_job, delete_import_job
from app.domain.imports.staging import purge_staged_rows
from app.integrations.storage import ObjectStore, StorageError

router = APIRouter(prefix="/api/import", tags=["imports"])

logger = logging.getLogger(__name__)


def _parse_field_mapping(raw: Optional[str]) -> Optional[Dict[str, str]]:
    if not raw:
        return None
    try:
        mapping = json.loads(raw)
    except json.JSONDecodeError as e:
        raise HTTPException(status_code=400, detail=f"field_mapping is not valid JSON: {e.msg}")
    if not isinstance(mapping, dict):
        raise HTTPException(status_code=400, detail="field_mapping must be a JSON object")
    return {str(key): str(value) for key, value in mapping.items() if value is not None}


def _can_view(job: Dict[str, Any], principal: Principal) -> bool:
    if principal.is_platform_admin or job["user_id"] == principal.id:
        return True
    return (
        principal.has_role(DELETE_ROLES)
        and bool(job.get("organization_id"))
        and job["organization_id"] == principal.organization_id
    )


def _load_visible_job(engine: Engine, job_id: str, principal: Principal) -> Dict[str, Any]:
    job = jobs.require_import_job(engine, job_id)
    if not _can_view(job, principal):
        raise ImportPermissionError("You do not have access to this import job")
    return job


@router.post("", response_model=ImportUploadResponse, status_code=202)
async def upload_import_file(
    file: UploadFile = File(...),
    import_type: str = Form("accounts"),
    template_id: Optional[str] = Form(None),
    portfolio_id: Optional[str] = Form(None),
    field_mapping: Optional[str] = Form(None),
    principal: Principal = Depends(get_current_principal),
    engine: Engine = Depends(get_db_engine),
    store: ObjectStore = Depends(get_object_store),
    runner: ImportRunner = Depends(get_import_runner),
):
    """
    Store an uploaded CSV/Excel file and queue it for processing.

    Returns as soon as the job is queued; poll ``GET /api/import/{job_id}``
    for progress.
    """
    mapping = _parse_field_mapping(field_mapping)
    content = await file.read()
    logger.info(f"Received import upload '{file.filename}' ({len(content)} bytes) from {principal.id}")

    try:
        job = start_import(
            engine,
            store,
            runner,
            principal,
            file_name=file.filename or "upload",
            content=content,
            content_type=file.content_type,
            import_type=import_type,
            template_id=template_id or None,
            portfolio_id=portfolio_id or None,
            field_mapping=mapping,
        )
    except (ImportPipelineError, StorageError) as e:
        logger.warning(f"Import upload rejected: {e}")
        raise to_http_exception(e)

    return ImportUploadResponse(
        success=True,
        job_id=job["id"],
        message="File uploaded; import queued for processing",
    )


@router.get("", response_model=ImportJobListResponse)
def list_imports(
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
    status: Optional[str] = None,
    principal: Principal = Depends(get_current_principal),
    engine: Engine = Depends(get_db_engine),
):
    """Paginated import jobs, newest first. Platform admins see every job."""
    if status and status not in jobs.JOB_STATUSES:
        raise HTTPException(status_code=400, detail=f"Unknown status '{status}'")

    items, total = jobs.list_import_jobs(
        engine,
        user_id=None if principal.is_platform_admin else principal.id,
        status=status,
        limit=limit,
        offset=(page - 1) * limit,
    )
    return ImportJobListResponse(success=True, jobs=items, total_count=total, page=page, limit=limit)


@router.post("/staging/purge", response_model=PurgeStagingResponse)
def purge_staging(
    request: Optional[PurgeStagingRequest] = None,
    principal: Principal = Depends(get_current_principal),
    engine: Engine = Depends(get_db_engine),
):
    """Delete staged rows of finished jobs older than the retention window."""
    if not principal.is_platform_admin:
        raise HTTPException(status_code=403, detail="Only platform administrators can purge staging data")
    older_than = request.older_than_days if request else None
    deleted = purge_staged_rows(engine, older_than_days=older_than)
    return PurgeStagingResponse(success=True, rows_deleted=deleted)


@router.get("/{job_id}", response_model=ImportJobResponse)
def get_import(
    job_id: str,
    principal: Principal = Depends(get_current_principal),
    engine: Engine = Depends(get_db_engine),
):
    try:
        job = _load_visible_job(engine, job_id, principal)
    except ImportPipelineError as e:
        raise to_http_exception(e)
    return ImportJobResponse(success=True, job=job)


@router.delete("/{job_id}", response_model=DeleteImportResponse)
def delete_import(
    job_id: str,
    file_name: Optional[str] = Query(None, description="Must equal the job's file name"),
    principal: Principal = Depends(get_current_principal),
    engine: Engine = Depends(get_db_engine),
    store: ObjectStore = Depends(get_object_store),
):
    """Delete a job with its staged rows and every account and orphaned person it created."""
    try:
        counts = delete_import_job(engine, store, job_id, principal, file_name)
    except ImportPipelineError as e:
        raise to_http_exception(e)
    return DeleteImportResponse(success=True, message="Import job deleted", **counts)


@router.post("/{job_id}/cancel", response_model=ImportJobResponse)
def cancel_import(
    job_id: str,
    principal: Principal = Depends(get_current_principal),
    engine: Engine = Depends(get_db_engine),
):
    try:
        job = cancel_import_job(engine, job_id, principal)
    except ImportPipelineError as e:
        raise to_http_exception(e)
    return ImportJobResponse(success=True, job=job)


@router.post("/{job_id}/materialize", response_model=MaterializeResponse)
def materialize_import(
    job_id: str,
    principal: Principal = Depends(get_current_principal),
    engine: Engine = Depends(get_db_engine),
    store: ObjectStore = Depends(get_object_store),
):
    """Run the next materialization batch of a job that stopped at the row cap."""
    try:
        _load_visible_job(engine, job_id, principal)
        summary = materialize_job(engine, job_id, store=store)
    except ImportPipelineError as e:
        raise to_http_exception(e)
    return MaterializeResponse(success=True, **summary.to_dict())


@router.get("/{job_id}/failed-rows")
def download_failed_rows(
    job_id: str,
    principal: Principal = Depends(get_current_principal),
    engine: Engine = Depends(get_db_engine),
    store: ObjectStore = Depends(get_object_store),
):
    """Download the CSV of rows that failed to materialize."""
    try:
        job = jobs.require_import_job(engine, job_id)
    except ImportPipelineError as e:
        raise to_http_exception(e)
    if job["user_id"] != principal.id and not principal.is_platform_admin:
        raise HTTPException(status_code=403, detail="You do not have access to this import job")
    if not job["failed_rows_csv_path"]:
        raise HTTPException(status_code=404, detail="No failed rows recorded for this import job")

    try:
        content = store.download(job["failed_rows_csv_path"])
    except StorageError as e:
        logger.error(f"Failed-rows download for job {job_id} failed: {e}")
        raise to_http_exception(e)

    return Response(
        content=content,
        media_type="text/csv",
        headers={"Content-Disposition": f'attachment; filename="failed_rows_{job_id}.csv"'},
    )
