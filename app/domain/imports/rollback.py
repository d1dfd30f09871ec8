"""
Undo an import batch.

Every DebtAccount carries the id of the job that created it
(``import_batch_id``), so an import can be rolled back by deleting its
accounts and then any Person left with no other account or payment. Used by
job deletion and by cancellation of a running job.
"""

import logging
from typing import Any, Dict, List, Optional

from sqlalchemy import bindparam, text
from sqlalchemy.engine import Engine

from app.core.events import emit
from app.core.security import DELETE_ROLES, Principal
from app.domain.imports import jobs
from app.domain.imports.errors import DeleteConfirmationError, ImportPermissionError
from app.domain.imports.staging import delete_staged_rows
from app.integrations.storage import ObjectStore, StorageError
from app.utils.locks import JobLockManager

logger = logging.getLogger(__name__)

ID_CHUNK_SIZE = 500


def _chunks(values: List[str], size: int = ID_CHUNK_SIZE):
    for start in range(0, len(values), size):
        yield values[start:start + size]


def delete_batch_records(engine: Engine, job_id: str) -> Dict[str, int]:
    """
    Delete the accounts created by ``job_id`` and the persons they orphan.

    A person survives when another account or any payment still references it.

    Returns:
        ``{"accounts_deleted": n, "persons_deleted": m}``
    """
    referenced_sql = text("""
        SELECT person_id FROM debt_accounts WHERE person_id IN :account_ids
        UNION
        SELECT person_id FROM debtor_payments WHERE person_id IN :payment_ids
    """).bindparams(bindparam("account_ids", expanding=True), bindparam("payment_ids", expanding=True))
    delete_contacts_sql = text(
        "DELETE FROM person_contacts WHERE person_id IN :ids"
    ).bindparams(bindparam("ids", expanding=True))
    delete_persons_sql = text(
        "DELETE FROM persons WHERE id IN :ids"
    ).bindparams(bindparam("ids", expanding=True))

    with engine.begin() as conn:
        person_ids = [
            str(pid) for pid in conn.execute(
                text("SELECT DISTINCT person_id FROM debt_accounts WHERE import_batch_id = :job_id"),
                {"job_id": job_id},
            ).scalars()
        ]
        accounts_deleted = conn.execute(
            text("DELETE FROM debt_accounts WHERE import_batch_id = :job_id"),
            {"job_id": job_id},
        ).rowcount

        persons_deleted = 0
        for chunk in _chunks(person_ids):
            params = {"account_ids": chunk, "payment_ids": chunk}
            still_referenced = {str(pid) for pid in conn.execute(referenced_sql, params).scalars()}
            orphans = [pid for pid in chunk if pid not in still_referenced]
            if not orphans:
                continue
            conn.execute(delete_contacts_sql, {"ids": orphans})
            persons_deleted += conn.execute(delete_persons_sql, {"ids": orphans}).rowcount

    logger.info(
        f"Rolled back import batch {job_id}: {accounts_deleted} account(s), "
        f"{persons_deleted} orphaned person(s)"
    )
    return {"accounts_deleted": accounts_deleted, "persons_deleted": persons_deleted}


def _check_delete_permission(job: Dict[str, Any], principal: Principal) -> None:
    if not principal.has_role(DELETE_ROLES):
        raise ImportPermissionError("Insufficient permissions to delete import jobs")
    if principal.is_platform_admin:
        return
    if not job.get("organization_id") or job["organization_id"] != principal.organization_id:
        raise ImportPermissionError("Import job belongs to a different organization")


def delete_import_job(
    engine: Engine,
    store: Optional[ObjectStore],
    job_id: str,
    principal: Principal,
    file_name: Optional[str],
) -> Dict[str, Any]:
    """
    Delete a job together with everything it imported.

    Storage clean-up runs last and its failures are only logged; the database
    side is already consistent by then.

    Raises:
        JobNotFoundError, ImportPermissionError, DeleteConfirmationError
    """
    job = jobs.require_import_job(engine, job_id)
    _check_delete_permission(job, principal)
    if (file_name or "").strip() != job["file_name"]:
        raise DeleteConfirmationError(job_id, job["file_name"], file_name)

    with JobLockManager.acquire(job_id):
        counts = delete_batch_records(engine, job_id)
        counts["staged_rows_deleted"] = delete_staged_rows(engine, job_id)
        with engine.begin() as conn:
            conn.execute(text("DELETE FROM import_jobs WHERE id = :job_id"), {"job_id": job_id})
    JobLockManager.discard(job_id)

    paths = [path for path in (job.get("file_path"), job.get("failed_rows_csv_path")) if path]
    if store is not None and paths:
        try:
            store.remove(paths)
        except StorageError as e:
            logger.warning(f"Import job {job_id} deleted but stored files were not removed: {e}")

    logger.info(f"Deleted import job {job_id} ('{job['file_name']}') for {principal.id}")
    emit("import.job.deleted", job_id=job_id, user_id=principal.id, **counts)
    return counts


def cancel_import_job(engine: Engine, job_id: str, principal: Principal) -> Dict[str, Any]:
    """
    Cancel a pending or processing job and roll back anything it already wrote.

    Raises:
        JobNotFoundError, ImportPermissionError, InvalidJobTransitionError
    """
    if not principal.is_platform_admin:
        raise ImportPermissionError("Only platform administrators can cancel import jobs")

    job = jobs.transition_job(
        engine,
        job_id,
        jobs.CANCELLED,
        error_message=f"Cancelled by {principal.email or principal.id}",
    )
    counts = delete_batch_records(engine, job_id)
    emit("import.job.cancelled", job_id=job_id, user_id=principal.id, **counts)
    return job
