"""
Turn staged rows into Person and DebtAccount records.

Rows are read in row-number order starting after the job's processed-row
counter, at most ``settings.materialize_row_cap`` per call. A job with more
staged rows than the cap stays in ``validating`` and the next call resumes
where this one stopped. Each row is written in its own transaction; a bad
row is recorded against the job and never stops the batch.
"""
import logging
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any, Dict, List, Optional

from sqlalchemy import text
from sqlalchemy.engine import Connection, Engine
from sqlalchemy.exc import SQLAlchemyError

from app.core.config import settings
from app.core.events import emit
from app.db.models import new_id, utcnow_text
from app.domain.imports import jobs
from app.domain.imports.errors import InvalidJobTransitionError, MaterializationRowError
from app.domain.imports.processors.spreadsheet import write_csv
from app.domain.imports.staging import (
    StagedRow,
    count_staged_rows,
    fetch_failed_rows,
    fetch_staged_rows,
    record_row_error,
)
from app.domain.imports.validators import (
    ACCOUNT_STATUSES,
    ACCOUNT_TYPES,
    is_valid_email,
    normalize_choice,
    normalize_ssn,
    parse_amount,
)
from app.integrations.storage import ObjectStore, StorageError
from app.utils.date import parse_calendar_date
from app.utils.locks import JobLockManager
from app.utils.phone import standardize_phone
from app.utils.serialization import dump_json, load_json

logger = logging.getLogger(__name__)

CREATED = "created"
DUPLICATE = "duplicate"

FAILED_ROWS_CSV_HEADERS = ["Row Number", "Error Message", "Error Type", "Field", "Original Data", "Mapped Data"]


@dataclass
class MaterializationSummary:
    job_id: str
    status: str
    processed: int = 0
    successful: int = 0
    failed: int = 0
    duplicates: int = 0
    total_rows: int = 0
    processed_total: int = 0
    has_more: bool = False
    errors: List[dict] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "job_id": self.job_id,
            "status": self.status,
            "processed": self.processed,
            "successful": self.successful,
            "failed": self.failed,
            "duplicates": self.duplicates,
            "total_rows": self.total_rows,
            "processed_total": self.processed_total,
            "has_more": self.has_more,
            "errors": self.errors,
        }


def _clean(value: Any) -> Optional[str]:
    if value is None:
        return None
    text_value = str(value).strip()
    return text_value or None


def _require(row_number: int, data: Dict[str, Any], field_name: str, label: str) -> str:
    value = _clean(data.get(field_name))
    if value is None:
        raise MaterializationRowError(row_number, f"{label} is required", field=field_name)
    return value


def _amount_or_none(row_number: int, data: Dict[str, Any], field_name: str) -> Optional[Decimal]:
    raw = _clean(data.get(field_name))
    if raw is None:
        return None
    amount = parse_amount(raw)
    if amount is None:
        raise MaterializationRowError(row_number, f"{field_name} must be numeric", field=field_name, value=raw)
    return amount


def _prepare_row(staged: StagedRow) -> Dict[str, Any]:
    """
    Validate a staged row and return the values to write.

    Raises:
        MaterializationRowError: a required field is missing or malformed.
    """
    row_number = staged.row_number
    data = staged.mapped_data

    raw_ssn = _require(row_number, data, "ssn", "SSN")
    ssn = normalize_ssn(raw_ssn)
    if ssn is None:
        raise MaterializationRowError(row_number, "SSN must be 9 valid digits", field="ssn", value=raw_ssn)

    first_name = _require(row_number, data, "first_name", "First name")
    last_name = _require(row_number, data, "last_name", "Last name")

    account_number = _clean(data.get("account_number")) or _clean(data.get("original_account_number"))
    if account_number is None:
        raise MaterializationRowError(row_number, "Account number is required", field="account_number")

    current_balance = _amount_or_none(row_number, data, "current_balance")
    original_balance = _amount_or_none(row_number, data, "original_balance")
    if original_balance is None:
        original_balance = current_balance
    if original_balance is None or original_balance <= 0:
        raise MaterializationRowError(
            row_number,
            "Original balance must be greater than zero",
            field="original_balance",
            value=data.get("original_balance") or data.get("current_balance"),
        )

    middle_name = _clean(data.get("middle_name"))
    return {
        "person": {
            "ssn": ssn,
            "first_name": first_name,
            "middle_name": middle_name,
            "last_name": last_name,
            "full_name": " ".join(part for part in (first_name, middle_name, last_name) if part),
            "dob": parse_calendar_date(data.get("dob"), log_context="dob"),
            "address_line1": _clean(data.get("address_line1")),
            "address_line2": _clean(data.get("address_line2")),
            "city": _clean(data.get("city")),
            "state": _clean(data.get("state")),
            "zipcode": _clean(data.get("zipcode")),
        },
        "account": {
            "account_number": account_number,
            "original_account_number": _clean(data.get("original_account_number")),
            "original_creditor": _clean(data.get("original_creditor")),
            "original_balance": original_balance,
            "current_balance": current_balance if current_balance is not None else Decimal("0"),
            "charge_off_date": parse_calendar_date(data.get("charge_off_date"), log_context="charge_off_date"),
            "date_opened": parse_calendar_date(data.get("date_opened"), log_context="date_opened"),
            "last_payment_date": parse_calendar_date(data.get("last_payment_date"), log_context="last_payment_date"),
            "last_payment_amount": _amount_or_none(row_number, data, "last_payment_amount"),
            "last_activity_date": parse_calendar_date(data.get("last_activity_date"), log_context="last_activity_date"),
            "account_type": normalize_choice(data.get("account_type"), ACCOUNT_TYPES, "other"),
            "account_status": normalize_choice(
                data.get("account_status") or data.get("status"), ACCOUNT_STATUSES, "active"
            ),
        },
        "contacts": _collect_contacts(data),
    }


def _collect_contacts(data: Dict[str, Any]) -> List[Dict[str, str]]:
    contacts: List[Dict[str, str]] = []
    for field_name, value in data.items():
        if "email" in field_name and is_valid_email(value):
            contacts.append({"contact_type": "email", "value": str(value).strip().lower(), "source_field": field_name})
        elif "phone" in field_name:
            phone = standardize_phone(value)
            if phone:
                contacts.append({"contact_type": "phone", "value": phone, "source_field": field_name})
    return contacts


def _find_or_create_person(conn: Connection, person: Dict[str, Any]) -> str:
    existing = conn.execute(
        text("SELECT id FROM persons WHERE ssn = :ssn"),
        {"ssn": person["ssn"]},
    ).scalar()
    if existing:
        return str(existing)

    person_id = new_id()
    conn.execute(
        text("""
            INSERT INTO persons (
                id, ssn, first_name, middle_name, last_name, full_name, dob,
                address_line1, address_line2, city, state, zipcode, created_at
            ) VALUES (
                :id, :ssn, :first_name, :middle_name, :last_name, :full_name, :dob,
                :address_line1, :address_line2, :city, :state, :zipcode, :created_at
            )
        """),
        {"id": person_id, "created_at": utcnow_text(), **person},
    )
    return person_id


def _account_exists(conn: Connection, account_number: str, portfolio_id: Optional[str]) -> bool:
    if portfolio_id:
        query = "SELECT 1 FROM debt_accounts WHERE account_number = :account_number AND portfolio_id = :portfolio_id"
    else:
        query = "SELECT 1 FROM debt_accounts WHERE account_number = :account_number AND portfolio_id IS NULL"
    return conn.execute(
        text(query),
        {"account_number": account_number, "portfolio_id": portfolio_id},
    ).first() is not None


def _insert_account(conn: Connection, job: Dict[str, Any], person_id: str, account: Dict[str, Any]) -> str:
    account_id = new_id()
    params = {
        **account,
        "id": account_id,
        "person_id": person_id,
        "portfolio_id": job["portfolio_id"],
        "import_batch_id": job["id"],
        "created_at": utcnow_text(),
    }
    for amount_field in ("original_balance", "current_balance", "last_payment_amount"):
        if params[amount_field] is not None:
            params[amount_field] = float(params[amount_field])

    conn.execute(
        text("""
            INSERT INTO debt_accounts (
                id, person_id, portfolio_id, import_batch_id, account_number,
                original_account_number, original_creditor, original_balance,
                current_balance, charge_off_date, date_opened, last_payment_date,
                last_payment_amount, last_activity_date, account_type, account_status,
                created_at
            ) VALUES (
                :id, :person_id, :portfolio_id, :import_batch_id, :account_number,
                :original_account_number, :original_creditor, :original_balance,
                :current_balance, :charge_off_date, :date_opened, :last_payment_date,
                :last_payment_amount, :last_activity_date, :account_type, :account_status,
                :created_at
            )
        """),
        params,
    )
    return account_id


def _add_contacts(conn: Connection, person_id: str, job_id: str, contacts: List[Dict[str, str]]) -> None:
    for contact in contacts:
        exists = conn.execute(
            text("""
                SELECT 1 FROM person_contacts
                WHERE person_id = :person_id AND contact_type = :contact_type AND value = :value
            """),
            {"person_id": person_id, "contact_type": contact["contact_type"], "value": contact["value"]},
        ).first()
        if exists:
            continue
        conn.execute(
            text("""
                INSERT INTO person_contacts (
                    id, person_id, contact_type, value, source_field, import_batch_id, created_at
                ) VALUES (
                    :id, :person_id, :contact_type, :value, :source_field, :import_batch_id, :created_at
                )
            """),
            {
                "id": new_id(),
                "person_id": person_id,
                "import_batch_id": job_id,
                "created_at": utcnow_text(),
                **contact,
            },
        )


def materialize_row(engine: Engine, job: Dict[str, Any], staged: StagedRow) -> str:
    """
    Write one staged row. Returns ``created`` or ``duplicate``.

    Raises:
        MaterializationRowError: the row is incomplete or the database rejected it.
    """
    prepared = _prepare_row(staged)
    account = prepared["account"]
    try:
        with engine.begin() as conn:
            if _account_exists(conn, account["account_number"], job["portfolio_id"]):
                return DUPLICATE
            person_id = _find_or_create_person(conn, prepared["person"])
            _insert_account(conn, job, person_id, account)
            _add_contacts(conn, person_id, job["id"], prepared["contacts"])
    except SQLAlchemyError as e:
        raise MaterializationRowError(staged.row_number, f"Database error: {e.__class__.__name__}: {e}") from e
    return CREATED


def export_failed_rows(engine: Engine, store: ObjectStore, job: Dict[str, Any]) -> Optional[str]:
    """Upload a CSV of every row that failed to materialize and return its object path."""
    failed = fetch_failed_rows(engine, job["id"])
    if not failed:
        return None

    records = []
    for staged in failed:
        error = load_json(staged.materialize_error, default={})
        records.append({
            "Row Number": staged.row_number,
            "Error Message": error.get("message"),
            "Error Type": "validation" if error.get("field") else "processing",
            "Field": error.get("field"),
            "Original Data": dump_json(staged.original_data),
            "Mapped Data": dump_json(staged.mapped_data),
        })

    path = f"{job['user_id']}/{job['id']}/failed_rows_{job['id']}.csv"
    store.upload(path, write_csv(FAILED_ROWS_CSV_HEADERS, records), "text/csv")
    logger.info(f"Exported {len(records)} failed row(s) for job {job['id']} to {path}")
    return path


def materialize_job(
    engine: Engine,
    job_id: str,
    *,
    store: Optional[ObjectStore] = None,
    page_size: Optional[int] = None,
    row_cap: Optional[int] = None,
) -> MaterializationSummary:
    """
    Materialize up to ``row_cap`` staged rows of a job in ``validating`` status.

    Raises:
        JobNotFoundError: unknown job.
        InvalidJobTransitionError: the job is not in ``validating``.
    """
    page_size = page_size or settings.materialize_page_size
    row_cap = row_cap or settings.materialize_row_cap
    error_limit = settings.import_error_sample_limit

    with JobLockManager.acquire(job_id):
        job = jobs.require_import_job(engine, job_id)
        if job["status"] != jobs.VALIDATING:
            raise InvalidJobTransitionError(job_id, job["status"], jobs.COMPLETED)

        total = count_staged_rows(engine, job_id)
        offset = job["processed_rows"]
        summary = MaterializationSummary(job_id=job_id, status=job["status"], total_rows=total)
        successful = job["successful_rows"]
        failed = job["failed_rows"]
        duplicates = job["duplicate_rows"]
        stored_errors: List[dict] = list(job["errors"] or [])

        while summary.processed < row_cap and offset < total:
            limit = min(page_size, row_cap - summary.processed)
            page = fetch_staged_rows(engine, job_id, offset=offset, limit=limit)
            if not page:
                break

            for staged in page:
                try:
                    outcome = materialize_row(engine, job, staged)
                except MaterializationRowError as row_error:
                    error = row_error.to_dict()
                    logger.warning(f"Job {job_id} row {staged.row_number}: {row_error.message}")
                    record_row_error(engine, job_id, staged.row_number, dump_json(error))
                    failed += 1
                    summary.failed += 1
                    summary.errors.append(error)
                    if len(stored_errors) < error_limit:
                        stored_errors.append(error)
                else:
                    if outcome == DUPLICATE:
                        duplicates += 1
                        summary.duplicates += 1
                    else:
                        successful += 1
                        summary.successful += 1
                summary.processed += 1

            offset += len(page)
            progress = int(offset * 100 / total) if total else 100
            jobs.update_import_job(
                engine,
                job_id,
                processed_rows=offset,
                successful_rows=successful,
                failed_rows=failed,
                duplicate_rows=duplicates,
                errors=stored_errors,
                progress=min(progress, 99),
            )

        summary.processed_total = offset
        summary.has_more = offset < total

        if summary.has_more:
            logger.info(
                f"Job {job_id}: materialized {summary.processed} row(s), "
                f"{total - offset} remaining for a follow-up run"
            )
        else:
            failed_rows_csv_path = None
            if failed and store is not None:
                try:
                    failed_rows_csv_path = export_failed_rows(engine, store, job)
                except StorageError as e:
                    logger.error(f"Could not upload failed rows for job {job_id}: {e}")
            completion = {"progress": 100, "processed_rows": offset}
            if failed_rows_csv_path:
                completion["failed_rows_csv_path"] = failed_rows_csv_path
            jobs.transition_job(engine, job_id, jobs.COMPLETED, **completion)
            summary.status = jobs.COMPLETED

    emit(
        "import.job.materialized",
        job_id=job_id,
        processed=summary.processed,
        successful=summary.successful,
        failed=summary.failed,
        duplicates=summary.duplicates,
        has_more=summary.has_more,
    )
    return summary
