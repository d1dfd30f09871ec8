"""
Field normalizers and the staged-row validation pass.

The normalizers are shared with the materializer, so a row that validates
materializes with the same interpretation of its SSN, amounts and dates.
"""
import logging
import re
from decimal import Decimal, InvalidOperation
from typing import Any, Dict, List, Optional, Sequence

from sqlalchemy.engine import Engine

from app.core.events import emit
from app.domain.imports.staging import iter_staged_rows
from app.utils.date import is_parseable_date
from app.utils.phone import validate_phone

logger = logging.getLogger(__name__)

SAMPLE_LIMIT = 100

ACCOUNT_TYPES = {
    "credit_card", "medical", "personal_loan", "auto_loan", "mortgage",
    "utility", "student_loan", "business_loan", "other",
}
ACCOUNT_STATUSES = {
    "active", "inactive", "resolved", "returned", "bankruptcy",
    "deceased", "settled", "paid_in_full",
}

EMAIL_PATTERN = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")
INVALID_SSN_PATTERN = re.compile(r"^(\d)\1{8}$|^123456789$|^987654321$")

DATE_FIELDS = ("dob", "charge_off_date", "date_opened", "last_payment_date", "last_activity_date")


def normalize_ssn(value: Any) -> Optional[str]:
    """
    Reduce an SSN to its 9 digits, or None when it cannot be a real SSN.

    A leading ``Z`` (used by some creditors to mask a leading zero) reads as 0.
    Uniform digits, the two counting sequences and areas 000, 666 and 9xx are
    rejected.
    """
    if value is None:
        return None
    text = str(value).strip().upper()
    if text.startswith("Z"):
        text = "0" + text[1:]
    digits = re.sub(r"\D", "", text)
    if len(digits) != 9:
        return None
    if INVALID_SSN_PATTERN.match(digits):
        return None
    area = int(digits[:3])
    if area == 0 or area == 666 or area >= 900:
        return None
    return digits


def parse_amount(value: Any) -> Optional[Decimal]:
    """Parse ``$1,234.56``, ``(12.00)`` or ``1234`` into a Decimal; None when blank or invalid."""
    if value is None:
        return None
    text = str(value).strip()
    if not text:
        return None
    negative = text.startswith("(") and text.endswith(")")
    cleaned = re.sub(r"[,$\s()]", "", text)
    if not cleaned:
        return None
    try:
        amount = Decimal(cleaned)
    except InvalidOperation:
        return None
    if not amount.is_finite():
        return None
    return -amount if negative else amount


def is_valid_email(value: Any) -> bool:
    if value is None:
        return False
    return bool(EMAIL_PATTERN.match(str(value).strip()))


def normalize_choice(value: Any, allowed: set, default: str) -> str:
    if value is None:
        return default
    candidate = re.sub(r"[\s\-]+", "_", str(value).strip().lower())
    return candidate if candidate in allowed else default


def _has_value(row: Dict[str, Any], field: str) -> bool:
    value = row.get(field)
    return value is not None and str(value).strip() != ""


def validate_row(row_number: int, data: Dict[str, Any], required_fields: Sequence[str]) -> Dict[str, List[dict]]:
    """Errors and warnings for one staged row's mapped data."""
    errors: List[dict] = []
    warnings: List[dict] = []

    for field in required_fields:
        if not _has_value(data, field):
            errors.append({"row_number": row_number, "field": field, "message": f"{field} is required"})

    for field in ("current_balance", "original_balance", "last_payment_amount"):
        if _has_value(data, field) and parse_amount(data[field]) is None:
            errors.append({
                "row_number": row_number,
                "field": field,
                "message": f"{field} must be numeric",
                "value": str(data[field]),
            })

    if _has_value(data, "ssn") and normalize_ssn(data["ssn"]) is None:
        warnings.append({"row_number": row_number, "field": "ssn", "message": "SSN format looks invalid"})

    for field in DATE_FIELDS:
        if _has_value(data, field) and not is_parseable_date(data[field]):
            warnings.append({
                "row_number": row_number,
                "field": field,
                "message": f"{field} is not a recognizable date",
            })

    for field, value in data.items():
        if not value or not str(value).strip():
            continue
        if field.startswith("phone") and not validate_phone(value):
            warnings.append({"row_number": row_number, "field": field, "message": "Phone number should have 10-15 digits"})
        elif field.startswith("email") and not is_valid_email(value):
            warnings.append({"row_number": row_number, "field": field, "message": "Email address looks invalid"})

    return {"errors": errors, "warnings": warnings}


def validate_staged_rows(
    engine: Engine,
    job_id: str,
    required_fields: Sequence[str],
    *,
    page_size: int = 1000,
) -> Dict[str, Any]:
    """
    Validate every staged row of a job and return the summary stored on the job.

    Only the first ``SAMPLE_LIMIT`` errors and warnings are kept.
    """
    summary: Dict[str, Any] = {
        "total_rows": 0,
        "valid_rows": 0,
        "invalid_rows": 0,
        "warning_count": 0,
        "errors": [],
        "warnings": [],
    }

    for staged in iter_staged_rows(engine, job_id, page_size=page_size):
        result = validate_row(staged.row_number, staged.mapped_data, required_fields)
        summary["total_rows"] += 1
        if result["errors"]:
            summary["invalid_rows"] += 1
        else:
            summary["valid_rows"] += 1
        summary["warning_count"] += len(result["warnings"])

        room = SAMPLE_LIMIT - len(summary["errors"])
        if room > 0:
            summary["errors"].extend(result["errors"][:room])
        room = SAMPLE_LIMIT - len(summary["warnings"])
        if room > 0:
            summary["warnings"].extend(result["warnings"][:room])

    logger.info(
        f"Validated job {job_id}: {summary['valid_rows']} valid, "
        f"{summary['invalid_rows']} invalid, {summary['warning_count']} warning(s)"
    )
    emit(
        "import.job.validated",
        job_id=job_id,
        valid_rows=summary["valid_rows"],
        invalid_rows=summary["invalid_rows"],
    )
    return summary
