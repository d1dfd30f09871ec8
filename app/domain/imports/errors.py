"""
Exception taxonomy for the import pipeline.

Job-fatal errors (``ParseError``, ``MappingError``, ``StagingError``) move a job
to ``failed``. ``MaterializationRowError`` is recovered per row.
``JobNotFoundError`` and ``ImportPermissionError`` surface before anything is
mutated.
"""
from typing import Any, List, Optional


class ImportPipelineError(Exception):
    """Base class for every error raised by the import pipeline."""

    def __init__(self, message: str):
        self.message = message
        super().__init__(self.message)


class ParseError(ImportPipelineError):
    """Raised when an uploaded file cannot be read as a spreadsheet."""

    def __init__(self, message: str, file_name: Optional[str] = None):
        self.file_name = file_name
        super().__init__(message)


class MappingError(ImportPipelineError):
    """Raised when no usable field mapping can be produced for a file."""

    def __init__(self, message: str, missing_fields: Optional[List[str]] = None):
        self.missing_fields = list(missing_fields or [])
        super().__init__(message)


class MappingConflictError(MappingError):
    """Raised when a mapping update would silently drop configured fields."""

    def __init__(self, dropped_fields: List[str], message: str = None):
        self.dropped_fields = list(dropped_fields)
        message = message or (
            "Mapping update would drop configured fields: "
            f"{', '.join(self.dropped_fields)}. Choose 'merge' or 'replace'."
        )
        super().__init__(message)


class StagingError(ImportPipelineError):
    """Raised when staged rows cannot be written or staging times out."""

    def __init__(
        self,
        message: str,
        job_id: Optional[str] = None,
        first_row: Optional[int] = None,
        last_row: Optional[int] = None,
    ):
        self.job_id = job_id
        self.first_row = first_row
        self.last_row = last_row
        super().__init__(message)


class MaterializationRowError(ImportPipelineError):
    """A single staged row could not be turned into Person/DebtAccount records."""

    def __init__(self, row_number: int, message: str, field: Optional[str] = None, value: Any = None):
        self.row_number = row_number
        self.field = field
        self.value = value
        super().__init__(message)

    def to_dict(self) -> dict:
        return {
            "row_number": self.row_number,
            "field": self.field,
            "message": self.message,
            "value": None if self.value is None else str(self.value),
        }


class JobNotFoundError(ImportPipelineError):
    def __init__(self, job_id: str):
        self.job_id = job_id
        super().__init__(f"Import job '{job_id}' not found")


class ImportPermissionError(ImportPipelineError, PermissionError):
    """Raised when the principal may not perform an operation on a job or template."""


class InvalidJobTransitionError(ImportPipelineError):
    def __init__(self, job_id: str, current_status: Optional[str], target_status: str):
        self.job_id = job_id
        self.current_status = current_status
        self.target_status = target_status
        super().__init__(
            f"Import job '{job_id}' cannot move from '{current_status}' to '{target_status}'"
        )


class TemplateNotFoundError(ImportPipelineError):
    def __init__(self, template_id: str):
        self.template_id = template_id
        super().__init__(f"Import template '{template_id}' not found")


class DuplicateTemplateError(ImportPipelineError):
    def __init__(self, name: str):
        self.name = name
        super().__init__(f"An import template named '{name}' already exists")


class DeleteConfirmationError(ImportPipelineError):
    """Raised when the file name typed to confirm a deletion does not match the job."""

    def __init__(self, job_id: str, expected: str, received: Optional[str]):
        self.job_id = job_id
        self.expected = expected
        self.received = received
        super().__init__("File name does not match the import job; deletion not confirmed")
