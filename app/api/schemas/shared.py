from datetime import datetime
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field, field_validator

from app.domain.imports.mapping_merge import MergeStrategy


class ImportJobInfo(BaseModel):
    """Metadata and counters of an import job."""
    id: str
    user_id: str
    organization_id: Optional[str] = None
    file_name: str
    file_size: int = 0
    file_type: Optional[str] = None
    import_type: str = "accounts"
    template_id: Optional[str] = None
    portfolio_id: Optional[str] = None
    status: str
    progress: int = 0
    total_rows: int = 0
    processed_rows: int = 0
    successful_rows: int = 0
    failed_rows: int = 0
    duplicate_rows: int = 0
    skipped_empty_rows: int = 0
    field_mapping: Dict[str, str] = Field(default_factory=dict)
    validation_results: Optional[Dict[str, Any]] = None
    errors: List[Dict[str, Any]] = Field(default_factory=list)
    error_message: Optional[str] = None
    failed_rows_csv_path: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None


class ImportJobResponse(BaseModel):
    """Response wrapper for a single import job."""
    success: bool
    job: ImportJobInfo


class ImportJobListResponse(BaseModel):
    """Response wrapper for a page of import jobs."""
    success: bool
    jobs: List[ImportJobInfo]
    total_count: int
    page: int
    limit: int


class ImportUploadResponse(BaseModel):
    """Returned as soon as an upload is stored and queued."""
    success: bool
    job_id: str
    message: str


class DeleteImportResponse(BaseModel):
    success: bool
    message: str
    accounts_deleted: int = 0
    persons_deleted: int = 0
    staged_rows_deleted: int = 0


class MaterializeResponse(BaseModel):
    """Result of one materialization run."""
    success: bool
    job_id: str
    status: str
    processed: int
    successful: int
    failed: int
    duplicates: int
    total_rows: int
    processed_total: int
    has_more: bool
    errors: List[Dict[str, Any]] = Field(default_factory=list)


class PurgeStagingRequest(BaseModel):
    older_than_days: Optional[int] = Field(default=None, ge=0)


class PurgeStagingResponse(BaseModel):
    success: bool
    rows_deleted: int


class MappingPreviewResponse(BaseModel):
    """Headers, sample rows and a suggested mapping for an uploaded file."""
    success: bool
    file_type: str
    headers: List[str]
    sample_rows: List[Dict[str, str]]
    total_rows: int
    skipped_empty_rows: int
    suggested_mapping: Dict[str, str]
    scores: Dict[str, float]


class MatchFieldsRequest(BaseModel):
    headers: List[str]
    target_fields: Optional[List[str]] = None

    @field_validator("headers")
    @classmethod
    def validate_headers(cls, value: List[str]) -> List[str]:
        if not value:
            raise ValueError("At least one header is required")
        return value


class MatchFieldsResponse(BaseModel):
    success: bool
    mapping: Dict[str, str]
    scores: Dict[str, float]
    unmatched_fields: List[str]
    unused_headers: List[str]


class MappingDiffRequest(BaseModel):
    old_mapping: Dict[str, str] = Field(default_factory=dict)
    new_mapping: Dict[str, str] = Field(default_factory=dict)


class MappingDiffResponse(BaseModel):
    """Fields the new mapping would drop and what each strategy would persist."""
    success: bool
    dropped_fields: List[str]
    merged_mapping: Dict[str, str]
    replaced_mapping: Dict[str, str]


class ImportTemplateInfo(BaseModel):
    id: str
    name: str
    description: Optional[str] = None
    import_type: str
    field_mappings: Dict[str, str] = Field(default_factory=dict)
    required_columns: List[str] = Field(default_factory=list)
    optional_columns: List[str] = Field(default_factory=list)
    validation_rules: Dict[str, Any] = Field(default_factory=dict)
    created_by: str
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


class CreateTemplateRequest(BaseModel):
    name: str
    description: Optional[str] = None
    import_type: str = "accounts"
    field_mappings: Dict[str, str] = Field(default_factory=dict)
    required_columns: Optional[List[str]] = None
    optional_columns: Optional[List[str]] = None
    validation_rules: Optional[Dict[str, Any]] = None

    @field_validator("name")
    @classmethod
    def validate_name(cls, value: str) -> str:
        if not value or not value.strip():
            raise ValueError("Template name is required")
        return value.strip()


class UpdateTemplateRequest(BaseModel):
    """Partial update; ``merge_strategy`` is needed when field_mappings drops fields."""
    name: Optional[str] = None
    description: Optional[str] = None
    field_mappings: Optional[Dict[str, str]] = None
    required_columns: Optional[List[str]] = None
    optional_columns: Optional[List[str]] = None
    validation_rules: Optional[Dict[str, Any]] = None
    merge_strategy: Optional[MergeStrategy] = None


class ImportTemplateResponse(BaseModel):
    success: bool
    template: ImportTemplateInfo


class ImportTemplateListResponse(BaseModel):
    success: bool
    templates: List[ImportTemplateInfo]
    total_count: int
