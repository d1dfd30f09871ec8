"""
Mapping endpoints: preview a file with a suggested mapping, match headers
against fields, and diff two mappings before saving.
"""
import logging

from fastapi import APIRouter, Depends, File, HTTPException, UploadFile

from app.api.dependencies import get_current_principal, to_http_exception
from app.api.schemas.shared import (
    MappingDiffRequest,
    MappingDiffResponse,
    MappingPreviewResponse,
    MatchFieldsRequest,
    MatchFieldsResponse,
)
from app.core.config import settings
from app.core.security import Principal
from app.domain.imports.errors import ParseError
from app.domain.imports.field_matcher import ACCOUNT_IMPORT_FIELDS, match_fields, score_mapping
from app.domain.imports.mapping_merge import diff_mappings, merge_mappings
from app.domain.imports.processors.spreadsheet import read_spreadsheet

router = APIRouter(prefix="/api/mapping", tags=["mapping"])

logger = logging.getLogger(__name__)

PREVIEW_SAMPLE_ROWS = 5


@router.post("/preview", response_model=MappingPreviewResponse)
async def preview_mapping(
    file: UploadFile = File(...),
    principal: Principal = Depends(get_current_principal),
):
    """
    Parse an uploaded file and suggest a mapping onto the account-import fields.

    Nothing is stored; the suggestion can be edited and sent with the upload.
    """
    content = await file.read()
    if len(content) > settings.upload_max_file_size_mb * 1024 * 1024:
        raise HTTPException(status_code=413, detail="File too large to preview")

    try:
        parsed = read_spreadsheet(content, file.content_type, file.filename)
    except ParseError as e:
        logger.info(f"Preview of '{file.filename}' rejected: {e.message}")
        raise to_http_exception(e)

    mapping = match_fields(parsed.headers, ACCOUNT_IMPORT_FIELDS)
    return MappingPreviewResponse(
        success=True,
        file_type=parsed.file_type,
        headers=parsed.headers,
        sample_rows=parsed.sample(PREVIEW_SAMPLE_ROWS),
        total_rows=parsed.row_count,
        skipped_empty_rows=parsed.skipped_empty_rows,
        suggested_mapping=mapping,
        scores=score_mapping(mapping),
    )


@router.post("/match", response_model=MatchFieldsResponse)
def match_headers(
    request: MatchFieldsRequest,
    principal: Principal = Depends(get_current_principal),
):
    target_fields = request.target_fields or ACCOUNT_IMPORT_FIELDS
    mapping = match_fields(request.headers, target_fields)
    used = set(mapping.values())
    return MatchFieldsResponse(
        success=True,
        mapping=mapping,
        scores=score_mapping(mapping),
        unmatched_fields=[field for field in target_fields if field not in mapping],
        unused_headers=[header for header in request.headers if header not in used],
    )


@router.post("/diff", response_model=MappingDiffResponse)
def diff_mapping(
    request: MappingDiffRequest,
    principal: Principal = Depends(get_current_principal),
):
    """Report which fields replacing ``old_mapping`` with ``new_mapping`` would drop."""
    return MappingDiffResponse(
        success=True,
        dropped_fields=diff_mappings(request.old_mapping, request.new_mapping),
        merged_mapping=merge_mappings(request.old_mapping, request.new_mapping),
        replaced_mapping=dict(request.new_mapping),
    )
