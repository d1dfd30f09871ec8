"""
Saved import templates: reusable field mappings per import type.
"""
import logging
from typing import Optional

from fastapi import APIRouter, Depends
from sqlalchemy.engine import Engine

from app.api.dependencies import get_current_principal, get_db_engine, to_http_exception
from app.api.schemas.shared import (
    CreateTemplateRequest,
    ImportTemplateListResponse,
    ImportTemplateResponse,
    UpdateTemplateRequest,
)
from app.core.security import Principal
from app.domain.imports import templates
from app.domain.imports.errors import ImportPermissionError, ImportPipelineError

router = APIRouter(prefix="/api/import/templates", tags=["import-templates"])

logger = logging.getLogger(__name__)


@router.get("", response_model=ImportTemplateListResponse)
def list_import_templates(
    import_type: Optional[str] = None,
    principal: Principal = Depends(get_current_principal),
    engine: Engine = Depends(get_db_engine),
):
    items = templates.list_templates(engine, principal, import_type=import_type)
    return ImportTemplateListResponse(success=True, templates=items, total_count=len(items))


@router.post("", response_model=ImportTemplateResponse, status_code=201)
def create_import_template(
    request: CreateTemplateRequest,
    principal: Principal = Depends(get_current_principal),
    engine: Engine = Depends(get_db_engine),
):
    try:
        template = templates.create_template(
            engine,
            principal,
            name=request.name,
            description=request.description,
            import_type=request.import_type,
            field_mappings=request.field_mappings,
            required_columns=request.required_columns,
            optional_columns=request.optional_columns,
            validation_rules=request.validation_rules,
        )
    except (ImportPipelineError, ValueError) as e:
        raise to_http_exception(e)
    return ImportTemplateResponse(success=True, template=template)


@router.get("/{template_id}", response_model=ImportTemplateResponse)
def get_import_template(
    template_id: str,
    principal: Principal = Depends(get_current_principal),
    engine: Engine = Depends(get_db_engine),
):
    try:
        template = templates.get_template(engine, template_id)
        if template["created_by"] != principal.id and not principal.is_platform_admin:
            raise ImportPermissionError("You do not have access to this template")
    except ImportPipelineError as e:
        raise to_http_exception(e)
    return ImportTemplateResponse(success=True, template=template)


@router.put("/{template_id}", response_model=ImportTemplateResponse)
def update_import_template(
    template_id: str,
    request: UpdateTemplateRequest,
    principal: Principal = Depends(get_current_principal),
    engine: Engine = Depends(get_db_engine),
):
    """
    Update a template.

    Replacing ``field_mappings`` with one that leaves out configured fields
    returns 409 with the dropped fields unless ``merge_strategy`` is set.
    """
    try:
        template = templates.update_template(
            engine,
            principal,
            template_id,
            name=request.name,
            description=request.description,
            field_mappings=request.field_mappings,
            required_columns=request.required_columns,
            optional_columns=request.optional_columns,
            validation_rules=request.validation_rules,
            merge_strategy=request.merge_strategy,
        )
    except (ImportPipelineError, ValueError) as e:
        logger.info(f"Template {template_id} update rejected: {e}")
        raise to_http_exception(e)
    return ImportTemplateResponse(success=True, template=template)


@router.delete("/{template_id}")
def delete_import_template(
    template_id: str,
    principal: Principal = Depends(get_current_principal),
    engine: Engine = Depends(get_db_engine),
):
    try:
        templates.delete_template(engine, principal, template_id)
    except ImportPipelineError as e:
        raise to_http_exception(e)
    return {"success": True, "message": "Template deleted"}
