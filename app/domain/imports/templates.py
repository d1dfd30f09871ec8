"""
Saved import templates: a named field mapping plus the required/optional
column lists and validation rules for one import type.

Changing the mapping of an existing template goes through the merge resolver;
an update that would drop configured fields is rejected until the caller
chooses ``merge`` or ``replace``.
"""
import logging
from typing import Any, Dict, List, Optional

from sqlalchemy import text
from sqlalchemy.engine import Engine
from sqlalchemy.exc import IntegrityError

from app.core.security import Principal
from app.db.models import new_id, utcnow_text
from app.domain.imports.errors import DuplicateTemplateError, ImportPermissionError, TemplateNotFoundError
from app.domain.imports.field_matcher import OPTIONAL_ACCOUNT_FIELDS, REQUIRED_ACCOUNT_FIELDS
from app.domain.imports.mapping_merge import MergeStrategy, resolve_mapping
from app.utils.serialization import dump_json, load_json, to_iso

logger = logging.getLogger(__name__)


def _row_to_template(row: Any) -> Dict[str, Any]:
    return {
        "id": str(row["id"]),
        "name": row["name"],
        "description": row["description"],
        "import_type": row["import_type"],
        "field_mappings": load_json(row["field_mappings"], default={}),
        "required_columns": load_json(row["required_columns"], default=[]),
        "optional_columns": load_json(row["optional_columns"], default=[]),
        "validation_rules": load_json(row["validation_rules"], default={}),
        "created_by": row["created_by"],
        "created_at": to_iso(row["created_at"]),
        "updated_at": to_iso(row["updated_at"]),
    }


def _name_taken(engine: Engine, owner_id: str, name: str, exclude_id: Optional[str] = None) -> bool:
    with engine.connect() as conn:
        row = conn.execute(
            text("SELECT id FROM import_templates WHERE created_by = :owner AND name = :name"),
            {"owner": owner_id, "name": name},
        ).first()
    return row is not None and str(row[0]) != exclude_id


def create_template(
    engine: Engine,
    principal: Principal,
    *,
    name: str,
    field_mappings: Dict[str, str],
    import_type: str = "accounts",
    description: Optional[str] = None,
    required_columns: Optional[List[str]] = None,
    optional_columns: Optional[List[str]] = None,
    validation_rules: Optional[Dict[str, Any]] = None,
) -> Dict[str, Any]:
    name = (name or "").strip()
    if not name:
        raise ValueError("Template name is required")
    if _name_taken(engine, principal.id, name):
        raise DuplicateTemplateError(name)

    template_id = new_id()
    now = utcnow_text()
    try:
        with engine.begin() as conn:
            conn.execute(
                text("""
                    INSERT INTO import_templates (
                        id, name, description, import_type, field_mappings,
                        required_columns, optional_columns, validation_rules,
                        created_by, created_at, updated_at
                    ) VALUES (
                        :id, :name, :description, :import_type, :field_mappings,
                        :required_columns, :optional_columns, :validation_rules,
                        :created_by, :now, :now
                    )
                """),
                {
                    "id": template_id,
                    "name": name,
                    "description": description,
                    "import_type": import_type,
                    "field_mappings": dump_json(field_mappings or {}),
                    "required_columns": dump_json(
                        REQUIRED_ACCOUNT_FIELDS if required_columns is None else required_columns
                    ),
                    "optional_columns": dump_json(
                        OPTIONAL_ACCOUNT_FIELDS if optional_columns is None else optional_columns
                    ),
                    "validation_rules": dump_json(validation_rules or {}),
                    "created_by": principal.id,
                    "now": now,
                },
            )
    except IntegrityError as e:
        # Unique (created_by, name) lost a race with a concurrent create
        raise DuplicateTemplateError(name) from e

    logger.info(f"Created import template {template_id} '{name}' for {principal.id}")
    return get_template(engine, template_id)


def get_template(engine: Engine, template_id: str) -> Dict[str, Any]:
    with engine.connect() as conn:
        row = conn.execute(
            text("SELECT * FROM import_templates WHERE id = :id"),
            {"id": template_id},
        ).mappings().first()
    if row is None:
        raise TemplateNotFoundError(template_id)
    return _row_to_template(row)


def list_templates(
    engine: Engine,
    principal: Principal,
    *,
    import_type: Optional[str] = None,
) -> List[Dict[str, Any]]:
    """Templates owned by the caller (all templates for platform admins), by name."""
    conditions = []
    params: Dict[str, Any] = {}
    if not principal.is_platform_admin:
        conditions.append("created_by = :owner")
        params["owner"] = principal.id
    if import_type:
        conditions.append("import_type = :import_type")
        params["import_type"] = import_type
    where_clause = f"WHERE {' AND '.join(conditions)}" if conditions else ""

    with engine.connect() as conn:
        rows = conn.execute(
            text(f"SELECT * FROM import_templates {where_clause} ORDER BY name"),
            params,
        ).mappings().all()
    return [_row_to_template(row) for row in rows]


def _check_owner(template: Dict[str, Any], principal: Principal) -> None:
    if template["created_by"] != principal.id and not principal.is_platform_admin:
        raise ImportPermissionError("Only the template owner can change this template")


def update_template(
    engine: Engine,
    principal: Principal,
    template_id: str,
    *,
    name: Optional[str] = None,
    description: Optional[str] = None,
    field_mappings: Optional[Dict[str, str]] = None,
    required_columns: Optional[List[str]] = None,
    optional_columns: Optional[List[str]] = None,
    validation_rules: Optional[Dict[str, Any]] = None,
    merge_strategy: Optional[MergeStrategy] = None,
) -> Dict[str, Any]:
    """
    Update a template.

    Raises:
        MappingConflictError: ``field_mappings`` would drop configured fields and
            no ``merge_strategy`` was given. Nothing is written.
    """
    template = get_template(engine, template_id)
    _check_owner(template, principal)

    updates: Dict[str, Any] = {}
    if name is not None:
        name = name.strip()
        if not name:
            raise ValueError("Template name is required")
        if _name_taken(engine, template["created_by"], name, exclude_id=template_id):
            raise DuplicateTemplateError(name)
        updates["name"] = name
    if description is not None:
        updates["description"] = description
    if field_mappings is not None:
        resolved = resolve_mapping(template["field_mappings"], field_mappings, merge_strategy)
        updates["field_mappings"] = dump_json(resolved)
    if required_columns is not None:
        updates["required_columns"] = dump_json(required_columns)
    if optional_columns is not None:
        updates["optional_columns"] = dump_json(optional_columns)
    if validation_rules is not None:
        updates["validation_rules"] = dump_json(validation_rules)

    if not updates:
        return template

    assignments = [f"{key} = :{key}" for key in updates]
    assignments.append("updated_at = :now")
    with engine.begin() as conn:
        conn.execute(
            text(f"UPDATE import_templates SET {', '.join(assignments)} WHERE id = :id"),
            {**updates, "now": utcnow_text(), "id": template_id},
        )
    logger.info(f"Updated import template {template_id}: {sorted(updates)}")
    return get_template(engine, template_id)


def delete_template(engine: Engine, principal: Principal, template_id: str) -> None:
    template = get_template(engine, template_id)
    _check_owner(template, principal)
    with engine.begin() as conn:
        conn.execute(text("DELETE FROM import_templates WHERE id = :id"), {"id": template_id})
    logger.info(f"Deleted import template {template_id}")
