"""
Tests for saved import templates and their mapping-update guard.
"""

import pytest

from app.domain.imports.errors import (
    DuplicateTemplateError,
    ImportPermissionError,
    MappingConflictError,
    TemplateNotFoundError,
)
from app.domain.imports.field_matcher import REQUIRED_ACCOUNT_FIELDS
from app.domain.imports.mapping_merge import MergeStrategy
from app.domain.imports.templates import (
    create_template,
    delete_template,
    get_template,
    list_templates,
    update_template,
)

from conftest import headers_for

MAPPING = {"account_number": "Acct", "current_balance": "Balance", "ssn": "SSN"}


@pytest.fixture
def template(engine, agency_admin):
    return create_template(engine, agency_admin, name="Creditor A", field_mappings=MAPPING)


class TestTemplateStore:
    def test_create_applies_defaults(self, template):
        assert template["name"] == "Creditor A"
        assert template["field_mappings"] == MAPPING
        assert template["required_columns"] == REQUIRED_ACCOUNT_FIELDS
        assert template["created_by"] == "user-1"

    def test_names_are_unique_per_owner(self, engine, template, agency_admin, agency_user):
        with pytest.raises(DuplicateTemplateError):
            create_template(engine, agency_admin, name=" Creditor A ", field_mappings={})
        other = create_template(engine, agency_user, name="Creditor A", field_mappings={})
        assert other["id"] != template["id"]

    def test_blank_name_rejected(self, engine, agency_admin):
        with pytest.raises(ValueError):
            create_template(engine, agency_admin, name="   ", field_mappings={})

    def test_list_is_scoped_to_owner(self, engine, template, agency_user, platform_admin):
        create_template(engine, agency_user, name="Mine", field_mappings={})

        assert [t["name"] for t in list_templates(engine, agency_user)] == ["Mine"]
        assert [t["name"] for t in list_templates(engine, platform_admin)] == ["Creditor A", "Mine"]
        assert list_templates(engine, platform_admin, import_type="payments") == []

    def test_update_dropping_fields_conflicts(self, engine, template, agency_admin):
        with pytest.raises(MappingConflictError) as exc_info:
            update_template(engine, agency_admin, template["id"], field_mappings={"account_number": "Ref"})

        assert exc_info.value.dropped_fields == ["current_balance", "ssn"]
        assert get_template(engine, template["id"])["field_mappings"] == MAPPING

    def test_update_with_merge_keeps_old_fields(self, engine, template, agency_admin):
        updated = update_template(
            engine,
            agency_admin,
            template["id"],
            field_mappings={"account_number": "Ref", "city": "Town"},
            merge_strategy=MergeStrategy.MERGE,
        )
        assert updated["field_mappings"] == {
            "account_number": "Ref",
            "current_balance": "Balance",
            "ssn": "SSN",
            "city": "Town",
        }

    def test_update_with_replace(self, engine, template, agency_admin):
        updated = update_template(
            engine,
            agency_admin,
            template["id"],
            field_mappings={"account_number": "Ref"},
            merge_strategy=MergeStrategy.REPLACE,
        )
        assert updated["field_mappings"] == {"account_number": "Ref"}

    def test_superset_update_needs_no_strategy(self, engine, template, agency_admin):
        updated = update_template(
            engine, agency_admin, template["id"], field_mappings={**MAPPING, "dob": "Birth Date"}
        )
        assert updated["field_mappings"]["dob"] == "Birth Date"

    def test_only_owner_or_admin_may_change(self, engine, template, agency_user, platform_admin):
        with pytest.raises(ImportPermissionError):
            update_template(engine, agency_user, template["id"], description="nope")
        with pytest.raises(ImportPermissionError):
            delete_template(engine, agency_user, template["id"])

        renamed = update_template(engine, platform_admin, template["id"], name="Creditor B")
        assert renamed["name"] == "Creditor B"

    def test_delete(self, engine, template, agency_admin):
        delete_template(engine, agency_admin, template["id"])
        with pytest.raises(TemplateNotFoundError):
            get_template(engine, template["id"])


class TestTemplateEndpoints:
    def test_crud_round(self, client, agency_admin):
        headers = headers_for(agency_admin)

        created = client.post(
            "/api/import/templates",
            json={"name": "Creditor A", "field_mappings": MAPPING},
            headers=headers,
        )
        assert created.status_code == 201
        template_id = created.json()["template"]["id"]

        listed = client.get("/api/import/templates", headers=headers).json()
        assert listed["total_count"] == 1

        fetched = client.get(f"/api/import/templates/{template_id}", headers=headers)
        assert fetched.status_code == 200
        assert fetched.json()["template"]["field_mappings"] == MAPPING

        deleted = client.delete(f"/api/import/templates/{template_id}", headers=headers)
        assert deleted.json() == {"success": True, "message": "Template deleted"}
        assert client.get(f"/api/import/templates/{template_id}", headers=headers).status_code == 404

    def test_duplicate_name_is_409(self, client, agency_admin):
        headers = headers_for(agency_admin)
        body = {"name": "Creditor A", "field_mappings": MAPPING}
        assert client.post("/api/import/templates", json=body, headers=headers).status_code == 201
        assert client.post("/api/import/templates", json=body, headers=headers).status_code == 409

    def test_conflicting_update_reports_dropped_fields(self, client, agency_admin):
        headers = headers_for(agency_admin)
        template_id = client.post(
            "/api/import/templates",
            json={"name": "Creditor A", "field_mappings": MAPPING},
            headers=headers,
        ).json()["template"]["id"]

        conflict = client.put(
            f"/api/import/templates/{template_id}",
            json={"field_mappings": {"account_number": "Ref"}},
            headers=headers,
        )
        assert conflict.status_code == 409
        assert conflict.json()["detail"]["dropped_fields"] == ["current_balance", "ssn"]

        merged = client.put(
            f"/api/import/templates/{template_id}",
            json={"field_mappings": {"account_number": "Ref"}, "merge_strategy": "merge"},
            headers=headers,
        )
        assert merged.status_code == 200
        assert merged.json()["template"]["field_mappings"]["ssn"] == "SSN"

    def test_other_users_template_is_forbidden(self, client, agency_admin, agency_user):
        template_id = client.post(
            "/api/import/templates",
            json={"name": "Creditor A", "field_mappings": MAPPING},
            headers=headers_for(agency_admin),
        ).json()["template"]["id"]

        assert client.get(f"/api/import/templates/{template_id}", headers=headers_for(agency_user)).status_code == 403
