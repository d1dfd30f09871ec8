"""
Tests for rolling back, deleting and cancelling import jobs.
"""

import pytest
from sqlalchemy import text

from app.core.security import Principal
from app.domain.imports import jobs
from app.domain.imports.errors import (
    DeleteConfirmationError,
    ImportPermissionError,
    InvalidJobTransitionError,
    JobNotFoundError,
)
from app.domain.imports.orchestrator import start_import
from app.domain.imports.rollback import cancel_import_job, delete_batch_records, delete_import_job
from app.domain.imports.staging import count_staged_rows

from conftest import account_row, accounts_csv, count_rows


def _import(engine, store, runner, principal, rows, file_name="accounts.csv", portfolio_id="portfolio-1"):
    job = start_import(
        engine,
        store,
        runner,
        principal,
        file_name=file_name,
        content=accounts_csv(rows=rows),
        content_type="text/csv",
        portfolio_id=portfolio_id,
    )
    return jobs.require_import_job(engine, job["id"])


class TestDeleteBatchRecords:
    def test_removes_accounts_persons_and_contacts(self, engine, store, runner, agency_admin):
        job = _import(engine, store, runner, agency_admin, [account_row(1), account_row(2)])
        assert job["status"] == jobs.COMPLETED

        counts = delete_batch_records(engine, job["id"])

        assert counts == {"accounts_deleted": 2, "persons_deleted": 2}
        assert count_rows(engine, "debt_accounts") == 0
        assert count_rows(engine, "persons") == 0
        assert count_rows(engine, "person_contacts") == 0

    def test_person_with_other_account_survives(self, engine, store, runner, agency_admin):
        first = _import(engine, store, runner, agency_admin, [account_row(1)])
        shared = account_row(9, SSN=account_row(1)["SSN"])
        second = _import(
            engine,
            store,
            runner,
            agency_admin,
            [shared, account_row(2)],
            file_name="more.csv",
            portfolio_id="portfolio-2",
        )
        assert second["portfolio_id"] == "portfolio-2"

        counts = delete_batch_records(engine, second["id"])

        assert counts == {"accounts_deleted": 2, "persons_deleted": 1}
        assert count_rows(engine, "persons") == 1
        assert count_rows(engine, "debt_accounts", "WHERE import_batch_id = :id", {"id": first["id"]}) == 1
        assert count_rows(engine, "debt_accounts", "WHERE portfolio_id = :pid", {"pid": "portfolio-1"}) == 1

    def test_person_with_payment_survives(self, engine, store, runner, agency_admin):
        job = _import(engine, store, runner, agency_admin, [account_row(1)])
        with engine.begin() as conn:
            person_id = conn.execute(text("SELECT id FROM persons")).scalar()
            conn.execute(
                text("INSERT INTO debtor_payments (id, person_id, amount) VALUES ('pay-1', :pid, 25)"),
                {"pid": person_id},
            )

        counts = delete_batch_records(engine, job["id"])

        assert counts == {"accounts_deleted": 1, "persons_deleted": 0}
        assert count_rows(engine, "persons") == 1

    def test_unknown_batch_is_a_no_op(self, engine):
        assert delete_batch_records(engine, "missing") == {"accounts_deleted": 0, "persons_deleted": 0}


class TestDeleteImportJob:
    def test_deletes_everything(self, engine, store, runner, agency_admin):
        job = _import(engine, store, runner, agency_admin, [account_row(1), account_row(2, SSN="")])
        assert job["failed_rows_csv_path"] in store.objects

        counts = delete_import_job(engine, store, job["id"], agency_admin, " accounts.csv ")

        assert counts == {"accounts_deleted": 1, "persons_deleted": 1, "staged_rows_deleted": 2}
        assert jobs.get_import_job(engine, job["id"]) is None
        assert count_staged_rows(engine, job["id"]) == 0
        assert store.objects == {}

    def test_file_name_must_match(self, engine, store, runner, agency_admin):
        job = _import(engine, store, runner, agency_admin, [account_row(1)])
        with pytest.raises(DeleteConfirmationError):
            delete_import_job(engine, store, job["id"], agency_admin, "other.csv")
        with pytest.raises(DeleteConfirmationError):
            delete_import_job(engine, store, job["id"], agency_admin, None)
        assert jobs.get_import_job(engine, job["id"]) is not None

    def test_role_and_organization_checks(self, engine, store, runner, agency_admin, agency_user, platform_admin):
        job = _import(engine, store, runner, agency_admin, [account_row(1)])

        with pytest.raises(ImportPermissionError):
            delete_import_job(engine, store, job["id"], agency_user, "accounts.csv")

        outsider = Principal(id="user-9", role="agency_admin", organization_id="org-2")
        with pytest.raises(ImportPermissionError):
            delete_import_job(engine, store, job["id"], outsider, "accounts.csv")

        delete_import_job(engine, store, job["id"], platform_admin, "accounts.csv")
        assert jobs.get_import_job(engine, job["id"]) is None

    def test_storage_failure_is_only_logged(self, engine, store, runner, agency_admin, monkeypatch, caplog):
        job = _import(engine, store, runner, agency_admin, [account_row(1)])

        def broken_remove(paths):
            from app.integrations.storage import StorageDeleteError

            raise StorageDeleteError("bucket offline")

        monkeypatch.setattr(store, "remove", broken_remove)
        delete_import_job(engine, store, job["id"], agency_admin, "accounts.csv")

        assert jobs.get_import_job(engine, job["id"]) is None
        assert "bucket offline" in caplog.text

    def test_unknown_job(self, engine, store, agency_admin):
        with pytest.raises(JobNotFoundError):
            delete_import_job(engine, store, "missing", agency_admin, "accounts.csv")


class TestCancelImportJob:
    def test_platform_admin_cancels_pending_job(self, engine, platform_admin):
        job = jobs.create_import_job(engine, user_id="user-1", file_name="a.csv")

        cancelled = cancel_import_job(engine, job["id"], platform_admin)

        assert cancelled["status"] == jobs.CANCELLED
        assert cancelled["error_message"] == "Cancelled by admin@example.com"
        assert cancelled["completed_at"] is not None

    def test_cancel_rolls_back_written_accounts(self, engine, store, runner, agency_admin, platform_admin):
        job = _import(engine, store, runner, agency_admin, [account_row(1)])
        # Put the job back into a cancellable state as if it were still running
        with engine.begin() as conn:
            conn.execute(text("UPDATE import_jobs SET status = 'processing' WHERE id = :id"), {"id": job["id"]})

        cancel_import_job(engine, job["id"], platform_admin)

        assert count_rows(engine, "debt_accounts") == 0
        assert count_rows(engine, "persons") == 0

    def test_only_platform_admin(self, engine, agency_admin):
        job = jobs.create_import_job(engine, user_id="user-1", file_name="a.csv")
        with pytest.raises(ImportPermissionError):
            cancel_import_job(engine, job["id"], agency_admin)
        assert jobs.require_import_job(engine, job["id"])["status"] == jobs.PENDING

    def test_finished_job_cannot_be_cancelled(self, engine, store, runner, agency_admin, platform_admin):
        job = _import(engine, store, runner, agency_admin, [account_row(1)])
        with pytest.raises(InvalidJobTransitionError):
            cancel_import_job(engine, job["id"], platform_admin)
