"""
Tests for writing parsed rows to the staging area and reading them back.
"""

import itertools
from datetime import timedelta

import pytest
from sqlalchemy import text

from app.core.events import subscribe
from app.db.models import utcnow_text
from app.domain.imports import jobs, staging
from app.domain.imports.errors import StagingError

from conftest import count_rows

MAPPING = {"account_number": "Acct", "current_balance": "Bal", "city": ""}


def _rows(count):
    return [{"Acct": f"A-{i}", "Bal": str(i * 10), "Notes": "x"} for i in range(1, count + 1)]


@pytest.fixture
def job(engine):
    return jobs.create_import_job(engine, user_id="user-1", file_name="accounts.csv")


class TestWriteStagedRows:
    def test_rows_are_numbered_and_projected(self, engine, job):
        result = staging.write_staged_rows(engine, job["id"], MAPPING, _rows(5), batch_size=2)

        assert result.rows_staged == 5
        assert result.batches == 3

        staged = staging.fetch_staged_rows(engine, job["id"], limit=10)
        assert [row.row_number for row in staged] == [1, 2, 3, 4, 5]
        assert staged[0].mapped_data == {"account_number": "A-1", "current_balance": "10"}
        assert staged[0].original_data == {"Acct": "A-1", "Bal": "10", "Notes": "x"}
        assert staged[0].field_mapping == {"account_number": "Acct", "current_balance": "Bal"}

    def test_mapped_keys_are_a_subset_of_the_mapping(self, engine, job):
        staging.write_staged_rows(engine, job["id"], {"ssn": "SSN", "account_number": "Acct"}, _rows(3))
        for row in staging.iter_staged_rows(engine, job["id"], page_size=2):
            assert set(row.mapped_data) <= {"ssn", "account_number"}

    def test_staged_event_is_emitted(self, engine, job):
        events = []
        unsubscribe = subscribe(lambda name, fields: events.append((name, fields)))
        try:
            staging.write_staged_rows(engine, job["id"], MAPPING, _rows(2))
        finally:
            unsubscribe()

        assert ("import.job.staged", {"job_id": job["id"], "rows": 2, "batches": 1}) in events

    def test_failed_batch_reports_row_range(self, engine, job, monkeypatch):
        # Row 3 reuses the id of row 1, so the second batch hits the primary key
        ids = itertools.cycle(["row-a", "row-b"])
        monkeypatch.setattr(staging, "new_id", lambda: next(ids))

        with pytest.raises(StagingError) as exc_info:
            staging.write_staged_rows(engine, job["id"], MAPPING, _rows(5), batch_size=2)

        assert (exc_info.value.first_row, exc_info.value.last_row) == (3, 4)
        assert staging.count_staged_rows(engine, job["id"]) == 2


class TestReading:
    def test_iter_pages_through_everything(self, engine, job):
        staging.write_staged_rows(engine, job["id"], MAPPING, _rows(7))
        numbers = [row.row_number for row in staging.iter_staged_rows(engine, job["id"], page_size=3)]
        assert numbers == list(range(1, 8))

    def test_fetch_with_offset(self, engine, job):
        staging.write_staged_rows(engine, job["id"], MAPPING, _rows(7))
        page = staging.fetch_staged_rows(engine, job["id"], offset=5, limit=5)
        assert [row.row_number for row in page] == [6, 7]

    def test_row_errors_round_trip(self, engine, job):
        staging.write_staged_rows(engine, job["id"], MAPPING, _rows(3))
        staging.record_row_error(engine, job["id"], 2, '{"message": "bad"}')

        failed = staging.fetch_failed_rows(engine, job["id"])
        assert [row.row_number for row in failed] == [2]
        assert failed[0].materialize_error == '{"message": "bad"}'


class TestCleanup:
    def test_delete_staged_rows(self, engine, job):
        staging.write_staged_rows(engine, job["id"], MAPPING, _rows(3))
        assert staging.delete_staged_rows(engine, job["id"]) == 3
        assert staging.count_staged_rows(engine, job["id"]) == 0

    def test_purge_only_touches_old_terminal_jobs(self, engine):
        old_done = jobs.create_import_job(engine, user_id="u", file_name="old.csv")
        recent_done = jobs.create_import_job(engine, user_id="u", file_name="recent.csv")
        old_running = jobs.create_import_job(engine, user_id="u", file_name="running.csv")
        for job in (old_done, recent_done, old_running):
            staging.write_staged_rows(engine, job["id"], MAPPING, _rows(2))
        jobs.transition_job(engine, old_done["id"], jobs.CANCELLED)
        jobs.transition_job(engine, recent_done["id"], jobs.CANCELLED)
        jobs.transition_job(engine, old_running["id"], jobs.PROCESSING)

        long_ago = utcnow_text(-timedelta(days=45))
        with engine.begin() as conn:
            conn.execute(
                text("UPDATE import_jobs SET completed_at = :ts, updated_at = :ts WHERE id IN (:a, :b)"),
                {"ts": long_ago, "a": old_done["id"], "b": old_running["id"]},
            )

        assert staging.purge_staged_rows(engine, older_than_days=30) == 2
        assert count_rows(engine, "import_staging_data", "WHERE job_id = :id", {"id": old_done["id"]}) == 0
        assert count_rows(engine, "import_staging_data", "WHERE job_id = :id", {"id": recent_done["id"]}) == 2
        assert count_rows(engine, "import_staging_data", "WHERE job_id = :id", {"id": old_running["id"]}) == 2
