"""
Pytest configuration and fixtures for the import service tests.

Every test gets its own SQLite database file with the import tables created,
an in-memory object store and gateway headers for a few caller roles. The
API client runs imports inline so a request returns after the job settles.
"""

import os

# Tests never bootstrap the configured PostgreSQL database.
os.environ.setdefault("SKIP_DB_INIT", "1")

from concurrent.futures import Future
from typing import Dict, Iterable, List, Optional

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine, text

from app.core.security import Principal
from app.db.models import create_import_tables
from app.domain.imports.orchestrator import run_import_job
from app.domain.imports.processors.spreadsheet import write_csv
from app.integrations.storage import StorageDownloadError, StorageUploadError

ACCOUNT_HEADERS = [
    "Account Number",
    "First Name",
    "Last Name",
    "SSN",
    "Current Balance",
    "Original Balance",
    "Phone",
    "Email",
    "DOB",
]


class InMemoryObjectStore:
    """Object store double keeping uploads in a dict."""

    def __init__(self):
        self.objects: Dict[str, bytes] = {}
        self.content_types: Dict[str, Optional[str]] = {}
        self.fail_uploads = False
        self.fail_downloads = False

    def upload(self, path: str, content: bytes, content_type: Optional[str] = None) -> str:
        if self.fail_uploads:
            raise StorageUploadError("Upload failed: storage unavailable")
        self.objects[path] = content
        self.content_types[path] = content_type
        return path

    def download(self, path: str) -> bytes:
        if self.fail_downloads or path not in self.objects:
            raise StorageDownloadError(f"Download failed: {path} not found")
        return self.objects[path]

    def remove(self, paths: Iterable[str]) -> None:
        for path in paths:
            self.objects.pop(path, None)


class InlineImportRunner:
    """Runs each submitted job to completion before ``submit`` returns."""

    def __init__(self, engine, store):
        self.engine = engine
        self.store = store
        self.submitted: List[str] = []

    def submit(self, job_id: str) -> Future:
        self.submitted.append(job_id)
        future: Future = Future()
        future.set_result(run_import_job(self.engine, self.store, job_id))
        return future

    def shutdown(self, wait: bool = True) -> None:
        pass


def account_row(index: int, **overrides) -> Dict[str, str]:
    row = {
        "Account Number": f"ACC-{index:04d}",
        "First Name": f"First{index}",
        "Last Name": f"Last{index}",
        "SSN": f"{212000000 + index:09d}",
        "Current Balance": f"{100 + index}.50",
        "Original Balance": f"{200 + index}.00",
        "Phone": f"(415) 555-{index:04d}",
        "Email": f"debtor{index}@example.com",
        "DOB": "1980-01-15",
    }
    row.update(overrides)
    return row


def accounts_csv(count: int = 3, rows: Optional[List[Dict[str, str]]] = None) -> bytes:
    rows = rows if rows is not None else [account_row(i) for i in range(1, count + 1)]
    return write_csv(ACCOUNT_HEADERS, rows)


def count_rows(engine, table: str, where: str = "", params: Optional[dict] = None) -> int:
    with engine.connect() as conn:
        return conn.execute(text(f"SELECT COUNT(*) FROM {table} {where}"), params or {}).scalar()


@pytest.fixture
def engine(tmp_path):
    engine = create_engine(
        f"sqlite:///{tmp_path / 'imports.db'}",
        connect_args={"check_same_thread": False},
    )
    create_import_tables(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def store():
    return InMemoryObjectStore()


@pytest.fixture
def platform_admin():
    return Principal(id="admin-1", role="platform_admin", email="admin@example.com", organization_id="org-1")


@pytest.fixture
def agency_admin():
    return Principal(id="user-1", role="agency_admin", email="ops@agency.example", organization_id="org-1")


@pytest.fixture
def agency_user():
    return Principal(id="user-2", role="agency_user", email="clerk@agency.example", organization_id="org-1")


def headers_for(principal: Principal) -> Dict[str, str]:
    headers = {"X-User-Id": principal.id, "X-User-Role": principal.role}
    if principal.email:
        headers["X-User-Email"] = principal.email
    if principal.organization_id:
        headers["X-Organization-Id"] = principal.organization_id
    return headers


@pytest.fixture
def runner(engine, store):
    return InlineImportRunner(engine, store)


@pytest.fixture
def client(engine, store, runner):
    from app.api.dependencies import get_db_engine, get_import_runner, get_object_store
    from app.main import app

    app.dependency_overrides[get_db_engine] = lambda: engine
    app.dependency_overrides[get_object_store] = lambda: store
    app.dependency_overrides[get_import_runner] = lambda: runner
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()
