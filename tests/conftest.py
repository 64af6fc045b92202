"""
Pytest configuration and fixtures for Advisory Backend tests.
"""

import asyncio
import sqlite3

import pytest
from fastapi.testclient import TestClient

from advisory_backend.audit import AuditLogService
from advisory_backend.configuration import ExportSettings, load_settings
from advisory_backend.database import JobDatabase
from advisory_backend.errors import ObjectExists, ObjectNotFound, StorageError
from advisory_backend.export_processor import ExportProcessor
from advisory_backend.main import create_app

CLIENT_A_ID = "11111111-1111-4111-a111-111111111111"
CLIENT_B_ID = "22222222-2222-4222-a222-222222222222"
USER_ID = "66666666-6666-4666-a666-666666666666"


def set_updated_at(database, job_id, updated_at):
    """Backdate a job row directly so it looks stale to reconciliation."""
    conn = sqlite3.connect(str(database.db_path))
    try:
        conn.execute(
            "UPDATE document_exports SET updated_at = ? WHERE id = ?",
            (updated_at.isoformat(), job_id),
        )
        conn.commit()
    finally:
        conn.close()


class FakeObjectStorage:
    """In-memory stand-in for ObjectStorage with failure injection."""

    def __init__(self):
        self.objects = {}
        self.content_types = {}
        self.failing_paths = set()
        self.download_delay = 0.0
        self.upload_error = None
        self.upload_calls = 0

    def put(self, path, data):
        self.objects[path] = data

    async def download(self, path):
        if self.download_delay:
            await asyncio.sleep(self.download_delay)
        if path in self.failing_paths:
            raise StorageError(f"Download failed for {path}: connection reset", key=path)
        if path not in self.objects:
            raise ObjectNotFound(f"Object not found: {path}", key=path)
        return self.objects[path]

    async def upload(self, key, data, content_type="application/octet-stream", no_overwrite=True):
        self.upload_calls += 1
        if self.upload_error is not None:
            raise self.upload_error
        if no_overwrite and key in self.objects:
            raise ObjectExists(f"Object already exists: {key}", key=key)
        self.objects[key] = data
        self.content_types[key] = content_type

    def generate_presigned_url(self, key, expiration=3600):
        return f"https://storage.example.com/{key}?expires={expiration}"


@pytest.fixture
def database(tmp_path):
    """A fresh SQLite job store per test."""
    return JobDatabase(tmp_path / "advisory.db")


@pytest.fixture
def storage():
    return FakeObjectStorage()


@pytest.fixture
def settings():
    return ExportSettings(timeout_seconds=5)


@pytest.fixture
def make_processor(database, storage):
    """Build processors sharing the test database and storage."""

    def _make(settings=None):
        return ExportProcessor(
            database,
            storage,
            AuditLogService(database),
            settings or ExportSettings(timeout_seconds=5),
        )

    return _make


@pytest.fixture
def processor(make_processor, settings):
    return make_processor(settings)


@pytest.fixture
def run_cycle():
    """Run one driver cycle to completion, including queued audit writes."""

    def _run(processor):
        async def _cycle():
            job = await processor.process_document_exports()
            await processor.audit.drain()
            return job

        return asyncio.run(_cycle())

    return _run


@pytest.fixture
def seed_document(database, storage):
    """Insert a document row and (optionally) its blob."""

    def _seed(client_id, name, content=b"%PDF-1.4 test", upload=True, size_bytes=None):
        document = database.insert_document(
            client_id=client_id,
            storage_path=f"clients/{client_id}/documents/{name}",
            name=name,
            size_bytes=len(content) if size_bytes is None else size_bytes,
        )
        if upload:
            storage.put(document.storage_path, content)
        return document

    return _seed


@pytest.fixture
def app_overrides(tmp_path):
    return {"database": {"path": str(tmp_path / "app.db")}}


@pytest.fixture
def app(app_overrides, database, storage):
    return create_app(config=load_settings(app_overrides), database=database, storage=storage)


@pytest.fixture
def client(app):
    """Create a test client for the FastAPI app."""
    return TestClient(app)
