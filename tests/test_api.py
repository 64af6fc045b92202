"""
Tests for Advisory Backend API endpoints.

Tests cover:
- Health check
- Export creation and request validation
- Export status, signed URL and failure reporting
- Background worker driven by the application lifespan
"""

import time

from fastapi.testclient import TestClient

from advisory_backend.configuration import load_settings
from advisory_backend.main import create_app

from conftest import CLIENT_A_ID, CLIENT_B_ID, USER_ID


class TestHealthCheck:
    """Tests for the /healthz endpoint."""

    def test_health_check_returns_ok(self, client):
        """Health check should return status ok."""
        response = client.get("/healthz")
        assert response.status_code == 200
        assert response.json() == {"status": "ok"}


class TestCreateExport:
    """Tests for POST /clients/{client_id}/documents/export."""

    def test_create_export(self, client, database, seed_document):
        """A valid request should queue a pending export."""
        d1 = seed_document(CLIENT_A_ID, "d1.pdf")
        d2 = seed_document(CLIENT_A_ID, "d2.pdf")

        response = client.post(
            f"/clients/{CLIENT_A_ID}/documents/export",
            json={"document_ids": [d1.id, d2.id]},
            headers={"X-User-Id": USER_ID},
        )

        assert response.status_code == 202
        data = response.json()
        assert data["status"] == "pending"

        job = database.get_export_job(data["export_id"])
        assert job.client_id == CLIENT_A_ID
        assert job.created_by == USER_ID
        assert job.document_ids == [d1.id, d2.id]

    def test_create_export_records_audit(self, client, database, seed_document):
        d1 = seed_document(CLIENT_A_ID, "d1.pdf", b"12345")

        response = client.post(
            f"/clients/{CLIENT_A_ID}/documents/export",
            json={"document_ids": [d1.id]},
        )

        logs = database.list_audit_logs(entity_id=response.json()["export_id"])
        assert [log["action"] for log in logs] == ["export_created"]
        assert logs[0]["metadata"]["document_count"] == 1
        assert logs[0]["metadata"]["total_size_bytes"] == 5

    def test_empty_document_list_rejected(self, client):
        response = client.post(f"/clients/{CLIENT_A_ID}/documents/export", json={"document_ids": []})
        assert response.status_code == 422

    def test_duplicate_ids_rejected(self, client, seed_document):
        d1 = seed_document(CLIENT_A_ID, "d1.pdf")
        response = client.post(
            f"/clients/{CLIENT_A_ID}/documents/export",
            json={"document_ids": [d1.id, d1.id]},
        )
        assert response.status_code == 422

    def test_too_many_ids_rejected(self, client):
        ids = [f"doc-{index}" for index in range(51)]
        response = client.post(f"/clients/{CLIENT_A_ID}/documents/export", json={"document_ids": ids})
        assert response.status_code == 422
        assert "at most 50" in response.json()["detail"]

    def test_unknown_documents_rejected(self, client):
        response = client.post(
            f"/clients/{CLIENT_A_ID}/documents/export",
            json={"document_ids": ["does-not-exist"]},
        )
        assert response.status_code == 422
        assert response.json()["detail"] == "No valid documents found"

    def test_other_tenant_documents_rejected(self, client, seed_document):
        mine = seed_document(CLIENT_A_ID, "mine.pdf")
        theirs = seed_document(CLIENT_B_ID, "theirs.pdf")

        response = client.post(
            f"/clients/{CLIENT_A_ID}/documents/export",
            json={"document_ids": [mine.id, theirs.id]},
        )

        assert response.status_code == 422
        assert "do not belong" in response.json()["detail"]

    def test_total_size_limit(self, app_overrides, database, storage, seed_document):
        overrides = {**app_overrides, "export": {"max_archive_bytes": 100}}
        client = TestClient(create_app(load_settings(overrides), database=database, storage=storage))
        big = seed_document(CLIENT_A_ID, "big.pdf", size_bytes=1000)

        response = client.post(
            f"/clients/{CLIENT_A_ID}/documents/export",
            json={"document_ids": [big.id]},
        )

        assert response.status_code == 422
        assert "Total size exceeds limit" in response.json()["detail"]


class TestExportStatus:
    """Tests for GET /clients/{client_id}/documents/export/{export_id}."""

    def test_pending_status(self, client, database):
        job = database.create_export_job(CLIENT_A_ID, ["d1"])

        response = client.get(f"/clients/{CLIENT_A_ID}/documents/export/{job.id}")

        assert response.status_code == 200
        assert response.json() == {"export_id": job.id, "status": "pending"}

    def test_unknown_export(self, client):
        response = client.get(f"/clients/{CLIENT_A_ID}/documents/export/nonexistent")
        assert response.status_code == 404

    def test_export_of_other_tenant_is_hidden(self, client, database):
        job = database.create_export_job(CLIENT_B_ID, ["d1"])
        response = client.get(f"/clients/{CLIENT_A_ID}/documents/export/{job.id}")
        assert response.status_code == 404

    def test_ready_export_has_signed_url(self, app, client, database, seed_document, run_cycle):
        d1 = seed_document(CLIENT_A_ID, "d1.pdf")
        job = database.create_export_job(CLIENT_A_ID, [d1.id])
        run_cycle(app.state.processor)

        response = client.get(f"/clients/{CLIENT_A_ID}/documents/export/{job.id}")

        assert response.status_code == 200
        data = response.json()
        assert data["status"] == "ready"
        assert data["url"].startswith(
            f"https://storage.example.com/clients/{CLIENT_A_ID}/exports/{job.id}/export.zip"
        )
        assert data["expires_in"] == 900
        actions = [log["action"] for log in database.list_audit_logs(entity_id=job.id)]
        assert actions == ["export_ready", "export_url_created"]

    def test_failed_export_reports_error(self, app, client, database, run_cycle):
        job = database.create_export_job(CLIENT_A_ID, ["missing"])
        run_cycle(app.state.processor)

        response = client.get(f"/clients/{CLIENT_A_ID}/documents/export/{job.id}")

        assert response.json() == {
            "export_id": job.id,
            "status": "failed",
            "error": "No valid documents found for export",
        }


class TestWorkerLifespan:
    """The export worker runs inside the app when enabled."""

    def test_worker_processes_queued_export(self, app_overrides, database, storage, seed_document):
        overrides = {**app_overrides, "worker": {"enabled": True, "poll_interval_seconds": 0.01}}
        app = create_app(load_settings(overrides), database=database, storage=storage)
        d1 = seed_document(CLIENT_A_ID, "d1.pdf")

        with TestClient(app) as client:
            export_id = client.post(
                f"/clients/{CLIENT_A_ID}/documents/export",
                json={"document_ids": [d1.id]},
            ).json()["export_id"]

            deadline = time.monotonic() + 5
            status = None
            while time.monotonic() < deadline:
                status = client.get(f"/clients/{CLIENT_A_ID}/documents/export/{export_id}").json()["status"]
                if status == "ready":
                    break
                time.sleep(0.02)

        assert status == "ready"
        assert app.state.worker.running is False

    def test_worker_disabled_by_default(self, app):
        with TestClient(app):
            assert app.state.worker.running is False
