"""Tests for the FastAPI REST endpoints."""

import hashlib
import inspect
from collections.abc import Iterator

import pytest
from fastapi.testclient import TestClient

from docsense import __version__
from docsense.api.app import app, upload_document
from docsense.records import DocumentStatus
from docsense.services import get_services


@pytest.fixture
def client(services) -> Iterator[TestClient]:
    """Create a FastAPI test client on the in-memory services."""
    app.dependency_overrides[get_services] = lambda: services
    yield TestClient(app)
    app.dependency_overrides.clear()


def _upload(client: TestClient, filename: str, content: bytes, **form: str):
    return client.post(
        "/documents",
        files={"file": (filename, content, "application/octet-stream")},
        data={"user_id": "alice", **form},
    )


class TestHealthEndpoint:
    """Tests for GET /health."""

    def test_health_returns_200(self, client: TestClient) -> None:
        response = client.get("/health")
        assert response.status_code == 200
        data = response.json()
        assert data["status"] == "healthy"
        assert data["version"] == __version__
        assert "tesseract_available" in data
        assert "gpu_available" in data


class TestDocumentEndpoints:
    """Tests for upload, fetch and processing."""

    def test_upload_creates_pending_document(self, client: TestClient, invoice_text: str) -> None:
        response = _upload(client, "invoice.txt", invoice_text.encode(), doc_type="invoice")
        assert response.status_code == 201
        data = response.json()
        assert data["status"] == "pending"
        assert data["doc_type"] == "invoice"

        fetched = client.get(f"/documents/{data['id']}")
        assert fetched.status_code == 200
        assert fetched.json()["filename"] == "invoice.txt"

    def test_empty_upload_rejected(self, client: TestClient) -> None:
        response = _upload(client, "invoice.txt", b"")
        assert response.status_code == 422
        assert response.json()["error"] == "ValidationError"

    def test_unsupported_type_rejected(self, client: TestClient) -> None:
        response = _upload(client, "legacy.xls", b"\xd0\xcf\x11\xe0 not a zip")
        assert response.status_code == 422

    def test_missing_user_rejected(self, client: TestClient) -> None:
        response = client.post(
            "/documents", files={"file": ("invoice.txt", b"Total: 10", "text/plain")}
        )
        assert response.status_code == 422

    def test_upload_records_content_hash(self, client: TestClient, invoice_text: str) -> None:
        content = invoice_text.encode()
        data = _upload(client, "invoice.txt", content).json()
        assert data["content_hash"] == hashlib.sha256(content).hexdigest()

    def test_upload_runs_in_worker_thread(self) -> None:
        # blocking store writes must stay off the event loop
        assert not inspect.iscoroutinefunction(upload_document)

    def test_reupload_flagged_as_exact_duplicate(
        self, client: TestClient, invoice_text: str
    ) -> None:
        first = _upload(client, "invoice.txt", invoice_text.encode()).json()["id"]
        second = _upload(client, "invoice-copy.txt", invoice_text.encode()).json()["id"]

        data = client.post(f"/documents/{second}/process").json()

        assert data["status"] == "approved"
        assert data["extracted_data"]["duplicate"]["level"] == "exact"
        assert data["extracted_data"]["duplicate"]["document_id"] == first
        assert data["artifacts"]["verification"]["duplicate"]["filename"] == "invoice.txt"

    def test_process_approves_clean_invoice(self, client: TestClient, invoice_text: str) -> None:
        document_id = _upload(client, "invoice.txt", invoice_text.encode()).json()["id"]

        response = client.post(f"/documents/{document_id}/process")

        assert response.status_code == 200
        data = response.json()
        assert data["status"] == "approved"
        assert data["doc_type"] == "invoice"
        assert data["confidence_score"] == pytest.approx(87.86)
        assert data["extracted_data"]["fields"]["invoice_number"]["value"] == "INV-1001"

    def test_process_twice_conflicts(self, client: TestClient, invoice_text: str) -> None:
        document_id = _upload(client, "invoice.txt", invoice_text.encode()).json()["id"]
        client.post(f"/documents/{document_id}/process")
        assert client.post(f"/documents/{document_id}/process").status_code == 409

    def test_unknown_document(self, client: TestClient) -> None:
        assert client.get("/documents/missing").status_code == 404
        assert client.post("/documents/missing/process").status_code == 404

    def test_bad_route_rejected(self, client: TestClient, make_document) -> None:
        document = make_document()
        response = client.post(f"/documents/{document.id}/process", params={"route": "magic"})
        assert response.status_code == 422


class TestSessionEndpoints:
    """Tests for batch sessions and cancellation."""

    def test_session_runs_in_background(self, client: TestClient, make_document) -> None:
        ids = [make_document().id, make_document().id]

        response = client.post("/sessions", json={"user_id": "alice", "document_ids": ids})

        assert response.status_code == 201
        session_id = response.json()["id"]
        assert sorted(response.json()["document_ids"]) == sorted(ids)
        assert client.get(f"/sessions/{session_id}").json()["status"] == "completed"
        for document_id in ids:
            assert client.get(f"/documents/{document_id}").json()["status"] == "approved"

    def test_second_session_conflicts(self, client: TestClient, make_document) -> None:
        body = {"user_id": "alice", "document_ids": [make_document().id], "run": False}
        assert client.post("/sessions", json=body).status_code == 201

        body["document_ids"] = [make_document().id]
        response = client.post("/sessions", json=body)
        assert response.status_code == 409
        assert response.json()["error"] == "ConflictError"

    def test_foreign_documents_forbidden(self, client: TestClient, make_document) -> None:
        body = {"user_id": "alice", "document_ids": [make_document(user_id="bob").id]}
        assert client.post("/sessions", json=body).status_code == 403

    def test_stop_rolls_back(self, client: TestClient, make_document) -> None:
        document = make_document(status=DocumentStatus.PROCESSING)
        body = {"user_id": "alice", "document_ids": [document.id], "run": False}
        session_id = client.post("/sessions", json=body).json()["id"]

        response = client.post(f"/sessions/{session_id}/stop")

        assert response.status_code == 200
        assert response.json()["rolled_back"] == 1
        assert response.json()["rolled_back_ids"] == [document.id]
        assert client.get(f"/sessions/{session_id}").json()["status"] == "stopped"
        assert client.get(f"/documents/{document.id}").json()["status"] == "pending"

    def test_cancel_batch(self, client: TestClient, make_document) -> None:
        processing = make_document(status=DocumentStatus.PROCESSING)
        done = make_document(status=DocumentStatus.APPROVED)

        response = client.post(
            "/batches/cancel", json={"document_ids": [processing.id, done.id]}
        )

        assert response.status_code == 200
        assert response.json()["rolled_back_ids"] == [processing.id]

    def test_empty_session_rejected(self, client: TestClient) -> None:
        response = client.post("/sessions", json={"user_id": "alice", "document_ids": []})
        assert response.status_code == 422


class TestReviewEndpoints:
    """Tests for review transitions, history and SLA."""

    @pytest.fixture
    def task(self, services, make_document):
        document = make_document(status=DocumentStatus.NEEDS_REVIEW)
        return services.review.open_task(document)

    def test_approve_with_edits(self, client: TestClient, task) -> None:
        response = client.post(
            f"/review/tasks/{task.id}/transition",
            json={
                "next_status": "approved",
                "actor": "alice",
                "payload": {"edited_fields": {"vendor_name": "Acme Supplies AB"}},
            },
        )

        assert response.status_code == 200
        assert response.json()["status"] == "approved"
        document = client.get(f"/documents/{task.document_id}").json()
        assert document["status"] == "approved"
        assert document["extracted_data"]["fields"]["vendor_name"]["confidence"] == 1.0

        history = client.get(f"/review/tasks/{task.id}/history").json()
        assert [e["to_status"] for e in history] == ["assigned", "approved"]

    def test_stranger_forbidden(self, client: TestClient, task) -> None:
        response = client.post(
            f"/review/tasks/{task.id}/transition",
            json={"next_status": "approved", "actor": "mallory"},
        )
        assert response.status_code == 403

    def test_invalid_transition(self, client: TestClient, task) -> None:
        response = client.post(
            f"/review/tasks/{task.id}/transition",
            json={"next_status": "assigned", "actor": "alice"},
        )
        assert response.status_code == 409
        assert response.json()["error"] == "InvalidTransitionError"

    def test_unknown_task(self, client: TestClient) -> None:
        assert client.get("/review/tasks/missing/history").status_code == 404

    def test_sla_evaluation(self, client: TestClient, task) -> None:
        response = client.get("/sla/alice")
        assert response.status_code == 200
        assert response.json()[0]["task_id"] == task.id
        assert response.json()[0]["risk_level"] == "ok"
        assert response.json()[0]["breach_minutes"] == 240


class TestSettingsEndpoints:
    """Tests for SLA rules and user settings."""

    def test_put_sla_rule(self, client: TestClient) -> None:
        body = {"user_id": "alice", "doc_type": "invoice", "warning_minutes": 30, "breach_minutes": 90}
        response = client.put("/sla/rules", json=body)
        assert response.status_code == 200
        assert response.json()["enabled"] is True

    def test_invalid_sla_rule(self, client: TestClient) -> None:
        body = {"user_id": "alice", "doc_type": "invoice", "warning_minutes": 90, "breach_minutes": 30}
        assert client.put("/sla/rules", json=body).status_code == 422

    def test_put_settings(self, client: TestClient, services) -> None:
        response = client.put(
            "/users/alice/settings", json={"user_id": "alice", "auto_approve_threshold": 90}
        )
        assert response.status_code == 200
        assert services.store.get_settings("alice").auto_approve_threshold == 90.0

    def test_settings_user_mismatch(self, client: TestClient) -> None:
        response = client.put("/users/alice/settings", json={"user_id": "bob"})
        assert response.status_code == 422

    def test_threshold_out_of_range(self, client: TestClient) -> None:
        response = client.put(
            "/users/alice/settings", json={"user_id": "alice", "auto_approve_threshold": 40}
        )
        assert response.status_code == 422
