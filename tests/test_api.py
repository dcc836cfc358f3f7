"""
Tests for API endpoints.

This module exercises the HTTP surface in-process, against the same service
fixtures as the service tests.
"""

import httpx
import pytest

from fleetdocs.api import create_app, error_status
from fleetdocs.errors import (
    DocumentNotFound,
    DuplicateDocumentNumber,
    ReferenceNotFound,
    StorageError,
    StorageFailure,
    TooLarge,
    UnsupportedType,
    ValidationError,
)
from fleetdocs.service import DocumentService
from fleetdocs.uploads import LocalUploadSink

from conftest import PDF_BYTES, days_from_today, stored_files


pytestmark = pytest.mark.integration


def form(seed, **overrides):
    data = {
        "subject_id": str(seed.vehicle),
        "document_type_id": str(seed.soat),
        "document_number": "SOAT-100",
        "expiry_date": days_from_today(40).isoformat(),
    }
    data.update(overrides)
    return data


def pdf_file(name="soat.pdf", payload=PDF_BYTES, mime_type="application/pdf"):
    return {"archivo_documento": (name, payload, mime_type)}


class FlakySink(LocalUploadSink):
    """Sink whose first write fails."""

    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self.attempts = 0

    async def store(self, payload, declared_mime_type, max_size_bytes=None, original_name=None, category=""):
        self.attempts += 1
        if self.attempts == 1:
            raise StorageFailure("disk busy")
        return await super().store(payload, declared_mime_type, max_size_bytes, original_name, category)


@pytest.mark.parametrize(
    "error, status",
    [
        (ValidationError("expiry_date", "bad"), 422),
        (DuplicateDocumentNumber(1, "A"), 409),
        (ReferenceNotFound("subject", 1), 404),
        (DocumentNotFound(1), 404),
        (UnsupportedType("text/plain"), 415),
        (TooLarge(11, 10), 413),
        (StorageFailure("down"), 503),
        (StorageError("down"), 500),
    ],
)
def test_error_status(error, status):
    """Test the HTTP status of each error type."""
    assert error_status(error) == status


@pytest.mark.asyncio
async def test_api_health(client):
    """Test API health endpoint."""
    response = await client.get("/healthz")
    assert response.status_code == 200
    assert response.json() == {"status": "ok"}
    assert response.headers["X-Content-Type-Options"] == "nosniff"


@pytest.mark.asyncio
async def test_register_document(client, seed, upload_dir):
    """Test registering a document with an attachment."""
    response = await client.post("/documents", data=form(seed, uploaded_by="5"), files=pdf_file())
    assert response.status_code == 201

    data = response.json()
    assert data["state"] == "vigente"
    assert data["has_attachment"] is True
    assert data["attachment_name"] == "soat.pdf"
    assert data["uploaded_by"] == 5
    assert data["effective_alert_window_days"] == 30
    assert "attachment_path" not in data
    assert len(stored_files(upload_dir)) == 1


@pytest.mark.asyncio
async def test_register_document_without_attachment(client, seed):
    """Test that the attachment is optional."""
    response = await client.post("/documents", data=form(seed, expiry_date=days_from_today(-1).isoformat()))
    assert response.status_code == 201
    assert response.json()["state"] == "vencido"
    assert response.json()["has_attachment"] is False


@pytest.mark.asyncio
async def test_register_document_errors(client, seed, upload_dir):
    """Test the status codes of rejected registrations."""
    response = await client.post("/documents", data=form(seed, expiry_date=""))
    assert response.status_code == 422
    assert response.json()["field"] == "expiry_date"

    response = await client.post("/documents", data=form(seed, subject_id="9999"))
    assert response.status_code == 404

    response = await client.post(
        "/documents", data=form(seed), files=pdf_file("notes.txt", b"hello", "text/plain")
    )
    assert response.status_code == 415

    response = await client.post(
        "/documents", data=form(seed), files=pdf_file(payload=b"\0" * (11 * 1024 * 1024))
    )
    assert response.status_code == 413

    assert (await client.post("/documents", data=form(seed))).status_code == 201
    response = await client.post("/documents", data=form(seed))
    assert response.status_code == 409
    assert response.json()["error"] == "DuplicateDocumentNumber"

    assert stored_files(upload_dir) == []


@pytest.mark.asyncio
async def test_register_retries_storage_failure(database, clock, seed, upload_dir):
    """Test that a failed attachment write is retried once."""
    sink = FlakySink(base_dir=upload_dir)
    app = create_app(DocumentService(db=database, upload_sink=sink, clock=clock))

    async with httpx.AsyncClient(transport=httpx.ASGITransport(app=app), base_url="http://testserver") as client:
        response = await client.post("/documents", data=form(seed), files=pdf_file())

    assert response.status_code == 201
    assert sink.attempts == 2
    assert len(stored_files(upload_dir)) == 1


@pytest.mark.asyncio
async def test_get_edit_delete_document(client, seed):
    """Test the document detail, edit and delete endpoints."""
    created = (await client.post("/documents", data=form(seed))).json()

    response = await client.get(f"/documents/{created['id']}")
    assert response.status_code == 200
    detail = response.json()
    assert detail["document"]["document_number"] == "SOAT-100"
    assert detail["days_remaining"] == 40
    assert detail["display_tier"] == "vigente"

    response = await client.patch(
        f"/documents/{created['id']}",
        data={"expiry_date": days_from_today(5).isoformat(), "observaciones": "Renovación pendiente"},
    )
    assert response.status_code == 200
    assert response.json()["state"] == "por_vencer"
    assert response.json()["observaciones"] == "Renovación pendiente"

    response = await client.get(f"/documents/{created['id']}")
    assert response.json()["display_tier"] == "urgente"

    response = await client.patch(f"/documents/{created['id']}", data={"document_number": "   "})
    assert response.status_code == 422

    response = await client.delete(f"/documents/{created['id']}")
    assert response.status_code == 204

    assert (await client.get(f"/documents/{created['id']}")).status_code == 404
    assert (await client.delete(f"/documents/{created['id']}")).status_code == 404


@pytest.mark.asyncio
async def test_download_attachment(client, seed):
    """Test downloading the attachment of a document."""
    with_file = (await client.post("/documents", data=form(seed), files=pdf_file("póliza.pdf"))).json()
    without_file = (await client.post("/documents", data=form(seed, document_number="SOAT-101"))).json()

    response = await client.get(f"/documents/{with_file['id']}/attachment")
    assert response.status_code == 200
    assert response.content == PDF_BYTES
    assert response.headers["content-type"] == "application/pdf"

    response = await client.get(f"/documents/{without_file['id']}/attachment")
    assert response.status_code == 404


@pytest.mark.asyncio
async def test_subject_documents(client, seed):
    """Test the per-subject listing."""
    await client.post("/documents", data=form(seed, document_number="A"))
    await client.post("/documents", data=form(seed, document_number="B", expiry_date=days_from_today(-3).isoformat()))

    response = await client.get(f"/subjects/{seed.vehicle}/documents")
    assert response.status_code == 200
    data = response.json()
    assert data["total"] == 2
    assert [d["document_number"] for d in data["documents"]] == ["B", "A"]

    response = await client.get(f"/subjects/{seed.vehicle}/documents?page=2&page_size=1")
    assert [d["document_number"] for d in response.json()["documents"]] == ["A"]

    response = await client.get(f"/subjects/{seed.inactive_vehicle}/documents")
    assert response.status_code == 404


@pytest.mark.asyncio
async def test_stats_expiring_and_reconcile(client, seed, clock):
    """Test the dashboard endpoints and a reconciliation run."""
    await client.post("/documents", data=form(seed, document_number="A"))
    await client.post("/documents", data=form(seed, document_number="B", expiry_date=days_from_today(10).isoformat()))

    response = await client.get("/documents/stats?client_id=1")
    assert response.status_code == 200
    assert response.json() == {"vigente": 1, "por_vencer": 1, "vencido": 0, "total": 2}

    response = await client.get("/documents/expiring?days=30&client_id=1")
    assert response.status_code == 200
    assert [d["document"]["document_number"] for d in response.json()] == ["B"]

    clock.advance(days=15)
    response = await client.post("/reconcile")
    assert response.status_code == 200
    data = response.json()
    assert data["checked"] == 2
    assert data["applied"] == 2
    assert sorted((c["old_state"], c["new_state"]) for c in data["changes"]) == [
        ("por_vencer", "vencido"),
        ("vigente", "por_vencer"),
    ]

    response = await client.post("/reconcile")
    assert response.json()["changes"] == []


@pytest.mark.asyncio
async def test_document_type_endpoints(client, seed):
    """Test listing, creating and deactivating document types."""
    response = await client.get("/document-types?client_id=1&category=person")
    assert response.status_code == 200
    assert [t["name"] for t in response.json()] == ["Licencia de Conducir", "Pasaporte"]

    response = await client.post(
        "/document-types",
        json={"client_id": 1, "category": "person", "name": "Visa", "default_alert_window_days": 60},
    )
    assert response.status_code == 201
    created = response.json()
    assert created["name"] == "Visa"
    assert created["active"] is True

    response = await client.post("/document-types", json={"client_id": 1, "category": "person", "name": "visa"})
    assert response.status_code == 409

    response = await client.post("/document-types", json={"client_id": 1, "category": "boat", "name": "Casco"})
    assert response.status_code == 422

    response = await client.delete(f"/document-types/{created['id']}")
    assert response.status_code == 200
    assert response.json()["active"] is False

    response = await client.delete(f"/document-types/{created['id']}")
    assert response.status_code == 404


@pytest.mark.asyncio
async def test_document_types_for_new_client(client, seed):
    """Test that a client without types is offered the default catalogue."""
    response = await client.get("/document-types?client_id=42&category=vehicle")
    assert response.status_code == 200
    vehicle_types = response.json()
    assert [t["name"] for t in vehicle_types] == ["Otros", "Revisión Técnica", "SOAT", "Seguro"]
    assert all(t["client_id"] == 42 for t in vehicle_types)

    response = await client.get("/document-types?client_id=42&category=person")
    by_name = {t["name"]: t for t in response.json()}
    assert by_name["Certificado de Matrimonio"]["default_alert_window_days"] == 365
    assert by_name["Pasaporte"]["default_alert_window_days"] == 90
