"""
Test fixtures for FleetDocs.

This module provides pytest fixtures for testing the FleetDocs application.
Database tests run against an in-memory SQLite database.
"""

from datetime import date, datetime, timedelta, timezone
from pathlib import Path
from types import SimpleNamespace
from typing import Any, AsyncGenerator, Callable, Dict

import httpx
import pytest
import pytest_asyncio

from fleetdocs.api import create_app
from fleetdocs.clock import FixedClock
from fleetdocs.db import DatabaseManager
from fleetdocs.models import DocumentType, Subject
from fleetdocs.repository import DocumentRepository, DocumentTypeRepository, SubjectRepository
from fleetdocs.service import DocumentService
from fleetdocs.uploads import LocalUploadSink

# Instant every test runs at unless it moves the clock
NOW = datetime(2025, 1, 15, 12, 0, tzinfo=timezone.utc)
TODAY = NOW.date()

PDF_BYTES = b"%PDF-1.4\n1 0 obj\n<< /Type /Catalog >>\nendobj\n%%EOF\n"


def days_from_today(days: int) -> date:
    """Date relative to the fixed test date."""
    return TODAY + timedelta(days=days)


@pytest_asyncio.fixture
async def database() -> AsyncGenerator[DatabaseManager, None]:
    """Create an in-memory database with all tables."""
    manager = DatabaseManager("sqlite://")
    await manager.create_tables()
    yield manager
    await manager.close()


@pytest_asyncio.fixture
async def seed(database: DatabaseManager) -> SimpleNamespace:
    """Insert the subjects and document types used by the tests."""
    async with database.transaction() as session:
        vehicle = Subject(client_id=1, kind="vehicle", label="ABCD-12", active=True)
        person = Subject(client_id=1, kind="person", label="Ana Pérez", active=True)
        inactive_vehicle = Subject(client_id=1, kind="vehicle", label="ZZZZ-99", active=False)
        other_client_vehicle = Subject(client_id=2, kind="vehicle", label="EFGH-34", active=True)

        soat = DocumentType(
            client_id=1, category="vehicle", name="SOAT",
            default_alert_window_days=30, obligatory=True, active=True,
        )
        license = DocumentType(
            client_id=1, category="person", name="Licencia de Conducir",
            default_alert_window_days=30, active=True,
        )
        passport = DocumentType(
            client_id=1, category="person", name="Pasaporte",
            default_alert_window_days=90, active=True,
        )
        retired = DocumentType(
            client_id=1, category="vehicle", name="Permiso Municipal",
            default_alert_window_days=30, active=False,
        )
        other_soat = DocumentType(
            client_id=2, category="vehicle", name="SOAT",
            default_alert_window_days=15, active=True,
        )

        session.add_all([
            vehicle, person, inactive_vehicle, other_client_vehicle,
            soat, license, passport, retired, other_soat,
        ])
        await session.flush()

        return SimpleNamespace(
            vehicle=vehicle.id,
            person=person.id,
            inactive_vehicle=inactive_vehicle.id,
            other_client_vehicle=other_client_vehicle.id,
            soat=soat.id,
            license=license.id,
            passport=passport.id,
            retired=retired.id,
            other_soat=other_soat.id,
        )


@pytest.fixture
def clock() -> FixedClock:
    """Clock fixed at NOW."""
    return FixedClock(NOW)


@pytest.fixture
def upload_dir(tmp_path: Path) -> Path:
    """Directory that receives stored attachments."""
    return tmp_path / "uploads"


@pytest.fixture
def upload_sink(upload_dir: Path) -> LocalUploadSink:
    """Upload sink writing below a temporary directory."""
    return LocalUploadSink(base_dir=upload_dir)


@pytest.fixture
def document_repository() -> DocumentRepository:
    """Create a document repository for testing."""
    return DocumentRepository()


@pytest.fixture
def document_type_repository() -> DocumentTypeRepository:
    """Create a document type repository for testing."""
    return DocumentTypeRepository()


@pytest.fixture
def subject_repository() -> SubjectRepository:
    """Create a subject repository for testing."""
    return SubjectRepository()


@pytest.fixture
def service(database: DatabaseManager, upload_sink: LocalUploadSink, clock: FixedClock) -> DocumentService:
    """Document service bound to the test database, uploads and clock."""
    return DocumentService(db=database, upload_sink=upload_sink, clock=clock)


@pytest.fixture
def document_data(seed: SimpleNamespace) -> Callable[..., Dict[str, Any]]:
    """Factory for the fields of a valid vehicle document."""
    def make(**overrides: Any) -> Dict[str, Any]:
        data: Dict[str, Any] = {
            "subject_id": seed.vehicle,
            "document_type_id": seed.soat,
            "document_number": "SOAT-0001",
            "issue_date": days_from_today(-325),
            "expiry_date": days_from_today(40),
        }
        data.update(overrides)
        return data
    return make


@pytest_asyncio.fixture
async def client(service: DocumentService, seed: SimpleNamespace) -> AsyncGenerator[httpx.AsyncClient, None]:
    """HTTP client for the API, served in-process."""
    app = create_app(service)
    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://testserver") as http_client:
        yield http_client


def stored_files(upload_dir: Path) -> list:
    """Every file currently stored below the upload directory."""
    if not upload_dir.exists():
        return []
    return [path.resolve() for path in upload_dir.rglob("*") if path.is_file()]
