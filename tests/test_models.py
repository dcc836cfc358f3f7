"""
Tests for database models.

This module tests the model columns, constraints and derived properties.
"""

from datetime import date

import pytest
from sqlalchemy import inspect

from fleetdocs import settings
from fleetdocs.expiry import DocumentState
from fleetdocs.models import DocumentRecord, DocumentType, Subject


@pytest.mark.unit
def test_document_model_attributes():
    """Test DocumentRecord columns and constraints."""
    mapper = inspect(DocumentRecord)

    assert mapper.primary_key[0].name == "id"

    columns = {c.name: c for c in mapper.columns}
    for name in (
        "subject_id", "document_type_id", "document_number", "issue_date", "expiry_date",
        "alert_window_days", "state", "attachment_name", "attachment_path",
        "attachment_mime_type", "attachment_size", "observaciones", "uploaded_by",
        "created_at", "updated_at",
    ):
        assert name in columns

    assert columns["expiry_date"].nullable is False
    assert columns["document_number"].nullable is False
    assert columns["state"].nullable is True
    assert list(columns["state"].type.enums) == ["vigente", "por_vencer", "vencido"]

    constraint_names = {c.name for c in DocumentRecord.__table__.constraints}
    assert "uq_documents_subject_number" in constraint_names
    assert "uq_document_types_client_category_name" in {
        c.name for c in DocumentType.__table__.constraints
    }


@pytest.mark.unit
def test_effective_alert_window_days():
    """Test the alert window precedence: record, then type, then default."""
    document_type = DocumentType(name="Pasaporte", category="person", default_alert_window_days=90)

    overridden = DocumentRecord(alert_window_days=10, document_type=document_type)
    assert overridden.effective_alert_window_days == 10

    zero = DocumentRecord(alert_window_days=0, document_type=document_type)
    assert zero.effective_alert_window_days == 0

    inherited = DocumentRecord(document_type=document_type)
    assert inherited.effective_alert_window_days == 90

    orphan = DocumentRecord()
    assert orphan.effective_alert_window_days == settings.DEFAULT_ALERT_WINDOW_DAYS


@pytest.mark.unit
def test_has_attachment():
    """Test the attachment flag."""
    assert DocumentRecord().has_attachment is False
    assert DocumentRecord(attachment_path="vehicles/soat-1.pdf").has_attachment is True


@pytest.mark.unit
def test_model_repr():
    """Test model string representations."""
    document = DocumentRecord(
        id=3, document_number="SOAT-1", expiry_date=date(2025, 2, 24), state=DocumentState.POR_VENCER
    )
    assert repr(document) == (
        "<DocumentRecord(id=3, number='SOAT-1', expiry_date='2025-02-24', state='por_vencer')>"
    )
    assert "state='None'" in repr(DocumentRecord(id=4, document_number="X", expiry_date=date(2025, 1, 1)))

    assert repr(Subject(id=1, kind="vehicle", label="ABCD-12")) == (
        "<Subject(id=1, kind='vehicle', label='ABCD-12')>"
    )
    assert "Pasaporte" in repr(DocumentType(id=2, name="Pasaporte", category="person"))


@pytest.mark.asyncio
@pytest.mark.integration
async def test_document_relationships(database, seed, document_repository):
    """Test that subject and type are loaded with the document."""
    async with database.transaction() as session:
        document = await document_repository.insert(session, {
            "subject_id": seed.person,
            "document_type_id": seed.passport,
            "document_number": "P-1",
            "expiry_date": date(2030, 1, 1),
        })

    assert document.subject.label == "Ana Pérez"
    assert document.document_type.name == "Pasaporte"
    assert document.effective_alert_window_days == 90
    assert document.state is None
