"""
Database models for the FleetDocs application.

This module defines the SQLAlchemy models for the application.
"""

from typing import Optional

from sqlalchemy import (
    Boolean, Column, Date, DateTime, Enum, ForeignKey, Index, Integer, String, Text,
    UniqueConstraint, func
)
from sqlalchemy.orm import DeclarativeBase, relationship

from fleetdocs import settings
from fleetdocs.expiry import DocumentState


class Base(DeclarativeBase):
    """Base class for all models."""
    pass


class Subject(Base):
    """Vehicle or person owning documents. Managed outside the engine."""
    __tablename__ = "subjects"

    id = Column(Integer, primary_key=True, autoincrement=True)
    client_id = Column(Integer, nullable=False, index=True)
    kind = Column(Enum("vehicle", "person", name="subject_kind"), nullable=False)
    label = Column(String(200), nullable=False)  # plate number or person name
    active = Column(Boolean, nullable=False, default=True)

    documents = relationship("DocumentRecord", back_populates="subject")

    def __repr__(self) -> str:
        """Return string representation of the subject."""
        return f"<Subject(id={self.id}, kind='{self.kind}', label='{self.label}')>"


class DocumentType(Base):
    """Category of document with its default alert window."""
    __tablename__ = "document_types"

    id = Column(Integer, primary_key=True, autoincrement=True)
    client_id = Column(Integer, nullable=False)
    category = Column(Enum("vehicle", "person", name="document_category"), nullable=False)
    name = Column(String(120), nullable=False)
    description = Column(Text, nullable=True)
    default_alert_window_days = Column(
        Integer, nullable=False, default=settings.DEFAULT_ALERT_WINDOW_DAYS
    )
    obligatory = Column(Boolean, nullable=False, default=False)
    active = Column(Boolean, nullable=False, default=True)

    __table_args__ = (
        UniqueConstraint("client_id", "category", "name", name="uq_document_types_client_category_name"),
    )

    def __repr__(self) -> str:
        """Return string representation of the document type."""
        return f"<DocumentType(id={self.id}, name='{self.name}', category='{self.category}')>"


class DocumentRecord(Base):
    """Compliance document attached to a subject."""
    __tablename__ = "documents"

    id = Column(Integer, primary_key=True, autoincrement=True)
    subject_id = Column(Integer, ForeignKey("subjects.id"), nullable=False)
    document_type_id = Column(Integer, ForeignKey("document_types.id"), nullable=False)
    document_number = Column(String(100), nullable=False)
    issue_date = Column(Date, nullable=True)
    expiry_date = Column(Date, nullable=False)
    alert_window_days = Column(Integer, nullable=True)  # overrides the type default
    state = Column(
        Enum(
            DocumentState,
            name="document_state",
            values_callable=lambda states: [s.value for s in states],
        ),
        nullable=True,
    )
    attachment_name = Column(String(255), nullable=True)
    attachment_path = Column(Text, nullable=True)
    attachment_mime_type = Column(String(100), nullable=True)
    attachment_size = Column(Integer, nullable=True)
    observaciones = Column(Text, nullable=True)
    uploaded_by = Column(Integer, nullable=True)
    created_at = Column(DateTime, server_default=func.now())
    updated_at = Column(DateTime, server_default=func.now(), onupdate=func.now())

    subject = relationship("Subject", back_populates="documents", lazy="joined")
    document_type = relationship("DocumentType", lazy="joined")

    __table_args__ = (
        UniqueConstraint("subject_id", "document_number", name="uq_documents_subject_number"),
        Index("ix_documents_expiry", "expiry_date"),
        Index("ix_documents_state", "state"),
    )

    @property
    def effective_alert_window_days(self) -> int:
        """Alert window used for classification."""
        if self.alert_window_days is not None:
            return self.alert_window_days
        if self.document_type is not None and self.document_type.default_alert_window_days is not None:
            return self.document_type.default_alert_window_days
        return settings.DEFAULT_ALERT_WINDOW_DAYS

    @property
    def has_attachment(self) -> bool:
        return self.attachment_path is not None

    def __repr__(self) -> str:
        """Return string representation of the document."""
        state: Optional[str] = self.state.value if self.state is not None else None
        return (
            f"<DocumentRecord(id={self.id}, number='{self.document_number}', "
            f"expiry_date='{self.expiry_date}', state='{state}')>"
        )
