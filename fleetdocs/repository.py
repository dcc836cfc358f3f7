"""
Repository classes for document storage and retrieval.

This module provides repository classes for interacting with the database.
Every SQLAlchemy failure leaves this module as a StorageError, and violations
of the unique constraints are translated into the matching duplicate errors.
"""

import logging
from contextlib import contextmanager
from datetime import date, timedelta
from typing import Any, Dict, Generic, Iterator, List, Optional, Tuple, Type, TypeVar

from sqlalchemy import and_, case, func, select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.sql.expression import Select

from fleetdocs.errors import (
    DocumentNotFound,
    DuplicateDocumentNumber,
    DuplicateDocumentType,
    ReferenceNotFound,
    StorageError,
)
from fleetdocs.expiry import DocumentState, severity_rank
from fleetdocs.models import Base, DocumentRecord, DocumentType, Subject
from fleetdocs.reconciler import Changeset

# Configure logging
logger = logging.getLogger("fleetdocs.repository")

# Type variables
T = TypeVar('T', bound=Base)

# Writable document columns
DOCUMENT_FIELDS = {
    "subject_id",
    "document_type_id",
    "document_number",
    "issue_date",
    "expiry_date",
    "alert_window_days",
    "state",
    "attachment_name",
    "attachment_path",
    "attachment_mime_type",
    "attachment_size",
    "observaciones",
    "uploaded_by",
}

# Catalogue created for a client that has no document types yet
DEFAULT_DOCUMENT_TYPES: List[Dict[str, Any]] = [
    {"category": "vehicle", "name": "SOAT", "description": "Seguro Obligatorio de Accidentes de Tránsito", "default_alert_window_days": 30, "obligatory": True},
    {"category": "vehicle", "name": "Revisión Técnica", "description": "Certificado de revisión técnica vehicular", "default_alert_window_days": 30, "obligatory": True},
    {"category": "vehicle", "name": "Seguro", "description": "Seguro del vehículo", "default_alert_window_days": 30, "obligatory": False},
    {"category": "vehicle", "name": "Otros", "description": "Otros documentos", "default_alert_window_days": 30, "obligatory": False},
    {"category": "person", "name": "Cédula de Identidad", "description": "Documento nacional de identidad", "default_alert_window_days": 60, "obligatory": True},
    {"category": "person", "name": "Pasaporte", "description": "Documento de viaje internacional", "default_alert_window_days": 90, "obligatory": False},
    {"category": "person", "name": "Licencia de Conducir", "description": "Permiso para conducir vehículos", "default_alert_window_days": 30, "obligatory": False},
    {"category": "person", "name": "Certificado de Antecedentes", "description": "Certificado de antecedentes penales", "default_alert_window_days": 30, "obligatory": True},
    {"category": "person", "name": "Título Profesional", "description": "Título universitario o técnico", "default_alert_window_days": 365, "obligatory": False},
    {"category": "person", "name": "Certificado de Matrimonio", "description": "Certificado de estado civil", "default_alert_window_days": 365, "obligatory": False},
    {"category": "person", "name": "Otros", "description": "Otros tipos de documentos", "default_alert_window_days": 30, "obligatory": False},
]


class PaginationParams:
    """Parameters for pagination."""

    def __init__(self, page: int = 1, page_size: int = 10):
        """
        Initialize pagination parameters.

        Args:
            page: Page number (1-based)
            page_size: Number of items per page
        """
        self.page = max(1, page)  # Ensure page is at least 1
        self.page_size = min(max(1, page_size), 100)  # Ensure page_size is between 1 and 100

    @property
    def offset(self) -> int:
        """Offset for pagination."""
        return (self.page - 1) * self.page_size

    @property
    def limit(self) -> int:
        """Limit for pagination."""
        return self.page_size


def _is_unique_violation(error: IntegrityError) -> bool:
    """Tell unique-constraint violations apart from other integrity errors."""
    message = str(error.orig if error.orig is not None else error).lower()
    return "unique" in message or "duplicate" in message


@contextmanager
def storage_errors(action: str) -> Iterator[None]:
    """Re-raise SQLAlchemy failures as StorageError."""
    try:
        yield
    except SQLAlchemyError as e:
        logger.error(f"Storage error while {action}: {str(e)}")
        raise StorageError(f"Failed while {action}: {str(e)}") from e


class BaseRepository(Generic[T]):
    """
    Base repository class for database operations.

    This class provides the lookups shared by all entities.
    """

    def __init__(self, model: Type[T]):
        """
        Initialize the repository.

        Args:
            model: SQLAlchemy model class
        """
        self.model = model

    async def get(self, session: AsyncSession, id: Any) -> Optional[T]:
        """
        Get an entity by ID.

        Args:
            session: Database session
            id: Entity ID

        Returns:
            Entity instance, or None if it does not exist
        """
        stmt = select(self.model).where(self.model.id == id).execution_options(populate_existing=True)
        with storage_errors(f"loading {self.model.__name__} {id}"):
            result = await session.execute(stmt)
            return result.scalars().first()

    async def count(self, session: AsyncSession, stmt: Select) -> int:
        """Count the rows a statement would return."""
        count_stmt = select(func.count()).select_from(stmt.order_by(None).subquery())
        with storage_errors(f"counting {self.model.__name__} rows"):
            result = await session.execute(count_stmt)
            return result.scalar() or 0


class SubjectRepository(BaseRepository[Subject]):
    """Read-only access to vehicles and persons."""

    def __init__(self):
        super().__init__(Subject)

    async def get_active(self, session: AsyncSession, id: Any) -> Subject:
        """
        Get an active subject.

        Raises:
            ReferenceNotFound: If the subject does not exist or is inactive
        """
        subject = await self.get(session, id)
        if subject is None or not subject.active:
            raise ReferenceNotFound("subject", id)
        return subject


class DocumentTypeRepository(BaseRepository[DocumentType]):
    """Repository for the document type catalogue."""

    def __init__(self):
        super().__init__(DocumentType)

    async def get_active(self, session: AsyncSession, id: Any) -> DocumentType:
        """
        Get an active document type.

        Raises:
            ReferenceNotFound: If the type does not exist or was deactivated
        """
        document_type = await self.get(session, id)
        if document_type is None or not document_type.active:
            raise ReferenceNotFound("document_type", id)
        return document_type

    async def list_active(
        self,
        session: AsyncSession,
        client_id: int,
        category: Optional[str] = None
    ) -> List[DocumentType]:
        """List the active document types of a client, ordered by name."""
        stmt = select(DocumentType).where(
            and_(DocumentType.client_id == client_id, DocumentType.active.is_(True))
        )
        if category:
            stmt = stmt.where(DocumentType.category == category)
        stmt = stmt.order_by(DocumentType.category, DocumentType.name)

        with storage_errors(f"listing document types of client {client_id}"):
            result = await session.execute(stmt)
            return list(result.scalars().all())

    async def create(self, session: AsyncSession, data: Dict[str, Any]) -> DocumentType:
        """
        Create a document type.

        Raises:
            DuplicateDocumentType: If the client already has a type with that name
        """
        stmt = select(DocumentType.id).where(
            and_(
                DocumentType.client_id == data["client_id"],
                DocumentType.category == data["category"],
                func.lower(DocumentType.name) == data["name"].lower(),
            )
        )
        with storage_errors("checking document type name"):
            existing = (await session.execute(stmt)).first()
        if existing is not None:
            raise DuplicateDocumentType(data["client_id"], data["name"])

        document_type = DocumentType(**data)
        session.add(document_type)
        try:
            await session.flush()
        except IntegrityError as e:
            if _is_unique_violation(e):
                raise DuplicateDocumentType(data["client_id"], data["name"]) from e
            raise StorageError(f"Failed to create document type: {str(e)}") from e
        except SQLAlchemyError as e:
            raise StorageError(f"Failed to create document type: {str(e)}") from e
        return document_type

    async def deactivate(self, session: AsyncSession, id: Any) -> DocumentType:
        """Soft-delete a document type. Existing documents keep their reference."""
        document_type = await self.get_active(session, id)
        document_type.active = False
        with storage_errors(f"deactivating document type {id}"):
            await session.flush()
        return document_type

    async def ensure_defaults(self, session: AsyncSession, client_id: int) -> List[DocumentType]:
        """
        Create the default catalogue for a client that has no document types.

        Returns:
            The created types (empty if the client already had some)
        """
        stmt = select(func.count()).select_from(DocumentType).where(DocumentType.client_id == client_id)
        with storage_errors(f"checking document types of client {client_id}"):
            existing = (await session.execute(stmt)).scalar() or 0
        if existing:
            return []

        created = [DocumentType(client_id=client_id, active=True, **item) for item in DEFAULT_DOCUMENT_TYPES]
        session.add_all(created)
        with storage_errors(f"creating default document types for client {client_id}"):
            await session.flush()
        logger.info(f"Created {len(created)} default document types for client {client_id}")
        return created


class DocumentRepository(BaseRepository[DocumentRecord]):
    """
    Repository for document operations.

    This class provides the persistence interface consumed by the document
    service and the reconciliation job.
    """

    def __init__(self):
        """Initialize the document repository."""
        super().__init__(DocumentRecord)

    async def find_by_id(self, session: AsyncSession, id: Any) -> DocumentRecord:
        """
        Get a document by ID.

        Raises:
            DocumentNotFound: If the document does not exist
        """
        document = await self.get(session, id)
        if document is None:
            raise DocumentNotFound(id)
        return document

    async def find_by_subject(
        self,
        session: AsyncSession,
        subject_id: Any,
        pagination: Optional[PaginationParams] = None
    ) -> Tuple[List[DocumentRecord], int]:
        """
        Get the documents of a subject.

        Documents are ordered expired first, then expiring soon, then current;
        within a state by expiry date and then newest upload first.

        Returns:
            Tuple of (documents, total_count)
        """
        severity = case(
            *[(DocumentRecord.state == state, severity_rank(state)) for state in DocumentState],
            else_=severity_rank(None),
        )
        stmt = select(DocumentRecord).where(DocumentRecord.subject_id == subject_id)
        total_count = await self.count(session, stmt)

        stmt = stmt.order_by(
            severity,
            DocumentRecord.expiry_date.asc(),
            DocumentRecord.created_at.desc(),
            DocumentRecord.id.desc(),
        )
        if pagination:
            stmt = stmt.offset(pagination.offset).limit(pagination.limit)

        with storage_errors(f"listing documents of subject {subject_id}"):
            result = await session.execute(stmt)
            return list(result.scalars().all()), total_count

    async def find_all_active(
        self,
        session: AsyncSession,
        client_id: Optional[int] = None
    ) -> List[DocumentRecord]:
        """Get every document that belongs to an active subject."""
        stmt = (
            select(DocumentRecord)
            .join(Subject, DocumentRecord.subject_id == Subject.id)
            .where(Subject.active.is_(True))
            .order_by(DocumentRecord.id)
        )
        if client_id is not None:
            stmt = stmt.where(Subject.client_id == client_id)

        with storage_errors("loading active documents"):
            result = await session.execute(stmt)
            return list(result.scalars().all())

    async def exists_document_number(
        self,
        session: AsyncSession,
        subject_id: Any,
        document_number: str,
        exclude_id: Optional[Any] = None
    ) -> bool:
        """Check whether a subject already has a document with this number."""
        stmt = select(DocumentRecord.id).where(
            and_(
                DocumentRecord.subject_id == subject_id,
                DocumentRecord.document_number == document_number,
            )
        )
        if exclude_id is not None:
            stmt = stmt.where(DocumentRecord.id != exclude_id)

        with storage_errors("checking document number"):
            result = await session.execute(stmt.limit(1))
            return result.first() is not None

    async def _flush_document(self, session: AsyncSession, document: DocumentRecord) -> None:
        try:
            await session.flush()
        except IntegrityError as e:
            if _is_unique_violation(e):
                raise DuplicateDocumentNumber(document.subject_id, document.document_number) from e
            logger.error(f"Integrity error on document {document.id}: {str(e)}")
            raise StorageError(f"Failed to save document: {str(e)}") from e
        except SQLAlchemyError as e:
            logger.error(f"Storage error on document {document.id}: {str(e)}")
            raise StorageError(f"Failed to save document: {str(e)}") from e

    async def insert(self, session: AsyncSession, data: Dict[str, Any]) -> DocumentRecord:
        """
        Insert a new document.

        Args:
            session: Database session
            data: Document data

        Returns:
            Created document with its storage-assigned fields loaded

        Raises:
            DuplicateDocumentNumber: If the unique constraint rejects the number
        """
        document = DocumentRecord(**{k: v for k, v in data.items() if k in DOCUMENT_FIELDS})
        session.add(document)
        await self._flush_document(session, document)
        return await self.find_by_id(session, document.id)

    async def update(self, session: AsyncSession, id: Any, fields: Dict[str, Any]) -> DocumentRecord:
        """
        Update an existing document.

        Raises:
            DocumentNotFound: If the document does not exist
            DuplicateDocumentNumber: If the new number collides for the subject
        """
        document = await self.find_by_id(session, id)

        for key, value in fields.items():
            if key in DOCUMENT_FIELDS:
                setattr(document, key, value)

        await self._flush_document(session, document)
        return await self.find_by_id(session, id)

    async def delete(self, session: AsyncSession, id: Any) -> DocumentRecord:
        """
        Delete a document.

        Returns:
            The deleted document, so callers can clean up its attachment

        Raises:
            DocumentNotFound: If the document does not exist
        """
        document = await self.find_by_id(session, id)
        with storage_errors(f"deleting document {id}"):
            await session.delete(document)
            await session.flush()
        return document

    async def apply_changeset(self, session: AsyncSession, changeset: Changeset) -> int:
        """
        Persist the state transitions of a changeset.

        Each row is only updated while it still holds the state the changeset
        was computed from.

        Returns:
            Number of rows updated
        """
        applied = 0
        with storage_errors("applying state changeset"):
            for change in changeset.to_update:
                if change.old_state is None:
                    guard = DocumentRecord.state.is_(None)
                else:
                    guard = DocumentRecord.state == change.old_state
                stmt = (
                    update(DocumentRecord)
                    .where(and_(DocumentRecord.id == change.id, guard))
                    .values(state=change.new_state)
                    .execution_options(synchronize_session=False)
                )
                result = await session.execute(stmt)
                if result.rowcount:
                    applied += result.rowcount
                else:
                    logger.warning(
                        f"Skipped state change for document {change.id}: stored state is no longer {change.old_state}"
                    )
        return applied

    async def count_by_state(
        self,
        session: AsyncSession,
        client_id: Optional[int] = None
    ) -> Dict[str, int]:
        """
        Count documents per state for active subjects.

        Returns:
            Dictionary with one entry per state plus "total"
        """
        stmt = (
            select(DocumentRecord.state, func.count(DocumentRecord.id))
            .join(Subject, DocumentRecord.subject_id == Subject.id)
            .where(Subject.active.is_(True))
            .group_by(DocumentRecord.state)
        )
        if client_id is not None:
            stmt = stmt.where(Subject.client_id == client_id)

        with storage_errors("counting documents by state"):
            rows = (await session.execute(stmt)).all()

        counts = {state.value: 0 for state in DocumentState}
        total = 0
        for state, amount in rows:
            if state is not None:
                counts[DocumentState(state).value] = amount
            total += amount
        counts["total"] = total
        return counts

    async def find_expiring(
        self,
        session: AsyncSession,
        today: date,
        within_days: int,
        client_id: Optional[int] = None,
        limit: Optional[int] = None
    ) -> List[DocumentRecord]:
        """
        Get documents that have not expired yet but will within ``within_days``.

        Selection uses the expiry date, not the stored state, so it is exact
        even between reconciliation runs.
        """
        stmt = (
            select(DocumentRecord)
            .join(Subject, DocumentRecord.subject_id == Subject.id)
            .where(
                and_(
                    Subject.active.is_(True),
                    DocumentRecord.expiry_date > today,
                    DocumentRecord.expiry_date <= today + timedelta(days=within_days),
                )
            )
            .order_by(DocumentRecord.expiry_date.asc(), DocumentRecord.id)
        )
        if client_id is not None:
            stmt = stmt.where(Subject.client_id == client_id)
        if limit:
            stmt = stmt.limit(limit)

        with storage_errors("loading expiring documents"):
            result = await session.execute(stmt)
            return list(result.scalars().all())
