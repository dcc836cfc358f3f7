"""
Document service for the FleetDocs application.

This module orchestrates registration, edits and deletion of documents:
validation, attachment storage, classification and persistence. Each write
runs in one transaction, and an attachment stored for a write that fails is
removed again.
"""

import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

from sqlalchemy.ext.asyncio import AsyncSession

from fleetdocs import settings
from fleetdocs.clock import Clock, SystemClock
from fleetdocs.db import DatabaseManager, db_manager
from fleetdocs.errors import DocumentNotFound, UploadError
from fleetdocs.expiry import DisplayTier, classify, days_remaining, display_tier, to_utc_date
from fleetdocs.models import DocumentRecord, DocumentType, Subject
from fleetdocs.reconciler import Changeset, reconcile
from fleetdocs.repository import (
    DocumentRepository,
    DocumentTypeRepository,
    PaginationParams,
    SubjectRepository,
)
from fleetdocs.uploads import LocalUploadSink, StoredFileHandle, UploadSink
from fleetdocs.validation import (
    check_dates,
    validate_changes,
    validate_document_type,
    validate_fields,
    validate_references,
)

# Configure logging
logger = logging.getLogger("fleetdocs.service")

# Attachment subdirectory per subject kind
ATTACHMENT_CATEGORIES = {
    "vehicle": "vehicles",
    "person": "persons",
}


@dataclass(frozen=True)
class AttachmentUpload:
    """An attachment as received from the caller, not stored yet."""
    payload: bytes
    mime_type: str
    original_name: Optional[str] = None


@dataclass(frozen=True)
class DocumentDetail:
    """A document together with the values shown on its detail view."""
    document: DocumentRecord
    days_remaining: int
    display_tier: DisplayTier


@dataclass(frozen=True)
class ReconciliationResult:
    """Outcome of a reconciliation run."""
    changeset: Changeset
    applied: int
    checked: int


def _attachment_fields(handle: Optional[StoredFileHandle]) -> Dict[str, Any]:
    if handle is None:
        return {
            "attachment_name": None,
            "attachment_path": None,
            "attachment_mime_type": None,
            "attachment_size": None,
        }
    return {
        "attachment_name": handle.original_name,
        "attachment_path": handle.stored_path,
        "attachment_mime_type": handle.mime_type,
        "attachment_size": handle.size_bytes,
    }


class DocumentService:
    """
    Application service for compliance documents.

    The service owns no state besides its collaborators; every operation
    opens its own transaction on the database manager.
    """

    def __init__(
        self,
        db: Optional[DatabaseManager] = None,
        upload_sink: Optional[UploadSink] = None,
        clock: Optional[Clock] = None,
        max_upload_size_bytes: Optional[int] = None,
    ):
        """
        Initialize the service.

        Args:
            db: Database manager. Defaults to the global db_manager.
            upload_sink: Attachment storage. Defaults to a LocalUploadSink.
            clock: Source of "now". Defaults to the system clock (UTC).
            max_upload_size_bytes: Size limit handed to the sink
        """
        self.db = db or db_manager
        self.upload_sink = upload_sink or LocalUploadSink()
        self.clock = clock or SystemClock()
        self.max_upload_size_bytes = max_upload_size_bytes or settings.MAX_UPLOAD_SIZE_BYTES
        self.subjects = SubjectRepository()
        self.document_types = DocumentTypeRepository()
        self.documents = DocumentRepository()

    async def _store(self, attachment: AttachmentUpload, subject: Subject) -> StoredFileHandle:
        return await self.upload_sink.store(
            attachment.payload,
            attachment.mime_type,
            max_size_bytes=self.max_upload_size_bytes,
            original_name=attachment.original_name,
            category=ATTACHMENT_CATEGORIES.get(subject.kind, ""),
        )

    async def _discard(self, stored_path: Optional[str]) -> None:
        """Delete an attachment without letting a failure escape."""
        if not stored_path:
            return
        try:
            await self.upload_sink.delete(stored_path)
        except (UploadError, OSError):
            logger.exception(f"Failed to delete attachment {stored_path}")

    def _classify(self, expiry_date, override: Optional[int], document_type: DocumentType):
        if override is not None:
            window = override
        elif document_type.default_alert_window_days is not None:
            window = document_type.default_alert_window_days
        else:
            window = settings.DEFAULT_ALERT_WINDOW_DAYS
        return classify(expiry_date, window, self.clock.now())

    async def _refresh_states(self, session: AsyncSession, documents: List[DocumentRecord]) -> int:
        """Bring the stored state of loaded documents up to date."""
        changeset = reconcile(documents, self.clock.now())
        if not changeset:
            return 0
        applied = await self.documents.apply_changeset(session, changeset)
        changeset.apply(documents)
        return applied

    async def register(
        self,
        data: Dict[str, Any],
        attachment: Optional[AttachmentUpload] = None
    ) -> DocumentRecord:
        """
        Register a new document.

        Args:
            data: Document fields
            attachment: Optional attachment

        Returns:
            The stored document, with its state computed at insert time

        Raises:
            ValidationError: If a field is invalid
            ReferenceNotFound: If the subject or document type is missing or inactive
            DuplicateDocumentNumber: If the subject already has this number
            UploadError: If the attachment is rejected or cannot be stored
            StorageError: If the repository fails
        """
        fields = validate_fields(data)
        handle: Optional[StoredFileHandle] = None

        try:
            async with self.db.transaction() as session:
                subject, document_type = await validate_references(
                    session,
                    fields.subject_id,
                    fields.document_type_id,
                    fields.document_number,
                    self.subjects,
                    self.document_types,
                    self.documents,
                )

                if attachment is not None:
                    handle = await self._store(attachment, subject)

                values = fields.model_dump()
                values["state"] = self._classify(fields.expiry_date, fields.alert_window_days, document_type)
                values.update(_attachment_fields(handle))

                document = await self.documents.insert(session, values)
        except Exception:
            if handle is not None:
                await self._discard(handle.stored_path)
            raise

        logger.info(f"Registered document {document.id} for subject {document.subject_id} ({document.state.value})")
        return document

    async def edit(
        self,
        id: Any,
        data: Dict[str, Any],
        attachment: Optional[AttachmentUpload] = None
    ) -> DocumentRecord:
        """
        Edit a document and recompute its state.

        Fields missing from ``data`` keep their stored value. A new attachment
        replaces the stored one; the old file is removed once the edit commits.

        Raises:
            DocumentNotFound: If the document does not exist
            ValidationError: If a field is invalid
            ReferenceNotFound: If a referenced subject or document type is missing or inactive
            DuplicateDocumentNumber: If the new number collides for the subject
            UploadError: If the attachment is rejected or cannot be stored
            StorageError: If the repository fails
        """
        changes = validate_changes(data)
        provided = {key: value for key, value in changes.model_dump().items() if key in data}
        handle: Optional[StoredFileHandle] = None
        replaced_path: Optional[str] = None

        try:
            async with self.db.transaction() as session:
                document = await self.documents.find_by_id(session, id)

                subject_id = provided.get("subject_id", document.subject_id)
                document_type_id = provided.get("document_type_id", document.document_type_id)
                document_number = provided.get("document_number", document.document_number)
                expiry_date = provided.get("expiry_date", document.expiry_date)
                issue_date = provided.get("issue_date", document.issue_date)
                override = provided.get("alert_window_days", document.alert_window_days)

                # Deactivating a subject or type must not lock its documents
                kept = []
                if subject_id == document.subject_id:
                    kept.append("subject_id")
                if document_type_id == document.document_type_id:
                    kept.append("document_type_id")

                check_dates(issue_date, expiry_date)
                subject, document_type = await validate_references(
                    session,
                    subject_id,
                    document_type_id,
                    document_number,
                    self.subjects,
                    self.document_types,
                    self.documents,
                    exclude_id=document.id,
                    kept=kept,
                )

                if attachment is not None:
                    replaced_path = document.attachment_path
                    handle = await self._store(attachment, subject)
                    provided.update(_attachment_fields(handle))

                provided["state"] = self._classify(expiry_date, override, document_type)
                document = await self.documents.update(session, id, provided)
        except Exception:
            if handle is not None:
                await self._discard(handle.stored_path)
            raise

        if replaced_path and replaced_path != document.attachment_path:
            await self._discard(replaced_path)

        logger.info(f"Updated document {document.id} ({document.state.value})")
        return document

    async def remove(self, id: Any) -> None:
        """
        Delete a document and, once the deletion commits, its attachment.

        Raises:
            DocumentNotFound: If the document does not exist
            StorageError: If the repository fails
        """
        async with self.db.transaction() as session:
            document = await self.documents.delete(session, id)
            stored_path = document.attachment_path

        await self._discard(stored_path)
        logger.info(f"Deleted document {id}")

    async def get_detail(self, id: Any) -> DocumentDetail:
        """
        Get a document with its remaining days and display tier.

        Raises:
            DocumentNotFound: If the document does not exist
        """
        async with self.db.transaction() as session:
            document = await self.documents.find_by_id(session, id)
            await self._refresh_states(session, [document])

        remaining = days_remaining(document.expiry_date, self.clock.now())
        return DocumentDetail(
            document=document,
            days_remaining=remaining,
            display_tier=display_tier(remaining, document.effective_alert_window_days),
        )

    async def get_attachment(self, id: Any) -> Tuple[Path, DocumentRecord]:
        """
        Locate the attachment of a document.

        Raises:
            DocumentNotFound: If the document does not exist or has no attachment
            StorageFailure: If the stored path cannot be resolved
        """
        async with self.db.session() as session:
            document = await self.documents.find_by_id(session, id)

        if not document.has_attachment:
            raise DocumentNotFound(id)
        return self.upload_sink.open_path(document.attachment_path), document

    async def list_for_subject(
        self,
        subject_id: Any,
        pagination: Optional[PaginationParams] = None
    ) -> Tuple[List[DocumentRecord], int]:
        """
        List the documents of a subject, most severe first.

        Returns:
            Tuple of (documents, total_count)

        Raises:
            ReferenceNotFound: If the subject does not exist or is inactive
        """
        async with self.db.transaction() as session:
            await self.subjects.get_active(session, subject_id)
            documents, _ = await self.documents.find_by_subject(session, subject_id)
            await self._refresh_states(session, documents)
            # Ordering depends on the refreshed states
            return await self.documents.find_by_subject(session, subject_id, pagination)

    async def statistics(self, client_id: Optional[int] = None) -> Dict[str, int]:
        """
        Count documents per state for the active subjects of a client.

        States are reconciled first so the counts match the current date.
        """
        async with self.db.transaction() as session:
            documents = await self.documents.find_all_active(session, client_id)
            await self._refresh_states(session, documents)
            return await self.documents.count_by_state(session, client_id)

    async def expiring(
        self,
        within_days: Optional[int] = None,
        client_id: Optional[int] = None,
        limit: Optional[int] = None
    ) -> List[DocumentDetail]:
        """
        List documents that have not expired but will within ``within_days``.

        Returns:
            Details ordered by expiry date, soonest first
        """
        if within_days is None:
            within_days = settings.EXPIRING_SOON_DAYS
        now = self.clock.now()

        async with self.db.transaction() as session:
            documents = await self.documents.find_expiring(
                session, to_utc_date(now), within_days, client_id=client_id, limit=limit
            )
            await self._refresh_states(session, documents)

        details = []
        for document in documents:
            remaining = days_remaining(document.expiry_date, now)
            details.append(DocumentDetail(
                document=document,
                days_remaining=remaining,
                display_tier=display_tier(remaining, document.effective_alert_window_days),
            ))
        return details

    async def reconcile_all(self, client_id: Optional[int] = None) -> ReconciliationResult:
        """
        Reconcile the state of every document of active subjects.

        Returns:
            The computed changeset and the number of rows updated
        """
        async with self.db.transaction() as session:
            documents = await self.documents.find_all_active(session, client_id)
            changeset = reconcile(documents, self.clock.now())
            applied = await self.documents.apply_changeset(session, changeset) if changeset else 0

        logger.info(f"Reconciled {len(documents)} documents: {len(changeset)} stale, {applied} updated")
        return ReconciliationResult(changeset=changeset, applied=applied, checked=len(documents))

    async def list_document_types(self, client_id: int, category: Optional[str] = None) -> List[DocumentType]:
        """
        List the active document types of a client.

        A client without any document type receives the default catalogue first.
        """
        async with self.db.transaction() as session:
            await self.document_types.ensure_defaults(session, client_id)
            return await self.document_types.list_active(session, client_id, category)

    async def create_document_type(self, data: Dict[str, Any]) -> DocumentType:
        """
        Create a document type.

        Raises:
            ValidationError: If a field is invalid
            DuplicateDocumentType: If the client already has a type with that name
        """
        fields = validate_document_type(data)
        async with self.db.transaction() as session:
            document_type = await self.document_types.create(session, fields.model_dump())

        logger.info(f"Created document type {document_type.id} '{document_type.name}' for client {document_type.client_id}")
        return document_type

    async def deactivate_document_type(self, id: Any) -> DocumentType:
        """
        Soft-delete a document type.

        Raises:
            ReferenceNotFound: If the type does not exist or is already inactive
        """
        async with self.db.transaction() as session:
            return await self.document_types.deactivate(session, id)

    async def ensure_default_document_types(self, client_id: int) -> List[DocumentType]:
        """Create the default document types for a client that has none."""
        async with self.db.transaction() as session:
            return await self.document_types.ensure_defaults(session, client_id)
