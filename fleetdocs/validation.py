"""
Validation of document fields and references.

Field checks are pure and run first; reference checks need a database
session and run inside the caller's transaction, before anything is written.
"""

import datetime
from typing import Any, Dict, Iterable, Optional, Tuple

from pydantic import BaseModel, ValidationError as PydanticValidationError, validator
from sqlalchemy.ext.asyncio import AsyncSession

from fleetdocs import settings
from fleetdocs.errors import DuplicateDocumentNumber, ReferenceNotFound, ValidationError
from fleetdocs.models import DocumentType, Subject
from fleetdocs.repository import DocumentRepository, DocumentTypeRepository, SubjectRepository


class DocumentFields(BaseModel):
    """Fields submitted to register a document."""
    subject_id: int
    document_type_id: int
    document_number: str
    expiry_date: datetime.date
    issue_date: Optional[datetime.date] = None
    alert_window_days: Optional[int] = None
    observaciones: Optional[str] = None
    uploaded_by: Optional[int] = None

    @validator('document_number')
    def validate_document_number(cls, v):
        """Validate that the document number is not blank."""
        if v is None:
            return v
        v = v.strip()
        if not v:
            raise ValueError('Document number cannot be empty')
        if len(v) > 100:
            raise ValueError('Document number cannot be longer than 100 characters')
        return v

    @validator('alert_window_days')
    def validate_alert_window(cls, v):
        """Validate that the alert window is not negative."""
        if v is not None and v < 0:
            raise ValueError('Alert window must be 0 or more days')
        return v

    @validator('observaciones')
    def validate_observaciones(cls, v):
        """Store blank notes as missing."""
        if v is not None and not v.strip():
            return None
        return v


class DocumentChanges(DocumentFields):
    """Fields submitted to edit a document. Every field is optional."""
    subject_id: Optional[int] = None
    document_type_id: Optional[int] = None
    document_number: Optional[str] = None
    expiry_date: Optional[datetime.date] = None


def _blank_to_none(data: Dict[str, Any]) -> Dict[str, Any]:
    # HTML forms send empty strings for untouched optional inputs
    return {k: (None if isinstance(v, str) and not v.strip() and k != "document_number" else v) for k, v in data.items()}


def _raise_first(error: PydanticValidationError) -> None:
    first = error.errors()[0]
    field = ".".join(str(part) for part in first.get("loc", ())) or "__root__"
    raise ValidationError(field, first.get("msg", "invalid value")) from error


def check_dates(issue_date: Optional[datetime.date], expiry_date: Optional[datetime.date]) -> None:
    """Reject an issue date that falls after the expiry date."""
    if issue_date is not None and expiry_date is not None and issue_date > expiry_date:
        raise ValidationError("issue_date", "Issue date cannot be after the expiry date")


def validate_fields(data: Dict[str, Any]) -> DocumentFields:
    """
    Parse and check the fields of a new document.

    Args:
        data: Raw field values (strings from a form or typed values)

    Returns:
        Parsed fields

    Raises:
        ValidationError: For the first invalid field
    """
    try:
        fields = DocumentFields(**_blank_to_none(data))
    except PydanticValidationError as e:
        _raise_first(e)
    check_dates(fields.issue_date, fields.expiry_date)
    return fields


def validate_changes(data: Dict[str, Any]) -> DocumentChanges:
    """
    Parse and check the fields of an edit.

    Fields that are not present are left untouched by the edit; fields sent
    empty are cleared when optional.

    Raises:
        ValidationError: For the first invalid field
    """
    try:
        changes = DocumentChanges(**_blank_to_none(data))
    except PydanticValidationError as e:
        _raise_first(e)

    for required in ("subject_id", "document_type_id", "document_number", "expiry_date"):
        if required in data and getattr(changes, required) is None:
            raise ValidationError(required, "Field required")
    return changes


async def validate_references(
    session: AsyncSession,
    subject_id: int,
    document_type_id: int,
    document_number: str,
    subjects: SubjectRepository,
    document_types: DocumentTypeRepository,
    documents: DocumentRepository,
    exclude_id: Optional[int] = None,
    kept: Iterable[str] = (),
) -> Tuple[Subject, DocumentType]:
    """
    Check the references of a document against storage.

    Args:
        kept: Reference fields ("subject_id", "document_type_id") the document
            already holds. These only have to exist; deactivated rows are accepted.

    Returns:
        Tuple of (subject, document_type)

    Raises:
        ReferenceNotFound: If the subject or the document type is missing, or
            inactive when newly referenced
        ValidationError: If the document type does not apply to the subject's kind
        DuplicateDocumentNumber: If the subject already has a document with this number
    """
    kept = set(kept)
    if "subject_id" in kept:
        subject = await subjects.get(session, subject_id)
        if subject is None:
            raise ReferenceNotFound("subject", subject_id)
    else:
        subject = await subjects.get_active(session, subject_id)

    if "document_type_id" in kept:
        document_type = await document_types.get(session, document_type_id)
        if document_type is None:
            raise ReferenceNotFound("document_type", document_type_id)
    else:
        document_type = await document_types.get_active(session, document_type_id)

    if document_type.category != subject.kind:
        raise ValidationError(
            "document_type_id",
            f"Document type '{document_type.name}' applies to {document_type.category} documents, not {subject.kind}",
        )

    if await documents.exists_document_number(session, subject_id, document_number, exclude_id=exclude_id):
        raise DuplicateDocumentNumber(subject_id, document_number)

    return subject, document_type


class DocumentTypeFields(BaseModel):
    """Fields submitted to create a document type."""
    client_id: int
    category: str
    name: str
    description: Optional[str] = None
    default_alert_window_days: int = settings.DEFAULT_ALERT_WINDOW_DAYS
    obligatory: bool = False

    @validator('name')
    def validate_name(cls, v):
        """Validate that the name is not blank."""
        v = v.strip()
        if not v:
            raise ValueError('Name cannot be empty')
        if len(v) > 120:
            raise ValueError('Name cannot be longer than 120 characters')
        return v

    @validator('category')
    def validate_category(cls, v):
        """Validate that the category is a known subject kind."""
        if v not in settings.SUBJECT_KINDS:
            raise ValueError(f'Category must be one of {settings.SUBJECT_KINDS}')
        return v

    @validator('default_alert_window_days')
    def validate_alert_window(cls, v):
        """Validate that the alert window is not negative."""
        if v < 0:
            raise ValueError('Alert window must be 0 or more days')
        return v


def validate_document_type(data: Dict[str, Any]) -> DocumentTypeFields:
    """
    Parse and check the fields of a new document type.

    Raises:
        ValidationError: For the first invalid field
    """
    cleaned = {k: v for k, v in data.items() if v is not None and v != ""}
    try:
        return DocumentTypeFields(**cleaned)
    except PydanticValidationError as e:
        _raise_first(e)
