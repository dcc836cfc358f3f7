"""
Error types for the FleetDocs application.

Every failure of the engine is raised as one of these types so callers can
tell caller-correctable problems (validation, duplicates, stale references,
rejected uploads) from infrastructural ones (storage).
"""

from typing import Any, Optional


class FleetDocsError(Exception):
    """Base exception for FleetDocs errors."""
    pass


class ValidationError(FleetDocsError):
    """Exception raised when a document field is invalid."""

    def __init__(self, field: str, reason: str):
        self.field = field
        self.reason = reason
        super().__init__(f"{field}: {reason}")


class DuplicateDocumentNumber(FleetDocsError):
    """Exception raised when a subject already has a document with the same number."""

    def __init__(self, subject_id: Any, document_number: str):
        self.subject_id = subject_id
        self.document_number = document_number
        super().__init__(
            f"Subject {subject_id} already has a document numbered '{document_number}'"
        )


class DuplicateDocumentType(FleetDocsError):
    """Exception raised when a client already has a document type with the same name."""

    def __init__(self, client_id: Any, name: str):
        self.client_id = client_id
        self.name = name
        super().__init__(f"Client {client_id} already has a document type named '{name}'")


class ReferenceNotFound(FleetDocsError):
    """Exception raised when a referenced subject or document type is missing or inactive."""

    def __init__(self, kind: str, id: Any):
        self.kind = kind
        self.id = id
        super().__init__(f"{kind} with ID {id} not found")


class DocumentNotFound(FleetDocsError):
    """Exception raised when a document is not found."""

    def __init__(self, id: Any):
        self.id = id
        super().__init__(f"Document with ID {id} not found")


class UploadError(FleetDocsError):
    """Base exception for rejected or failed uploads."""
    pass


class UnsupportedType(UploadError):
    """Exception raised when the declared MIME type is not allowed."""

    def __init__(self, mime_type: Optional[str]):
        self.mime_type = mime_type
        super().__init__(f"File type '{mime_type}' is not allowed. Only PDF, JPG, PNG, WEBP")


class TooLarge(UploadError):
    """Exception raised when a payload exceeds the size limit."""

    def __init__(self, size_bytes: int, max_size_bytes: int):
        self.size_bytes = size_bytes
        self.max_size_bytes = max_size_bytes
        super().__init__(
            f"File exceeds maximum size of {max_size_bytes} bytes (got {size_bytes} bytes)"
        )


class StorageFailure(UploadError):
    """Exception raised when the upload backend cannot store or delete a file."""
    pass


class StorageError(FleetDocsError):
    """Exception raised when the repository fails."""
    pass
