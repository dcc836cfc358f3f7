"""
Attachment storage for document uploads.

The engine never reads or writes attachment files itself. It hands the
payload to an UploadSink, which enforces the upload policy (type and size)
and returns a handle whose fields are persisted with the document.
"""

import asyncio
import logging
import os
import re
import secrets
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass
from pathlib import Path
from typing import Iterable, Optional

from fleetdocs import settings
from fleetdocs.errors import StorageFailure, TooLarge, UnsupportedType, ValidationError

# Configure logging
logger = logging.getLogger("fleetdocs.uploads")

MIME_EXTENSIONS = {
    "application/pdf": ".pdf",
    "image/jpeg": ".jpg",
    "image/jpg": ".jpg",
    "image/png": ".png",
    "image/webp": ".webp",
}


@dataclass(frozen=True)
class StoredFileHandle:
    """Metadata for a stored attachment.

    Attributes:
        stored_path: Location of the file, relative to the sink's base directory
        original_name: Filename supplied by the uploader
        size_bytes: File size in bytes
        mime_type: Declared MIME type
    """
    stored_path: str
    original_name: str
    size_bytes: int
    mime_type: str


def sanitize_filename(filename: str) -> str:
    """Sanitize a filename stem for safe storage.

    Example:
        >>> sanitize_filename('../../Póliza Seguro (copia)')
        'póliza_seguro_copia_'
    """
    # Remove path components
    filename = os.path.basename(filename.replace("\\", "/"))

    # Replace problematic characters with underscore
    filename = re.sub(r'[^\w\s.-]', '_', filename)

    # Collapse multiple spaces/underscores
    filename = re.sub(r'[\s_]+', '_', filename)

    return filename.lower()[:50]


class UploadSink(ABC):
    """Port for storing document attachments."""

    @abstractmethod
    async def store(
        self,
        payload: bytes,
        declared_mime_type: str,
        max_size_bytes: Optional[int] = None,
        original_name: Optional[str] = None,
        category: str = "",
    ) -> StoredFileHandle:
        """Validate and store an attachment.

        Raises:
            UnsupportedType: If the MIME type is not allowed
            TooLarge: If the payload exceeds max_size_bytes
            StorageFailure: If the backend cannot write the file
        """

    @abstractmethod
    async def delete(self, stored_path: str) -> bool:
        """Delete a stored attachment.

        Returns:
            True if the file was deleted, False if it did not exist

        Raises:
            StorageFailure: If the file exists but cannot be removed
        """

    @abstractmethod
    def open_path(self, stored_path: str) -> Path:
        """Resolve a stored attachment to a readable path."""


class LocalUploadSink(UploadSink):
    """UploadSink writing attachments below a local directory."""

    def __init__(
        self,
        base_dir: Optional[Path] = None,
        allowed_mime_types: Optional[Iterable[str]] = None,
        max_size_bytes: Optional[int] = None,
    ):
        """Initialize the sink.

        Args:
            base_dir: Root directory for attachments. Defaults to settings.UPLOAD_DIR.
            allowed_mime_types: Accepted MIME types. Defaults to settings.ALLOWED_MIME_TYPES.
            max_size_bytes: Default size limit. Defaults to settings.MAX_UPLOAD_SIZE_BYTES.
        """
        self.base_dir = Path(base_dir or settings.UPLOAD_DIR)
        self.allowed_mime_types = frozenset(allowed_mime_types or settings.ALLOWED_MIME_TYPES)
        self.max_size_bytes = max_size_bytes or settings.MAX_UPLOAD_SIZE_BYTES

    def check_policy(self, size_bytes: int, declared_mime_type: str, max_size_bytes: Optional[int] = None) -> None:
        """Reject payloads that break the upload policy."""
        if declared_mime_type not in self.allowed_mime_types:
            raise UnsupportedType(declared_mime_type)

        limit = max_size_bytes or self.max_size_bytes
        if size_bytes > limit:
            raise TooLarge(size_bytes, limit)

        if size_bytes == 0:
            raise ValidationError("attachment", "File is empty (0 bytes)")

    def _build_name(self, original_name: Optional[str], declared_mime_type: str) -> str:
        stem, ext = os.path.splitext(original_name or "")
        ext = ext.lower() if ext else MIME_EXTENSIONS.get(declared_mime_type, "")
        unique_suffix = f"{int(time.time() * 1000)}-{secrets.randbelow(10**9)}"
        stem = sanitize_filename(stem) or "documento"
        return f"{stem}-{unique_suffix}{ext}"

    def open_path(self, stored_path: str) -> Path:
        """Absolute path of a stored attachment.

        Raises:
            StorageFailure: If the path points outside the base directory
        """
        base = self.base_dir.resolve()
        path = (base / stored_path).resolve()
        if path != base and base not in path.parents:
            raise StorageFailure(f"Stored path escapes the upload directory: {stored_path}")
        return path

    async def store(
        self,
        payload: bytes,
        declared_mime_type: str,
        max_size_bytes: Optional[int] = None,
        original_name: Optional[str] = None,
        category: str = "",
    ) -> StoredFileHandle:
        self.check_policy(len(payload), declared_mime_type, max_size_bytes)

        filename = self._build_name(original_name, declared_mime_type)
        relative = Path(category) / filename if category else Path(filename)
        target = self.open_path(relative.as_posix())

        try:
            await asyncio.to_thread(target.parent.mkdir, parents=True, exist_ok=True)
            await asyncio.to_thread(target.write_bytes, payload)
        except OSError as e:
            logger.error(f"Failed to store attachment {filename}: {str(e)}")
            raise StorageFailure(f"Failed to store attachment: {str(e)}") from e

        logger.info(f"Stored attachment {relative.as_posix()} ({len(payload)} bytes)")
        return StoredFileHandle(
            stored_path=relative.as_posix(),
            original_name=original_name or filename,
            size_bytes=len(payload),
            mime_type=declared_mime_type,
        )

    async def delete(self, stored_path: str) -> bool:
        path = self.open_path(stored_path)
        try:
            await asyncio.to_thread(path.unlink)
        except FileNotFoundError:
            return False
        except OSError as e:
            raise StorageFailure(f"Failed to delete attachment {stored_path}: {str(e)}") from e
        logger.info(f"Deleted attachment {stored_path}")
        return True
