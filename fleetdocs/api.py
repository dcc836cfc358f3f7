"""
API service for the FleetDocs application.

This module implements the FastAPI service for the application. It is a thin
layer: every endpoint hands its input to the DocumentService and maps the
service's errors to HTTP status codes.
"""

import datetime
import logging
from contextlib import asynccontextmanager
from typing import Any, Dict, List, Optional

from fastapi import Depends, FastAPI, File, Form, HTTPException, Query, Request, UploadFile
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import FileResponse, JSONResponse, Response
from pydantic import BaseModel
from tenacity import before_sleep_log, retry, retry_if_exception_type, stop_after_attempt

from fleetdocs import settings
from fleetdocs.errors import (
    DocumentNotFound,
    DuplicateDocumentNumber,
    DuplicateDocumentType,
    FleetDocsError,
    ReferenceNotFound,
    StorageError,
    StorageFailure,
    TooLarge,
    UnsupportedType,
    ValidationError,
)
from fleetdocs.expiry import DocumentState
from fleetdocs.repository import PaginationParams
from fleetdocs.service import AttachmentUpload, DocumentDetail, DocumentService

# Configure logging
logger = logging.getLogger("fleetdocs.api")

# HTTP status per error type; subclasses are looked up through the MRO
ERROR_STATUS = {
    ValidationError: 422,
    DuplicateDocumentNumber: 409,
    DuplicateDocumentType: 409,
    ReferenceNotFound: 404,
    DocumentNotFound: 404,
    UnsupportedType: 415,
    TooLarge: 413,
    StorageFailure: 503,
    StorageError: 500,
}


# Pydantic models
class DocumentDTO(BaseModel):
    """Data Transfer Object for a document."""
    id: int
    subject_id: int
    document_type_id: int
    document_number: str
    issue_date: Optional[datetime.date] = None
    expiry_date: datetime.date
    alert_window_days: Optional[int] = None
    effective_alert_window_days: int
    state: Optional[DocumentState] = None
    has_attachment: bool
    attachment_name: Optional[str] = None
    attachment_mime_type: Optional[str] = None
    attachment_size: Optional[int] = None
    observaciones: Optional[str] = None
    uploaded_by: Optional[int] = None
    created_at: Optional[datetime.datetime] = None
    updated_at: Optional[datetime.datetime] = None

    class Config:
        """Pydantic config."""
        from_attributes = True


class DocumentDetailDTO(BaseModel):
    """Document with its remaining days and display tier."""
    document: DocumentDTO
    days_remaining: int
    display_tier: str


class DocumentListResult(BaseModel):
    """Paginated document listing."""
    documents: List[DocumentDTO]
    total: int


class StatisticsDTO(BaseModel):
    """Document counts per state."""
    vigente: int
    por_vencer: int
    vencido: int
    total: int


class StateChangeDTO(BaseModel):
    """A state transition applied by reconciliation."""
    id: int
    old_state: Optional[str] = None
    new_state: str


class ReconcileResult(BaseModel):
    """Reconciliation run summary."""
    checked: int
    applied: int
    changes: List[StateChangeDTO]


class DocumentTypeDTO(BaseModel):
    """Data Transfer Object for a document type."""
    id: int
    client_id: int
    category: str
    name: str
    description: Optional[str] = None
    default_alert_window_days: int
    obligatory: bool
    active: bool

    class Config:
        """Pydantic config."""
        from_attributes = True


class DocumentTypeCreate(BaseModel):
    """Document type creation request."""
    client_id: int = settings.DEFAULT_CLIENT_ID
    category: str
    name: str
    description: Optional[str] = None
    default_alert_window_days: int = settings.DEFAULT_ALERT_WINDOW_DAYS
    obligatory: bool = False


class HealthCheck(BaseModel):
    """Health check response model."""
    status: str = "ok"


def error_status(error: FleetDocsError) -> int:
    """HTTP status code for an engine error."""
    for cls in type(error).__mro__:
        if cls in ERROR_STATUS:
            return ERROR_STATUS[cls]
    return 500


def _detail_dto(detail: DocumentDetail) -> Dict[str, Any]:
    return {
        "document": detail.document,
        "days_remaining": detail.days_remaining,
        "display_tier": detail.display_tier.value,
    }


async def _read_attachment(upload: Optional[UploadFile]) -> Optional[AttachmentUpload]:
    # Browsers send an empty part when no file was picked
    if upload is None or not upload.filename:
        return None
    payload = await upload.read()
    return AttachmentUpload(
        payload=payload,
        mime_type=upload.content_type or "application/octet-stream",
        original_name=upload.filename,
    )


def _form_data(**fields: Optional[str]) -> Dict[str, Any]:
    # FastAPI reports empty form fields as absent
    return {key: value for key, value in fields.items() if value is not None}


@retry(
    retry=retry_if_exception_type(StorageFailure),
    stop=stop_after_attempt(2),
    reraise=True,
    before_sleep=before_sleep_log(logger, logging.WARNING)
)
async def register_with_retry(service: DocumentService, data: Dict[str, Any], attachment: Optional[AttachmentUpload]):
    """Register a document, retrying once if the attachment could not be written."""
    return await service.register(data, attachment)


@retry(
    retry=retry_if_exception_type(StorageFailure),
    stop=stop_after_attempt(2),
    reraise=True,
    before_sleep=before_sleep_log(logger, logging.WARNING)
)
async def edit_with_retry(service: DocumentService, id: int, data: Dict[str, Any], attachment: Optional[AttachmentUpload]):
    """Edit a document, retrying once if the attachment could not be written."""
    return await service.edit(id, data, attachment)


def get_document_service(request: Request) -> DocumentService:
    """Get the application's document service as a FastAPI dependency."""
    return request.app.state.document_service


def create_app(service: Optional[DocumentService] = None) -> FastAPI:
    """Create FastAPI application.

    Args:
        service: Document service to serve. Defaults to one bound to the
            global database manager and the local upload directory.
    """
    service = service or DocumentService()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        # Create database tables if they don't exist
        await service.db.create_tables()
        yield
        # Close database connection pool
        await service.db.close()

    app = FastAPI(
        title="FleetDocs API",
        version="0.1.0",
        description="""
        # Fleet Document Expiry API

        This API tracks compliance documents of fleet vehicles and personnel
        and classifies each one by expiry.

        ## States

        * vigente - current
        * por_vencer - inside the alert window
        * vencido - expired, including documents expiring today
        """,
        openapi_tags=[
            {
                "name": "Health",
                "description": "Health check endpoints",
            },
            {
                "name": "Documents",
                "description": "Document registration, edits and retrieval",
            },
            {
                "name": "Subjects",
                "description": "Documents of a vehicle or person",
            },
            {
                "name": "Document Types",
                "description": "Document type catalogue",
            },
            {
                "name": "Maintenance",
                "description": "State reconciliation",
            },
        ],
        lifespan=lifespan,
    )
    app.state.document_service = service

    # Apply CORS middleware
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.CORS_ORIGINS,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # Security headers middleware
    @app.middleware("http")
    async def add_security_headers(request: Request, call_next):
        response = await call_next(request)
        response.headers["X-Content-Type-Options"] = "nosniff"
        response.headers["X-Frame-Options"] = "DENY"
        response.headers["X-XSS-Protection"] = "1; mode=block"
        return response

    # Request logging middleware
    @app.middleware("http")
    async def log_requests(request: Request, call_next):
        start_time = datetime.datetime.now()
        response = await call_next(request)
        process_time = (datetime.datetime.now() - start_time).total_seconds() * 1000
        logger.info(
            f"Request: {request.method} {request.url.path} - "
            f"Status: {response.status_code} - "
            f"Process Time: {process_time:.2f}ms - "
            f"Client: {request.client.host if request.client else 'Unknown'}"
        )
        return response

    @app.exception_handler(FleetDocsError)
    async def handle_engine_error(request: Request, exc: FleetDocsError):
        status_code = error_status(exc)
        if status_code >= 500:
            logger.error(f"{type(exc).__name__} on {request.method} {request.url.path}: {str(exc)}")
        content: Dict[str, Any] = {"detail": str(exc), "error": type(exc).__name__}
        if isinstance(exc, ValidationError):
            content["field"] = exc.field
        return JSONResponse(status_code=status_code, content=content)

    @app.get("/healthz", response_model=HealthCheck, tags=["Health"])
    async def healthz():
        """
        Health check endpoint.

        Returns a simple status response to verify the API is running.
        """
        logger.debug("Health check requested")
        return {"status": "ok"}

    @app.post("/documents", response_model=DocumentDTO, status_code=201, tags=["Documents"])
    async def register_document(
        subject_id: Optional[str] = Form(None),
        document_type_id: Optional[str] = Form(None),
        document_number: Optional[str] = Form(None),
        issue_date: Optional[str] = Form(None),
        expiry_date: Optional[str] = Form(None),
        alert_window_days: Optional[str] = Form(None),
        observaciones: Optional[str] = Form(None),
        uploaded_by: Optional[str] = Form(None),
        archivo_documento: Optional[UploadFile] = File(None),
        service: DocumentService = Depends(get_document_service)
    ):
        """
        Register a document.

        Accepts a multipart form. The optional `archivo_documento` file must be
        a PDF, JPG, PNG or WEBP of at most 10 MB. The state is computed from
        the expiry date when the document is stored.
        """
        data = _form_data(
            subject_id=subject_id,
            document_type_id=document_type_id,
            document_number=document_number,
            issue_date=issue_date,
            expiry_date=expiry_date,
            alert_window_days=alert_window_days,
            observaciones=observaciones,
            uploaded_by=uploaded_by,
        )
        attachment = await _read_attachment(archivo_documento)
        return await register_with_retry(service, data, attachment)

    @app.get("/documents/stats", response_model=StatisticsDTO, tags=["Documents"])
    async def document_statistics(
        client_id: Optional[int] = Query(None, description="Restrict counts to one client"),
        service: DocumentService = Depends(get_document_service)
    ):
        """
        Count documents per state.

        Only documents of active vehicles and persons are counted.
        """
        return await service.statistics(client_id)

    @app.get("/documents/expiring", response_model=List[DocumentDetailDTO], tags=["Documents"])
    async def expiring_documents(
        days: int = Query(settings.EXPIRING_SOON_DAYS, ge=0, le=3650, description="Look-ahead window in days"),
        client_id: Optional[int] = Query(None, description="Restrict the listing to one client"),
        limit: Optional[int] = Query(None, ge=1, le=500, description="Maximum number of documents"),
        service: DocumentService = Depends(get_document_service)
    ):
        """
        List documents that have not expired yet but will within `days` days.

        Results are ordered by expiry date, soonest first.
        """
        details = await service.expiring(days, client_id=client_id, limit=limit)
        return [_detail_dto(detail) for detail in details]

    @app.get("/documents/{id}", response_model=DocumentDetailDTO, tags=["Documents"])
    async def get_document(
        id: int,
        service: DocumentService = Depends(get_document_service)
    ):
        """
        Get document by ID.

        Includes the days remaining until expiry and the display tier, which
        adds `urgente` for documents expiring within a week.
        """
        return _detail_dto(await service.get_detail(id))

    @app.patch("/documents/{id}", response_model=DocumentDTO, tags=["Documents"])
    async def edit_document(
        id: int,
        subject_id: Optional[str] = Form(None),
        document_type_id: Optional[str] = Form(None),
        document_number: Optional[str] = Form(None),
        issue_date: Optional[str] = Form(None),
        expiry_date: Optional[str] = Form(None),
        alert_window_days: Optional[str] = Form(None),
        observaciones: Optional[str] = Form(None),
        archivo_documento: Optional[UploadFile] = File(None),
        service: DocumentService = Depends(get_document_service)
    ):
        """
        Edit a document.

        Only the submitted fields change and the state is recomputed. A new
        `archivo_documento` replaces the stored attachment.
        """
        data = _form_data(
            subject_id=subject_id,
            document_type_id=document_type_id,
            document_number=document_number,
            issue_date=issue_date,
            expiry_date=expiry_date,
            alert_window_days=alert_window_days,
            observaciones=observaciones,
        )
        attachment = await _read_attachment(archivo_documento)
        return await edit_with_retry(service, id, data, attachment)

    @app.delete("/documents/{id}", status_code=204, tags=["Documents"])
    async def delete_document(
        id: int,
        service: DocumentService = Depends(get_document_service)
    ):
        """Delete a document and its attachment."""
        await service.remove(id)
        return Response(status_code=204)

    @app.get("/documents/{id}/attachment", tags=["Documents"])
    async def download_attachment(
        id: int,
        service: DocumentService = Depends(get_document_service)
    ):
        """Download the attachment of a document."""
        path, document = await service.get_attachment(id)
        if not path.is_file():
            raise HTTPException(status_code=404, detail="Attachment file not found")
        return FileResponse(
            path,
            media_type=document.attachment_mime_type,
            filename=document.attachment_name,
        )

    @app.get("/subjects/{subject_id}/documents", response_model=DocumentListResult, tags=["Subjects"])
    async def subject_documents(
        subject_id: int,
        page: int = Query(1, ge=1, description="Page number (1-based)"),
        page_size: int = Query(50, ge=1, le=100, description="Page size (max 100)"),
        service: DocumentService = Depends(get_document_service)
    ):
        """
        Get the documents of a vehicle or person.

        Expired documents come first, then expiring ones, then current ones;
        within a state, by expiry date and then newest upload first.
        """
        pagination = PaginationParams(page=page, page_size=page_size)
        documents, total = await service.list_for_subject(subject_id, pagination)
        return {"documents": documents, "total": total}

    @app.post("/reconcile", response_model=ReconcileResult, tags=["Maintenance"])
    async def reconcile_states(
        client_id: Optional[int] = Query(None, description="Restrict the run to one client"),
        service: DocumentService = Depends(get_document_service)
    ):
        """Recompute the state of every document and store the ones that changed."""
        result = await service.reconcile_all(client_id)
        return {
            "checked": result.checked,
            "applied": result.applied,
            "changes": [
                {
                    "id": change.id,
                    "old_state": change.old_state.value if change.old_state else None,
                    "new_state": change.new_state.value,
                }
                for change in result.changeset.to_update
            ],
        }

    @app.get("/document-types", response_model=List[DocumentTypeDTO], tags=["Document Types"])
    async def list_document_types(
        client_id: int = Query(settings.DEFAULT_CLIENT_ID, description="Owning client"),
        category: Optional[str] = Query(None, description="Filter by category (vehicle, person)"),
        service: DocumentService = Depends(get_document_service)
    ):
        """List the active document types of a client. A client without any receives the default catalogue."""
        return await service.list_document_types(client_id, category)

    @app.post("/document-types", response_model=DocumentTypeDTO, status_code=201, tags=["Document Types"])
    async def create_document_type(
        body: DocumentTypeCreate,
        service: DocumentService = Depends(get_document_service)
    ):
        """Create a document type. Names are unique per client and category."""
        return await service.create_document_type(body.model_dump())

    @app.delete("/document-types/{id}", response_model=DocumentTypeDTO, tags=["Document Types"])
    async def deactivate_document_type(
        id: int,
        service: DocumentService = Depends(get_document_service)
    ):
        """Deactivate a document type. Documents already using it are kept."""
        return await service.deactivate_document_type(id)

    return app
