import json
from typing import Annotated
from uuid import UUID

from fastapi import APIRouter, BackgroundTasks, Depends, File, Form, Header, Query, Response, UploadFile, status
from sqlmodel import Session

from esign.api.deps import build_document_service, get_db, require_scope, service_errors
from esign.core.errors import validation_error
from esign.models.api_key import ApiScope, EsignAPIKey
from esign.schemas.bulk import BulkJobCreated, BulkJobStatusRead
from esign.schemas.document import (
    CancelRequest,
    DocumentActionResponse,
    DocumentStatusRead,
    InitiateRequest,
    InitiateResponse,
)
from esign.schemas.template import TemplateSchemaRead
from esign.services.api_key import api_actor
from esign.services.bulk import BulkService, run_bulk_job
from esign.services.evidence import EvidenceService
from esign.services.template import TemplateService

router = APIRouter(prefix="/esign", tags=["esign"])


@router.post("/documents/initiate", response_model=InitiateResponse, status_code=status.HTTP_201_CREATED)
def initiate_document(
    payload: InitiateRequest,
    background_tasks: BackgroundTasks,
    session: Session = Depends(get_db),
    api_key: EsignAPIKey = Depends(require_scope(ApiScope.ESIGN_CREATE)),
    idempotency_key: Annotated[str | None, Header(alias="Idempotency-Key")] = None,
) -> InitiateResponse:
    service = build_document_service(session, background_tasks)
    with service_errors():
        return service.initiate(
            api_key.company_id,
            payload,
            actor=api_actor(api_key),
            api_key_id=api_key.id,
            idempotency_key=(idempotency_key or "").strip() or None,
        )


@router.get("/documents/{document_id}/status", response_model=DocumentStatusRead)
def document_status(
    document_id: UUID,
    background_tasks: BackgroundTasks,
    session: Session = Depends(get_db),
    api_key: EsignAPIKey = Depends(require_scope(ApiScope.ESIGN_STATUS)),
) -> DocumentStatusRead:
    service = build_document_service(session, background_tasks)
    with service_errors():
        return service.get_status(api_key.company_id, document_id)


@router.post("/documents/{document_id}/cancel", response_model=DocumentActionResponse)
def cancel_document(
    document_id: UUID,
    background_tasks: BackgroundTasks,
    payload: CancelRequest | None = None,
    session: Session = Depends(get_db),
    api_key: EsignAPIKey = Depends(require_scope(ApiScope.ESIGN_CANCEL)),
) -> DocumentActionResponse:
    service = build_document_service(session, background_tasks)
    with service_errors():
        return service.cancel(
            api_key.company_id,
            document_id,
            actor=api_actor(api_key),
            reason=payload.reason if payload else None,
        )


@router.get("/documents/{document_id}/download")
def download_document(
    document_id: UUID,
    artifact: str = Query(default="pdf", pattern="^(pdf|certificate)$"),
    session: Session = Depends(get_db),
    api_key: EsignAPIKey = Depends(require_scope(ApiScope.ESIGN_DOWNLOAD)),
) -> Response:
    with service_errors():
        content, filename = EvidenceService(session).load_artifact(api_key.company_id, document_id, artifact)
    return Response(
        content,
        media_type="application/pdf",
        headers={"Content-Disposition": f'attachment; filename="{filename}"'},
    )


@router.get("/templates/{template_id}/schema", response_model=TemplateSchemaRead)
def template_schema(
    template_id: UUID,
    session: Session = Depends(get_db),
    api_key: EsignAPIKey = Depends(require_scope(ApiScope.TEMPLATE_READ)),
) -> TemplateSchemaRead:
    with service_errors():
        return TemplateService(session).schema(api_key.company_id, template_id)


@router.post("/bulk/initiate", response_model=BulkJobCreated, status_code=status.HTTP_202_ACCEPTED)
async def bulk_initiate(
    background_tasks: BackgroundTasks,
    file: UploadFile = File(...),
    template_id: UUID = Form(...),
    column_mapping: str = Form(...),
    callback_url: str | None = Form(default=None),
    session: Session = Depends(get_db),
    api_key: EsignAPIKey = Depends(require_scope(ApiScope.ESIGN_CREATE)),
) -> BulkJobCreated:
    content = await file.read()
    actor = api_actor(api_key)
    with service_errors():
        try:
            mapping = json.loads(column_mapping)
        except json.JSONDecodeError as exc:
            raise validation_error("column_mapping must be a JSON object") from exc
        if not isinstance(mapping, dict):
            raise validation_error("column_mapping must be a JSON object")
        job = BulkService(session).create_job(
            api_key.company_id,
            template_id,
            content,
            {str(key): str(value) for key, value in mapping.items()},
            actor=actor,
            api_key_id=api_key.id,
            callback_url=(callback_url or "").strip() or None,
        )
    background_tasks.add_task(run_bulk_job, job.id, actor)
    return BulkJobCreated(job_id=job.id, status=job.status, total_items=job.total_items)


@router.get("/bulk/{job_id}/status", response_model=BulkJobStatusRead)
def bulk_status(
    job_id: UUID,
    session: Session = Depends(get_db),
    api_key: EsignAPIKey = Depends(require_scope(ApiScope.ESIGN_STATUS)),
) -> BulkJobStatusRead:
    with service_errors():
        return BulkService(session).get_status(api_key.company_id, job_id)
