from datetime import datetime
from uuid import UUID

from fastapi import APIRouter, BackgroundTasks, Depends, File, Query, Response, UploadFile, status
from sqlmodel import Session

from esign.api.deps import (
    build_document_service,
    get_current_active_user,
    get_db,
    require_roles,
    service_errors,
    user_actor,
)
from esign.models.company import User, UserRole
from esign.models.document import DocumentStatus
from esign.models.template import TemplateStatus
from esign.schemas.api_key import ApiKeyCreate, ApiKeyCreated, ApiKeyRead
from esign.schemas.audit import AuditLogPage, AuditLogRead, TimelineRead
from esign.schemas.document import (
    BulkActionRequest,
    BulkActionResult,
    CancelRequest,
    DocumentActionResponse,
    DocumentList,
    DocumentListItem,
    DocumentRead,
    RejectPreviewRequest,
    VerificationRead,
)
from esign.schemas.template import TemplateCreate, TemplateRead, TemplateStatusUpdate, TemplateUpdate
from esign.services.api_key import ApiKeyService
from esign.services.audit import AuditService
from esign.services.evidence import EvidenceService
from esign.services.template import TemplateService
from esign.services.timeline import TimelineService

router = APIRouter(prefix="/admin/esign", tags=["esign-admin"])

require_admin = require_roles(UserRole.ADMIN)


# -- templates -------------------------------------------------------------


@router.post("/templates", response_model=TemplateRead, status_code=status.HTTP_201_CREATED)
def create_template(
    payload: TemplateCreate,
    session: Session = Depends(get_db),
    current_user: User = Depends(require_admin),
) -> TemplateRead:
    with service_errors():
        template = TemplateService(session).create_template(current_user.company_id, payload, user_actor(current_user))
    return TemplateRead.model_validate(template)


@router.get("/templates", response_model=list[TemplateRead])
def list_templates(
    status_filter: TemplateStatus | None = Query(default=None, alias="status"),
    session: Session = Depends(get_db),
    current_user: User = Depends(get_current_active_user),
) -> list[TemplateRead]:
    templates = TemplateService(session).list_templates(current_user.company_id, status_filter)
    return [TemplateRead.model_validate(item) for item in templates]


@router.get("/templates/{template_id}", response_model=TemplateRead)
def get_template(
    template_id: UUID,
    session: Session = Depends(get_db),
    current_user: User = Depends(get_current_active_user),
) -> TemplateRead:
    with service_errors():
        template = TemplateService(session).get_template(current_user.company_id, template_id)
    return TemplateRead.model_validate(template)


@router.put("/templates/{template_id}", response_model=TemplateRead)
def update_template(
    template_id: UUID,
    payload: TemplateUpdate,
    session: Session = Depends(get_db),
    current_user: User = Depends(require_admin),
) -> TemplateRead:
    with service_errors():
        template = TemplateService(session).update_template(
            current_user.company_id, template_id, payload, user_actor(current_user)
        )
    return TemplateRead.model_validate(template)


@router.post("/templates/{template_id}/status", response_model=TemplateRead)
def change_template_status(
    template_id: UUID,
    payload: TemplateStatusUpdate,
    session: Session = Depends(get_db),
    current_user: User = Depends(require_admin),
) -> TemplateRead:
    with service_errors():
        template = TemplateService(session).set_status(
            current_user.company_id, template_id, payload.status, user_actor(current_user)
        )
    return TemplateRead.model_validate(template)


# -- api keys --------------------------------------------------------------


@router.post("/api-keys", response_model=ApiKeyCreated, status_code=status.HTTP_201_CREATED)
def create_api_key(
    payload: ApiKeyCreate,
    session: Session = Depends(get_db),
    current_user: User = Depends(require_admin),
) -> ApiKeyCreated:
    api_key, raw_key = ApiKeyService(session).create_key(
        current_user.company_id, payload, created_by_id=current_user.id, actor=user_actor(current_user)
    )
    data = ApiKeyRead.model_validate(api_key).model_dump()
    return ApiKeyCreated(**data, api_key=raw_key, company_id=api_key.company_id)


@router.get("/api-keys", response_model=list[ApiKeyRead])
def list_api_keys(
    session: Session = Depends(get_db),
    current_user: User = Depends(require_admin),
) -> list[ApiKeyRead]:
    return [ApiKeyRead.model_validate(item) for item in ApiKeyService(session).list_keys(current_user.company_id)]


@router.delete("/api-keys/{key_id}", response_model=ApiKeyRead)
def revoke_api_key(
    key_id: UUID,
    session: Session = Depends(get_db),
    current_user: User = Depends(require_admin),
) -> ApiKeyRead:
    with service_errors():
        api_key = ApiKeyService(session).revoke_key(current_user.company_id, key_id, user_actor(current_user))
    return ApiKeyRead.model_validate(api_key)


# -- documents -------------------------------------------------------------


@router.get("/documents", response_model=DocumentList)
def list_documents(
    background_tasks: BackgroundTasks,
    status_filter: DocumentStatus | None = Query(default=None, alias="status"),
    page: int = Query(default=1, ge=1),
    page_size: int = Query(default=50, ge=1, le=200),
    session: Session = Depends(get_db),
    current_user: User = Depends(get_current_active_user),
) -> DocumentList:
    service = build_document_service(session, background_tasks)
    items, total = service.list_documents(current_user.company_id, status_filter, page, page_size)
    return DocumentList(
        items=[DocumentListItem.model_validate(item) for item in items],
        total=total,
        page=page,
        page_size=page_size,
    )


@router.post("/documents/bulk", response_model=BulkActionResult)
def bulk_documents(
    payload: BulkActionRequest,
    background_tasks: BackgroundTasks,
    session: Session = Depends(get_db),
    current_user: User = Depends(require_admin),
) -> BulkActionResult:
    service = build_document_service(session, background_tasks)
    return service.bulk_action(current_user.company_id, payload, actor=user_actor(current_user))


@router.get("/documents/{document_id}", response_model=DocumentRead)
def get_document(
    document_id: UUID,
    background_tasks: BackgroundTasks,
    session: Session = Depends(get_db),
    current_user: User = Depends(get_current_active_user),
) -> DocumentRead:
    service = build_document_service(session, background_tasks)
    with service_errors():
        document = service.get(current_user.company_id, document_id)
    return DocumentRead.model_validate(document)


@router.post("/documents/{document_id}/approve", response_model=DocumentActionResponse)
def approve_document(
    document_id: UUID,
    background_tasks: BackgroundTasks,
    session: Session = Depends(get_db),
    current_user: User = Depends(require_admin),
) -> DocumentActionResponse:
    service = build_document_service(session, background_tasks)
    with service_errors():
        return service.approve(current_user.company_id, document_id, actor=user_actor(current_user))


@router.post("/documents/{document_id}/reject", response_model=DocumentActionResponse)
def reject_document(
    document_id: UUID,
    payload: RejectPreviewRequest,
    background_tasks: BackgroundTasks,
    session: Session = Depends(get_db),
    current_user: User = Depends(require_admin),
) -> DocumentActionResponse:
    service = build_document_service(session, background_tasks)
    with service_errors():
        return service.reject(
            current_user.company_id, document_id, actor=user_actor(current_user), reason=payload.reason
        )


@router.post("/documents/{document_id}/cancel", response_model=DocumentActionResponse)
def cancel_document(
    document_id: UUID,
    background_tasks: BackgroundTasks,
    payload: CancelRequest | None = None,
    session: Session = Depends(get_db),
    current_user: User = Depends(require_admin),
) -> DocumentActionResponse:
    service = build_document_service(session, background_tasks)
    with service_errors():
        return service.cancel(
            current_user.company_id,
            document_id,
            actor=user_actor(current_user),
            reason=payload.reason if payload else None,
        )


@router.post("/documents/{document_id}/resend", response_model=DocumentActionResponse)
def resend_document(
    document_id: UUID,
    background_tasks: BackgroundTasks,
    session: Session = Depends(get_db),
    current_user: User = Depends(require_admin),
) -> DocumentActionResponse:
    service = build_document_service(session, background_tasks)
    with service_errors():
        return service.resend(current_user.company_id, document_id, actor=user_actor(current_user))


@router.post("/documents/{document_id}/remind", response_model=DocumentActionResponse)
def remind_document(
    document_id: UUID,
    background_tasks: BackgroundTasks,
    session: Session = Depends(get_db),
    current_user: User = Depends(require_admin),
) -> DocumentActionResponse:
    service = build_document_service(session, background_tasks)
    with service_errors():
        return service.remind(current_user.company_id, document_id, actor=user_actor(current_user))


@router.delete("/documents/{document_id}", response_model=DocumentActionResponse)
def delete_document(
    document_id: UUID,
    background_tasks: BackgroundTasks,
    session: Session = Depends(get_db),
    current_user: User = Depends(require_admin),
) -> DocumentActionResponse:
    service = build_document_service(session, background_tasks)
    with service_errors():
        return service.soft_delete(current_user.company_id, document_id, actor=user_actor(current_user))


@router.get("/documents/{document_id}/timeline", response_model=TimelineRead)
def document_timeline(
    document_id: UUID,
    session: Session = Depends(get_db),
    current_user: User = Depends(get_current_active_user),
) -> TimelineRead:
    with service_errors():
        return TimelineService(session).build(current_user.company_id, document_id)


@router.get("/documents/{document_id}/evidence-package")
def evidence_package(
    document_id: UUID,
    session: Session = Depends(get_db),
    current_user: User = Depends(get_current_active_user),
) -> Response:
    with service_errors():
        content, filename = EvidenceService(session).build_package(current_user.company_id, document_id)
    return Response(
        content,
        media_type="application/zip",
        headers={"Content-Disposition": f'attachment; filename="{filename}"'},
    )


@router.post("/documents/{document_id}/verify", response_model=VerificationRead)
async def verify_document(
    document_id: UUID,
    file: UploadFile | None = File(default=None),
    session: Session = Depends(get_db),
    current_user: User = Depends(get_current_active_user),
) -> VerificationRead:
    uploaded = await file.read() if file is not None else None
    with service_errors():
        return EvidenceService(session).verify(current_user.company_id, document_id, uploaded)


@router.get("/documents/{document_id}/download")
def download_document(
    document_id: UUID,
    artifact: str = Query(default="pdf", pattern="^(pdf|certificate)$"),
    session: Session = Depends(get_db),
    current_user: User = Depends(get_current_active_user),
) -> Response:
    with service_errors():
        content, filename = EvidenceService(session).load_artifact(current_user.company_id, document_id, artifact)
    return Response(
        content,
        media_type="application/pdf",
        headers={"Content-Disposition": f'attachment; filename="{filename}"'},
    )


# -- audit -----------------------------------------------------------------


@router.get("/audit", response_model=AuditLogPage)
def list_audit_events(
    event_type: str | None = Query(default=None),
    document_id: UUID | None = Query(default=None),
    start_at: datetime | None = Query(default=None),
    end_at: datetime | None = Query(default=None),
    page: int = Query(default=1, ge=1),
    page_size: int = Query(default=50, ge=1, le=200),
    session: Session = Depends(get_db),
    current_user: User = Depends(require_admin),
) -> AuditLogPage:
    items, total = AuditService(session).list_events(
        current_user.company_id,
        event_type=event_type,
        document_id=document_id,
        start_at=start_at,
        end_at=end_at,
        page=page,
        page_size=page_size,
    )
    return AuditLogPage(
        items=[AuditLogRead.model_validate(item, from_attributes=True) for item in items],
        total=total,
        page=page,
        page_size=page_size,
    )
