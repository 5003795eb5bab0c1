from __future__ import annotations

from datetime import datetime
from typing import Iterable, Sequence
from uuid import UUID

from fastapi import status
from sqlalchemy import func
from sqlmodel import Session, select

from esign.core.errors import (
    EsignError,
    document_not_found,
    invalid_transition,
    template_not_found,
    translate_stale_data,
    validation_error,
)
from esign.core.logging_setup import logger
from esign.models.document import (
    CallbackStatus,
    DocumentStatus,
    EsignDocument,
    EsignRecipient,
    RecipientStatus,
)
from esign.models.template import EsignTemplate, SignatureType, TemplateStatus
from esign.models.token import TokenType
from esign.schemas.audit import AuditActor
from esign.schemas.document import (
    BulkActionError,
    BulkActionItemResult,
    BulkActionRequest,
    BulkActionResult,
    DocumentActionResponse,
    DocumentStatusRead,
    InitiateRecipientRead,
    InitiateRequest,
    InitiateResponse,
    RecipientInput,
    RecipientStatusRead,
)
from esign.schemas.template import TemplateSnapshot
from esign.services import state_machine
from esign.services.audit import AuditService
from esign.services.delimiters import resolve_payload
from esign.services.distribution import RecipientLink, RecipientLinkIssuer, clear_recipient_link
from esign.services.hooks import CallbackDispatcher
from esign.services.links import certificate_download_url, document_download_url, preview_url
from esign.services.notification import NotificationService, snapshot_cc_emails
from esign.services.short_link import ShortLinkService
from esign.services.token import TokenService, calculate_expiry

LIVE_RECIPIENT_STATUSES = (RecipientStatus.ACTIVE, RecipientStatus.OPENED)


def build_snapshot(template: EsignTemplate, captured_at: datetime | None = None) -> TemplateSnapshot:
    return TemplateSnapshot.model_validate(
        {
            "template_id": template.id,
            "name": template.name,
            "captured_at": captured_at or datetime.utcnow(),
            "signature_type": template.signature_type,
            "delimiters": template.delimiters or [],
            "recipients": template.recipients or [],
            "link_expiry": template.link_expiry or {},
            "mfa_config": template.mfa_config or {},
            "notification_config": template.notification_config or {},
            "preview_mode": template.preview_mode,
            "short_link_enabled": template.short_link_enabled,
            "html_content": template.html_content or "",
        }
    )


class DocumentService:
    """Company-side lifecycle operations: initiate, admin transitions and bulk actions."""

    def __init__(
        self,
        session: Session,
        token_service: TokenService | None = None,
        notification_service: NotificationService | None = None,
        audit_service: AuditService | None = None,
        short_link_service: ShortLinkService | None = None,
        callback_dispatcher: CallbackDispatcher | None = None,
    ) -> None:
        self.session = session
        self.token_service = token_service or TokenService(session)
        self.audit_service = audit_service or AuditService(session)
        self.notification_service = notification_service
        self.short_link_service = short_link_service or ShortLinkService(session)
        self.link_issuer = RecipientLinkIssuer(self.token_service, self.short_link_service)
        self.callback_dispatcher = callback_dispatcher

    # -- helpers -----------------------------------------------------------

    def _get_document(self, company_id: UUID, document_id: UUID) -> EsignDocument:
        document = self.session.get(EsignDocument, document_id)
        if document is None or document.company_id != company_id or document.is_deleted:
            raise document_not_found()
        return document

    @staticmethod
    def _snapshot(document: EsignDocument) -> TemplateSnapshot:
        return TemplateSnapshot.model_validate(document.template_snapshot)

    def _resolve_recipients(
        self,
        snapshot: TemplateSnapshot,
        requested: Sequence[RecipientInput] | None,
    ) -> list[RecipientInput]:
        if requested:
            recipients = list(requested)
        else:
            recipients = []
            for slot in snapshot.recipients:
                if not slot.email:
                    raise validation_error(
                        f"Recipient for signature order {slot.signature_order} is required",
                    )
                recipients.append(
                    RecipientInput(
                        email=slot.email,
                        name=slot.name or slot.label,
                        phone=slot.phone,
                        signature_order=slot.signature_order,
                    )
                )
        if not recipients:
            raise validation_error("At least one recipient is required")

        orders = [item.signature_order for item in recipients]
        if len(orders) != len(set(orders)):
            raise validation_error("Recipient signature orders must be unique")
        emails = [str(item.email).lower() for item in recipients]
        if len(emails) != len(set(emails)):
            raise validation_error("Recipient e-mails must be unique")
        if snapshot.signature_type == SignatureType.SINGLE and len(recipients) != 1:
            raise validation_error("Single signature documents require exactly one recipient")
        slot_orders = {slot.signature_order for slot in snapshot.recipients}
        if slot_orders and set(orders) != slot_orders:
            raise validation_error(
                "Recipients do not match the template signature orders",
                expected_orders=sorted(slot_orders),
            )
        return sorted(recipients, key=lambda item: item.signature_order)

    def _existing_for_key(self, company_id: UUID, idempotency_key: str) -> EsignDocument | None:
        return self.session.exec(
            select(EsignDocument).where(
                EsignDocument.company_id == company_id,
                EsignDocument.idempotency_key == idempotency_key,
                EsignDocument.is_deleted == False,  # noqa: E712
            )
        ).first()

    def _issue_preview_url(self, document: EsignDocument) -> str:
        token = self.token_service.generate_token(
            {"document_id": document.id, "company_id": document.company_id},
            TokenType.PREVIEW,
        )
        return preview_url(token)

    def _distribute(self, document: EsignDocument, snapshot: TemplateSnapshot) -> dict[UUID, RecipientLink]:
        links: dict[UUID, RecipientLink] = {}
        for recipient in document.recipients:
            if recipient.status != RecipientStatus.ACTIVE:
                continue
            links[recipient.id] = self.link_issuer.issue(
                document,
                recipient,
                short_link_enabled=snapshot.short_link_enabled,
                revoke_reason="distributed",
            )
        document.status = DocumentStatus.DISTRIBUTED
        return links

    def _send_links(
        self,
        document: EsignDocument,
        links: dict[UUID, RecipientLink],
        kind: str,
    ) -> None:
        if not self.notification_service:
            return
        for recipient in document.recipients:
            link = links.get(recipient.id)
            if link is None:
                continue
            try:
                self.notification_service.notify_signing_request(
                    document,
                    recipient,
                    link.short_url or link.signing_url,
                    kind=kind,
                )
            except Exception:
                logger.exception("Signing notification '%s' for document %s failed", kind, document.id)

    def _notify_event(self, document: EsignDocument, event: str, recipients: Iterable[EsignRecipient]) -> None:
        if not self.notification_service:
            return
        try:
            self.notification_service.notify_document_event(
                document,
                event,
                recipients=list(recipients),
                extra_emails=snapshot_cc_emails(document),
            )
        except Exception:
            logger.exception("Notification '%s' for document %s failed", event, document.id)

    def _dispatch_callback(self, document: EsignDocument, event: str) -> None:
        if not self.callback_dispatcher or not document.callback_url:
            return
        try:
            self.callback_dispatcher(document.id, event)
        except Exception:
            logger.exception("Callback dispatch '%s' for document %s failed", event, document.id)

    def _initiate_response(
        self,
        document: EsignDocument,
        links: dict[UUID, RecipientLink] | None = None,
        preview: str | None = None,
    ) -> InitiateResponse:
        recipients = []
        for recipient in document.recipients:
            link = (links or {}).get(recipient.id) or self.link_issuer.current(recipient)
            recipients.append(
                InitiateRecipientRead(
                    recipient_id=recipient.id,
                    email=recipient.email,
                    name=recipient.name,
                    signature_order=recipient.signature_order,
                    status=recipient.status,
                    signing_url=link.signing_url if link else None,
                    short_url=link.short_url if link else None,
                )
            )
        return InitiateResponse(
            document_id=document.id,
            status=document.status,
            expires_at=document.expires_at,
            recipients=recipients,
            preview_url=preview,
        )

    # -- initiate ----------------------------------------------------------

    @translate_stale_data
    def initiate(
        self,
        company_id: UUID,
        request: InitiateRequest,
        *,
        actor: AuditActor,
        api_key_id: UUID | None = None,
        created_by_id: UUID | None = None,
        idempotency_key: str | None = None,
        bulk_job_id: UUID | None = None,
    ) -> InitiateResponse:
        if idempotency_key:
            existing = self._existing_for_key(company_id, idempotency_key)
            if existing is not None:
                logger.info("Idempotent replay of document %s for key %s", existing.id, idempotency_key)
                preview = None
                if existing.status == DocumentStatus.DRAFT_PREVIEW:
                    preview = self._issue_preview_url(existing)
                    self.session.commit()
                return self._initiate_response(existing, preview=preview)

        template = self.session.get(EsignTemplate, request.template_id)
        if template is None or template.company_id != company_id or template.is_deleted:
            raise template_not_found()
        if template.status != TemplateStatus.ACTIVE:
            raise EsignError(
                "TEMPLATE_INACTIVE",
                "The template must be in active status to create documents",
                status.HTTP_400_BAD_REQUEST,
            )

        now = datetime.utcnow()
        snapshot = build_snapshot(template, now)
        payload = resolve_payload(snapshot.delimiters, request.payload)
        recipients = self._resolve_recipients(snapshot, request.recipients)
        expires_at = calculate_expiry(snapshot.link_expiry.value, snapshot.link_expiry.unit, now)

        document = EsignDocument(
            company_id=company_id,
            template_id=template.id,
            template_snapshot=snapshot.model_dump(mode="json"),
            status=DocumentStatus.NEW,
            payload=payload,
            expires_at=expires_at,
            callback_url=request.callback_url,
            callback_status=CallbackStatus.PENDING if request.callback_url else None,
            idempotency_key=idempotency_key,
            api_key_id=api_key_id,
            created_by_id=created_by_id,
            bulk_job_id=bulk_job_id,
        )
        first_order = recipients[0].signature_order
        document.recipients = [
            EsignRecipient(
                document_id=document.id,
                signature_order=item.signature_order,
                email=str(item.email),
                name=item.name,
                phone=item.phone,
                status=state_machine.initial_recipient_status(
                    snapshot.signature_type, item.signature_order, first_order
                ),
            )
            for item in recipients
        ]
        self.session.add(document)
        self.session.flush()
        self.audit_service.record(
            "document.created",
            action="create",
            company_id=company_id,
            document_id=document.id,
            actor=actor,
            details={
                "template_id": str(template.id),
                "template_name": template.name,
                "recipients": len(recipients),
                "bulk_job_id": str(bulk_job_id) if bulk_job_id else None,
            },
            commit=False,
        )

        links: dict[UUID, RecipientLink] = {}
        preview = None
        if snapshot.preview_mode:
            document.status = DocumentStatus.DRAFT_PREVIEW
            preview = self._issue_preview_url(document)
            event_type = "document.preview_created"
        else:
            links = self._distribute(document, snapshot)
            event_type = "document.distributed"
        document.touch()
        self.audit_service.record(
            event_type,
            action="distribute" if links else "preview",
            company_id=company_id,
            document_id=document.id,
            actor=actor,
            details={"status": document.status.value, "expires_at": expires_at.isoformat()},
            commit=False,
        )
        self.session.commit()
        logger.info("Document %s initiated from template %s (%s)", document.id, template.id, document.status.value)

        if links and snapshot.notification_config.send_on_create:
            self._send_links(document, links, "request")
        return self._initiate_response(document, links, preview)

    # -- reads -------------------------------------------------------------

    def get(self, company_id: UUID, document_id: UUID) -> EsignDocument:
        return self._get_document(company_id, document_id)

    def get_status(self, company_id: UUID, document_id: UUID) -> DocumentStatusRead:
        document = self._get_document(company_id, document_id)
        completed = document.status == DocumentStatus.COMPLETED
        return DocumentStatusRead(
            document_id=document.id,
            status=document.status,
            recipients=[RecipientStatusRead.model_validate(item) for item in document.recipients],
            created_at=document.created_at,
            expires_at=document.expires_at,
            completed_at=document.completed_at,
            pdf_url=document_download_url(document.id) if completed and document.pdf_url else None,
            certificate_url=certificate_download_url(document.id) if completed and document.certificate_url else None,
        )

    def list_documents(
        self,
        company_id: UUID,
        status_filter: DocumentStatus | None = None,
        page: int = 1,
        page_size: int = 50,
    ) -> tuple[list[EsignDocument], int]:
        query = select(EsignDocument).where(
            EsignDocument.company_id == company_id,
            EsignDocument.is_deleted == False,  # noqa: E712
        )
        if status_filter:
            query = query.where(EsignDocument.status == status_filter)
        total = self.session.exec(select(func.count()).select_from(query.subquery())).one()
        items = self.session.exec(
            query.order_by(EsignDocument.created_at.desc()).offset((page - 1) * page_size).limit(page_size)
        ).all()
        return list(items), total

    # -- admin transitions -------------------------------------------------

    @translate_stale_data
    def cancel(
        self,
        company_id: UUID,
        document_id: UUID,
        *,
        actor: AuditActor,
        reason: str | None = None,
    ) -> DocumentActionResponse:
        document = self._get_document(company_id, document_id)
        state_machine.ensure_admin_transition("cancel", document.status)
        previous = document.status
        notified = [item for item in document.recipients if item.status != RecipientStatus.PENDING and item.token]

        document.status = DocumentStatus.CANCELLED
        document.error_reason = reason or "Cancelled by sender"
        self.token_service.revoke_document_tokens(document.id, reason="document_cancelled")
        for recipient in document.recipients:
            clear_recipient_link(recipient)
        document.touch()
        self.session.add(document)
        self.audit_service.record(
            "document.cancelled",
            action="cancel",
            company_id=company_id,
            document_id=document.id,
            actor=actor,
            details={"reason": reason, "previous_status": previous.value},
            commit=False,
        )
        self.session.commit()

        if previous != DocumentStatus.DRAFT_PREVIEW and self._snapshot(document).notification_config.send_on_cancel:
            self._notify_event(document, "cancelled", notified)
        self._dispatch_callback(document, "document.cancelled")
        return DocumentActionResponse(document_id=document.id, status=document.status, message="Document cancelled")

    @translate_stale_data
    def approve(self, company_id: UUID, document_id: UUID, *, actor: AuditActor) -> DocumentActionResponse:
        document = self._get_document(company_id, document_id)
        state_machine.ensure_admin_transition("approve", document.status)
        if state_machine.is_past_deadline(document):
            raise invalid_transition("Cannot approve expired document")
        snapshot = self._snapshot(document)
        self.token_service.revoke_document_tokens(document.id, reason="approved", token_type=TokenType.PREVIEW)
        links = self._distribute(document, snapshot)
        document.touch()
        self.session.add(document)
        self.audit_service.record(
            "document.approved",
            action="approve",
            company_id=company_id,
            document_id=document.id,
            actor=actor,
            details={"recipients": len(links)},
            commit=False,
        )
        self.session.commit()
        if snapshot.notification_config.send_on_create:
            self._send_links(document, links, "request")
        return DocumentActionResponse(document_id=document.id, status=document.status, message="Document approved and distributed")

    @translate_stale_data
    def reject(
        self,
        company_id: UUID,
        document_id: UUID,
        *,
        actor: AuditActor,
        reason: str,
    ) -> DocumentActionResponse:
        document = self._get_document(company_id, document_id)
        state_machine.ensure_admin_transition("reject", document.status)
        document.status = DocumentStatus.CANCELLED
        document.error_reason = reason
        self.token_service.revoke_document_tokens(document.id, reason="preview_rejected")
        document.touch()
        self.session.add(document)
        self.audit_service.record(
            "document.preview_rejected",
            action="reject",
            company_id=company_id,
            document_id=document.id,
            actor=actor,
            details={"reason": reason},
            commit=False,
        )
        self.session.commit()
        self._dispatch_callback(document, "document.cancelled")
        return DocumentActionResponse(document_id=document.id, status=document.status, message="Preview rejected")

    @translate_stale_data
    def resend(self, company_id: UUID, document_id: UUID, *, actor: AuditActor) -> DocumentActionResponse:
        document = self._get_document(company_id, document_id)
        state_machine.ensure_admin_transition("resend", document.status)
        if state_machine.is_past_deadline(document):
            raise invalid_transition("Cannot resend expired document")
        snapshot = self._snapshot(document)
        links: dict[UUID, RecipientLink] = {}
        for recipient in document.recipients:
            if recipient.status in LIVE_RECIPIENT_STATUSES:
                links[recipient.id] = self.link_issuer.issue(
                    document,
                    recipient,
                    short_link_enabled=snapshot.short_link_enabled,
                    revoke_reason="resent",
                )
        document.touch()
        self.session.add(document)
        self.audit_service.record(
            "document.resent",
            action="resend",
            company_id=company_id,
            document_id=document.id,
            actor=actor,
            details={"recipients": [item.email for item in document.recipients if item.id in links]},
            commit=False,
        )
        self.session.commit()
        self._send_links(document, links, "resend")
        return DocumentActionResponse(
            document_id=document.id,
            status=document.status,
            message=f"Signing link re-sent to {len(links)} recipient(s)",
        )

    @translate_stale_data
    def remind(self, company_id: UUID, document_id: UUID, *, actor: AuditActor) -> DocumentActionResponse:
        document = self._get_document(company_id, document_id)
        state_machine.ensure_admin_transition("remind", document.status)
        if state_machine.is_past_deadline(document):
            raise invalid_transition("Cannot remind expired document")
        links: dict[UUID, RecipientLink] = {}
        for recipient in document.recipients:
            link = self.link_issuer.current(recipient) if recipient.status in LIVE_RECIPIENT_STATUSES else None
            if link is not None:
                links[recipient.id] = link
        self.audit_service.record(
            "document.reminded",
            action="remind",
            company_id=company_id,
            document_id=document.id,
            actor=actor,
            details={"recipients": [item.email for item in document.recipients if item.id in links]},
            commit=False,
        )
        self.session.commit()
        self._send_links(document, links, "reminder")
        return DocumentActionResponse(
            document_id=document.id,
            status=document.status,
            message=f"Reminder sent to {len(links)} recipient(s)",
        )

    @translate_stale_data
    def soft_delete(self, company_id: UUID, document_id: UUID, *, actor: AuditActor) -> DocumentActionResponse:
        document = self._get_document(company_id, document_id)
        document.is_deleted = True
        document.deleted_at = datetime.utcnow()
        self.token_service.revoke_document_tokens(document.id, reason="document_deleted")
        for recipient in document.recipients:
            clear_recipient_link(recipient)
        document.touch()
        self.session.add(document)
        self.audit_service.record(
            "document.deleted",
            action="delete",
            company_id=company_id,
            document_id=document.id,
            actor=actor,
            details={"status": document.status.value},
            commit=False,
        )
        self.session.commit()
        return DocumentActionResponse(document_id=document.id, status=document.status, message="Document deleted")

    # -- bulk --------------------------------------------------------------

    def bulk_action(self, company_id: UUID, request: BulkActionRequest, *, actor: AuditActor) -> BulkActionResult:
        """Apply one admin action to many documents; a failure only affects its own document."""
        results: list[BulkActionItemResult] = []
        errors: list[BulkActionError] = []
        for document_id in request.document_ids:
            try:
                if request.action == "cancel":
                    self.cancel(company_id, document_id, actor=actor, reason=request.reason)
                elif request.action == "resend":
                    self.resend(company_id, document_id, actor=actor)
                elif request.action == "remind":
                    self.remind(company_id, document_id, actor=actor)
                else:
                    self.soft_delete(company_id, document_id, actor=actor)
            except ValueError as exc:
                self.session.rollback()
                message = exc.message if isinstance(exc, EsignError) else str(exc)
                results.append(BulkActionItemResult(document_id=document_id, success=False, error=message))
                errors.append(BulkActionError(document_id=document_id, error=message))
                continue
            results.append(BulkActionItemResult(document_id=document_id, success=True))

        failed = len(errors)
        logger.info(
            "Bulk %s for company %s: %s succeeded, %s failed",
            request.action,
            company_id,
            len(results) - failed,
            failed,
        )
        return BulkActionResult(
            action=request.action,
            total=len(results),
            succeeded=len(results) - failed,
            failed=failed,
            results=results,
            errors=errors,
        )
