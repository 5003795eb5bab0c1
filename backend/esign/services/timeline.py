from __future__ import annotations

from uuid import UUID

from sqlmodel import Session

from esign.core.errors import document_not_found
from esign.models.audit import EsignAuditLog
from esign.models.document import EsignDocument
from esign.schemas.audit import AuditActor, TimelineEntry, TimelineRead
from esign.services.audit import AuditService

STATUS_COLORS = {
    "completed": "green",
    "distributed": "blue",
    "opened": "yellow",
    "partially_signed": "yellow",
    "signed": "green",
    "cancelled": "red",
    "rejected": "red",
    "expired": "gray",
    "draft_preview": "purple",
    "new": "gray",
}

RECIPIENT_COLORS = {
    "signed": "green",
    "active": "blue",
    "pending": "gray",
    "opened": "yellow",
    "rejected": "red",
}

EVENT_ICONS = {
    "document.created": "file-plus",
    "document.preview_created": "eye",
    "document.approved": "check-circle",
    "document.preview_rejected": "x-circle",
    "document.distributed": "send",
    "document.opened": "eye",
    "document.signed": "pen-tool",
    "signature.submitted": "pen-tool",
    "signature.delegated": "users",
    "signature.scroll_completed": "scroll",
    "document.completed": "check-circle",
    "document.completion_failed": "alert-triangle",
    "document.rejected": "x-circle",
    "document.cancelled": "slash",
    "document.expired": "clock",
    "document.resent": "repeat",
    "document.reminded": "bell",
    "document.deleted": "trash",
    "otp.sent": "key",
    "otp.send_failed": "alert-triangle",
    "otp.verified": "shield",
    "otp.failed": "shield-off",
    "notification.sent": "mail",
    "notification.failed": "alert-triangle",
    "notification.skipped": "mail",
    "webhook.delivered": "globe",
    "webhook.failed": "alert-triangle",
}

EVENT_COLORS = {
    "document.signed": "green",
    "signature.submitted": "green",
    "document.completed": "green",
    "otp.verified": "green",
    "webhook.delivered": "green",
    "document.rejected": "red",
    "document.cancelled": "red",
    "document.preview_rejected": "red",
    "document.completion_failed": "red",
    "otp.failed": "red",
    "otp.send_failed": "red",
    "notification.failed": "red",
    "webhook.failed": "red",
    "document.expired": "gray",
    "document.deleted": "gray",
    "document.preview_created": "purple",
    "document.opened": "yellow",
}


def _who(entry: EsignAuditLog) -> str:
    return entry.actor_email or entry.actor_id or entry.actor_type.value


def describe(entry: EsignAuditLog) -> str:
    details = entry.details or {}
    who = _who(entry)
    event = entry.event_type
    if event == "document.created":
        return f"Document created from template {details.get('template_name') or details.get('template_id')}"
    if event == "document.preview_created":
        return "Preview generated, waiting for approval"
    if event == "document.approved":
        return f"Preview approved by {who}"
    if event == "document.preview_rejected":
        return f"Preview rejected by {who}: {details.get('reason')}"
    if event == "document.distributed":
        return "Signing links sent to recipients"
    if event == "document.opened":
        return f"Opened by {who}"
    if event in ("document.signed", "signature.submitted"):
        return f"Signed by {who}"
    if event == "signature.delegated":
        return f"Delegated by {details.get('delegated_from') or who} to {details.get('delegated_to')}"
    if event == "signature.scroll_completed":
        return f"{who} read the document to the end"
    if event == "document.completed":
        return "All signatures collected, signed PDF generated"
    if event == "document.completion_failed":
        return f"Completion failed: {details.get('error')}"
    if event == "document.rejected":
        return f"Declined by {who}" + (f": {details['reason']}" if details.get("reason") else "")
    if event == "document.cancelled":
        return f"Cancelled by {who}" + (f": {details['reason']}" if details.get("reason") else "")
    if event == "document.expired":
        return "Signing deadline passed"
    if event == "document.resent":
        return f"Signing links re-sent by {who}"
    if event == "document.reminded":
        if details.get("automatic"):
            return "Automatic reminder sent"
        return f"Reminder sent by {who}"
    if event == "document.deleted":
        return f"Deleted by {who}"
    if event.startswith("otp."):
        return {
            "otp.sent": "Verification code sent",
            "otp.send_failed": "Verification code could not be sent",
            "otp.verified": "Identity verified with one-time code",
            "otp.failed": "Invalid verification code entered",
        }.get(event, event)
    if event.startswith("notification."):
        return f"Notification {event.split('.', 1)[1]} to {details.get('recipient_email') or 'recipient'} via {details.get('channel')}"
    if event.startswith("webhook."):
        return f"Callback {details.get('event')} {event.split('.', 1)[1]}"
    return event


def to_entry(entry: EsignAuditLog) -> TimelineEntry:
    return TimelineEntry(
        id=entry.id,
        event_type=entry.event_type,
        action=entry.action,
        actor=AuditActor(
            type=entry.actor_type,
            id=entry.actor_id,
            email=entry.actor_email,
            api_key_prefix=entry.api_key_prefix,
        ),
        timestamp=entry.created_at,
        details=entry.details or {},
        icon=EVENT_ICONS.get(entry.event_type, "activity"),
        color=EVENT_COLORS.get(entry.event_type, "blue"),
        description=describe(entry),
    )


class TimelineService:
    def __init__(self, session: Session, audit_service: AuditService | None = None) -> None:
        self.session = session
        self.audit_service = audit_service or AuditService(session)

    def build(self, company_id: UUID, document_id: UUID) -> TimelineRead:
        document = self.session.get(EsignDocument, document_id)
        if document is None or document.company_id != company_id:
            raise document_not_found()
        trail = self.audit_service.document_trail(document.id)
        return TimelineRead(
            document_id=document.id,
            status=document.status.value,
            status_color=STATUS_COLORS.get(document.status.value, "gray"),
            recipients=[
                {
                    "email": recipient.email,
                    "name": recipient.name,
                    "signature_order": recipient.signature_order,
                    "status": recipient.status.value,
                    "color": RECIPIENT_COLORS.get(recipient.status.value, "gray"),
                    "signed_at": recipient.signed_at.isoformat() if recipient.signed_at else None,
                }
                for recipient in document.recipients
            ],
            events=[to_entry(entry) for entry in trail],
            audit_chain_valid=self.audit_service.verify_chain(document.id),
        )
