from __future__ import annotations

from datetime import datetime, timedelta

from sqlalchemy.orm.exc import StaleDataError
from sqlmodel import Session, select

from esign.core.config import settings
from esign.core.logging_setup import logger
from esign.models.document import IN_FLIGHT_STATUSES, DocumentStatus, EsignDocument, RecipientStatus
from esign.schemas.template import TemplateSnapshot
from esign.services.audit import AuditService
from esign.services.distribution import RecipientLinkIssuer, clear_recipient_link
from esign.services.hooks import CallbackDispatcher
from esign.services.notification import NotificationService, snapshot_cc_emails
from esign.services.short_link import ShortLinkService
from esign.services.token import TokenService

# Periodic jobs: expire overdue documents and send pre-deadline reminders

_LIVE = (RecipientStatus.ACTIVE, RecipientStatus.OPENED)


def _in_flight(session: Session, now: datetime, *, expired: bool) -> list[EsignDocument]:
    deadline = EsignDocument.expires_at <= now if expired else EsignDocument.expires_at > now
    return list(
        session.exec(
            select(EsignDocument).where(
                EsignDocument.status.in_(list(IN_FLIGHT_STATUSES)),
                EsignDocument.is_deleted == False,  # noqa: E712
                EsignDocument.expires_at != None,  # noqa: E711
                deadline,
            )
        ).all()
    )


def run_expiry_sweep(
    session: Session,
    notification_service: NotificationService | None = None,
    callback_dispatcher: CallbackDispatcher | None = None,
    now: datetime | None = None,
) -> int:
    """Move in-flight documents past their deadline to ``expired``."""
    now = now or datetime.utcnow()
    audit_service = AuditService(session)
    token_service = TokenService(session)
    expired = 0
    for document in _in_flight(session, now, expired=True):
        previous = document.status
        notified = [item for item in document.recipients if item.status != RecipientStatus.PENDING and item.token]
        try:
            document.status = DocumentStatus.EXPIRED
            document.error_reason = "Signing deadline passed"
            token_service.revoke_document_tokens(document.id, reason="document_expired")
            for recipient in document.recipients:
                clear_recipient_link(recipient)
            document.touch()
            session.add(document)
            audit_service.record(
                "document.expired",
                action="expire",
                company_id=document.company_id,
                document_id=document.id,
                details={"previous_status": previous.value, "expires_at": document.expires_at.isoformat()},
                commit=False,
            )
            session.commit()
        except StaleDataError:
            session.rollback()
            logger.warning("Document %s changed during expiry sweep, skipped", document.id)
            continue
        expired += 1
        logger.info("Document %s expired", document.id)

        snapshot = TemplateSnapshot.model_validate(document.template_snapshot)
        if notification_service and snapshot.notification_config.send_on_expire:
            try:
                notification_service.notify_document_event(
                    document,
                    "expired",
                    recipients=notified,
                    extra_emails=snapshot_cc_emails(document),
                )
            except Exception:
                logger.exception("Expiry notification for document %s failed", document.id)
        if callback_dispatcher and document.callback_url:
            try:
                callback_dispatcher(document.id, "document.expired")
            except Exception:
                logger.exception("Expiry callback for document %s failed", document.id)
    return expired


def due_reminders(snapshot: TemplateSnapshot, document: EsignDocument, now: datetime, window_minutes: float) -> list[float]:
    """Configured intervals whose send time falls within the window and were not sent yet."""
    sent = {float(value) for value in document.reminders_sent or []}
    window = timedelta(minutes=window_minutes)
    due = []
    for interval in snapshot.notification_config.reminder_intervals:
        hours = float(interval.hours_before_expiry)
        if hours in sent:
            continue
        send_at = document.expires_at - timedelta(hours=hours)
        if abs(now - send_at) <= window:
            due.append(hours)
    return due


def run_reminder_sweep(
    session: Session,
    notification_service: NotificationService | None = None,
    now: datetime | None = None,
    window_minutes: float | None = None,
) -> int:
    """Send the configured pre-deadline reminders; returns documents reminded."""
    now = now or datetime.utcnow()
    window = settings.reminder_window_minutes if window_minutes is None else window_minutes
    audit_service = AuditService(session)
    link_issuer = RecipientLinkIssuer(TokenService(session), ShortLinkService(session))
    reminded = 0
    for document in _in_flight(session, now, expired=False):
        snapshot = TemplateSnapshot.model_validate(document.template_snapshot)
        due = due_reminders(snapshot, document, now, window)
        if not due:
            continue
        links = {}
        try:
            for recipient in document.recipients:
                link = link_issuer.current(recipient) if recipient.status in _LIVE else None
                if link is not None:
                    links[recipient.id] = link
            document.reminders_sent = [*(document.reminders_sent or []), *due]
            document.touch()
            session.add(document)
            audit_service.record(
                "document.reminded",
                action="remind",
                company_id=document.company_id,
                document_id=document.id,
                details={
                    "automatic": True,
                    "hours_before_expiry": due,
                    "recipients": [item.email for item in document.recipients if item.id in links],
                },
                commit=False,
            )
            session.commit()
        except StaleDataError:
            session.rollback()
            logger.warning("Document %s changed during reminder sweep, skipped", document.id)
            continue
        reminded += 1

        if not notification_service:
            continue
        for recipient in document.recipients:
            link = links.get(recipient.id)
            if link is None:
                continue
            try:
                notification_service.notify_signing_request(
                    document, recipient, link.short_url or link.signing_url, kind="reminder"
                )
            except Exception:
                logger.exception("Reminder for document %s failed", document.id)
    return reminded


def run_scheduled_jobs(
    session: Session,
    notification_service: NotificationService | None = None,
    callback_dispatcher: CallbackDispatcher | None = None,
    post_signature_service=None,  # type: ignore[no-untyped-def]
    now: datetime | None = None,
) -> dict[str, int]:
    """One scheduler tick: expiry, reminders, then completions left in ``signed``."""
    now = now or datetime.utcnow()
    results = {
        "expired": run_expiry_sweep(session, notification_service, callback_dispatcher, now=now),
        "reminded": run_reminder_sweep(session, notification_service, now=now),
        "completed": 0,
    }
    if post_signature_service is not None:
        results["completed"] = post_signature_service.retry_pending_completions()
    logger.info(
        "Scheduler tick: %s expired, %s reminded, %s completed",
        results["expired"],
        results["reminded"],
        results["completed"],
    )
    return results
