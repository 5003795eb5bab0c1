from __future__ import annotations

import base64
import binascii
import hashlib
import io
import re
from datetime import datetime
from html import escape, unescape
from uuid import UUID

from reportlab.lib import colors
from reportlab.lib.pagesizes import LETTER
from reportlab.lib.styles import ParagraphStyle, getSampleStyleSheet
from reportlab.lib.units import inch
from reportlab.lib.utils import ImageReader
from reportlab.platypus import Image, Paragraph, SimpleDocTemplate, Spacer, Table, TableStyle
from sqlalchemy.orm.exc import StaleDataError
from sqlmodel import Session, select

from esign.core.config import settings
from esign.core.logging_setup import logger
from esign.db import session as db_session_module
from esign.models.document import DocumentStatus, EsignDocument
from esign.schemas.template import TemplateSnapshot
from esign.services.audit import AuditService
from esign.services.delimiters import render_html
from esign.services.hooks import CallbackDispatcher, run_callback
from esign.services.lock import LockService
from esign.services.notification import NotificationService, build_notification_service, snapshot_cc_emails
from esign.services.storage import StorageBackend, get_storage

_TAG_PATTERN = re.compile(r"<[^>]+>")
_BLOCK_PATTERN = re.compile(r"</?(p|div|br|h[1-6]|li|tr|table|ul|ol)[^>]*>", re.IGNORECASE)


def _fmt_datetime(value: datetime | None) -> str:
    if not value:
        return "-"
    return value.strftime("%Y-%m-%d %H:%M:%S UTC")


def _html_to_paragraphs(html_content: str) -> list[str]:
    text = _BLOCK_PATTERN.sub("\n", html_content or "")
    text = unescape(_TAG_PATTERN.sub("", text))
    return [line.strip() for line in text.splitlines() if line.strip()]


def _decode_signature_image(value: str | None) -> bytes | None:
    if not value or not value.startswith("data:image"):
        return None
    try:
        _, encoded = value.split(",", 1)
        return base64.b64decode(encoded, validate=True)
    except (ValueError, binascii.Error):
        return None


def _styles() -> dict[str, ParagraphStyle]:
    styles = getSampleStyleSheet()
    body = ParagraphStyle(
        "EsignBody",
        parent=styles["BodyText"],
        fontSize=10,
        leading=14,
        textColor=colors.HexColor("#101820"),
    )
    return {
        "title": ParagraphStyle(
            "EsignTitle",
            parent=styles["Heading1"],
            alignment=1,
            fontSize=16,
            leading=19,
            textColor=colors.HexColor("#11284b"),
            spaceAfter=8,
        ),
        "section": ParagraphStyle(
            "EsignSection",
            parent=styles["Heading2"],
            fontSize=12,
            leading=14,
            textColor=colors.HexColor("#0f5298"),
            spaceBefore=14,
            spaceAfter=6,
        ),
        "body": body,
        "muted": ParagraphStyle("EsignMuted", parent=body, fontSize=9, textColor=colors.HexColor("#5f6d7a")),
    }


def _table(rows: list[list], widths: list[float]) -> Table:
    table = Table(rows, colWidths=widths, hAlign="LEFT")
    table.setStyle(
        TableStyle(
            [
                ("BACKGROUND", (0, 0), (-1, 0), colors.HexColor("#dce4f2")),
                ("FONTNAME", (0, 0), (-1, 0), "Helvetica-Bold"),
                ("FONTSIZE", (0, 0), (-1, -1), 9),
                ("ROWBACKGROUNDS", (0, 1), (-1, -1), [colors.white, colors.HexColor("#f7f9fc")]),
                ("VALIGN", (0, 0), (-1, -1), "TOP"),
                ("GRID", (0, 0), (-1, -1), 0.25, colors.HexColor("#c8d1e4")),
            ]
        )
    )
    return table


def render_signed_pdf(document: EsignDocument, snapshot: TemplateSnapshot) -> bytes:
    buffer = io.BytesIO()
    doc = SimpleDocTemplate(buffer, pagesize=LETTER, leftMargin=0.8 * inch, rightMargin=0.8 * inch)
    doc.title = snapshot.name
    styles = _styles()

    values = {item.key: item.default_value for item in snapshot.delimiters if item.default_value}
    values.update(document.payload or {})
    story: list = [Paragraph(escape(snapshot.name), styles["title"])]
    for line in _html_to_paragraphs(render_html(snapshot.html_content, values)):
        story.append(Paragraph(escape(line), styles["body"]))
        story.append(Spacer(1, 4))

    story.append(Paragraph("Signatures", styles["section"]))
    for recipient in document.recipients:
        story.append(
            Paragraph(
                f"<b>{escape(recipient.name)}</b> ({escape(recipient.email)}), signed {_fmt_datetime(recipient.signed_at)}",
                styles["body"],
            )
        )
        image_bytes = _decode_signature_image(recipient.signature_image)
        if image_bytes:
            try:
                reader = ImageReader(io.BytesIO(image_bytes))
                width, height = reader.getSize()
                scale = min(2.5 * inch / max(width, 1), 0.9 * inch / max(height, 1), 1.0)
                story.append(Image(io.BytesIO(image_bytes), width=width * scale, height=height * scale))
            except (OSError, ValueError):
                story.append(Paragraph("[signature image unavailable]", styles["muted"]))
        elif recipient.signature_image:
            story.append(Paragraph(escape(recipient.signature_image[:200]), styles["body"]))
        story.append(Spacer(1, 10))

    doc.build(story)
    return buffer.getvalue()


def render_certificate(document: EsignDocument, snapshot: TemplateSnapshot, pdf_hash: str, audit_entries: list) -> bytes:
    buffer = io.BytesIO()
    doc = SimpleDocTemplate(buffer, pagesize=LETTER, leftMargin=0.8 * inch, rightMargin=0.8 * inch)
    doc.title = f"Certificate of completion {document.id}"
    styles = _styles()

    story: list = [
        Paragraph("Certificate of completion", styles["title"]),
        Paragraph("All times are UTC.", styles["muted"]),
        Spacer(1, 12),
    ]
    summary = [
        ["Field", "Value"],
        ["Document ID", str(document.id)],
        ["Template", snapshot.name],
        ["Signature type", snapshot.signature_type.value],
        ["Created", _fmt_datetime(document.created_at)],
        ["Completed", _fmt_datetime(document.completed_at or datetime.utcnow())],
        ["SHA-256", pdf_hash],
    ]
    story.append(_table([[Paragraph(escape(str(cell)), styles["body"]) for cell in row] for row in summary], [doc.width * 0.3, doc.width * 0.7]))

    story.append(Paragraph("Signers", styles["section"]))
    signer_rows = [["Order", "Signer", "Signed at", "IP address", "Location"]]
    for recipient in document.recipients:
        geo = recipient.geo_location or {}
        location = ", ".join(str(part) for part in (geo.get("city"), geo.get("country")) if part) or "-"
        signer = f"{recipient.name} <{recipient.email}>"
        if recipient.delegated_from:
            signer += f" (delegated by {recipient.delegated_from})"
        signer_rows.append(
            [
                str(recipient.signature_order),
                signer,
                _fmt_datetime(recipient.signed_at),
                recipient.ip_address or "-",
                location,
            ]
        )
    story.append(
        _table(
            [[Paragraph(escape(str(cell)), styles["body"]) for cell in row] for row in signer_rows],
            [doc.width * 0.08, doc.width * 0.37, doc.width * 0.2, doc.width * 0.15, doc.width * 0.2],
        )
    )

    story.append(Paragraph("Audit trail", styles["section"]))
    trail_rows = [["When", "Event", "Actor"]]
    for entry in audit_entries:
        trail_rows.append([_fmt_datetime(entry.created_at), entry.event_type, entry.actor_email or entry.actor_id or "-"])
    story.append(
        _table(
            [[Paragraph(escape(str(cell)), styles["body"]) for cell in row] for row in trail_rows],
            [doc.width * 0.3, doc.width * 0.35, doc.width * 0.35],
        )
    )
    doc.build(story)
    return buffer.getvalue()


class PostSignatureService:
    """Turns a ``signed`` document into ``completed`` with stored artifacts."""

    def __init__(
        self,
        session: Session,
        storage: StorageBackend | None = None,
        lock_service: LockService | None = None,
        notification_service: NotificationService | None = None,
        audit_service: AuditService | None = None,
        callback_dispatcher: CallbackDispatcher | None = None,
    ) -> None:
        self.session = session
        self.storage = storage or get_storage()
        self.lock_service = lock_service or LockService()
        self.audit_service = audit_service or AuditService(session)
        self.notification_service = notification_service
        self.callback_dispatcher = callback_dispatcher

    def complete(self, document_id: UUID) -> bool:
        with self.lock_service.hold(f"document:{document_id}:completion"):
            document = self.session.get(EsignDocument, document_id)
            if document is None:
                logger.warning("Completion requested for unknown document %s", document_id)
                return False
            self.session.refresh(document)
            if document.status != DocumentStatus.SIGNED:
                logger.info("Document %s is %s, completion skipped", document_id, document.status.value)
                return document.status == DocumentStatus.COMPLETED
            try:
                self._complete(document)
            except Exception as exc:
                self.session.rollback()
                logger.exception("Completion of document %s failed", document_id)
                self._record_failure(document_id, exc)
                return False

        snapshot = TemplateSnapshot.model_validate(document.template_snapshot)
        if self.notification_service and snapshot.notification_config.send_on_complete:
            try:
                self.notification_service.notify_document_event(
                    document,
                    "completed",
                    recipients=document.recipients,
                    extra_emails=snapshot_cc_emails(document),
                )
            except Exception:
                logger.exception("Completion notification for document %s failed", document_id)
        if self.callback_dispatcher and document.callback_url:
            try:
                self.callback_dispatcher(document.id, "document.completed")
            except Exception:
                logger.exception("Completion callback for document %s failed", document_id)
        return True

    def _complete(self, document: EsignDocument) -> None:
        snapshot = TemplateSnapshot.model_validate(document.template_snapshot)
        pdf_bytes = render_signed_pdf(document, snapshot)
        pdf_hash = hashlib.sha256(pdf_bytes).hexdigest()
        now = datetime.utcnow()
        document.completed_at = now
        trail = self.audit_service.document_trail(document.id)
        certificate_bytes = render_certificate(document, snapshot, pdf_hash, trail)

        root = f"{document.company_id}/{document.id}"
        document.pdf_url = self.storage.save_bytes(root=root, name="signed.pdf", data=pdf_bytes)
        document.certificate_url = self.storage.save_bytes(root=root, name="certificate.pdf", data=certificate_bytes)
        document.pdf_hash = pdf_hash
        document.status = DocumentStatus.COMPLETED
        document.touch()
        self.session.add(document)
        self.audit_service.record(
            "document.completed",
            action="complete",
            company_id=document.company_id,
            document_id=document.id,
            details={"pdf_hash": pdf_hash, "pdf_url": document.pdf_url, "certificate_url": document.certificate_url},
            commit=False,
        )
        self.session.commit()
        logger.info("Document %s completed (sha256 %s)", document.id, pdf_hash)

    def _record_failure(self, document_id: UUID, exc: Exception) -> None:
        document = self.session.get(EsignDocument, document_id)
        if document is None:
            return
        self.audit_service.record(
            "document.completion_failed",
            action="complete",
            company_id=document.company_id,
            document_id=document.id,
            details={"error": str(exc) or exc.__class__.__name__},
        )

    def retry_pending_completions(self, limit: int = 50) -> int:
        """Reprocess documents left in ``signed`` by an earlier failure."""
        document_ids = self.session.exec(
            select(EsignDocument.id)
            .where(
                EsignDocument.status == DocumentStatus.SIGNED,
                EsignDocument.is_deleted == False,  # noqa: E712
            )
            .order_by(EsignDocument.updated_at)
            .limit(limit)
        ).all()
        completed = 0
        for document_id in document_ids:
            try:
                if self.complete(document_id):
                    completed += 1
            except StaleDataError:
                self.session.rollback()
                logger.warning("Document %s changed during completion retry", document_id)
            except ValueError as exc:
                logger.warning("Completion retry for document %s skipped: %s", document_id, exc)
        if document_ids:
            logger.info("Completion retry: %s of %s documents completed", completed, len(document_ids))
        return completed


def build_post_signature_service(session: Session) -> PostSignatureService:
    audit_service = AuditService(session)
    return PostSignatureService(
        session,
        notification_service=build_notification_service(audit_service, settings),
        audit_service=audit_service,
        callback_dispatcher=run_callback,
    )


def complete_document(document_id: UUID) -> None:
    """Entry point for background tasks; opens its own session."""
    with db_session_module.open_session() as session:
        try:
            build_post_signature_service(session).complete(document_id)
        except Exception:
            logger.exception("Post-signature processing for document %s failed", document_id)
