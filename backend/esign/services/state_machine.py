"""Transition rules of the document lifecycle.

Functions here inspect documents and recipients and never touch the session;
the signing and document services apply the results and persist them.
"""
from __future__ import annotations

from datetime import datetime
from typing import Iterable, Sequence

from fastapi import status

from esign.core.errors import EsignError, invalid_transition
from esign.models.document import (
    IN_FLIGHT_STATUSES,
    DocumentStatus,
    EsignDocument,
    EsignRecipient,
    RecipientStatus,
)
from esign.models.template import SignatureType
from esign.schemas.template import TemplateSnapshot

_TERMINAL_ERRORS = {
    DocumentStatus.COMPLETED: ("DOCUMENT_COMPLETED", "This document has already been completed"),
    DocumentStatus.CANCELLED: ("DOCUMENT_CANCELLED", "This document has been cancelled"),
    DocumentStatus.REJECTED: ("DOCUMENT_REJECTED", "This document has been declined"),
    DocumentStatus.EXPIRED: ("DOCUMENT_EXPIRED", "This document has expired"),
}

ACTIONABLE_RECIPIENT_STATUSES = frozenset({RecipientStatus.ACTIVE, RecipientStatus.OPENED})

ADMIN_SOURCE_STATUSES: dict[str, frozenset[DocumentStatus]] = {
    "approve": frozenset({DocumentStatus.DRAFT_PREVIEW}),
    "reject": frozenset({DocumentStatus.DRAFT_PREVIEW}),
    "resend": IN_FLIGHT_STATUSES,
    "remind": IN_FLIGHT_STATUSES,
}


def terminal_error(document_status: DocumentStatus) -> EsignError | None:
    entry = _TERMINAL_ERRORS.get(document_status)
    if entry is None:
        return None
    return EsignError(entry[0], entry[1], status.HTTP_400_BAD_REQUEST)


def is_past_deadline(document: EsignDocument, now: datetime | None = None) -> bool:
    return document.expires_at is not None and document.expires_at <= (now or datetime.utcnow())


def ensure_signable(document: EsignDocument, now: datetime | None = None) -> None:
    """Raise the error a signer should see when the document cannot be acted upon."""
    error = terminal_error(document.status)
    if error is not None:
        raise error
    if is_past_deadline(document, now):
        raise EsignError("DOCUMENT_EXPIRED", "This document has expired", status.HTTP_400_BAD_REQUEST)
    if document.status in (DocumentStatus.NEW, DocumentStatus.DRAFT_PREVIEW):
        raise EsignError(
            "DOCUMENT_NOT_AVAILABLE",
            "This document is not yet available for signing",
            status.HTTP_400_BAD_REQUEST,
        )


def ensure_recipient_pending(recipient: EsignRecipient) -> None:
    if recipient.status == RecipientStatus.SIGNED:
        raise EsignError("ALREADY_SIGNED", "You have already signed this document")
    if recipient.status == RecipientStatus.REJECTED:
        raise EsignError("ALREADY_REJECTED", "You have already declined this document")


def not_your_turn() -> EsignError:
    return EsignError(
        "NOT_YOUR_TURN",
        "It is not your turn to sign this document yet",
        status.HTTP_403_FORBIDDEN,
    )


def can_recipient_act(
    signature_type: SignatureType,
    recipient: EsignRecipient,
    recipients: Sequence[EsignRecipient],
) -> bool:
    """Whether ``recipient`` may view and sign now.

    Hierarchy signing additionally requires every lower signature_order to be
    signed; parallel types only require the recipient's own slot to be live.
    """
    if recipient.status not in ACTIONABLE_RECIPIENT_STATUSES:
        return False
    if signature_type != SignatureType.HIERARCHY:
        return True
    return all(
        other.status == RecipientStatus.SIGNED
        for other in recipients
        if other.signature_order < recipient.signature_order
    )


def next_document_status(
    signature_type: SignatureType,
    recipients: Sequence[EsignRecipient],
) -> DocumentStatus:
    signed = [item for item in recipients if item.status == RecipientStatus.SIGNED]
    if signature_type == SignatureType.SINGLE:
        return DocumentStatus.SIGNED if signed else DocumentStatus.OPENED
    if recipients and len(signed) == len(recipients):
        return DocumentStatus.SIGNED
    if signed:
        return DocumentStatus.PARTIALLY_SIGNED
    return DocumentStatus.OPENED


def next_hierarchy_recipient(
    recipients: Sequence[EsignRecipient],
    current: EsignRecipient,
) -> EsignRecipient | None:
    following = [
        item
        for item in recipients
        if item.signature_order > current.signature_order and item.status == RecipientStatus.PENDING
    ]
    return min(following, key=lambda item: item.signature_order) if following else None


def initial_recipient_status(signature_type: SignatureType, signature_order: int, first_order: int) -> RecipientStatus:
    if signature_type == SignatureType.HIERARCHY and signature_order != first_order:
        return RecipientStatus.PENDING
    return RecipientStatus.ACTIVE


def authorized_fields(snapshot: TemplateSnapshot, signature_order: int) -> set[str]:
    return snapshot.authorized_keys(signature_order)


def unauthorized_fields(snapshot: TemplateSnapshot, signature_order: int, keys: Iterable[str]) -> list[str]:
    allowed = authorized_fields(snapshot, signature_order)
    return sorted(key for key in keys if key not in allowed)


def cancel_error(document_status: DocumentStatus) -> EsignError | None:
    if document_status == DocumentStatus.COMPLETED:
        return invalid_transition("Cannot cancel completed document")
    if document_status in (DocumentStatus.CANCELLED, DocumentStatus.REJECTED, DocumentStatus.EXPIRED):
        return invalid_transition("Document already terminated")
    if document_status == DocumentStatus.SIGNED:
        return invalid_transition("Cannot cancel signed document")
    return None


def ensure_admin_transition(action: str, document_status: DocumentStatus) -> None:
    if action == "cancel":
        error = cancel_error(document_status)
        if error is not None:
            raise error
        return
    allowed = ADMIN_SOURCE_STATUSES.get(action)
    if allowed is None:
        raise ValueError(f"Unknown document action: {action}")
    if document_status not in allowed:
        if action == "approve":
            raise invalid_transition("Only documents in draft_preview can be approved")
        if action == "reject":
            raise invalid_transition("Only documents in draft_preview can be rejected")
        raise invalid_transition(f"Cannot {action} {document_status.value} document")
