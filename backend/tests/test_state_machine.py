from datetime import datetime, timedelta
from uuid import uuid4

import pytest

from esign.core.errors import EsignError
from esign.models.document import DocumentStatus, EsignDocument, EsignRecipient, RecipientStatus
from esign.models.template import SignatureType
from esign.schemas.template import TemplateSnapshot
from esign.services import state_machine


def _recipients(*statuses: RecipientStatus) -> list[EsignRecipient]:
    return [
        EsignRecipient(
            document_id=uuid4(),
            signature_order=index,
            email=f"signer{index}@example.com",
            name=f"Signer {index}",
            status=status,
        )
        for index, status in enumerate(statuses, start=1)
    ]


def _document(status: DocumentStatus, expires_in: timedelta | None = timedelta(days=1)) -> EsignDocument:
    return EsignDocument(
        company_id=uuid4(),
        template_id=uuid4(),
        status=status,
        expires_at=datetime.utcnow() + expires_in if expires_in is not None else None,
    )


def test_hierarchy_initial_statuses() -> None:
    assert state_machine.initial_recipient_status(SignatureType.HIERARCHY, 1, 1) == RecipientStatus.ACTIVE
    assert state_machine.initial_recipient_status(SignatureType.HIERARCHY, 2, 1) == RecipientStatus.PENDING
    assert state_machine.initial_recipient_status(SignatureType.MULTIPLE, 3, 1) == RecipientStatus.ACTIVE
    assert state_machine.initial_recipient_status(SignatureType.SEND_TO_ALL, 2, 1) == RecipientStatus.ACTIVE


def test_hierarchy_turn_requires_lower_orders_signed() -> None:
    first, second, third = _recipients(RecipientStatus.SIGNED, RecipientStatus.ACTIVE, RecipientStatus.PENDING)
    recipients = [first, second, third]

    assert state_machine.can_recipient_act(SignatureType.HIERARCHY, second, recipients) is True
    assert state_machine.can_recipient_act(SignatureType.HIERARCHY, third, recipients) is False
    third.status = RecipientStatus.ACTIVE
    second.status = RecipientStatus.OPENED
    first.status = RecipientStatus.OPENED
    assert state_machine.can_recipient_act(SignatureType.HIERARCHY, third, recipients) is False
    assert state_machine.can_recipient_act(SignatureType.MULTIPLE, third, recipients) is True


def test_signed_recipient_cannot_act() -> None:
    recipients = _recipients(RecipientStatus.SIGNED, RecipientStatus.ACTIVE)

    assert state_machine.can_recipient_act(SignatureType.MULTIPLE, recipients[0], recipients) is False


@pytest.mark.parametrize(
    ("signature_type", "statuses", "expected"),
    [
        (SignatureType.SINGLE, [RecipientStatus.SIGNED], DocumentStatus.SIGNED),
        (SignatureType.SINGLE, [RecipientStatus.OPENED], DocumentStatus.OPENED),
        (SignatureType.HIERARCHY, [RecipientStatus.SIGNED, RecipientStatus.PENDING], DocumentStatus.PARTIALLY_SIGNED),
        (SignatureType.HIERARCHY, [RecipientStatus.SIGNED, RecipientStatus.SIGNED], DocumentStatus.SIGNED),
        (SignatureType.MULTIPLE, [RecipientStatus.OPENED, RecipientStatus.ACTIVE], DocumentStatus.OPENED),
        (
            SignatureType.SEND_TO_ALL,
            [RecipientStatus.SIGNED, RecipientStatus.ACTIVE, RecipientStatus.SIGNED],
            DocumentStatus.PARTIALLY_SIGNED,
        ),
    ],
)
def test_next_document_status(signature_type, statuses, expected) -> None:  # type: ignore[no-untyped-def]
    assert state_machine.next_document_status(signature_type, _recipients(*statuses)) == expected


def test_next_hierarchy_recipient_is_lowest_pending_order() -> None:
    first, second, third = _recipients(RecipientStatus.SIGNED, RecipientStatus.PENDING, RecipientStatus.PENDING)

    assert state_machine.next_hierarchy_recipient([third, first, second], first) is second
    assert state_machine.next_hierarchy_recipient([first, second, third], third) is None


@pytest.mark.parametrize(
    ("status", "code"),
    [
        (DocumentStatus.COMPLETED, "DOCUMENT_COMPLETED"),
        (DocumentStatus.CANCELLED, "DOCUMENT_CANCELLED"),
        (DocumentStatus.REJECTED, "DOCUMENT_REJECTED"),
        (DocumentStatus.EXPIRED, "DOCUMENT_EXPIRED"),
        (DocumentStatus.DRAFT_PREVIEW, "DOCUMENT_NOT_AVAILABLE"),
    ],
)
def test_ensure_signable_errors(status: DocumentStatus, code: str) -> None:
    with pytest.raises(EsignError) as exc_info:
        state_machine.ensure_signable(_document(status))

    assert exc_info.value.code == code


def test_ensure_signable_checks_deadline_lazily() -> None:
    document = _document(DocumentStatus.OPENED, expires_in=timedelta(seconds=-1))

    with pytest.raises(EsignError) as exc_info:
        state_machine.ensure_signable(document)

    assert exc_info.value.code == "DOCUMENT_EXPIRED"
    state_machine.ensure_signable(_document(DocumentStatus.PARTIALLY_SIGNED))


def test_recipient_pending_checks() -> None:
    signed, rejected = _recipients(RecipientStatus.SIGNED, RecipientStatus.REJECTED)

    with pytest.raises(EsignError) as exc_info:
        state_machine.ensure_recipient_pending(signed)
    assert exc_info.value.code == "ALREADY_SIGNED"
    with pytest.raises(EsignError) as exc_info:
        state_machine.ensure_recipient_pending(rejected)
    assert exc_info.value.code == "ALREADY_REJECTED"


@pytest.mark.parametrize(
    ("status", "message"),
    [
        (DocumentStatus.COMPLETED, "Cannot cancel completed document"),
        (DocumentStatus.SIGNED, "Cannot cancel signed document"),
        (DocumentStatus.EXPIRED, "Document already terminated"),
        (DocumentStatus.REJECTED, "Document already terminated"),
        (DocumentStatus.CANCELLED, "Document already terminated"),
    ],
)
def test_cancel_errors(status: DocumentStatus, message: str) -> None:
    with pytest.raises(EsignError) as exc_info:
        state_machine.ensure_admin_transition("cancel", status)

    assert exc_info.value.code == "INVALID_STATUS_TRANSITION"
    assert exc_info.value.message == message


@pytest.mark.parametrize(
    "status",
    [DocumentStatus.NEW, DocumentStatus.DRAFT_PREVIEW, DocumentStatus.DISTRIBUTED, DocumentStatus.PARTIALLY_SIGNED],
)
def test_cancel_allowed(status: DocumentStatus) -> None:
    state_machine.ensure_admin_transition("cancel", status)


def test_approve_and_resend_sources() -> None:
    state_machine.ensure_admin_transition("approve", DocumentStatus.DRAFT_PREVIEW)
    state_machine.ensure_admin_transition("resend", DocumentStatus.OPENED)

    with pytest.raises(EsignError) as exc_info:
        state_machine.ensure_admin_transition("approve", DocumentStatus.DISTRIBUTED)
    assert exc_info.value.message == "Only documents in draft_preview can be approved"
    with pytest.raises(EsignError) as exc_info:
        state_machine.ensure_admin_transition("remind", DocumentStatus.COMPLETED)
    assert exc_info.value.message == "Cannot remind completed document"
    with pytest.raises(ValueError):
        state_machine.ensure_admin_transition("archive", DocumentStatus.OPENED)


def test_unauthorized_fields_follow_assignment() -> None:
    snapshot = TemplateSnapshot.model_validate(
        {
            "template_id": uuid4(),
            "name": "Contract",
            "captured_at": datetime.utcnow(),
            "signature_type": "hierarchy",
            "delimiters": [
                {"key": "buyer_name", "type": "text"},
                {"key": "buyer_phone", "type": "phone", "assigned_to": 1},
                {"key": "manager_note", "type": "text", "assigned_to": 2},
            ],
            "recipients": [{"signature_order": 1}, {"signature_order": 2}],
        }
    )

    assert state_machine.unauthorized_fields(snapshot, 1, ["buyer_phone"]) == []
    assert state_machine.unauthorized_fields(snapshot, 1, ["manager_note", "buyer_name", "buyer_phone"]) == [
        "buyer_name",
        "manager_note",
    ]
