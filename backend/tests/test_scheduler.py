from datetime import datetime, timedelta

import pytest
from sqlmodel import Session

from esign.core.errors import EsignError
from esign.models.audit import ActorType
from esign.models.company import Company
from esign.models.document import DocumentStatus, EsignDocument
from esign.schemas.audit import AuditActor
from esign.schemas.document import InitiateRequest
from esign.services.audit import AuditService
from esign.services.scheduler import run_expiry_sweep, run_reminder_sweep, run_scheduled_jobs
from tests.conftest import ServiceBundle, hierarchy_payload, template_payload, token_from_url

ADMIN = AuditActor(type=ActorType.USER, id="admin-1")
BUYER = {"email": "buyer@example.com", "name": "Ana Souza", "signature_order": 1}
MANAGER = {"email": "manager@example.com", "name": "Carl Manager", "signature_order": 2}


def _initiate(services: ServiceBundle, company: Company, template, recipients, callback_url=None):  # type: ignore[no-untyped-def]
    return services.documents.initiate(
        company.id,
        InitiateRequest(
            template_id=template.id,
            payload={"buyer_name": "Ana Souza"},
            recipients=recipients,
            callback_url=callback_url,
        ),
        actor=ADMIN,
    )


def _move_deadline(session: Session, document_id, delta: timedelta) -> None:  # type: ignore[no-untyped-def]
    document = session.get(EsignDocument, document_id)
    document.expires_at = datetime.utcnow() + delta
    session.add(document)
    session.commit()


def test_expiry_sweep(db_session: Session, company: Company, make_template, services: ServiceBundle) -> None:
    template = make_template(hierarchy_payload())
    overdue = _initiate(services, company, template, [BUYER, MANAGER], callback_url="https://dms.example.com/hooks")
    current = _initiate(services, company, template, [BUYER, MANAGER])
    _move_deadline(db_session, overdue.document_id, timedelta(minutes=-5))

    expired = run_expiry_sweep(db_session, services.notifier, services.callbacks)

    assert expired == 1
    assert services.documents.get(company.id, overdue.document_id).status == DocumentStatus.EXPIRED
    assert services.documents.get(company.id, current.document_id).status == DocumentStatus.DISTRIBUTED
    # only signers who already received a link are told
    assert services.notifier.events == [{"event": "expired", "emails": ["buyer@example.com"], "extra": []}]
    assert services.callbacks.calls == [(overdue.document_id, "document.expired")]
    with pytest.raises(EsignError) as exc_info:
        services.signing.access_signing_page(token_from_url(overdue.recipients[0].signing_url))
    assert exc_info.value.code == "INVALID_TOKEN"
    events = [entry.event_type for entry in AuditService(db_session).document_trail(overdue.document_id)]
    assert events[-1] == "document.expired"

    assert run_expiry_sweep(db_session, services.notifier, services.callbacks) == 0


def test_expiry_sweep_leaves_completed_documents(db_session: Session, company: Company, make_template, services: ServiceBundle) -> None:
    response = _initiate(services, company, make_template(), [BUYER])
    document = db_session.get(EsignDocument, response.document_id)
    document.status = DocumentStatus.COMPLETED
    document.expires_at = datetime.utcnow() - timedelta(days=1)
    db_session.add(document)
    db_session.commit()

    assert run_expiry_sweep(db_session) == 0
    assert services.documents.get(company.id, response.document_id).status == DocumentStatus.COMPLETED


def test_reminder_sweep_sends_each_interval_once(
    db_session: Session, company: Company, make_template, services: ServiceBundle
) -> None:
    template = make_template(
        template_payload(notification_config={"reminder_intervals": [{"hours_before_expiry": 24}, {"hours_before_expiry": 2}]})
    )
    response = _initiate(services, company, template, [BUYER])
    expires_at = services.documents.get(company.id, response.document_id).expires_at
    day_before = expires_at - timedelta(hours=24) + timedelta(minutes=3)

    assert run_reminder_sweep(db_session, services.notifier, now=day_before, window_minutes=7.5) == 1
    assert run_reminder_sweep(db_session, services.notifier, now=day_before, window_minutes=7.5) == 0
    assert run_reminder_sweep(db_session, services.notifier, now=expires_at - timedelta(hours=12), window_minutes=7.5) == 0

    assert services.notifier.kinds() == ["request", "reminder"]
    assert services.notifier.signing_requests[1]["url"] == response.recipients[0].signing_url
    assert services.documents.get(company.id, response.document_id).reminders_sent == [24.0]

    assert run_reminder_sweep(db_session, services.notifier, now=expires_at - timedelta(hours=2), window_minutes=7.5) == 1
    assert services.documents.get(company.id, response.document_id).reminders_sent == [24.0, 2.0]


def test_reminder_sweep_skips_pending_hierarchy_signers(
    db_session: Session, company: Company, make_template, services: ServiceBundle
) -> None:
    template = make_template(hierarchy_payload(notification_config={"reminder_intervals": [{"hours_before_expiry": 48}]}))
    response = _initiate(services, company, template, [BUYER, MANAGER])
    expires_at = services.documents.get(company.id, response.document_id).expires_at

    run_reminder_sweep(db_session, services.notifier, now=expires_at - timedelta(hours=48), window_minutes=7.5)

    assert [(item["email"], item["kind"]) for item in services.notifier.signing_requests] == [
        ("buyer@example.com", "request"),
        ("buyer@example.com", "reminder"),
    ]


class PendingCompletions:
    def retry_pending_completions(self) -> int:
        return 3


def test_scheduled_jobs_tick(db_session: Session, company: Company, make_template, services: ServiceBundle) -> None:
    overdue = _initiate(services, company, make_template(), [BUYER])
    _move_deadline(db_session, overdue.document_id, timedelta(hours=-1))

    results = run_scheduled_jobs(
        db_session, services.notifier, services.callbacks, post_signature_service=PendingCompletions()
    )

    assert results == {"expired": 1, "reminded": 0, "completed": 3}
    assert run_scheduled_jobs(db_session)["completed"] == 0
