import hashlib
import io
import json
import zipfile

import pytest
from sqlmodel import Session

from esign.core.errors import EsignError
from esign.models.audit import ActorType
from esign.models.company import Company
from esign.models.document import DocumentStatus, EsignDocument
from esign.schemas.audit import AuditActor
from esign.schemas.document import InitiateRequest
from esign.services.audit import AuditService
from esign.services.evidence import EvidenceService
from esign.services.lock import LockService, LockUnavailable
from esign.services.post_signature import PostSignatureService
from esign.services.timeline import TimelineService
from tests.conftest import ServiceBundle, template_payload, token_from_url

ADMIN = AuditActor(type=ActorType.USER, id="admin-1")
SIGNATURE = "data:image/png;base64,iVBORw0KGgoAAAANSUhEUgAAAAEAAAABCAYAAAAfFcSJAAAADUlEQVR42mP8z8BQDwAEhQGAhKmMIQAAAABJRU5ErkJggg=="


class BrokenStorage:
    def save_bytes(self, *, root, name, data):  # type: ignore[no-untyped-def]
        raise OSError("disk full")

    def load_bytes(self, path):  # type: ignore[no-untyped-def]
        raise FileNotFoundError(path)


def _signed_document(services: ServiceBundle, company: Company, template, callback_url=None):  # type: ignore[no-untyped-def]
    response = services.documents.initiate(
        company.id,
        InitiateRequest(
            template_id=template.id,
            payload={"buyer_name": "Ana Souza", "vehicle": "2021 Hatchback"},
            recipients=[{"email": "buyer@example.com", "name": "Ana Souza", "signature_order": 1}],
            callback_url=callback_url,
        ),
        actor=ADMIN,
    )
    services.signing.submit_signature(
        token_from_url(response.recipients[0].signing_url),
        signature_image=SIGNATURE,
        signature_type="drawn",
        intent_confirmation=True,
        ip_address="203.0.113.7",
        user_agent="pytest",
    )
    return response.document_id


def _post_signature(db_session: Session, services: ServiceBundle, **kwargs) -> PostSignatureService:  # type: ignore[no-untyped-def]
    return PostSignatureService(
        db_session,
        notification_service=services.notifier,  # type: ignore[arg-type]
        callback_dispatcher=services.callbacks,
        **kwargs,
    )


def test_completion_stores_pdf_and_certificate(
    db_session: Session, company: Company, make_template, services: ServiceBundle
) -> None:
    document_id = _signed_document(
        services, company, make_template(template_payload(notification_config={"cc_emails": ["sales@example.com"]})),
        callback_url="https://dms.example.com/hooks",
    )

    assert _post_signature(db_session, services).complete(document_id) is True

    document = db_session.get(EsignDocument, document_id)
    assert document.status == DocumentStatus.COMPLETED
    assert document.completed_at is not None
    evidence = EvidenceService(db_session)
    pdf, filename = evidence.load_artifact(company.id, document_id)
    assert pdf.startswith(b"%PDF")
    assert filename == f"{document_id}-signed.pdf"
    assert hashlib.sha256(pdf).hexdigest() == document.pdf_hash
    certificate, _ = evidence.load_artifact(company.id, document_id, "certificate")
    assert certificate.startswith(b"%PDF")
    assert services.notifier.events == [
        {"event": "completed", "emails": ["buyer@example.com"], "extra": ["sales@example.com"]}
    ]
    assert services.callbacks.calls == [(document_id, "document.completed")]

    # already completed: nothing is redone
    assert _post_signature(db_session, services).complete(document_id) is True
    assert len(services.callbacks.calls) == 1


def test_completion_skips_documents_not_signed(
    db_session: Session, company: Company, make_template, services: ServiceBundle
) -> None:
    response = services.documents.initiate(
        company.id,
        InitiateRequest(
            template_id=make_template().id,
            payload={"buyer_name": "Ana Souza"},
            recipients=[{"email": "buyer@example.com", "name": "Ana Souza", "signature_order": 1}],
        ),
        actor=ADMIN,
    )

    assert _post_signature(db_session, services).complete(response.document_id) is False
    assert db_session.get(EsignDocument, response.document_id).status == DocumentStatus.DISTRIBUTED


def test_completion_failure_keeps_document_signed(
    db_session: Session, company: Company, make_template, services: ServiceBundle
) -> None:
    document_id = _signed_document(services, company, make_template())

    assert _post_signature(db_session, services, storage=BrokenStorage()).complete(document_id) is False

    assert db_session.get(EsignDocument, document_id).status == DocumentStatus.SIGNED
    trail = AuditService(db_session).document_trail(document_id)
    assert trail[-1].event_type == "document.completion_failed"
    assert trail[-1].details["error"] == "disk full"

    # the retry job picks it up once storage works again
    assert _post_signature(db_session, services).retry_pending_completions() == 1
    assert db_session.get(EsignDocument, document_id).status == DocumentStatus.COMPLETED


def test_completion_requires_the_document_lock(
    db_session: Session, company: Company, make_template, services: ServiceBundle
) -> None:
    document_id = _signed_document(services, company, make_template())
    locks = LockService(max_retries=0)
    service = _post_signature(db_session, services, lock_service=locks)

    with locks.hold(f"document:{document_id}:completion"):
        with pytest.raises(LockUnavailable):
            service.complete(document_id)

    assert service.complete(document_id) is True


def test_artifacts_before_completion(db_session: Session, company: Company, make_template, services: ServiceBundle) -> None:
    document_id = _signed_document(services, company, make_template())

    with pytest.raises(EsignError) as exc_info:
        EvidenceService(db_session).load_artifact(company.id, document_id)

    assert exc_info.value.code == "DOCUMENT_NOT_COMPLETED"


def test_evidence_package_and_verification(
    db_session: Session, company: Company, make_template, services: ServiceBundle
) -> None:
    document_id = _signed_document(services, company, make_template())
    _post_signature(db_session, services).complete(document_id)
    evidence = EvidenceService(db_session)

    package, filename = evidence.build_package(company.id, document_id)

    assert filename == f"evidence-{document_id}.zip"
    with zipfile.ZipFile(io.BytesIO(package)) as archive:
        assert sorted(archive.namelist()) == ["audit_trail.json", "certificate.pdf", "manifest.json", "signed.pdf"]
        manifest = json.loads(archive.read("manifest.json"))
        trail = json.loads(archive.read("audit_trail.json"))
        pdf = archive.read("signed.pdf")
    assert manifest["audit_chain_valid"] is True
    assert manifest["files"]["signed.pdf"] == hashlib.sha256(pdf).hexdigest()
    assert manifest["recipients"][0]["ip_address"] == "203.0.113.7"
    assert trail[-1]["event_type"] == "document.completed"

    stored = evidence.verify(company.id, document_id)
    assert stored.hash_matches is True and stored.audit_chain_valid is True
    assert evidence.verify(company.id, document_id, b"%PDF-forged").hash_matches is False


def test_timeline(db_session: Session, company: Company, make_template, services: ServiceBundle) -> None:
    document_id = _signed_document(services, company, make_template())
    _post_signature(db_session, services).complete(document_id)

    timeline = TimelineService(db_session).build(company.id, document_id)

    assert timeline.status == "completed"
    assert timeline.status_color == "green"
    assert timeline.recipients[0]["color"] == "green"
    assert timeline.audit_chain_valid is True
    by_type = {entry.event_type: entry for entry in timeline.events}
    assert by_type["document.created"].description == "Document created from template Vehicle sale contract"
    assert by_type["document.signed"].icon == "pen-tool"
    assert by_type["document.signed"].description == "Signed by buyer@example.com"
    assert by_type["document.completed"].color == "green"
