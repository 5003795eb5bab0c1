import io
import uuid
import zipfile

from fastapi import status
from fastapi.testclient import TestClient
from sqlmodel import Session

from esign.core.config import settings
from esign.models.company import Company, User, UserRole
from esign.utils.security import get_password_hash
from tests.conftest import ADMIN_PASSWORD, CONTRACT_HTML, create_api_key, login, template_payload, token_from_url

ADMIN_API = f"{settings.api_v1_str}/admin/esign"
COMPANY_API = f"{settings.api_v1_str}/esign"
SIGNATURE = "data:image/png;base64,iVBORw0KGgoAAAANSUhEUgAAAAEAAAABCAYAAAAfFcSJAAAADUlEQVR42mP8z8BQDwAEhQGAhKmMIQAAAABJRU5ErkJggg=="


def _template_body(**overrides):  # type: ignore[no-untyped-def]
    body = {
        "name": "Trade-in agreement",
        "status": "active",
        "html_content": CONTRACT_HTML,
        "delimiters": [{"key": "buyer_name", "type": "text", "required": True}],
        "recipients": [{"signature_order": 1, "label": "Buyer"}],
    }
    body.update(overrides)
    return body


def _initiate(client: TestClient, session: Session, company: Company, template) -> dict:  # type: ignore[no-untyped-def]
    response = client.post(
        f"{COMPANY_API}/documents/initiate",
        json={
            "template_id": str(template.id),
            "payload": {"buyer_name": "Ana Souza"},
            "recipients": [{"email": "buyer@example.com", "name": "Ana Souza", "signature_order": 1}],
        },
        headers={"x-api-key": create_api_key(session, company)},
    )
    assert response.status_code == status.HTTP_201_CREATED, response.json()
    return response.json()


def _completed_document(client: TestClient, session: Session, company: Company, make_template) -> str:  # type: ignore[no-untyped-def]
    document = _initiate(client, session, company, make_template())
    token = token_from_url(document["recipients"][0]["signing_url"])
    submitted = client.post(
        f"/sign/{token}/submit",
        json={"signature_image": SIGNATURE, "signature_type": "drawn", "intent_confirmation": True},
    )
    assert submitted.status_code == status.HTTP_200_OK, submitted.json()
    return document["document_id"]


def test_health(client: TestClient) -> None:
    assert client.get("/health").json() == {"status": "ok", "database": "ok"}
    assert client.get("/health/live").json() == {"status": "ok"}


def test_login_rejects_bad_password(client: TestClient, admin_user: User) -> None:
    response = client.post(
        f"{settings.api_v1_str}/auth/login",
        json={"email": admin_user.email, "password": "wrong-password"},
    )

    assert response.status_code == status.HTTP_401_UNAUTHORIZED
    assert response.json()["detail"] == "Invalid credentials"


def test_admin_routes_require_a_token(client: TestClient) -> None:
    response = client.get(f"{ADMIN_API}/documents")

    assert response.status_code == status.HTTP_401_UNAUTHORIZED


def test_template_management(client: TestClient, admin_user: User) -> None:
    headers = login(client, admin_user)

    created = client.post(f"{ADMIN_API}/templates", json=_template_body(status="draft"), headers=headers)
    assert created.status_code == status.HTTP_201_CREATED, created.json()
    template_id = created.json()["id"]
    assert created.json()["status"] == "draft"
    assert created.json()["link_expiry"] == {"value": 7, "unit": "days"}

    updated = client.put(
        f"{ADMIN_API}/templates/{template_id}",
        json={"name": "Trade-in agreement v2", "short_link_enabled": True},
        headers=headers,
    )
    assert updated.status_code == status.HTTP_200_OK
    assert updated.json()["name"] == "Trade-in agreement v2"
    assert updated.json()["short_link_enabled"] is True

    activated = client.post(f"{ADMIN_API}/templates/{template_id}/status", json={"status": "active"}, headers=headers)
    assert activated.json()["status"] == "active"

    listed = client.get(f"{ADMIN_API}/templates", params={"status": "active"}, headers=headers)
    assert [item["id"] for item in listed.json()] == [template_id]
    assert client.get(f"{ADMIN_API}/templates", params={"status": "archived"}, headers=headers).json() == []

    fetched = client.get(f"{ADMIN_API}/templates/{template_id}", headers=headers)
    assert fetched.json()["delimiters"][0]["key"] == "buyer_name"

    missing = client.get(f"{ADMIN_API}/templates/{uuid.uuid4()}", headers=headers)
    assert missing.status_code == status.HTTP_404_NOT_FOUND
    assert missing.json()["detail"]["code"] == "TEMPLATE_NOT_FOUND"


def test_template_validation(client: TestClient, admin_user: User) -> None:
    headers = login(client, admin_user)

    response = client.post(
        f"{ADMIN_API}/templates",
        json=_template_body(
            recipients=[{"signature_order": 1, "label": "Buyer"}, {"signature_order": 2, "label": "Manager"}]
        ),
        headers=headers,
    )

    assert response.status_code == status.HTTP_422_UNPROCESSABLE_ENTITY


def test_api_key_lifecycle(client: TestClient, admin_user: User) -> None:
    headers = login(client, admin_user)

    created = client.post(
        f"{ADMIN_API}/api-keys",
        json={"name": "DMS integration", "scopes": ["esign:status"]},
        headers=headers,
    )
    assert created.status_code == status.HTTP_201_CREATED, created.json()
    body = created.json()
    raw_key = body["api_key"]
    assert raw_key.startswith(f"esk_{body['key_prefix']}_")
    assert body["scopes"] == ["esign:status"]

    listed = client.get(f"{ADMIN_API}/api-keys", headers=headers).json()
    assert [item["id"] for item in listed] == [body["id"]]
    assert "api_key" not in listed[0]

    status_url = f"{COMPANY_API}/documents/{uuid.uuid4()}/status"
    before = client.get(status_url, headers={"x-api-key": raw_key})
    assert before.json()["detail"]["code"] == "DOCUMENT_NOT_FOUND"

    revoked = client.delete(f"{ADMIN_API}/api-keys/{body['id']}", headers=headers)
    assert revoked.json()["is_active"] is False

    after = client.get(status_url, headers={"x-api-key": raw_key})
    assert after.status_code == status.HTTP_401_UNAUTHORIZED
    assert after.json()["detail"]["code"] == "API_KEY_INVALID"


def test_document_listing_and_detail(
    client: TestClient, db_session: Session, company: Company, admin_user: User, make_template
) -> None:
    headers = login(client, admin_user)
    first = _initiate(client, db_session, company, make_template())
    second = _initiate(client, db_session, company, make_template())
    client.post(f"{ADMIN_API}/documents/{second['document_id']}/cancel", json={"reason": "Duplicate"}, headers=headers)

    listed = client.get(f"{ADMIN_API}/documents", headers=headers).json()
    distributed = client.get(f"{ADMIN_API}/documents", params={"status": "distributed"}, headers=headers).json()
    detail = client.get(f"{ADMIN_API}/documents/{first['document_id']}", headers=headers).json()

    assert listed["total"] == 2
    assert [item["id"] for item in distributed["items"]] == [first["document_id"]]
    assert detail["payload"]["buyer_name"] == "Ana Souza"
    assert detail["template_snapshot"]["name"] == "Vehicle sale contract"
    assert detail["recipients"][0]["email"] == "buyer@example.com"
    assert detail["recipients"][0]["status"] == "active"


def test_preview_approve_and_reject(
    client: TestClient, db_session: Session, company: Company, admin_user: User, make_template
) -> None:
    headers = login(client, admin_user)
    template = make_template(template_payload(preview_mode=True))
    approved_doc = _initiate(client, db_session, company, template)
    rejected_doc = _initiate(client, db_session, company, template)

    approved = client.post(f"{ADMIN_API}/documents/{approved_doc['document_id']}/approve", headers=headers)
    missing_reason = client.post(f"{ADMIN_API}/documents/{rejected_doc['document_id']}/reject", json={}, headers=headers)
    rejected = client.post(
        f"{ADMIN_API}/documents/{rejected_doc['document_id']}/reject",
        json={"reason": "Wrong vehicle"},
        headers=headers,
    )
    approve_again = client.post(f"{ADMIN_API}/documents/{approved_doc['document_id']}/approve", headers=headers)

    assert approved.status_code == status.HTTP_200_OK, approved.json()
    assert approved.json()["status"] == "distributed"
    assert missing_reason.status_code == status.HTTP_422_UNPROCESSABLE_ENTITY
    assert rejected.json()["status"] == "cancelled"
    rejected_detail = client.get(f"{ADMIN_API}/documents/{rejected_doc['document_id']}", headers=headers).json()
    assert rejected_detail["error_reason"] == "Wrong vehicle"
    assert approve_again.status_code == status.HTTP_400_BAD_REQUEST
    assert approve_again.json()["detail"]["code"] == "INVALID_STATUS_TRANSITION"


def test_resend_remind_and_delete(
    client: TestClient, db_session: Session, company: Company, admin_user: User, make_template
) -> None:
    headers = login(client, admin_user)
    document = _initiate(client, db_session, company, make_template())
    document_id = document["document_id"]
    old_token = token_from_url(document["recipients"][0]["signing_url"])

    resent = client.post(f"{ADMIN_API}/documents/{document_id}/resend", headers=headers)
    reminded = client.post(f"{ADMIN_API}/documents/{document_id}/remind", headers=headers)

    assert resent.json()["message"] == "Signing link re-sent to 1 recipient(s)"
    assert reminded.json()["message"] == "Reminder sent to 1 recipient(s)"
    assert client.get(f"/sign/{old_token}").status_code == status.HTTP_401_UNAUTHORIZED

    deleted = client.delete(f"{ADMIN_API}/documents/{document_id}", headers=headers)
    assert deleted.json()["message"] == "Document deleted"
    assert client.get(f"{ADMIN_API}/documents/{document_id}", headers=headers).status_code == status.HTTP_404_NOT_FOUND
    assert client.get(f"{ADMIN_API}/documents", headers=headers).json()["total"] == 0


def test_bulk_actions(
    client: TestClient, db_session: Session, company: Company, admin_user: User, make_template
) -> None:
    headers = login(client, admin_user)
    template = make_template()
    document_ids = [_initiate(client, db_session, company, template)["document_id"] for _ in range(2)]
    unknown = str(uuid.uuid4())

    response = client.post(
        f"{ADMIN_API}/documents/bulk",
        json={"action": "cancel", "document_ids": [*document_ids, unknown], "reason": "Batch closed"},
        headers=headers,
    )

    assert response.status_code == status.HTTP_200_OK
    body = response.json()
    assert (body["total"], body["succeeded"], body["failed"]) == (3, 2, 1)
    assert body["errors"] == [{"document_id": unknown, "error": "Document not found"}]


def test_timeline_evidence_and_download(
    client: TestClient, db_session: Session, company: Company, admin_user: User, make_template
) -> None:
    headers = login(client, admin_user)
    document_id = _completed_document(client, db_session, company, make_template)

    timeline = client.get(f"{ADMIN_API}/documents/{document_id}/timeline", headers=headers).json()
    assert timeline["status"] == "completed"
    assert timeline["audit_chain_valid"] is True
    assert "document.completed" in [event["event_type"] for event in timeline["events"]]

    package = client.get(f"{ADMIN_API}/documents/{document_id}/evidence-package", headers=headers)
    assert package.headers["content-type"] == "application/zip"
    with zipfile.ZipFile(io.BytesIO(package.content)) as archive:
        assert "manifest.json" in archive.namelist()

    pdf = client.get(f"{ADMIN_API}/documents/{document_id}/download", headers=headers)
    assert pdf.content.startswith(b"%PDF")
    bad_artifact = client.get(f"{ADMIN_API}/documents/{document_id}/download", params={"artifact": "zip"}, headers=headers)
    assert bad_artifact.status_code == status.HTTP_422_UNPROCESSABLE_ENTITY

    stored = client.post(f"{ADMIN_API}/documents/{document_id}/verify", headers=headers).json()
    uploaded = client.post(
        f"{ADMIN_API}/documents/{document_id}/verify",
        files={"file": ("signed.pdf", pdf.content, "application/pdf")},
        headers=headers,
    ).json()
    forged = client.post(
        f"{ADMIN_API}/documents/{document_id}/verify",
        files={"file": ("signed.pdf", b"%PDF-forged", "application/pdf")},
        headers=headers,
    ).json()
    assert stored["hash_matches"] is True
    assert uploaded["hash_matches"] is True
    assert forged["hash_matches"] is False


def test_audit_log_listing(
    client: TestClient, db_session: Session, company: Company, admin_user: User, make_template
) -> None:
    headers = login(client, admin_user)
    document = _initiate(client, db_session, company, make_template())
    client.post(f"{ADMIN_API}/documents/{document['document_id']}/cancel", headers=headers)

    everything = client.get(f"{ADMIN_API}/audit", params={"document_id": document["document_id"]}, headers=headers)
    cancellations = client.get(f"{ADMIN_API}/audit", params={"event_type": "document.cancelled"}, headers=headers)

    assert everything.status_code == status.HTTP_200_OK
    event_types = [item["event_type"] for item in everything.json()["items"]]
    assert "document.created" in event_types
    assert "document.cancelled" in event_types
    assert cancellations.json()["total"] == 1
    assert cancellations.json()["items"][0]["actor_email"] == admin_user.email


def test_member_cannot_mutate(
    client: TestClient, db_session: Session, company: Company, make_template
) -> None:
    member = User(
        company_id=company.id,
        email=f"member_{uuid.uuid4().hex[:6]}@example.com",
        full_name="Sales Rep",
        password_hash=get_password_hash(ADMIN_PASSWORD),
        role=UserRole.MEMBER.value,
    )
    db_session.add(member)
    db_session.commit()
    headers = login(client, member)
    document = _initiate(client, db_session, company, make_template())

    readable = client.get(f"{ADMIN_API}/documents/{document['document_id']}", headers=headers)
    cancel = client.post(f"{ADMIN_API}/documents/{document['document_id']}/cancel", headers=headers)
    key = client.post(f"{ADMIN_API}/api-keys", json={"name": "Sneaky"}, headers=headers)

    assert readable.status_code == status.HTTP_200_OK
    assert cancel.status_code == status.HTTP_403_FORBIDDEN
    assert cancel.json()["detail"] == "Insufficient permissions"
    assert key.status_code == status.HTTP_403_FORBIDDEN
