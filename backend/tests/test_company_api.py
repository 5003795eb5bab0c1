import json

from fastapi import status
from fastapi.testclient import TestClient
from sqlmodel import Session

from esign.core.config import settings
from esign.models.api_key import ApiScope
from esign.models.company import Company
from tests.conftest import create_api_key, hierarchy_payload, template_payload, token_from_url

API = f"{settings.api_v1_str}/esign"
SIGNATURE = "data:image/png;base64,iVBORw0KGgoAAAANSUhEUgAAAAEAAAABCAYAAAAfFcSJAAAADUlEQVR42mP8z8BQDwAEhQGAhKmMIQAAAABJRU5ErkJggg=="


def _headers(session: Session, company: Company, scopes=None) -> dict[str, str]:  # type: ignore[no-untyped-def]
    return {"x-api-key": create_api_key(session, company, scopes)}


def _initiate_body(template, **overrides):  # type: ignore[no-untyped-def]
    body = {
        "template_id": str(template.id),
        "payload": {"buyer_name": "Ana Souza", "vehicle": "2021 Hatchback"},
        "recipients": [{"email": "buyer@example.com", "name": "Ana Souza", "signature_order": 1}],
    }
    body.update(overrides)
    return body


def test_api_key_is_required(client: TestClient, make_template) -> None:
    template = make_template()

    missing = client.post(f"{API}/documents/initiate", json=_initiate_body(template))
    invalid = client.post(
        f"{API}/documents/initiate", json=_initiate_body(template), headers={"x-api-key": "esk_nothing_here"}
    )

    assert missing.status_code == status.HTTP_401_UNAUTHORIZED
    assert missing.json()["detail"]["code"] == "API_KEY_MISSING"
    assert invalid.status_code == status.HTTP_401_UNAUTHORIZED
    assert invalid.json()["detail"]["code"] == "API_KEY_INVALID"


def test_scope_is_enforced(client: TestClient, db_session: Session, company: Company, make_template) -> None:
    headers = _headers(db_session, company, [ApiScope.ESIGN_STATUS])

    response = client.post(f"{API}/documents/initiate", json=_initiate_body(make_template()), headers=headers)

    assert response.status_code == status.HTTP_403_FORBIDDEN
    detail = response.json()["detail"]
    assert detail["code"] == "INSUFFICIENT_SCOPE"
    assert detail["required_scopes"] == ["esign:create"]


def test_initiate_status_and_cancel(client: TestClient, db_session: Session, company: Company, make_template) -> None:
    headers = _headers(db_session, company)

    created = client.post(f"{API}/documents/initiate", json=_initiate_body(make_template()), headers=headers)

    assert created.status_code == status.HTTP_201_CREATED, created.json()
    body = created.json()
    assert body["status"] == "distributed"
    assert body["recipients"][0]["signing_url"].startswith(f"{settings.resolved_public_app_url()}/sign/")
    document_id = body["document_id"]

    status_response = client.get(f"{API}/documents/{document_id}/status", headers=headers)
    assert status_response.status_code == status.HTTP_200_OK
    assert status_response.json()["recipients"][0]["status"] == "active"
    assert status_response.json()["pdf_url"] is None

    cancelled = client.post(f"{API}/documents/{document_id}/cancel", json={"reason": "Customer gave up"}, headers=headers)
    assert cancelled.status_code == status.HTTP_200_OK
    assert cancelled.json()["status"] == "cancelled"

    again = client.post(f"{API}/documents/{document_id}/cancel", headers=headers)
    assert again.status_code == status.HTTP_400_BAD_REQUEST
    assert again.json()["detail"] == {
        "code": "INVALID_STATUS_TRANSITION",
        "message": "Document already terminated",
        "reason": "Document already terminated",
    }


def test_initiate_validation_errors(client: TestClient, db_session: Session, company: Company, make_template) -> None:
    headers = _headers(db_session, company)

    response = client.post(
        f"{API}/documents/initiate", json=_initiate_body(make_template(), payload={}), headers=headers
    )

    assert response.status_code == status.HTTP_400_BAD_REQUEST
    detail = response.json()["detail"]
    assert detail["code"] == "VALIDATION_ERROR"
    assert detail["missing_delimiters"] == ["buyer_name"]


def test_idempotency_key_header(client: TestClient, db_session: Session, company: Company, make_template) -> None:
    headers = {**_headers(db_session, company), "Idempotency-Key": "deal-2024-0001"}
    body = _initiate_body(make_template())

    first = client.post(f"{API}/documents/initiate", json=body, headers=headers)
    second = client.post(f"{API}/documents/initiate", json=body, headers=headers)

    assert first.json()["document_id"] == second.json()["document_id"]


def test_documents_of_other_companies_are_hidden(
    client: TestClient, db_session: Session, company: Company, make_template
) -> None:
    headers = _headers(db_session, company)
    document_id = client.post(
        f"{API}/documents/initiate", json=_initiate_body(make_template()), headers=headers
    ).json()["document_id"]
    other = Company(name="Rival Motors", slug="rival-motors")
    db_session.add(other)
    db_session.commit()

    response = client.get(f"{API}/documents/{document_id}/status", headers=_headers(db_session, other))

    assert response.status_code == status.HTTP_404_NOT_FOUND
    assert response.json()["detail"]["code"] == "DOCUMENT_NOT_FOUND"


def test_template_schema(client: TestClient, db_session: Session, company: Company, make_template) -> None:
    template = make_template(hierarchy_payload())

    response = client.get(f"{API}/templates/{template.id}/schema", headers=_headers(db_session, company))

    assert response.status_code == status.HTTP_200_OK
    body = response.json()
    assert body["signature_type"] == "hierarchy"
    assert [item["key"] for item in body["delimiters"]] == ["buyer_name", "vehicle", "buyer_phone", "manager_note"]
    assert body["payload_example"]["buyer_phone"] == "+1234567890"
    assert [item["signature_order"] for item in body["recipients"]] == [1, 2]


def test_signed_document_download(client: TestClient, db_session: Session, company: Company, make_template) -> None:
    headers = _headers(db_session, company)
    body = client.post(f"{API}/documents/initiate", json=_initiate_body(make_template()), headers=headers).json()
    token = token_from_url(body["recipients"][0]["signing_url"])

    early = client.get(f"{API}/documents/{body['document_id']}/download", headers=headers)
    assert early.status_code == status.HTTP_400_BAD_REQUEST
    assert early.json()["detail"]["code"] == "DOCUMENT_NOT_COMPLETED"

    submitted = client.post(
        f"/sign/{token}/submit",
        json={"signature_image": SIGNATURE, "signature_type": "drawn", "intent_confirmation": True},
    )
    assert submitted.status_code == status.HTTP_200_OK, submitted.json()

    status_body = client.get(f"{API}/documents/{body['document_id']}/status", headers=headers).json()
    assert status_body["status"] == "completed"
    assert status_body["pdf_url"].endswith(f"/esign/documents/{body['document_id']}/download")
    assert status_body["certificate_url"].endswith("?artifact=certificate")

    pdf = client.get(f"{API}/documents/{body['document_id']}/download", headers=headers)
    assert pdf.status_code == status.HTTP_200_OK
    assert pdf.headers["content-type"] == "application/pdf"
    assert pdf.content.startswith(b"%PDF")
    certificate = client.get(
        f"{API}/documents/{body['document_id']}/download", params={"artifact": "certificate"}, headers=headers
    )
    assert certificate.status_code == status.HTTP_200_OK


def test_bulk_initiate(client: TestClient, db_session: Session, company: Company, make_template) -> None:
    headers = _headers(db_session, company)
    template = make_template(template_payload())
    csv_content = (
        "customer,email,car\n"
        "Ana Souza,ana@example.com,Hatchback\n"
        "Bruno Lima,not-an-email,Sedan\n"
        ",carla@example.com,Pickup\n"
    )

    created = client.post(
        f"{API}/bulk/initiate",
        headers=headers,
        data={
            "template_id": str(template.id),
            "column_mapping": json.dumps(
                {
                    "customer": "buyer_name",
                    "car": "vehicle",
                    "email": "recipients.1.email",
                }
            ),
        },
        files={"file": ("deals.csv", csv_content.encode(), "text/csv")},
    )

    assert created.status_code == status.HTTP_202_ACCEPTED, created.json()
    assert created.json()["total_items"] == 3
    job_id = created.json()["job_id"]

    job = client.get(f"{API}/bulk/{job_id}/status", headers=headers).json()
    assert job["status"] == "completed"
    assert (job["success_count"], job["failure_count"], job["progress_percentage"]) == (1, 2, 100)
    assert [item["row_number"] for item in job["errors"]] == [2, 3]
    assert "buyer_name" in job["errors"][1]["error_message"]
    assert job["items"][0]["document_id"] is not None


def test_bulk_initiate_rejects_bad_mapping(client: TestClient, db_session: Session, company: Company, make_template) -> None:
    response = client.post(
        f"{API}/bulk/initiate",
        headers=_headers(db_session, company),
        data={"template_id": str(make_template().id), "column_mapping": json.dumps({"missing": "buyer_name"})},
        files={"file": ("deals.csv", b"customer\nAna\n", "text/csv")},
    )

    assert response.status_code == status.HTTP_400_BAD_REQUEST
    assert response.json()["detail"]["missing_columns"] == ["missing"]
