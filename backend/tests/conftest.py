from __future__ import annotations

import os
import uuid
from typing import Any

import pytest
from fastapi import status
from fastapi.testclient import TestClient
from sqlmodel import Session, SQLModel, create_engine

from esign.core.config import settings
from esign.db import session as db_session_module
from esign.db.session import get_session
from esign.main import app
from esign.models.api_key import ApiScope
from esign.models.company import Company, User, UserRole
from esign.models.template import TemplateStatus
from esign.schemas.api_key import ApiKeyCreate
from esign.schemas.template import TemplateCreate
from esign.services.api_key import ApiKeyService
from esign.services.document import DocumentService
from esign.services.otp import OTPService
from esign.services.signing import SigningService
from esign.services.template import TemplateService
from esign.utils.security import get_password_hash

ADMIN_PASSWORD = "Secret123!"

CONTRACT_HTML = "<h1>Sale contract</h1><p>Buyer: {{buyer_name}}</p><p>Vehicle: {{vehicle}}</p>"


@pytest.fixture()
def db_engine(tmp_path):
    test_database_url = os.getenv("TEST_DATABASE_URL")
    if not test_database_url:
        db_path = tmp_path / f"test_{uuid.uuid4().hex}.db"
        test_database_url = f"sqlite:///{db_path}"
    engine = create_engine(test_database_url, connect_args={"check_same_thread": False})
    SQLModel.metadata.create_all(bind=engine)

    original_engine = db_session_module.engine
    original_get_session = db_session_module.get_session
    db_session_module.engine = engine

    def _get_session():
        with Session(engine) as session:
            yield session

    db_session_module.get_session = _get_session

    def override_dependency():
        yield from _get_session()

    app.dependency_overrides[get_session] = override_dependency

    yield engine

    app.dependency_overrides.pop(get_session, None)
    db_session_module.get_session = original_get_session
    db_session_module.engine = original_engine
    engine.dispose()


@pytest.fixture(autouse=True)
def storage_env(monkeypatch, tmp_path) -> None:
    storage_dir = tmp_path / "storage"
    storage_dir.mkdir(exist_ok=True)
    monkeypatch.setattr(settings, "storage_path", str(storage_dir))
    monkeypatch.setattr(settings, "geolocation_enabled", False)
    yield


@pytest.fixture()
def client(db_engine) -> TestClient:
    return TestClient(app)


@pytest.fixture()
def db_session(db_engine) -> Session:
    with Session(db_engine) as session:
        yield session


@pytest.fixture()
def company(db_session: Session) -> Company:
    company = Company(name="Prime Motors", slug=f"prime-{uuid.uuid4().hex[:6]}")
    db_session.add(company)
    db_session.commit()
    db_session.refresh(company)
    return company


@pytest.fixture()
def admin_user(db_session: Session, company: Company) -> User:
    user = User(
        company_id=company.id,
        email=f"admin_{uuid.uuid4().hex[:6]}@example.com",
        full_name="Dealer Admin",
        password_hash=get_password_hash(ADMIN_PASSWORD),
        role=UserRole.ADMIN.value,
    )
    db_session.add(user)
    db_session.commit()
    db_session.refresh(user)
    return user


class RecordingNotifier:
    """Stands in for NotificationService and keeps every call."""

    def __init__(self) -> None:
        self.signing_requests: list[dict[str, Any]] = []
        self.events: list[dict[str, Any]] = []
        self.otps: list[dict[str, Any]] = []

    def notify_signing_request(self, document, recipient, signing_url, kind="request"):  # type: ignore[no-untyped-def]
        self.signing_requests.append({"email": recipient.email, "url": signing_url, "kind": kind})
        return True

    def notify_document_event(self, document, event, recipients=(), extra_emails=()):  # type: ignore[no-untyped-def]
        self.events.append(
            {
                "event": event,
                "emails": sorted(item.email for item in recipients),
                "extra": list(extra_emails),
            }
        )
        return len(self.events)

    def send_otp(self, email, phone, code, channel, expiry_minutes):  # type: ignore[no-untyped-def]
        self.otps.append({"email": email, "phone": phone, "code": code, "channel": channel})

    def kinds(self) -> list[str]:
        return [item["kind"] for item in self.signing_requests]


class Recorder:
    def __init__(self) -> None:
        self.calls: list[tuple] = []

    def __call__(self, *args) -> None:  # type: ignore[no-untyped-def]
        self.calls.append(args)


def template_payload(**overrides: Any) -> TemplateCreate:
    data: dict[str, Any] = {
        "name": "Vehicle sale contract",
        "status": TemplateStatus.ACTIVE,
        "signature_type": "single",
        "html_content": CONTRACT_HTML,
        "delimiters": [
            {"key": "buyer_name", "type": "text", "required": True},
            {"key": "vehicle", "type": "text", "required": False, "default_value": "Unknown vehicle"},
        ],
        "recipients": [{"signature_order": 1, "label": "Buyer"}],
        "link_expiry": {"value": 7, "unit": "days"},
    }
    data.update(overrides)
    return TemplateCreate.model_validate(data)


def hierarchy_payload(**overrides: Any) -> TemplateCreate:
    data: dict[str, Any] = {
        "signature_type": "hierarchy",
        "delimiters": [
            {"key": "buyer_name", "type": "text", "required": True},
            {"key": "vehicle", "type": "text"},
            {"key": "buyer_phone", "type": "phone", "assigned_to": 1},
            {"key": "manager_note", "type": "text", "assigned_to": 2},
        ],
        "recipients": [
            {"signature_order": 1, "label": "Buyer"},
            {"signature_order": 2, "label": "Sales manager"},
        ],
    }
    data.update(overrides)
    return template_payload(**data)


@pytest.fixture()
def make_template(db_session: Session, company: Company):
    def factory(payload: TemplateCreate | None = None):  # type: ignore[no-untyped-def]
        return TemplateService(db_session).create_template(company.id, payload or template_payload())

    return factory


class ServiceBundle:
    def __init__(self, session: Session) -> None:
        self.notifier = RecordingNotifier()
        self.completions = Recorder()
        self.callbacks = Recorder()
        self.documents = DocumentService(
            session,
            notification_service=self.notifier,  # type: ignore[arg-type]
            callback_dispatcher=self.callbacks,
        )
        self.signing = SigningService(
            session,
            otp_service=OTPService(session, sender=self.notifier.send_otp),
            notification_service=self.notifier,  # type: ignore[arg-type]
            completion_handler=self.completions,
            callback_dispatcher=self.callbacks,
            geolocator=lambda ip: None,
        )


@pytest.fixture()
def services(db_session: Session) -> ServiceBundle:
    return ServiceBundle(db_session)


def token_from_url(url: str) -> str:
    return url.rsplit("/", 1)[-1]


def create_api_key(session: Session, company: Company, scopes: list[ApiScope] | None = None) -> str:
    payload = ApiKeyCreate(name="DMS integration", scopes=scopes if scopes is not None else list(ApiScope))
    _, raw_key = ApiKeyService(session).create_key(company.id, payload)
    return raw_key


def login(client: TestClient, user: User) -> dict[str, str]:
    response = client.post(
        f"{settings.api_v1_str}/auth/login",
        json={"email": user.email, "password": ADMIN_PASSWORD},
    )
    assert response.status_code == status.HTTP_200_OK, response.json()
    return {"Authorization": f"Bearer {response.json()['access_token']}"}
