from datetime import datetime
from types import SimpleNamespace

import smtplib

import httpx
import pytest

from esign.services import notification as notification_module
from esign.services.notification import NotificationService


class FakeSMTP:
    def __init__(self, host, port, timeout=None):  # noqa: D401
        self.host = host
        self.port = port
        self.timeout = timeout
        self.started_tls = False
        self.logged_in = None
        self.sent_messages = []

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        return False

    def starttls(self):
        self.started_tls = True

    def login(self, username, password):
        self.logged_in = (username, password)

    def send_message(self, message):
        self.sent_messages.append(message)


class FlakySMTP(FakeSMTP):
    failures = 0

    def send_message(self, message):
        if FlakySMTP.failures > 0:
            FlakySMTP.failures -= 1
            raise smtplib.SMTPServerDisconnected("connection dropped")
        super().send_message(message)


class AuditStub:
    def __init__(self):
        self.events = []

    def record(self, event_type, *, action, company_id=None, document_id=None, details=None, **kwargs):
        self.events.append({"event_type": event_type, "document_id": document_id, "details": details or {}})

    def types(self):
        return [event["event_type"] for event in self.events]


class FakeTwilioClient:
    instances = []

    def __init__(self, *args, **kwargs):
        self.messages = self
        self.sent = []
        FakeTwilioClient.instances.append(self)

    def create(self, **kwargs):
        self.sent.append(kwargs)


def _document(**overrides):
    data = {
        "id": "doc-1",
        "company_id": "company-1",
        "template_snapshot": {"name": "Vehicle sale contract"},
        "expires_at": datetime(2024, 5, 1, 12, 0),
        "error_reason": None,
    }
    data.update(overrides)
    return SimpleNamespace(**data)


def _recipient(**overrides):
    data = {"email": "buyer@example.com", "name": "Ana Souza", "phone": None, "delegated_from": None}
    data.update(overrides)
    return SimpleNamespace(**data)


def _smtp_service(monkeypatch, fake, audit=None, **kwargs):
    monkeypatch.setattr(smtplib, "SMTP", lambda host, port, timeout=None: fake)
    service = NotificationService(audit_service=audit, sleep=lambda _: None, **kwargs)
    service.configure_email(
        host="smtp.example.com",
        port=587,
        sender="Prime Motors <esign@example.com>",
        username="user",
        password="pass",
        starttls=True,
    )
    return service


def test_signing_request_email(monkeypatch):
    fake = FakeSMTP("smtp.example.com", 587, timeout=10)
    audit = AuditStub()
    service = _smtp_service(monkeypatch, fake, audit)

    result = service.notify_signing_request(_document(), _recipient(), "https://sign.example.com/sign/token123")

    assert result is True
    assert fake.started_tls is True
    assert fake.logged_in == ("user", "pass")
    message = fake.sent_messages[0]
    assert message["Subject"] == "Please sign: Vehicle sale contract"
    assert message["To"] == "buyer@example.com"
    html_content = message.get_body(preferencelist=("html",)).get_content()
    text_content = message.get_body(preferencelist=("plain",)).get_content()
    assert "https://sign.example.com/sign/token123" in html_content
    assert "Deadline: 2024-05-01 12:00 UTC" in text_content
    assert audit.types() == ["notification.sent"]
    assert audit.events[0]["details"]["kind"] == "request"


@pytest.mark.parametrize(
    ("kind", "subject", "fragment"),
    [
        ("reminder", "Reminder: Vehicle sale contract is waiting for your signature", "still waiting"),
        ("next_signer", "Your turn to sign: Vehicle sale contract", "now your turn"),
        ("delegated", "Vehicle sale contract was delegated to you for signature", "by buyer@example.com"),
    ],
)
def test_signing_request_kinds(monkeypatch, kind, subject, fragment):
    fake = FakeSMTP("smtp.example.com", 587)
    service = _smtp_service(monkeypatch, fake)

    service.notify_signing_request(
        _document(),
        _recipient(email="cousin@example.com", delegated_from="buyer@example.com"),
        "https://sign.example.com/sign/abc",
        kind=kind,
    )

    message = fake.sent_messages[0]
    assert message["Subject"] == subject
    assert fragment in message.get_body(preferencelist=("html",)).get_content()


def test_missing_sender_is_audited_as_skipped():
    audit = AuditStub()
    service = NotificationService(audit_service=audit)

    assert service.notify_signing_request(_document(), _recipient(), "https://sign.example.com/sign/x") is False
    assert audit.types() == ["notification.skipped"]
    assert audit.events[0]["details"]["reason"] == "email_sender_missing"


def test_email_retries_with_backoff(monkeypatch):
    fake = FlakySMTP("smtp.example.com", 587)
    FlakySMTP.failures = 2
    delays = []
    audit = AuditStub()
    monkeypatch.setattr(smtplib, "SMTP", lambda host, port, timeout=None: fake)
    service = NotificationService(audit_service=audit, max_attempts=3, backoff_seconds=0.5, sleep=delays.append)
    service.configure_email(host="smtp.example.com", port=25, sender="esign@example.com", starttls=False)

    assert service.notify_signing_request(_document(), _recipient(), "https://sign.example.com/sign/x") is True
    assert delays == [0.5, 1.0]
    assert fake.started_tls is False
    assert audit.events[-1]["details"]["attempts"] == 3


def test_email_failure_after_retries_is_audited(monkeypatch):
    fake = FlakySMTP("smtp.example.com", 587)
    FlakySMTP.failures = 5
    audit = AuditStub()
    service = _smtp_service(monkeypatch, fake, audit, max_attempts=2)

    assert service.notify_signing_request(_document(), _recipient(), "https://sign.example.com/sign/x") is False
    assert audit.types() == ["notification.failed"]
    assert "connection dropped" in audit.events[0]["details"]["reason"]


def test_document_event_reaches_recipients_and_cc(monkeypatch):
    fake = FakeSMTP("smtp.example.com", 587)
    service = _smtp_service(monkeypatch, fake)
    document = _document(error_reason="Price changed")

    sent = service.notify_document_event(
        document,
        "rejected",
        recipients=[_recipient(), _recipient(email="Manager@example.com", name="Carl")],
        extra_emails=["manager@example.com", "sales@example.com"],
    )

    assert sent == 3
    assert [message["To"] for message in fake.sent_messages] == [
        "buyer@example.com",
        "manager@example.com",
        "sales@example.com",
    ]
    first = fake.sent_messages[0]
    assert first["Subject"] == "Declined: Vehicle sale contract"
    assert "Reason: Price changed" in first.get_body(preferencelist=("plain",)).get_content()


def test_sms_via_twilio(monkeypatch):
    FakeTwilioClient.instances = []
    monkeypatch.setattr(notification_module, "Client", FakeTwilioClient)
    audit = AuditStub()
    service = NotificationService(audit_service=audit)
    service.configure_sms(account_sid="AC123", auth_token="secret", from_number="+15550001111")

    result = service.notify_signing_request(
        _document(), _recipient(phone="+5511999990000"), "https://sign.example.com/sign/x"
    )

    assert result is True
    sms = FakeTwilioClient.instances[0].sent[0]
    assert sms["to"] == "+5511999990000"
    assert sms["from_"] == "+15550001111"
    assert "https://sign.example.com/sign/x" in sms["body"]
    assert audit.types() == ["notification.skipped", "notification.sent"]


def test_sendgrid_backend(monkeypatch):
    calls = []

    def fake_post(url, headers=None, json=None, timeout=None):
        calls.append({"url": url, "headers": headers, "json": json})
        return httpx.Response(202, request=httpx.Request("POST", url))

    monkeypatch.setattr(httpx, "post", fake_post)
    service = NotificationService()
    service.apply_email_settings(
        SimpleNamespace(
            email_backend="sendgrid",
            smtp_sender="Prime Motors <esign@example.com>",
            sendgrid_api_key="SG.key",
            smtp_host=None,
            smtp_port=None,
        )
    )

    assert service.notify_signing_request(_document(), _recipient(), "https://sign.example.com/sign/x") is True
    payload = calls[0]["json"]
    assert calls[0]["headers"]["Authorization"] == "Bearer SG.key"
    assert payload["from"] == {"email": "esign@example.com", "name": "Prime Motors"}
    assert payload["personalizations"] == [{"to": [{"email": "buyer@example.com"}]}]


def test_send_otp_raises_when_no_channel_delivers():
    service = NotificationService()

    with pytest.raises(RuntimeError) as exc_info:
        service.send_otp("buyer@example.com", None, "123456", "both", 10)

    assert "E-mail sender not configured" in str(exc_info.value)
    assert "SMS sender not configured" in str(exc_info.value)


def test_send_otp_email(monkeypatch):
    fake = FakeSMTP("smtp.example.com", 587)
    service = _smtp_service(monkeypatch, fake)

    service.send_otp("buyer@example.com", None, "654321", "email", 10)

    message = fake.sent_messages[0]
    assert message["Subject"] == "Your signing verification code"
    assert "654321" in message.get_body(preferencelist=("plain",)).get_content()
