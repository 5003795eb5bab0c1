from __future__ import annotations

import smtplib
import time
from dataclasses import dataclass
from datetime import datetime
from email.message import EmailMessage
from email.utils import parseaddr
from pathlib import Path
from typing import Callable, Iterable, Optional

import httpx

from jinja2 import Environment, FileSystemLoader, select_autoescape

from esign.core.logging_setup import logger
from esign.schemas.template import TemplateSnapshot
from esign.services.audit import AuditService
from twilio.base.exceptions import TwilioException
from twilio.rest import Client

RETRYABLE_ERRORS = (smtplib.SMTPException, OSError, httpx.HTTPError, TwilioException)

_SUBJECTS = {
    "request": "Please sign: {name}",
    "resend": "Signing link re-sent: {name}",
    "reminder": "Reminder: {name} is waiting for your signature",
    "delegated": "{name} was delegated to you for signature",
    "next_signer": "Your turn to sign: {name}",
    "completed": "Completed: {name}",
    "rejected": "Declined: {name}",
    "cancelled": "Cancelled: {name}",
    "expired": "Expired: {name}",
}

_EVENT_MESSAGES = {
    "completed": "All parties have signed this document. The signed copy is now available.",
    "rejected": "A recipient declined to sign this document. No further signatures will be collected.",
    "cancelled": "The sender cancelled this document. The signing link is no longer valid.",
    "expired": "The signing deadline for this document has passed. The signing link is no longer valid.",
}


@dataclass
class EmailConfig:
    host: str
    port: int
    username: str | None
    password: str | None
    sender: str
    starttls: bool

@dataclass
class SendGridConfig:
    api_key: str
    sender: str | None


@dataclass
class SMSConfig:
    account_sid: str
    auth_token: str
    from_number: str | None
    messaging_service_sid: str | None


def _document_name(document) -> str:  # type: ignore[no-untyped-def]
    snapshot = getattr(document, "template_snapshot", None) or {}
    return snapshot.get("name") or "Document"


class NotificationService:
    def __init__(
        self,
        audit_service: Optional[AuditService] = None,
        email_config: Optional[EmailConfig] = None,
        public_base_url: str | None = None,
        sms_config: Optional[SMSConfig] = None,
        template_root: Path | None = None,
        sendgrid_config: Optional[SendGridConfig] = None,
        email_backend: str = "smtp",
        max_attempts: int = 3,
        backoff_seconds: float = 1.0,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.audit_service = audit_service
        self.email_config = email_config
        self.sendgrid_config = sendgrid_config
        normalized_backend = (email_backend or "smtp").strip().lower()
        self.email_backend = normalized_backend if normalized_backend in {"smtp", "sendgrid"} else "smtp"
        if self.sendgrid_config and self.email_backend != "sendgrid":
            self.email_backend = "sendgrid"
        self.public_base_url = public_base_url
        self.sms_config = sms_config
        self.max_attempts = max(1, max_attempts)
        self.backoff_seconds = backoff_seconds
        self.sleep = sleep
        self.template_root = template_root or Path(__file__).resolve().parent.parent / "templates"
        self.template_env = Environment(
            loader=FileSystemLoader(self.template_root),
            autoescape=select_autoescape(["html", "xml"]),
        )

    def apply_email_settings(self, settings) -> None:  # type: ignore[no-untyped-def]
        preferred = (getattr(settings, "email_backend", "smtp") or "smtp").strip().lower()
        sender = getattr(settings, "smtp_sender", None)
        sendgrid_key = getattr(settings, "sendgrid_api_key", None)
        smtp_host = getattr(settings, "smtp_host", None)
        smtp_port = getattr(settings, "smtp_port", None)

        def use_sendgrid() -> bool:
            if sendgrid_key and sender:
                self.configure_sendgrid(api_key=sendgrid_key, sender=sender)
                return True
            return False

        def use_smtp() -> bool:
            if smtp_host and sender and smtp_port:
                self.configure_email(
                    host=smtp_host,
                    port=int(smtp_port),
                    sender=sender,
                    username=getattr(settings, "smtp_username", None),
                    password=getattr(settings, "smtp_password", None),
                    starttls=bool(getattr(settings, "smtp_starttls", True)),
                )
                return True
            return False

        if preferred == "sendgrid":
            if not use_sendgrid():
                use_smtp()
            return
        if not use_smtp():
            use_sendgrid()

    def apply_sms_settings(self, settings) -> None:  # type: ignore[no-untyped-def]
        account_sid = getattr(settings, "twilio_account_sid", None)
        auth_token = getattr(settings, "twilio_auth_token", None)
        if account_sid and auth_token:
            self.configure_sms(
                account_sid=account_sid,
                auth_token=auth_token,
                from_number=getattr(settings, "twilio_from_number", None),
                messaging_service_sid=getattr(settings, "twilio_messaging_service_sid", None),
            )

    def configure_email(
        self,
        host: str,
        port: int,
        sender: str,
        username: str | None = None,
        password: str | None = None,
        starttls: bool = True,
    ) -> None:
        self.email_config = EmailConfig(
            host=host,
            port=port,
            username=username,
            password=password,
            sender=sender,
            starttls=starttls,
        )
        self.email_backend = "smtp"

    def configure_sendgrid(
        self,
        *,
        api_key: str,
        sender: str | None = None,
    ) -> None:
        self.sendgrid_config = SendGridConfig(api_key=api_key, sender=sender)
        self.email_backend = "sendgrid"

    def configure_sms(
        self,
        account_sid: str,
        auth_token: str,
        from_number: str | None = None,
        messaging_service_sid: str | None = None,
    ) -> None:
        self.sms_config = SMSConfig(
            account_sid=account_sid,
            auth_token=auth_token,
            from_number=from_number,
            messaging_service_sid=messaging_service_sid,
        )

    def _record_event(
        self,
        *,
        event_type: str,
        document,
        channel: str,
        recipient_email: str | None = None,
        extra: dict | None = None,
    ) -> None:  # type: ignore[no-untyped-def]
        if not self.audit_service:
            return
        details: dict[str, object | None] = {
            "recipient_email": recipient_email,
            "channel": channel,
        }
        if extra:
            details.update(extra)
        self.audit_service.record(
            event_type,
            action="notify",
            company_id=getattr(document, "company_id", None),
            document_id=getattr(document, "id", None),
            details=details,
        )

    def _email_sender_available(self) -> bool:
        if self.email_backend == "sendgrid":
            return self.sendgrid_config is not None
        return self.email_config is not None

    def _render_template(self, template_name: str, context: dict) -> str:
        template = self.template_env.get_template(template_name)
        return template.render(**context)

    def _with_retry(self, operation: Callable[[], None], description: str) -> int:
        """Run ``operation`` with exponential backoff; returns the attempt that succeeded."""
        delay = self.backoff_seconds
        for attempt in range(1, self.max_attempts + 1):
            try:
                operation()
                return attempt
            except RETRYABLE_ERRORS as exc:
                if attempt >= self.max_attempts:
                    raise
                logger.warning(
                    "%s failed (attempt %s/%s): %s", description, attempt, self.max_attempts, exc
                )
                if delay > 0:
                    self.sleep(delay)
                delay *= 2
        return self.max_attempts

    def _deliver_email(
        self,
        *,
        document,
        to: str | None,
        subject: str,
        html_body: str,
        text_body: str,
        kind: str,
    ) -> bool:  # type: ignore[no-untyped-def]
        if not to:
            self._record_event(
                event_type="notification.skipped",
                document=document,
                channel="email",
                extra={"kind": kind, "reason": "missing_email"},
            )
            return False
        if not self._email_sender_available():
            self._record_event(
                event_type="notification.skipped",
                document=document,
                channel="email",
                recipient_email=to,
                extra={"kind": kind, "reason": "email_sender_missing"},
            )
            return False
        try:
            attempts = self._with_retry(
                lambda: self._send_email(to=to, subject=subject, html_body=html_body, text_body=text_body),
                f"E-mail to {to}",
            )
        except (RuntimeError, *RETRYABLE_ERRORS) as exc:
            logger.warning("E-mail notification '%s' to %s failed: %s", kind, to, exc)
            self._record_event(
                event_type="notification.failed",
                document=document,
                channel="email",
                recipient_email=to,
                extra={"kind": kind, "reason": str(exc)},
            )
            return False
        self._record_event(
            event_type="notification.sent",
            document=document,
            channel="email",
            recipient_email=to,
            extra={"kind": kind, "attempts": attempts},
        )
        return True

    def _deliver_sms(self, *, document, to: str | None, body: str, kind: str, recipient_email: str | None = None) -> bool:  # type: ignore[no-untyped-def]
        if not self.sms_config or not to:
            return False
        try:
            attempts = self._with_retry(lambda: self._send_sms(to=to, body=body), f"SMS to {to}")
        except (RuntimeError, *RETRYABLE_ERRORS) as exc:
            logger.warning("SMS notification '%s' to %s failed: %s", kind, to, exc)
            self._record_event(
                event_type="notification.failed",
                document=document,
                channel="sms",
                recipient_email=recipient_email,
                extra={"kind": kind, "reason": str(exc)},
            )
            return False
        self._record_event(
            event_type="notification.sent",
            document=document,
            channel="sms",
            recipient_email=recipient_email,
            extra={"kind": kind, "attempts": attempts},
        )
        return True

    def notify_signing_request(
        self,
        document,
        recipient,
        signing_url: str | None,
        kind: str = "request",
    ) -> bool:  # type: ignore[no-untyped-def]
        """Send the signing link to a recipient; never raises."""
        name = _document_name(document)
        expires_at = getattr(document, "expires_at", None)
        deadline_display = expires_at.strftime("%Y-%m-%d %H:%M UTC") if isinstance(expires_at, datetime) else None
        subject = _SUBJECTS.get(kind, _SUBJECTS["request"]).format(name=name)

        lines = [f"Hello {recipient.name},", ""]
        if kind == "reminder":
            lines.append(f"This is a reminder that '{name}' is still waiting for your signature.")
        elif kind == "delegated":
            lines.append(f"'{name}' was delegated to you for signature by {recipient.delegated_from}.")
        else:
            lines.append(f"You have been asked to sign '{name}'.")
        if deadline_display:
            lines.append(f"Deadline: {deadline_display}.")
        if signing_url:
            lines.extend(["", "Sign now:", signing_url])
        text_body = "\n".join(lines)

        html_body = self._render_template(
            "email/signing_request.html",
            {
                "recipient_name": recipient.name,
                "document_name": name,
                "kind": kind,
                "delegated_from": getattr(recipient, "delegated_from", None),
                "deadline": deadline_display,
                "action_link": signing_url,
            },
        )
        sent = self._deliver_email(
            document=document,
            to=recipient.email,
            subject=subject,
            html_body=html_body,
            text_body=text_body,
            kind=kind,
        )
        phone = getattr(recipient, "phone", None)
        if phone and self.sms_config:
            sms_body = f"{subject}. " + (f"Sign now: {signing_url}" if signing_url else "")
            sent = self._deliver_sms(
                document=document,
                to=phone,
                body=sms_body.strip(),
                kind=kind,
                recipient_email=recipient.email,
            ) or sent
        return sent

    def notify_document_event(
        self,
        document,
        event: str,
        recipients: Iterable = (),
        extra_emails: Iterable[str] = (),
    ) -> int:  # type: ignore[no-untyped-def]
        """Inform recipients (and cc addresses) of a terminal document event."""
        name = _document_name(document)
        subject = _SUBJECTS.get(event, "Update: {name}").format(name=name)
        message = _EVENT_MESSAGES.get(event, f"Document status changed to {event}.")
        reason = getattr(document, "error_reason", None)

        targets: dict[str, str] = {}
        for recipient in recipients:
            if recipient.email:
                targets.setdefault(recipient.email.lower(), recipient.name)
        for email in extra_emails:
            if email:
                targets.setdefault(str(email).lower(), str(email))

        sent = 0
        for email, display_name in targets.items():
            html_body = self._render_template(
                "email/document_event.html",
                {
                    "recipient_name": display_name,
                    "document_name": name,
                    "event": event,
                    "message": message,
                    "reason": reason if event in ("rejected", "cancelled") else None,
                },
            )
            text_lines = [f"Hello {display_name},", "", message]
            if reason and event in ("rejected", "cancelled"):
                text_lines.append(f"Reason: {reason}")
            if self._deliver_email(
                document=document,
                to=email,
                subject=subject,
                html_body=html_body,
                text_body="\n".join(text_lines),
                kind=event,
            ):
                sent += 1
        return sent

    def send_otp(
        self,
        email: str | None,
        phone: str | None,
        code: str,
        channel: str,
        expiry_minutes: int,
    ) -> None:
        """Deliver a verification code; raises RuntimeError when no channel succeeded."""
        delivered = False
        errors: list[str] = []
        if channel in ("email", "both"):
            if not self._email_sender_available():
                errors.append("E-mail sender not configured")
            elif email:
                html_body = self._render_template(
                    "email/otp.html",
                    {"code": code, "expiry_minutes": expiry_minutes},
                )
                text_body = f"Your verification code is {code}. It expires in {expiry_minutes} minutes."
                try:
                    self._with_retry(
                        lambda: self._send_email(
                            to=email,
                            subject="Your signing verification code",
                            html_body=html_body,
                            text_body=text_body,
                        ),
                        f"OTP e-mail to {email}",
                    )
                    delivered = True
                except (RuntimeError, *RETRYABLE_ERRORS) as exc:
                    errors.append(str(exc))
        if channel in ("sms", "both"):
            if not self.sms_config:
                errors.append("SMS sender not configured")
            elif phone:
                body = f"Your verification code is {code}. It expires in {expiry_minutes} minutes."
                try:
                    self._with_retry(lambda: self._send_sms(to=phone, body=body), f"OTP SMS to {phone}")
                    delivered = True
                except (RuntimeError, *RETRYABLE_ERRORS) as exc:
                    errors.append(str(exc))
        if not delivered:
            raise RuntimeError("; ".join(errors) or "Failed to send OTP")

    def _send_sms(self, *, to: str, body: str) -> None:
        if not self.sms_config:
            raise RuntimeError("SMS sender not configured")
        client = Client(self.sms_config.account_sid, self.sms_config.auth_token)
        message_kwargs = {"to": to, "body": body}
        if self.sms_config.messaging_service_sid:
            message_kwargs["messaging_service_sid"] = self.sms_config.messaging_service_sid
        elif self.sms_config.from_number:
            message_kwargs["from_"] = self.sms_config.from_number
        else:
            raise RuntimeError("SMS sender not configured")

        client.messages.create(**message_kwargs)

    def _send_email(
        self,
        *,
        to: str,
        subject: str,
        html_body: str,
        text_body: str | None = None,
    ) -> None:
        if self.email_backend == "sendgrid":
            if not self.sendgrid_config:
                raise RuntimeError("SendGrid sender not configured")
            self._send_email_via_sendgrid(
                to=to,
                subject=subject,
                html_body=html_body,
                text_body=text_body,
            )
            return

        if not self.email_config:
            raise RuntimeError("Email sender not configured")

        message = EmailMessage()
        message["Subject"] = subject
        message["From"] = self.email_config.sender
        message["To"] = to

        message.set_content(text_body or "", subtype="plain", charset="utf-8")
        message.add_alternative(html_body, subtype="html", charset="utf-8")

        with smtplib.SMTP(self.email_config.host, self.email_config.port, timeout=30) as smtp:
            if self.email_config.starttls:
                smtp.starttls()
            if self.email_config.username and self.email_config.password:
                smtp.login(self.email_config.username, self.email_config.password)
            smtp.send_message(message)

    def _send_email_via_sendgrid(
        self,
        *,
        to: str,
        subject: str,
        html_body: str,
        text_body: str | None,
    ) -> None:
        if not self.sendgrid_config:
            raise RuntimeError("SendGrid sender not configured")

        sender = self.sendgrid_config.sender or (self.email_config.sender if self.email_config else None)
        if not sender:
            raise RuntimeError("SendGrid sender address missing")
        name, email = parseaddr(sender)
        if not email:
            raise RuntimeError("SendGrid sender address invalid")

        contents: list[dict[str, str]] = []
        if text_body:
            contents.append({"type": "text/plain", "value": text_body})
        contents.append({"type": "text/html", "value": html_body})

        payload: dict[str, object] = {
            "personalizations": [{"to": [{"email": to}]}],
            "from": {"email": email},
            "subject": subject,
            "content": contents,
        }
        if name:
            payload["from"]["name"] = name  # type: ignore[index]

        headers = {
            "Authorization": f"Bearer {self.sendgrid_config.api_key}",
            "Content-Type": "application/json",
        }
        response = httpx.post(
            "https://api.sendgrid.com/v3/mail/send",
            headers=headers,
            json=payload,
            timeout=30,
        )
        response.raise_for_status()


def build_notification_service(audit_service: AuditService | None, settings) -> NotificationService:  # type: ignore[no-untyped-def]
    """Notification service configured from application settings."""
    service = NotificationService(
        audit_service,
        public_base_url=settings.resolved_public_app_url(),
        max_attempts=settings.notification_max_attempts,
        backoff_seconds=settings.notification_backoff_seconds,
    )
    service.apply_email_settings(settings)
    service.apply_sms_settings(settings)
    return service


def snapshot_cc_emails(document) -> list[str]:  # type: ignore[no-untyped-def]
    snapshot = TemplateSnapshot.model_validate(document.template_snapshot)
    return [str(email) for email in snapshot.notification_config.cc_emails]
