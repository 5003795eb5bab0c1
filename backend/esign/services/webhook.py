from __future__ import annotations

import hashlib
import hmac
import json
import time
from dataclasses import dataclass
from datetime import datetime
from typing import Callable
from uuid import UUID

import httpx
from sqlalchemy.orm.exc import StaleDataError
from sqlmodel import Session

from esign.core.config import settings
from esign.core.logging_setup import logger
from esign.db import session as db_session_module
from esign.models.document import CallbackStatus, DocumentStatus, EsignDocument
from esign.services.audit import AuditService
from esign.services.links import certificate_download_url, document_download_url

WEBHOOK_EVENTS = frozenset(
    {
        "document.completed",
        "document.rejected",
        "document.cancelled",
        "document.expired",
    }
)


@dataclass
class WebhookResult:
    delivered: bool
    attempts: int
    status_code: int | None = None
    error: str | None = None


class WebhookService:
    """Signed JSON POSTs with exponential backoff."""

    def __init__(
        self,
        secret: str | None = None,
        max_attempts: int | None = None,
        backoff_seconds: float | None = None,
        timeout: float | None = None,
        client: httpx.Client | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.secret = secret or settings.webhook_secret
        self.max_attempts = max(1, max_attempts or settings.webhook_max_attempts)
        self.backoff_seconds = settings.webhook_backoff_seconds if backoff_seconds is None else backoff_seconds
        self.timeout = timeout or settings.webhook_timeout_seconds
        self.client = client
        self.sleep = sleep

    def sign(self, body: bytes) -> str:
        return hmac.new(self.secret.encode("utf-8"), body, hashlib.sha256).hexdigest()

    def _post(self, url: str, body: bytes, headers: dict[str, str]) -> httpx.Response:
        if self.client is not None:
            return self.client.post(url, content=body, headers=headers, timeout=self.timeout)
        return httpx.post(url, content=body, headers=headers, timeout=self.timeout)

    def deliver(self, url: str, event: str, payload: dict) -> WebhookResult:
        timestamp = datetime.utcnow().isoformat()
        body = json.dumps({**payload, "event": event, "timestamp": timestamp}, default=str).encode("utf-8")
        headers = {
            "Content-Type": "application/json",
            "X-Signature": self.sign(body),
            "X-Esign-Event": event,
            "X-Esign-Timestamp": timestamp,
        }
        delay = self.backoff_seconds
        last_error: str | None = None
        status_code: int | None = None
        for attempt in range(1, self.max_attempts + 1):
            try:
                response = self._post(url, body, headers)
                status_code = response.status_code
                if 200 <= response.status_code < 300:
                    logger.info("Webhook %s delivered to %s (attempt %s)", event, url, attempt)
                    return WebhookResult(delivered=True, attempts=attempt, status_code=status_code)
                last_error = f"HTTP {response.status_code}"
            except httpx.HTTPError as exc:
                last_error = str(exc) or exc.__class__.__name__
            logger.warning("Webhook %s to %s failed (attempt %s/%s): %s", event, url, attempt, self.max_attempts, last_error)
            if attempt < self.max_attempts:
                if delay > 0:
                    self.sleep(delay)
                delay *= 2
        return WebhookResult(delivered=False, attempts=self.max_attempts, status_code=status_code, error=last_error)


def build_callback_payload(document: EsignDocument) -> dict:
    data = {
        "document_id": str(document.id),
        "company_id": str(document.company_id),
        "template_id": str(document.template_id),
        "status": document.status.value,
        "expires_at": document.expires_at.isoformat() if document.expires_at else None,
        "completed_at": document.completed_at.isoformat() if document.completed_at else None,
        "error_reason": document.error_reason,
        "recipients": [
            {
                "email": recipient.email,
                "name": recipient.name,
                "signature_order": recipient.signature_order,
                "status": recipient.status.value,
                "signed_at": recipient.signed_at.isoformat() if recipient.signed_at else None,
            }
            for recipient in document.recipients
        ],
    }
    if document.status == DocumentStatus.COMPLETED:
        data["pdf_url"] = document_download_url(document.id)
        data["pdf_hash"] = document.pdf_hash
        data["certificate_url"] = certificate_download_url(document.id) if document.certificate_url else None
    return {"document_id": str(document.id), "status": document.status.value, "data": data}


class CallbackService:
    """Delivers document events to the initiator's callback_url and records the outcome."""

    def __init__(self, session: Session, webhook_service: WebhookService | None = None) -> None:
        self.session = session
        self.webhook_service = webhook_service or WebhookService()
        self.audit_service = AuditService(session)

    def dispatch(self, document_id: UUID, event: str) -> WebhookResult | None:
        if event not in WEBHOOK_EVENTS:
            raise ValueError(f"Unsupported webhook event: {event}")
        document = self.session.get(EsignDocument, document_id)
        if document is None or not document.callback_url:
            return None

        result = self.webhook_service.deliver(document.callback_url, event, build_callback_payload(document))
        for _ in range(2):
            try:
                document.callback_status = CallbackStatus.DELIVERED if result.delivered else CallbackStatus.FAILED
                document.callback_attempts = (document.callback_attempts or 0) + result.attempts
                document.last_callback_at = datetime.utcnow()
                document.touch()
                self.session.add(document)
                self.audit_service.record(
                    "webhook.delivered" if result.delivered else "webhook.failed",
                    action="callback",
                    company_id=document.company_id,
                    document_id=document.id,
                    details={
                        "event": event,
                        "url": document.callback_url,
                        "attempts": result.attempts,
                        "status_code": result.status_code,
                        "error": result.error,
                    },
                    commit=False,
                )
                self.session.commit()
                break
            except StaleDataError:
                self.session.rollback()
                document = self.session.get(EsignDocument, document_id)
                if document is None:
                    break
        return result


def deliver_document_callback(document_id: UUID, event: str) -> None:
    """Entry point for background tasks and sweeps; opens its own session."""
    with db_session_module.open_session() as session:
        try:
            CallbackService(session).dispatch(document_id, event)
        except Exception:
            logger.exception("Callback delivery for document %s failed", document_id)
