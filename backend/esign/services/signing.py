from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable, Iterable
from uuid import UUID

from fastapi import status
from sqlmodel import Session

from esign.core.errors import (
    EsignError,
    document_not_found,
    recipient_not_found,
    translate_stale_data,
    validation_error,
)
from esign.core.logging_setup import logger
from esign.models.audit import ActorType
from esign.models.document import DocumentStatus, EsignDocument, EsignRecipient, RecipientStatus
from esign.models.template import SignatureType
from esign.models.token import TokenType
from esign.schemas.audit import AuditActor
from esign.schemas.public import (
    DeclineResponse,
    DelegateResponse,
    PreviewRead,
    ScrollCompleteResponse,
    SendOtpResponse,
    SigningDelimiter,
    SigningDocumentView,
    SigningPageRead,
    SigningRecipientView,
    SigningTemplateView,
    SubmitSignatureResponse,
    VerifyOtpResponse,
)
from esign.schemas.template import TemplateSnapshot
from esign.services import state_machine
from esign.services.audit import AuditService
from esign.services.delimiters import render_html, type_errors
from esign.services.distribution import RecipientLinkIssuer, clear_recipient_link
from esign.services.geolocation import lookup_geolocation
from esign.services.hooks import CallbackDispatcher, CompletionHandler
from esign.services.notification import NotificationService, snapshot_cc_emails
from esign.services.otp import OTPService
from esign.services.short_link import ShortLinkService
from esign.services.token import TokenClaims, TokenService
from esign.utils.email_validation import normalize_email

SIGNER_TOKEN_TYPES = (TokenType.SIGNING, TokenType.SESSION)

_OTP_MESSAGES = {
    "OTP_NOT_FOUND": "No verification code was requested",
    "OTP_EXPIRED": "The verification code has expired, request a new one",
    "OTP_INVALID": "The verification code is incorrect",
    "OTP_LOCKED": "Too many failed attempts, try again later",
}


@dataclass
class SigningContext:
    claims: TokenClaims
    document: EsignDocument
    recipient: EsignRecipient
    snapshot: TemplateSnapshot

    @property
    def signature_type(self) -> SignatureType:
        return self.snapshot.signature_type


class SigningService:
    """Operations available to a recipient holding a signing link."""

    def __init__(
        self,
        session: Session,
        token_service: TokenService | None = None,
        otp_service: OTPService | None = None,
        notification_service: NotificationService | None = None,
        audit_service: AuditService | None = None,
        short_link_service: ShortLinkService | None = None,
        completion_handler: CompletionHandler | None = None,
        callback_dispatcher: CallbackDispatcher | None = None,
        geolocator: Callable[[str | None], dict | None] = lookup_geolocation,
    ) -> None:
        self.session = session
        self.token_service = token_service or TokenService(session)
        self.audit_service = audit_service or AuditService(session)
        self.notification_service = notification_service
        if otp_service is None:
            sender = notification_service.send_otp if notification_service else None
            otp_service = OTPService(session, sender=sender)
        self.otp_service = otp_service
        self.short_link_service = short_link_service or ShortLinkService(session)
        self.link_issuer = RecipientLinkIssuer(self.token_service, self.short_link_service)
        self.completion_handler = completion_handler
        self.callback_dispatcher = callback_dispatcher
        self.geolocator = geolocator

    # -- loading -----------------------------------------------------------

    def _load(self, token: str, expected_types: Iterable[TokenType] = SIGNER_TOKEN_TYPES) -> SigningContext:
        claims = self.token_service.validate_token(token, expected_types)
        document = self.session.get(EsignDocument, claims.document_id)
        if document is None or document.is_deleted or document.company_id != claims.company_id:
            raise document_not_found()
        recipient = next((item for item in document.recipients if item.id == claims.recipient_id), None)
        if recipient is None:
            raise recipient_not_found()
        snapshot = TemplateSnapshot.model_validate(document.template_snapshot)
        return SigningContext(claims=claims, document=document, recipient=recipient, snapshot=snapshot)

    def _load_actionable(self, token: str) -> SigningContext:
        context = self._load(token)
        state_machine.ensure_signable(context.document)
        state_machine.ensure_recipient_pending(context.recipient)
        if not state_machine.can_recipient_act(context.signature_type, context.recipient, context.document.recipients):
            raise state_machine.not_your_turn()
        return context

    @staticmethod
    def _signer(recipient: EsignRecipient) -> AuditActor:
        return AuditActor(type=ActorType.SIGNER, id=str(recipient.id), email=recipient.email)

    def _notify_signing(self, document: EsignDocument, recipient: EsignRecipient, url: str, kind: str) -> None:
        if not self.notification_service:
            return
        try:
            self.notification_service.notify_signing_request(document, recipient, url, kind=kind)
        except Exception:
            logger.exception("Signing notification '%s' for document %s failed", kind, document.id)

    def _dispatch_callback(self, document_id: UUID, event: str) -> None:
        if not self.callback_dispatcher:
            return
        try:
            self.callback_dispatcher(document_id, event)
        except Exception:
            logger.exception("Callback dispatch '%s' for document %s failed", event, document_id)

    def _values(self, context: SigningContext) -> dict[str, Any]:
        values = {item.key: item.default_value for item in context.snapshot.delimiters if item.default_value}
        values.update(context.document.payload or {})
        return values

    # -- operations --------------------------------------------------------

    @translate_stale_data
    def access_signing_page(
        self,
        token: str,
        ip_address: str | None = None,
        user_agent: str | None = None,
    ) -> SigningPageRead:
        context = self._load(token)
        document, recipient = context.document, context.recipient
        state_machine.ensure_signable(document)
        state_machine.ensure_recipient_pending(recipient)
        if context.signature_type == SignatureType.HIERARCHY and recipient.status not in (
            RecipientStatus.ACTIVE,
            RecipientStatus.OPENED,
        ):
            raise state_machine.not_your_turn()

        now = datetime.utcnow()
        opened_recipient = recipient.status in (RecipientStatus.PENDING, RecipientStatus.ACTIVE)
        opened_document = document.status == DocumentStatus.DISTRIBUTED
        if opened_recipient or opened_document:
            geo_location = None
            if opened_recipient:
                geo_location = self.geolocator(ip_address)
                recipient.status = RecipientStatus.OPENED
                recipient.opened_at = now
                recipient.ip_address = ip_address
                recipient.user_agent = user_agent
                recipient.geo_location = geo_location
                recipient.touch()
            if opened_document:
                document.status = DocumentStatus.OPENED
            document.touch()
            self.session.add(document)
            self.audit_service.record(
                "document.opened",
                action="open",
                company_id=document.company_id,
                document_id=document.id,
                actor=self._signer(recipient),
                details={
                    "recipient_id": str(recipient.id),
                    "signature_order": recipient.signature_order,
                    "document_status": document.status.value,
                },
                ip_address=ip_address,
                user_agent=user_agent,
                geo_location=geo_location,
                commit=False,
            )
            self.session.commit()

        values = self._values(context)
        snapshot = context.snapshot
        return SigningPageRead(
            document=SigningDocumentView(
                id=document.id,
                status=document.status,
                expires_at=document.expires_at,
                html_content=render_html(snapshot.html_content, values),
            ),
            recipient=SigningRecipientView(
                id=recipient.id,
                email=recipient.email,
                name=recipient.name,
                signature_order=recipient.signature_order,
                status=recipient.status,
                scroll_completed_at=recipient.scroll_completed_at,
            ),
            template=SigningTemplateView(
                name=snapshot.name,
                signature_type=snapshot.signature_type,
                mfa_enabled=snapshot.mfa_config.enabled,
                mfa_channel=snapshot.mfa_config.channel,
            ),
            delimiters=[
                SigningDelimiter(key=item.key, type=item.type, required=item.required, value=values.get(item.key))
                for item in snapshot.delimiters_for(recipient.signature_order)
            ],
            requires_otp=snapshot.mfa_config.enabled and context.claims.token_type != TokenType.SESSION,
            token_type=context.claims.token_type.value,
        )

    def send_otp(self, token: str, ip_address: str | None = None, user_agent: str | None = None) -> SendOtpResponse:
        context = self._load_actionable(token)
        mfa = context.snapshot.mfa_config
        if not mfa.enabled:
            raise EsignError("MFA_NOT_ENABLED", "Verification codes are not enabled for this document")
        recipient = context.recipient
        result = self.otp_service.generate_and_send_otp(
            recipient.id,
            recipient.email,
            recipient.phone,
            channel=mfa.channel,
            expiry_minutes=mfa.otp_expiry_min,
        )
        if not result.success:
            if result.error == "OTP_LOCKED":
                raise EsignError("OTP_LOCKED", _OTP_MESSAGES["OTP_LOCKED"], locked_until=result.locked_until)
            self.audit_service.record(
                "otp.send_failed",
                action="send_otp",
                company_id=context.document.company_id,
                document_id=context.document.id,
                actor=self._signer(recipient),
                details={"channel": mfa.channel, "error": result.error},
                ip_address=ip_address,
                user_agent=user_agent,
            )
            raise EsignError(
                "OTP_SEND_FAILED",
                "Failed to send verification code",
                status.HTTP_502_BAD_GATEWAY,
                reason=result.error,
            )
        self.audit_service.record(
            "otp.sent",
            action="send_otp",
            company_id=context.document.company_id,
            document_id=context.document.id,
            actor=self._signer(recipient),
            details={"channel": mfa.channel, "expires_at": result.expires_at.isoformat() if result.expires_at else None},
            ip_address=ip_address,
            user_agent=user_agent,
        )
        return SendOtpResponse(
            message="Verification code sent",
            channel=mfa.channel,
            expires_in=mfa.otp_expiry_min * 60,
        )

    @translate_stale_data
    def verify_otp(
        self,
        token: str,
        code: str,
        ip_address: str | None = None,
        user_agent: str | None = None,
    ) -> VerifyOtpResponse:
        context = self._load_actionable(token)
        if not context.snapshot.mfa_config.enabled:
            raise EsignError("MFA_NOT_ENABLED", "Verification codes are not enabled for this document")
        document, recipient = context.document, context.recipient
        result = self.otp_service.verify_otp(recipient.id, code)
        if not result.success:
            error = result.error or "OTP_INVALID"
            self.audit_service.record(
                "otp.failed",
                action="verify_otp",
                company_id=document.company_id,
                document_id=document.id,
                actor=self._signer(recipient),
                details={"error": error, "attempts_remaining": result.attempts_remaining},
                ip_address=ip_address,
                user_agent=user_agent,
            )
            raise EsignError(
                error,
                _OTP_MESSAGES.get(error, "Verification failed"),
                attempts_remaining=result.attempts_remaining,
                locked_until=result.locked_until,
            )

        issued = self.token_service.rotate(token, TokenType.SESSION)
        recipient.token = issued.token
        recipient.token_id = issued.token_id
        recipient.token_expires_at = issued.expires_at
        recipient.touch()
        self.session.add(recipient)
        self.audit_service.record(
            "otp.verified",
            action="verify_otp",
            company_id=document.company_id,
            document_id=document.id,
            actor=self._signer(recipient),
            details={"recipient_id": str(recipient.id)},
            ip_address=ip_address,
            user_agent=user_agent,
            commit=False,
        )
        self.session.commit()
        return VerifyOtpResponse(verified=True, token=issued.token, expires_at=issued.expires_at)

    @translate_stale_data
    def submit_signature(
        self,
        token: str,
        *,
        signature_image: str,
        signature_type: str,
        intent_confirmation: bool,
        field_data: dict[str, Any] | None = None,
        ip_address: str | None = None,
        user_agent: str | None = None,
    ) -> SubmitSignatureResponse:
        context = self._load_actionable(token)
        document, recipient, snapshot = context.document, context.recipient, context.snapshot

        if snapshot.mfa_config.enabled and context.claims.token_type != TokenType.SESSION:
            raise EsignError(
                "OTP_REQUIRED",
                "Verify the code sent to you before signing",
                status.HTTP_403_FORBIDDEN,
            )
        if not intent_confirmation:
            raise validation_error("You must confirm your intent to sign")
        if not signature_image:
            raise validation_error("A signature is required")

        field_data = field_data or {}
        rejected = state_machine.unauthorized_fields(snapshot, recipient.signature_order, field_data.keys())
        if rejected:
            raise EsignError(
                "UNAUTHORIZED_FIELD",
                f"You are not allowed to fill: {', '.join(rejected)}",
                status.HTTP_403_FORBIDDEN,
                fields=rejected,
            )
        own_delimiters = snapshot.delimiters_for(recipient.signature_order)
        errors = type_errors(own_delimiters, field_data)
        if errors:
            raise validation_error("One or more fields do not match their configured types", errors=errors)
        merged = {**(document.payload or {}), **field_data}
        missing = [
            item.key
            for item in own_delimiters
            if item.required and merged.get(item.key) in (None, "") and not item.default_value
        ]
        if missing:
            raise validation_error(
                f"The following required fields are missing: {', '.join(missing)}",
                missing_delimiters=missing,
            )

        now = datetime.utcnow()
        geo_location = recipient.geo_location or self.geolocator(ip_address)
        document.payload = merged
        recipient.signature_image = signature_image
        recipient.signature_type = signature_type
        recipient.intent_confirmed = True
        recipient.signed_at = now
        recipient.status = RecipientStatus.SIGNED
        recipient.ip_address = ip_address or recipient.ip_address
        recipient.user_agent = user_agent or recipient.user_agent
        recipient.geo_location = geo_location
        recipient.touch()

        recipients = document.recipients
        new_status = state_machine.next_document_status(context.signature_type, recipients)
        next_recipient: EsignRecipient | None = None
        next_link = None
        if context.signature_type == SignatureType.HIERARCHY and new_status != DocumentStatus.SIGNED:
            next_recipient = state_machine.next_hierarchy_recipient(recipients, recipient)
            if next_recipient is not None:
                next_recipient.status = RecipientStatus.ACTIVE
                next_link = self.link_issuer.issue(
                    document,
                    next_recipient,
                    short_link_enabled=snapshot.short_link_enabled,
                )
        document.status = new_status
        document.touch()
        self.session.add(document)

        self.audit_service.record(
            "document.signed" if new_status == DocumentStatus.SIGNED else "signature.submitted",
            action="sign",
            company_id=document.company_id,
            document_id=document.id,
            actor=self._signer(recipient),
            details={
                "recipient_id": str(recipient.id),
                "signature_order": recipient.signature_order,
                "signature_type": signature_type,
                "fields": sorted(field_data.keys()),
                "document_status": new_status.value,
                "next_recipient": next_recipient.email if next_recipient else None,
            },
            ip_address=ip_address,
            user_agent=user_agent,
            geo_location=geo_location,
            commit=False,
        )
        self.session.commit()

        if next_recipient is not None and next_link is not None:
            self._notify_signing(document, next_recipient, next_link.short_url or next_link.signing_url, "next_signer")
        if new_status == DocumentStatus.SIGNED and self.completion_handler:
            try:
                self.completion_handler(document.id)
            except Exception:
                logger.exception("Completion handler for document %s failed", document.id)

        return SubmitSignatureResponse(
            message="Signature recorded",
            document_status=new_status,
            recipient_status=recipient.status,
            signed_at=now,
        )

    @translate_stale_data
    def decline_signature(
        self,
        token: str,
        reason: str | None = None,
        ip_address: str | None = None,
        user_agent: str | None = None,
    ) -> DeclineResponse:
        context = self._load_actionable(token)
        document, recipient = context.document, context.recipient
        now = datetime.utcnow()
        recipient.status = RecipientStatus.REJECTED
        recipient.rejected_at = now
        recipient.rejection_reason = reason
        document.status = DocumentStatus.REJECTED
        document.error_reason = reason or f"Declined by {recipient.email}"
        self.token_service.revoke_document_tokens(document.id, reason="document_rejected")
        for item in document.recipients:
            clear_recipient_link(item)
        document.touch()
        self.session.add(document)
        self.audit_service.record(
            "document.rejected",
            action="decline",
            company_id=document.company_id,
            document_id=document.id,
            actor=self._signer(recipient),
            details={"recipient_id": str(recipient.id), "reason": reason},
            ip_address=ip_address,
            user_agent=user_agent,
            commit=False,
        )
        self.session.commit()

        if self.notification_service and context.snapshot.notification_config.send_on_reject:
            try:
                self.notification_service.notify_document_event(
                    document,
                    "rejected",
                    recipients=document.recipients,
                    extra_emails=snapshot_cc_emails(document),
                )
            except Exception:
                logger.exception("Rejection notification for document %s failed", document.id)
        self._dispatch_callback(document.id, "document.rejected")
        return DeclineResponse(message="Document declined", document_status=document.status)

    @translate_stale_data
    def delegate_signing(
        self,
        token: str,
        *,
        delegate_email: str,
        delegate_name: str,
        delegate_phone: str | None = None,
        reason: str | None = None,
        ip_address: str | None = None,
        user_agent: str | None = None,
    ) -> DelegateResponse:
        context = self._load_actionable(token)
        document, recipient = context.document, context.recipient
        try:
            new_email = normalize_email(delegate_email)
        except ValueError as exc:
            raise validation_error("Invalid delegate e-mail") from exc
        if new_email.lower() == recipient.email.lower():
            raise validation_error("Cannot delegate to the same recipient")
        if any(item.email.lower() == new_email.lower() for item in document.recipients if item.id != recipient.id):
            raise validation_error("The delegate is already a recipient of this document")

        now = datetime.utcnow()
        previous_email = recipient.email
        recipient.delegated_from = previous_email
        recipient.delegation_reason = reason
        recipient.delegated_at = now
        recipient.email = new_email
        recipient.name = delegate_name.strip()
        recipient.phone = delegate_phone
        recipient.status = RecipientStatus.ACTIVE
        recipient.opened_at = None
        recipient.scroll_completed_at = None
        link = self.link_issuer.issue(
            document,
            recipient,
            short_link_enabled=context.snapshot.short_link_enabled,
            revoke_reason="delegated",
        )
        document.touch()
        self.session.add(document)
        self.audit_service.record(
            "signature.delegated",
            action="delegate",
            company_id=document.company_id,
            document_id=document.id,
            actor=AuditActor(type=ActorType.SIGNER, id=str(recipient.id), email=previous_email),
            details={
                "recipient_id": str(recipient.id),
                "delegated_from": previous_email,
                "delegated_to": new_email,
                "reason": reason,
            },
            ip_address=ip_address,
            user_agent=user_agent,
            commit=False,
        )
        self.session.commit()
        self._notify_signing(document, recipient, link.short_url or link.signing_url, "delegated")
        return DelegateResponse(message="Signing delegated", delegate_email=new_email, delegated_at=now)

    @translate_stale_data
    def mark_scroll_complete(
        self,
        token: str,
        ip_address: str | None = None,
        user_agent: str | None = None,
    ) -> ScrollCompleteResponse:
        context = self._load(token)
        state_machine.ensure_signable(context.document)
        recipient = context.recipient
        if recipient.scroll_completed_at is None:
            recipient.scroll_completed_at = datetime.utcnow()
            recipient.touch()
            self.session.add(recipient)
            self.audit_service.record(
                "signature.scroll_completed",
                action="scroll_complete",
                company_id=context.document.company_id,
                document_id=context.document.id,
                actor=self._signer(recipient),
                details={"recipient_id": str(recipient.id)},
                ip_address=ip_address,
                user_agent=user_agent,
                commit=False,
            )
            self.session.commit()
        return ScrollCompleteResponse(scroll_completed_at=recipient.scroll_completed_at)

    def render_preview(self, token: str) -> PreviewRead:
        claims = self.token_service.validate_token(token, (TokenType.PREVIEW,))
        document = self.session.get(EsignDocument, claims.document_id)
        if document is None or document.is_deleted or document.company_id != claims.company_id:
            raise document_not_found()
        error = state_machine.terminal_error(document.status)
        if error is not None:
            raise error
        snapshot = TemplateSnapshot.model_validate(document.template_snapshot)
        values = {item.key: item.default_value for item in snapshot.delimiters if item.default_value}
        values.update(document.payload or {})
        return PreviewRead(
            document_id=document.id,
            status=document.status,
            template_name=snapshot.name,
            html_content=render_html(snapshot.html_content, values),
            recipients=[
                {
                    "email": item.email,
                    "name": item.name,
                    "signature_order": item.signature_order,
                    "status": item.status.value,
                }
                for item in document.recipients
            ],
        )
