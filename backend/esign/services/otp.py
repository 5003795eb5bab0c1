from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable, Optional
from uuid import UUID

from passlib.context import CryptContext
from sqlmodel import Session, select

from esign.core.config import settings
from esign.core.logging_setup import logger
from esign.models.otp import EsignOTP
from esign.utils.security import generate_numeric_code

otp_context = CryptContext(schemes=["pbkdf2_sha256"], deprecated="auto")

OTPSender = Callable[[str | None, str | None, str, str, int], None]


@dataclass
class OTPConfig:
    length: int = 6
    expiry_minutes: int = 10
    max_attempts: int = 5
    lockout_minutes: int = 30

    @classmethod
    def from_settings(cls) -> "OTPConfig":
        return cls(
            length=settings.otp_length,
            expiry_minutes=settings.otp_expiry_minutes,
            max_attempts=settings.otp_max_attempts,
            lockout_minutes=settings.otp_lockout_minutes,
        )


@dataclass
class OTPResult:
    success: bool
    error: str | None = None
    expires_at: datetime | None = None
    locked_until: datetime | None = None


@dataclass
class OTPVerification:
    success: bool
    error: str | None = None
    attempts_remaining: int | None = None
    locked_until: datetime | None = None


class OTPService:
    """One-time codes per recipient with attempt counting and lockout."""

    def __init__(
        self,
        session: Session,
        sender: Optional[OTPSender] = None,
        config: OTPConfig | None = None,
    ) -> None:
        self.session = session
        self.sender = sender
        self.config = config or OTPConfig.from_settings()

    def _get_record(self, recipient_id: UUID) -> EsignOTP | None:
        return self.session.exec(select(EsignOTP).where(EsignOTP.recipient_id == recipient_id)).first()

    def _clear_expired_lock(self, record: EsignOTP, now: datetime) -> None:
        if record.locked_until and record.locked_until <= now:
            record.locked_until = None
            record.attempts = 0

    def generate_and_send_otp(
        self,
        recipient_id: UUID,
        email: str | None,
        phone: str | None,
        channel: str = "email",
        expiry_minutes: int | None = None,
    ) -> OTPResult:
        now = datetime.utcnow()
        record = self._get_record(recipient_id)
        if record is not None:
            if record.locked_until and record.locked_until > now:
                return OTPResult(success=False, error="OTP_LOCKED", locked_until=record.locked_until)
            self._clear_expired_lock(record, now)
        else:
            record = EsignOTP(recipient_id=recipient_id)

        if channel in ("sms", "both") and not phone:
            return OTPResult(success=False, error="Recipient has no phone number for SMS delivery")
        if channel in ("email", "both") and not email:
            return OTPResult(success=False, error="Recipient has no e-mail address")

        minutes = expiry_minutes or self.config.expiry_minutes
        code = generate_numeric_code(self.config.length)
        record.otp_hash = otp_context.hash(code)
        record.channel = channel
        record.expires_at = now + timedelta(minutes=minutes)
        record.attempts = 0
        record.locked_until = None
        record.verified_at = None
        record.touch()
        self.session.add(record)
        self.session.commit()

        if self.sender is None:
            logger.warning("OTP sender not configured; code for recipient %s was not delivered", recipient_id)
            return OTPResult(success=False, error="OTP delivery is not configured")
        try:
            self.sender(email, phone, code, channel, minutes)
        except Exception as exc:  # provider errors are reported, not raised
            logger.warning("Failed to deliver OTP to recipient %s: %s", recipient_id, exc)
            return OTPResult(success=False, error=str(exc) or "Failed to send OTP")
        return OTPResult(success=True, expires_at=record.expires_at)

    def verify_otp(self, recipient_id: UUID, code: str) -> OTPVerification:
        now = datetime.utcnow()
        record = self._get_record(recipient_id)
        if record is None:
            return OTPVerification(success=False, error="OTP_NOT_FOUND")

        if record.locked_until and record.locked_until > now:
            return OTPVerification(success=False, error="OTP_LOCKED", locked_until=record.locked_until)
        self._clear_expired_lock(record, now)

        if not record.otp_hash:
            self._save(record)
            return OTPVerification(success=False, error="OTP_NOT_FOUND")

        if record.expires_at and record.expires_at <= now:
            record.otp_hash = None
            self._save(record)
            return OTPVerification(success=False, error="OTP_EXPIRED")

        if not otp_context.verify((code or "").strip(), record.otp_hash):
            record.attempts += 1
            if record.attempts >= self.config.max_attempts:
                record.locked_until = now + timedelta(minutes=self.config.lockout_minutes)
                self._save(record)
                logger.warning("Recipient %s locked out of OTP verification until %s", recipient_id, record.locked_until)
                return OTPVerification(
                    success=False,
                    error="OTP_LOCKED",
                    attempts_remaining=0,
                    locked_until=record.locked_until,
                )
            self._save(record)
            return OTPVerification(
                success=False,
                error="OTP_INVALID",
                attempts_remaining=self.config.max_attempts - record.attempts,
            )

        record.otp_hash = None
        record.attempts = 0
        record.locked_until = None
        record.verified_at = now
        self._save(record)
        return OTPVerification(success=True)

    def _save(self, record: EsignOTP) -> None:
        record.touch()
        self.session.add(record)
        self.session.commit()
