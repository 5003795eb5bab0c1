from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Iterable, Mapping
from uuid import UUID, uuid4

from jose import ExpiredSignatureError, JWTError, jwt
from sqlmodel import Session, select

from esign.core.config import settings
from esign.core.errors import invalid_token, token_expired
from esign.models.token import EsignToken, TokenType
from esign.utils.security import sha256_hex

_EXPIRY_UNITS = {
    "hours": timedelta(hours=1),
    "days": timedelta(days=1),
    "weeks": timedelta(weeks=1),
}


@dataclass(frozen=True)
class TokenClaims:
    token_id: UUID
    token_type: TokenType
    document_id: UUID
    company_id: UUID
    recipient_id: UUID | None
    email: str | None
    expires_at: datetime

    def as_claims(self) -> dict[str, Any]:
        return {
            "document_id": self.document_id,
            "company_id": self.company_id,
            "recipient_id": self.recipient_id,
            "email": self.email,
        }


@dataclass(frozen=True)
class IssuedToken:
    token: str
    token_id: UUID
    expires_at: datetime


def calculate_expiry(value: int, unit: str, start: datetime | None = None) -> datetime:
    """Absolute deadline ``value`` hours/days/weeks after ``start`` (now by default)."""
    step = _EXPIRY_UNITS.get((unit or "").lower())
    if step is None:
        raise ValueError(f"Invalid expiry unit: {unit}")
    if value <= 0:
        raise ValueError("Expiry value must be positive")
    return (start or datetime.utcnow()) + step * value


def default_ttl(token_type: TokenType) -> timedelta:
    if token_type == TokenType.SESSION:
        return timedelta(minutes=settings.session_token_ttl_minutes)
    if token_type == TokenType.PREVIEW:
        return timedelta(hours=settings.preview_token_ttl_hours)
    return timedelta(hours=settings.signing_token_ttl_hours)


class TokenService:
    """Issues signed JWTs for the public signing surface.

    Every token is registered by its ``jti`` so that it can be revoked before
    its embedded expiry; validation checks both the signature/expiry and the
    registry entry.
    """

    def __init__(self, session: Session, secret_key: str | None = None, algorithm: str | None = None) -> None:
        self.session = session
        self.secret_key = secret_key or settings.secret_key
        self.algorithm = algorithm or settings.algorithm

    def generate_token(
        self,
        claims: Mapping[str, Any],
        token_type: TokenType = TokenType.SIGNING,
        ttl: timedelta | None = None,
    ) -> str:
        return self.issue_token(claims, token_type, ttl).token

    def issue_token(
        self,
        claims: Mapping[str, Any],
        token_type: TokenType = TokenType.SIGNING,
        ttl: timedelta | None = None,
    ) -> IssuedToken:
        if not claims.get("document_id") or not claims.get("company_id"):
            raise ValueError("document_id and company_id claims are required")
        token_id = uuid4()
        expires_at = datetime.utcnow() + (ttl or default_ttl(token_type))
        recipient_id = claims.get("recipient_id")
        to_encode = {
            "document_id": str(claims["document_id"]),
            "company_id": str(claims["company_id"]),
            "recipient_id": str(recipient_id) if recipient_id else None,
            "email": claims.get("email"),
            "token_type": token_type.value,
            "jti": str(token_id),
            "exp": expires_at,
        }
        token = jwt.encode(to_encode, self.secret_key, algorithm=self.algorithm)
        self.session.add(
            EsignToken(
                id=token_id,
                company_id=UUID(str(claims["company_id"])),
                document_id=UUID(str(claims["document_id"])),
                recipient_id=UUID(str(recipient_id)) if recipient_id else None,
                token_type=token_type,
                token_hash=sha256_hex(token),
                expires_at=expires_at,
            )
        )
        self.session.flush()
        return IssuedToken(token=token, token_id=token_id, expires_at=expires_at)

    def decode(self, token: str) -> dict[str, Any]:
        try:
            return jwt.decode(token, self.secret_key, algorithms=[self.algorithm])
        except ExpiredSignatureError as exc:
            raise token_expired() from exc
        except JWTError as exc:
            raise invalid_token() from exc

    def validate_token(
        self,
        token: str,
        expected_types: Iterable[TokenType] | None = None,
    ) -> TokenClaims:
        if not token:
            raise invalid_token()
        payload = self.decode(token)
        try:
            claims = TokenClaims(
                token_id=UUID(payload["jti"]),
                token_type=TokenType(payload["token_type"]),
                document_id=UUID(payload["document_id"]),
                company_id=UUID(payload["company_id"]),
                recipient_id=UUID(payload["recipient_id"]) if payload.get("recipient_id") else None,
                email=payload.get("email"),
                expires_at=datetime.utcfromtimestamp(int(payload["exp"])),
            )
        except (KeyError, TypeError, ValueError) as exc:
            raise invalid_token() from exc

        record = self.session.get(EsignToken, claims.token_id)
        if record is None or record.revoked_at is not None:
            raise invalid_token()
        if record.token_hash != sha256_hex(token):
            raise invalid_token()

        if expected_types is not None and claims.token_type not in set(expected_types):
            raise invalid_token()
        return claims

    def rotate_token(
        self,
        old_token: str,
        new_type: TokenType = TokenType.SESSION,
        ttl: timedelta | None = None,
    ) -> str:
        return self.rotate(old_token, new_type, ttl).token

    def rotate(
        self,
        old_token: str,
        new_type: TokenType = TokenType.SESSION,
        ttl: timedelta | None = None,
    ) -> IssuedToken:
        claims = self.validate_token(old_token)
        self.revoke_token(claims.token_id, reason="rotated")
        return self.issue_token(claims.as_claims(), new_type, ttl)

    def revoke_token(self, token_id: UUID, reason: str = "revoked") -> None:
        record = self.session.get(EsignToken, token_id)
        if record is None or record.revoked_at is not None:
            return
        record.revoked_at = datetime.utcnow()
        record.revoked_reason = reason
        self.session.add(record)
        self.session.flush()

    def revoke_recipient_tokens(self, recipient_id: UUID, reason: str = "revoked") -> int:
        return self._revoke_where(EsignToken.recipient_id == recipient_id, reason)

    def revoke_document_tokens(
        self,
        document_id: UUID,
        reason: str = "revoked",
        token_type: TokenType | None = None,
    ) -> int:
        condition = EsignToken.document_id == document_id
        if token_type is not None:
            condition = condition & (EsignToken.token_type == token_type)
        return self._revoke_where(condition, reason)

    def _revoke_where(self, condition, reason: str) -> int:  # type: ignore[no-untyped-def]
        records = self.session.exec(
            select(EsignToken).where(condition).where(EsignToken.revoked_at.is_(None))
        ).all()
        now = datetime.utcnow()
        for record in records:
            record.revoked_at = now
            record.revoked_reason = reason
            self.session.add(record)
        if records:
            self.session.flush()
        return len(records)
