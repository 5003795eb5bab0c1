from __future__ import annotations

import hmac
import secrets
from datetime import datetime
from typing import Iterable
from uuid import UUID

from fastapi import status
from sqlmodel import Session, select

from esign.core.errors import EsignError
from esign.models.api_key import ApiScope, EsignAPIKey
from esign.models.audit import ActorType
from esign.schemas.api_key import ApiKeyCreate
from esign.schemas.audit import AuditActor, AuditResource
from esign.services.audit import AuditService
from esign.utils.security import generate_alphanumeric_code, sha256_hex

KEY_PREFIX_LENGTH = 8
KEY_MARKER = "esk"


def api_key_missing() -> EsignError:
    return EsignError("API_KEY_MISSING", "API key is required", status.HTTP_401_UNAUTHORIZED)


def api_key_invalid() -> EsignError:
    return EsignError("API_KEY_INVALID", "Invalid or inactive API key", status.HTTP_401_UNAUTHORIZED)


def api_actor(api_key: EsignAPIKey) -> AuditActor:
    return AuditActor(type=ActorType.API, id=str(api_key.id), api_key_prefix=api_key.key_prefix)


class ApiKeyService:
    """Company API keys: ``esk_<prefix>_<secret>``, stored as a sha256 digest."""

    def __init__(self, session: Session, audit_service: AuditService | None = None) -> None:
        self.session = session
        self.audit_service = audit_service or AuditService(session)

    def _unique_prefix(self) -> str:
        for _ in range(10):
            candidate = generate_alphanumeric_code(KEY_PREFIX_LENGTH).lower()
            exists = self.session.exec(select(EsignAPIKey.id).where(EsignAPIKey.key_prefix == candidate)).first()
            if exists is None:
                return candidate
        raise RuntimeError("Unable to generate a unique API key prefix")

    def create_key(
        self,
        company_id: UUID,
        payload: ApiKeyCreate,
        created_by_id: UUID | None = None,
        actor: AuditActor | None = None,
    ) -> tuple[EsignAPIKey, str]:
        prefix = self._unique_prefix()
        raw_key = f"{KEY_MARKER}_{prefix}_{secrets.token_urlsafe(32)}"
        api_key = EsignAPIKey(
            company_id=company_id,
            name=payload.name,
            key_prefix=prefix,
            key_hash=sha256_hex(raw_key),
            scopes=[scope.value for scope in payload.scopes],
            expires_at=payload.expires_at,
            created_by_id=created_by_id,
        )
        self.session.add(api_key)
        self.session.flush()
        self.audit_service.record(
            "api_key.created",
            action="create",
            company_id=company_id,
            actor=actor,
            resource=AuditResource(type="api_key", id=str(api_key.id)),
            details={"name": api_key.name, "key_prefix": prefix, "scopes": api_key.scopes},
            commit=False,
        )
        self.session.commit()
        self.session.refresh(api_key)
        return api_key, raw_key

    def list_keys(self, company_id: UUID) -> list[EsignAPIKey]:
        return list(
            self.session.exec(
                select(EsignAPIKey)
                .where(EsignAPIKey.company_id == company_id)
                .order_by(EsignAPIKey.created_at.desc())
            ).all()
        )

    def revoke_key(self, company_id: UUID, key_id: UUID, actor: AuditActor | None = None) -> EsignAPIKey:
        api_key = self.session.get(EsignAPIKey, key_id)
        if api_key is None or api_key.company_id != company_id:
            raise EsignError("API_KEY_NOT_FOUND", "API key not found", status.HTTP_404_NOT_FOUND)
        api_key.is_active = False
        api_key.touch()
        self.session.add(api_key)
        self.audit_service.record(
            "api_key.revoked",
            action="revoke",
            company_id=company_id,
            actor=actor,
            resource=AuditResource(type="api_key", id=str(api_key.id)),
            details={"key_prefix": api_key.key_prefix},
            commit=False,
        )
        self.session.commit()
        self.session.refresh(api_key)
        return api_key

    def authenticate(self, raw_key: str | None) -> EsignAPIKey:
        if not raw_key or not raw_key.strip():
            raise api_key_missing()
        parts = raw_key.strip().split("_", 2)
        if len(parts) != 3 or parts[0] != KEY_MARKER:
            raise api_key_invalid()
        api_key = self.session.exec(select(EsignAPIKey).where(EsignAPIKey.key_prefix == parts[1])).first()
        if api_key is None or not hmac.compare_digest(api_key.key_hash, sha256_hex(raw_key.strip())):
            raise api_key_invalid()
        now = datetime.utcnow()
        if not api_key.is_active or (api_key.expires_at and api_key.expires_at <= now):
            raise api_key_invalid()
        api_key.last_used_at = now
        self.session.add(api_key)
        self.session.commit()
        self.session.refresh(api_key)
        return api_key

    @staticmethod
    def has_scope(api_key: EsignAPIKey, scope: ApiScope | str) -> bool:
        value = scope.value if isinstance(scope, ApiScope) else scope
        return value in (api_key.scopes or [])

    @classmethod
    def require_scopes(cls, api_key: EsignAPIKey, scopes: Iterable[ApiScope]) -> None:
        missing = [scope.value for scope in scopes if not cls.has_scope(api_key, scope)]
        if missing:
            raise EsignError(
                "INSUFFICIENT_SCOPE",
                f"API key is missing required scope: {', '.join(missing)}",
                status.HTTP_403_FORBIDDEN,
                required_scopes=missing,
            )
