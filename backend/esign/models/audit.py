from __future__ import annotations

from enum import Enum
from uuid import UUID

from sqlalchemy import JSON, event
from sqlmodel import Field

from esign.models.base import TimestampedModel, UUIDModel


class ActorType(str, Enum):
    USER = "user"
    SYSTEM = "system"
    API = "api"
    SIGNER = "signer"


class EsignAuditLog(UUIDModel, TimestampedModel, table=True):
    __tablename__ = "esign_audit_logs"

    company_id: UUID | None = Field(default=None, foreign_key="companies.id", index=True)
    document_id: UUID | None = Field(default=None, foreign_key="esign_documents.id", index=True)
    event_type: str = Field(index=True)
    actor_type: ActorType = Field(default=ActorType.SYSTEM)
    actor_id: str | None = Field(default=None)
    actor_email: str | None = Field(default=None)
    api_key_prefix: str | None = Field(default=None, max_length=16)
    resource_type: str = Field(default="document", max_length=32)
    resource_id: str | None = Field(default=None)
    action: str = Field(max_length=64)
    details: dict | None = Field(default_factory=dict, sa_type=JSON)
    ip_address: str | None = Field(default=None)
    user_agent: str | None = Field(default=None)
    geo_location: dict | None = Field(default=None, sa_type=JSON)
    previous_hash: str | None = Field(default=None, max_length=64)
    entry_hash: str = Field(default="", max_length=64, index=True)


@event.listens_for(EsignAuditLog, "before_update")
def _refuse_update(mapper, connection, target) -> None:  # type: ignore[no-untyped-def]
    raise ValueError("Audit entries are immutable")


@event.listens_for(EsignAuditLog, "before_delete")
def _refuse_delete(mapper, connection, target) -> None:  # type: ignore[no-untyped-def]
    raise ValueError("Audit entries are immutable")
