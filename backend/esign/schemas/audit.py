from datetime import datetime
from typing import Any
from uuid import UUID

from pydantic import BaseModel

from esign.models.audit import ActorType
from esign.schemas.common import IDModel


class AuditActor(BaseModel):
    type: ActorType = ActorType.SYSTEM
    id: str | None = None
    email: str | None = None
    api_key_prefix: str | None = None


class AuditResource(BaseModel):
    type: str = "document"
    id: str | None = None


class AuditLogRead(IDModel):
    company_id: UUID | None
    document_id: UUID | None
    event_type: str
    actor_type: ActorType
    actor_id: str | None
    actor_email: str | None
    api_key_prefix: str | None
    resource_type: str
    resource_id: str | None
    action: str
    details: dict[str, Any] | None
    ip_address: str | None
    user_agent: str | None
    geo_location: dict[str, Any] | None
    entry_hash: str
    created_at: datetime


class AuditLogPage(BaseModel):
    items: list[AuditLogRead]
    total: int
    page: int
    page_size: int


class TimelineEntry(BaseModel):
    id: UUID
    event_type: str
    action: str
    actor: AuditActor
    timestamp: datetime
    details: dict[str, Any]
    icon: str
    color: str
    description: str


class TimelineRead(BaseModel):
    document_id: UUID
    status: str
    status_color: str
    recipients: list[dict[str, Any]]
    events: list[TimelineEntry]
    audit_chain_valid: bool
