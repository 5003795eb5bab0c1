from datetime import datetime
from enum import Enum
from typing import Optional
from uuid import UUID

from sqlalchemy import JSON
from sqlmodel import Field

from esign.models.base import TimestampedModel, UUIDModel


class ApiScope(str, Enum):
    ESIGN_CREATE = "esign:create"
    ESIGN_STATUS = "esign:status"
    ESIGN_DOWNLOAD = "esign:download"
    ESIGN_CANCEL = "esign:cancel"
    TEMPLATE_READ = "template:read"


class EsignAPIKey(UUIDModel, TimestampedModel, table=True):
    __tablename__ = "esign_api_keys"

    company_id: UUID = Field(foreign_key="companies.id", index=True)
    name: str
    key_prefix: str = Field(index=True, unique=True, max_length=16)
    key_hash: str = Field(max_length=128)
    scopes: list | None = Field(default_factory=list, sa_type=JSON)
    is_active: bool = Field(default=True)
    expires_at: Optional[datetime] = Field(default=None)
    last_used_at: Optional[datetime] = Field(default=None)
    created_by_id: UUID | None = Field(default=None, foreign_key="users.id")
