from datetime import datetime
from uuid import UUID

from pydantic import BaseModel, Field

from esign.models.api_key import ApiScope
from esign.schemas.common import IDModel, Timestamped


class ApiKeyCreate(BaseModel):
    name: str = Field(min_length=1, max_length=128)
    scopes: list[ApiScope] = Field(default_factory=lambda: list(ApiScope))
    expires_at: datetime | None = None


class ApiKeyRead(IDModel, Timestamped):
    name: str
    key_prefix: str
    scopes: list[ApiScope]
    is_active: bool
    expires_at: datetime | None
    last_used_at: datetime | None


class ApiKeyCreated(ApiKeyRead):
    api_key: str
    company_id: UUID
