from datetime import datetime
from enum import Enum
from typing import Optional
from uuid import UUID

from sqlmodel import Field

from esign.models.base import TimestampedModel, UUIDModel


class TokenType(str, Enum):
    SIGNING = "signing"
    SESSION = "session"
    PREVIEW = "preview"


class EsignToken(UUIDModel, TimestampedModel, table=True):
    """Registry of issued signing tokens; the primary key is the JWT ``jti``."""

    __tablename__ = "esign_tokens"

    company_id: UUID = Field(foreign_key="companies.id", index=True)
    document_id: UUID = Field(foreign_key="esign_documents.id", index=True)
    recipient_id: UUID | None = Field(default=None, foreign_key="esign_recipients.id", index=True)
    token_type: TokenType = Field(default=TokenType.SIGNING)
    token_hash: str = Field(max_length=128)
    expires_at: datetime
    revoked_at: Optional[datetime] = Field(default=None)
    revoked_reason: str | None = Field(default=None, max_length=64)
