from datetime import datetime
from typing import Optional
from uuid import UUID

from sqlmodel import Field

from esign.models.base import TimestampedModel, UUIDModel


class EsignShortLink(UUIDModel, TimestampedModel, table=True):
    __tablename__ = "esign_short_links"

    short_code: str = Field(index=True, unique=True, max_length=32)
    company_id: UUID = Field(foreign_key="companies.id", index=True)
    document_id: UUID = Field(foreign_key="esign_documents.id", index=True)
    recipient_id: UUID | None = Field(default=None, foreign_key="esign_recipients.id")
    target_url: str
    expires_at: Optional[datetime] = Field(default=None)
    click_count: int = Field(default=0)
    last_accessed_at: Optional[datetime] = Field(default=None)
