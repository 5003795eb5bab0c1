from datetime import datetime
from typing import Optional
from uuid import UUID

from sqlmodel import Field

from esign.models.base import TimestampedModel, UUIDModel


class EsignOTP(UUIDModel, TimestampedModel, table=True):
    __tablename__ = "esign_otps"

    recipient_id: UUID = Field(foreign_key="esign_recipients.id", index=True, unique=True)
    otp_hash: str | None = Field(default=None)
    channel: str = Field(default="email", max_length=16)
    expires_at: Optional[datetime] = Field(default=None)
    attempts: int = Field(default=0)
    locked_until: Optional[datetime] = Field(default=None)
    verified_at: Optional[datetime] = Field(default=None)
