from datetime import datetime

from sqlmodel import Field

from esign.models.base import TimestampedModel, UUIDModel


class EsignLock(UUIDModel, TimestampedModel, table=True):
    __tablename__ = "esign_locks"

    lock_key: str = Field(index=True, unique=True, max_length=255)
    lock_id: str = Field(max_length=64)
    expires_at: datetime
