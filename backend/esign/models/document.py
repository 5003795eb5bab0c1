from datetime import datetime
from enum import Enum
from typing import List, Optional
from uuid import UUID

from sqlalchemy import JSON, Column, Integer, Text
from sqlmodel import Field, Relationship

from esign.models.base import TimestampedModel, UUIDModel


class DocumentStatus(str, Enum):
    NEW = "new"
    DRAFT_PREVIEW = "draft_preview"
    DISTRIBUTED = "distributed"
    OPENED = "opened"
    PARTIALLY_SIGNED = "partially_signed"
    SIGNED = "signed"
    COMPLETED = "completed"
    REJECTED = "rejected"
    CANCELLED = "cancelled"
    EXPIRED = "expired"


TERMINAL_STATUSES = frozenset(
    {
        DocumentStatus.COMPLETED,
        DocumentStatus.REJECTED,
        DocumentStatus.CANCELLED,
        DocumentStatus.EXPIRED,
    }
)

IN_FLIGHT_STATUSES = frozenset(
    {
        DocumentStatus.DISTRIBUTED,
        DocumentStatus.OPENED,
        DocumentStatus.PARTIALLY_SIGNED,
    }
)


class RecipientStatus(str, Enum):
    PENDING = "pending"
    ACTIVE = "active"
    OPENED = "opened"
    SIGNED = "signed"
    REJECTED = "rejected"


class CallbackStatus(str, Enum):
    PENDING = "pending"
    DELIVERED = "delivered"
    FAILED = "failed"


# Mapped as the optimistic concurrency column: every flush of a document
# issues "UPDATE ... WHERE id = :id AND version = :loaded_version".
_document_version = Column("version", Integer, nullable=False, default=1)


class EsignDocument(UUIDModel, TimestampedModel, table=True):
    __tablename__ = "esign_documents"
    __mapper_args__ = {"version_id_col": _document_version}

    company_id: UUID = Field(foreign_key="companies.id", index=True)
    template_id: UUID = Field(foreign_key="esign_templates.id", index=True)
    template_snapshot: dict = Field(default_factory=dict, sa_type=JSON)
    status: DocumentStatus = Field(default=DocumentStatus.NEW, index=True)
    payload: dict | None = Field(default_factory=dict, sa_type=JSON)
    expires_at: Optional[datetime] = Field(default=None, index=True)
    completed_at: Optional[datetime] = Field(default=None)
    pdf_url: str | None = Field(default=None)
    pdf_hash: str | None = Field(default=None, max_length=128)
    certificate_url: str | None = Field(default=None)
    callback_url: str | None = Field(default=None)
    callback_status: CallbackStatus | None = Field(default=None)
    callback_attempts: int = Field(default=0)
    last_callback_at: Optional[datetime] = Field(default=None)
    error_reason: str | None = Field(default=None)
    reminders_sent: list | None = Field(default_factory=list, sa_type=JSON)
    idempotency_key: str | None = Field(default=None, index=True, max_length=255)
    api_key_id: UUID | None = Field(default=None, foreign_key="esign_api_keys.id")
    created_by_id: UUID | None = Field(default=None, foreign_key="users.id")
    bulk_job_id: UUID | None = Field(default=None, foreign_key="esign_bulk_jobs.id", index=True)
    is_deleted: bool = Field(default=False, index=True)
    deleted_at: Optional[datetime] = Field(default=None)
    version: int = Field(default=1, sa_column=_document_version)

    recipients: List["EsignRecipient"] = Relationship(
        back_populates="document",
        sa_relationship_kwargs={
            "order_by": "EsignRecipient.signature_order",
            "cascade": "all, delete-orphan",
        },
    )


class EsignRecipient(UUIDModel, TimestampedModel, table=True):
    __tablename__ = "esign_recipients"

    document_id: UUID = Field(foreign_key="esign_documents.id", index=True)
    signature_order: int = Field(default=1)
    email: str = Field(index=True)
    name: str
    phone: str | None = Field(default=None, max_length=32)
    status: RecipientStatus = Field(default=RecipientStatus.PENDING)
    token: str | None = Field(default=None, sa_type=Text)
    token_id: UUID | None = Field(default=None, index=True)
    token_expires_at: Optional[datetime] = Field(default=None)
    short_code: str | None = Field(default=None, max_length=32)
    signature_image: str | None = Field(default=None, sa_type=Text)
    signature_type: str | None = Field(default=None, max_length=32)
    intent_confirmed: bool = Field(default=False)
    signed_at: Optional[datetime] = Field(default=None)
    opened_at: Optional[datetime] = Field(default=None)
    ip_address: str | None = Field(default=None)
    user_agent: str | None = Field(default=None)
    geo_location: dict | None = Field(default=None, sa_type=JSON)
    scroll_completed_at: Optional[datetime] = Field(default=None)
    rejected_at: Optional[datetime] = Field(default=None)
    rejection_reason: str | None = Field(default=None)
    delegated_from: str | None = Field(default=None)
    delegation_reason: str | None = Field(default=None)
    delegated_at: Optional[datetime] = Field(default=None)

    document: Optional[EsignDocument] = Relationship(back_populates="recipients")
