from datetime import datetime
from typing import Any, Literal
from uuid import UUID

from pydantic import BaseModel, ConfigDict, EmailStr, Field, field_validator

from esign.models.document import CallbackStatus, DocumentStatus, RecipientStatus
from esign.schemas.common import IDModel, Timestamped


class RecipientInput(BaseModel):
    email: EmailStr
    name: str = Field(min_length=1, max_length=255)
    phone: str | None = Field(default=None, max_length=32)
    signature_order: int = Field(default=1, ge=1)

    @field_validator("name")
    @classmethod
    def strip_name(cls, value: str) -> str:
        return value.strip()


class InitiateRequest(BaseModel):
    template_id: UUID
    payload: dict[str, Any] = Field(default_factory=dict)
    recipients: list[RecipientInput] | None = None
    callback_url: str | None = Field(default=None, max_length=2048)

    @field_validator("callback_url")
    @classmethod
    def check_callback_url(cls, value: str | None) -> str | None:
        if value is None:
            return None
        cleaned = value.strip()
        if not cleaned:
            return None
        if not cleaned.startswith(("http://", "https://")):
            raise ValueError("callback_url must be an http(s) URL")
        return cleaned


class InitiateRecipientRead(BaseModel):
    recipient_id: UUID
    email: str
    name: str
    signature_order: int
    status: RecipientStatus
    signing_url: str | None = None
    short_url: str | None = None


class InitiateResponse(BaseModel):
    document_id: UUID
    status: DocumentStatus
    expires_at: datetime | None
    recipients: list[InitiateRecipientRead] = Field(default_factory=list)
    preview_url: str | None = None


class RecipientStatusRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    email: str
    name: str
    signature_order: int
    status: RecipientStatus
    signed_at: datetime | None = None


class DocumentStatusRead(BaseModel):
    document_id: UUID
    status: DocumentStatus
    recipients: list[RecipientStatusRead]
    created_at: datetime
    expires_at: datetime | None
    completed_at: datetime | None
    pdf_url: str | None = None
    certificate_url: str | None = None


class CancelRequest(BaseModel):
    reason: str | None = Field(default=None, max_length=1000)


class RejectPreviewRequest(BaseModel):
    reason: str = Field(min_length=1, max_length=1000)


class DocumentActionResponse(BaseModel):
    document_id: UUID
    status: DocumentStatus
    message: str


class BulkActionRequest(BaseModel):
    action: Literal["cancel", "resend", "remind", "delete"]
    document_ids: list[UUID] = Field(min_length=1, max_length=500)
    reason: str | None = None


class BulkActionItemResult(BaseModel):
    document_id: UUID
    success: bool
    error: str | None = None


class BulkActionError(BaseModel):
    document_id: UUID
    error: str


class BulkActionResult(BaseModel):
    action: str
    total: int
    succeeded: int
    failed: int
    results: list[BulkActionItemResult]
    errors: list[BulkActionError]


class RecipientRead(IDModel):
    signature_order: int
    email: str
    name: str
    phone: str | None
    status: RecipientStatus
    token_expires_at: datetime | None
    signed_at: datetime | None
    opened_at: datetime | None
    ip_address: str | None
    user_agent: str | None
    geo_location: dict | None
    scroll_completed_at: datetime | None
    rejected_at: datetime | None
    rejection_reason: str | None
    delegated_from: str | None
    delegation_reason: str | None
    delegated_at: datetime | None


class DocumentRead(IDModel, Timestamped):
    company_id: UUID
    template_id: UUID
    status: DocumentStatus
    payload: dict[str, Any]
    template_snapshot: dict[str, Any]
    expires_at: datetime | None
    completed_at: datetime | None
    pdf_url: str | None
    pdf_hash: str | None
    certificate_url: str | None
    callback_url: str | None
    callback_status: CallbackStatus | None
    error_reason: str | None
    is_deleted: bool
    recipients: list[RecipientRead]


class DocumentListItem(IDModel, Timestamped):
    template_id: UUID
    status: DocumentStatus
    expires_at: datetime | None
    completed_at: datetime | None


class DocumentList(BaseModel):
    items: list[DocumentListItem]
    total: int
    page: int
    page_size: int


class VerificationRead(BaseModel):
    document_id: UUID
    status: DocumentStatus
    pdf_hash: str | None
    computed_hash: str | None
    hash_matches: bool
    audit_chain_valid: bool
    checked_at: datetime
