from datetime import datetime
from typing import Any, Literal
from uuid import UUID

from pydantic import BaseModel, EmailStr, Field

from esign.models.document import DocumentStatus, RecipientStatus
from esign.models.template import DelimiterType, SignatureType


class SigningDelimiter(BaseModel):
    key: str
    type: DelimiterType
    required: bool
    value: Any = None


class SigningDocumentView(BaseModel):
    id: UUID
    status: DocumentStatus
    expires_at: datetime | None
    html_content: str


class SigningRecipientView(BaseModel):
    id: UUID
    email: str
    name: str
    signature_order: int
    status: RecipientStatus
    scroll_completed_at: datetime | None


class SigningTemplateView(BaseModel):
    name: str
    signature_type: SignatureType
    mfa_enabled: bool
    mfa_channel: str


class SigningPageRead(BaseModel):
    document: SigningDocumentView
    recipient: SigningRecipientView
    template: SigningTemplateView
    delimiters: list[SigningDelimiter]
    requires_otp: bool
    token_type: str


class PreviewRead(BaseModel):
    document_id: UUID
    status: DocumentStatus
    template_name: str
    html_content: str
    recipients: list[dict[str, Any]]


class SendOtpResponse(BaseModel):
    message: str
    channel: str
    expires_in: int


class VerifyOtpRequest(BaseModel):
    otp: str = Field(min_length=4, max_length=12)


class VerifyOtpResponse(BaseModel):
    verified: bool
    token: str
    token_type: str = "session"
    expires_at: datetime


class SubmitSignatureRequest(BaseModel):
    signature_image: str = Field(min_length=1)
    signature_type: Literal["drawn", "typed", "uploaded"]
    intent_confirmation: bool
    field_data: dict[str, Any] | None = None


class SubmitSignatureResponse(BaseModel):
    message: str
    document_status: DocumentStatus
    recipient_status: RecipientStatus
    signed_at: datetime


class DeclineRequest(BaseModel):
    reason: str | None = Field(default=None, max_length=1000)


class DeclineResponse(BaseModel):
    message: str
    document_status: DocumentStatus


class DelegateRequest(BaseModel):
    delegate_email: EmailStr
    delegate_name: str = Field(min_length=1, max_length=255)
    delegate_phone: str | None = Field(default=None, max_length=32)
    reason: str | None = Field(default=None, max_length=1000)


class DelegateResponse(BaseModel):
    message: str
    delegate_email: str
    delegated_at: datetime


class ScrollCompleteResponse(BaseModel):
    scroll_completed_at: datetime
