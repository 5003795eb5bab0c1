from datetime import datetime
from typing import Any, Literal
from uuid import UUID

from pydantic import BaseModel, EmailStr, Field, field_validator, model_validator

from esign.models.template import DelimiterType, SignatureType, TemplateStatus
from esign.schemas.common import IDModel, Timestamped


class DelimiterConfig(BaseModel):
    key: str = Field(min_length=1, max_length=128)
    type: DelimiterType = DelimiterType.TEXT
    required: bool = False
    assigned_to: int | None = Field(default=None, ge=1)
    default_value: str | None = None

    @field_validator("key")
    @classmethod
    def normalize_key(cls, value: str) -> str:
        return value.strip()


class TemplateRecipientConfig(BaseModel):
    signature_order: int = Field(ge=1)
    label: str = Field(default="Signer", max_length=128)
    recipient_type: str = Field(default="signer", max_length=32)
    email: EmailStr | None = None
    name: str | None = None
    phone: str | None = None


class LinkExpiry(BaseModel):
    value: int = Field(default=7, ge=1)
    unit: Literal["hours", "days", "weeks"] = "days"


class MfaConfig(BaseModel):
    enabled: bool = False
    channel: Literal["email", "sms", "both"] = "email"
    otp_expiry_min: int = Field(default=10, ge=1, le=60)


class ReminderInterval(BaseModel):
    hours_before_expiry: float = Field(gt=0)


class NotificationConfig(BaseModel):
    send_on_create: bool = True
    send_on_complete: bool = True
    send_on_reject: bool = True
    send_on_cancel: bool = True
    send_on_expire: bool = True
    reminder_intervals: list[ReminderInterval] = Field(default_factory=list)
    cc_emails: list[EmailStr] = Field(default_factory=list)


class _TemplateConfig(BaseModel):
    signature_type: SignatureType = SignatureType.SINGLE
    delimiters: list[DelimiterConfig] = Field(default_factory=list)
    recipients: list[TemplateRecipientConfig] = Field(default_factory=list)
    link_expiry: LinkExpiry = Field(default_factory=LinkExpiry)
    mfa_config: MfaConfig = Field(default_factory=MfaConfig)
    notification_config: NotificationConfig = Field(default_factory=NotificationConfig)
    preview_mode: bool = False
    short_link_enabled: bool = False
    html_content: str = ""

    @model_validator(mode="after")
    def check_consistency(self):  # type: ignore[no-untyped-def]
        keys = [item.key for item in self.delimiters]
        if len(keys) != len(set(keys)):
            raise ValueError("Delimiter keys must be unique")
        orders = [item.signature_order for item in self.recipients]
        if len(orders) != len(set(orders)):
            raise ValueError("Recipient signature orders must be unique")
        if self.signature_type == SignatureType.SINGLE and len(self.recipients) > 1:
            raise ValueError("Single signature templates accept exactly one recipient")
        known_orders = set(orders)
        for item in self.delimiters:
            if item.assigned_to is not None and known_orders and item.assigned_to not in known_orders:
                raise ValueError(f"Delimiter '{item.key}' is assigned to unknown recipient {item.assigned_to}")
        return self


class TemplateCreate(_TemplateConfig):
    name: str = Field(min_length=1, max_length=255)
    description: str | None = None
    status: TemplateStatus = TemplateStatus.DRAFT


class TemplateUpdate(BaseModel):
    name: str | None = None
    description: str | None = None
    signature_type: SignatureType | None = None
    delimiters: list[DelimiterConfig] | None = None
    recipients: list[TemplateRecipientConfig] | None = None
    link_expiry: LinkExpiry | None = None
    mfa_config: MfaConfig | None = None
    notification_config: NotificationConfig | None = None
    preview_mode: bool | None = None
    short_link_enabled: bool | None = None
    html_content: str | None = None


class TemplateStatusUpdate(BaseModel):
    status: TemplateStatus


class TemplateRead(IDModel, Timestamped):
    company_id: UUID
    name: str
    description: str | None
    status: TemplateStatus
    signature_type: SignatureType
    delimiters: list[DelimiterConfig]
    recipients: list[TemplateRecipientConfig]
    link_expiry: LinkExpiry
    mfa_config: MfaConfig
    notification_config: NotificationConfig
    preview_mode: bool
    short_link_enabled: bool
    html_content: str


class TemplateSnapshot(_TemplateConfig):
    """Frozen copy of a template embedded in each document at creation."""

    template_id: UUID
    name: str
    captured_at: datetime

    def delimiters_for(self, signature_order: int) -> list[DelimiterConfig]:
        return [item for item in self.delimiters if item.assigned_to == signature_order]

    def authorized_keys(self, signature_order: int) -> set[str]:
        return {item.key for item in self.delimiters_for(signature_order)}


class SchemaDelimiter(BaseModel):
    key: str
    type: DelimiterType
    required: bool
    assigned_to: int | None
    default_value: str | None
    example: Any


class SchemaRecipient(BaseModel):
    signature_order: int
    label: str
    recipient_type: str
    fixed_email: str | None = None


class TemplateSchemaRead(BaseModel):
    template_id: UUID
    name: str
    signature_type: SignatureType
    preview_mode: bool
    mfa_enabled: bool
    delimiters: list[SchemaDelimiter]
    recipients: list[SchemaRecipient]
    payload_example: dict[str, Any]
