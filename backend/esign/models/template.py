from enum import Enum
from uuid import UUID

from sqlalchemy import JSON, Text
from sqlmodel import Field

from esign.models.base import TimestampedModel, UUIDModel


class TemplateStatus(str, Enum):
    DRAFT = "draft"
    ACTIVE = "active"
    ARCHIVED = "archived"


class SignatureType(str, Enum):
    SINGLE = "single"
    HIERARCHY = "hierarchy"
    MULTIPLE = "multiple"
    SEND_TO_ALL = "send_to_all"


class DelimiterType(str, Enum):
    TEXT = "text"
    EMAIL = "email"
    PHONE = "phone"
    DATE = "date"
    NUMBER = "number"


class EsignTemplate(UUIDModel, TimestampedModel, table=True):
    __tablename__ = "esign_templates"

    company_id: UUID = Field(foreign_key="companies.id", index=True)
    name: str
    description: str | None = Field(default=None)
    status: TemplateStatus = Field(default=TemplateStatus.DRAFT)
    signature_type: SignatureType = Field(default=SignatureType.SINGLE)
    delimiters: list | None = Field(default_factory=list, sa_type=JSON)
    recipients: list | None = Field(default_factory=list, sa_type=JSON)
    link_expiry: dict | None = Field(default_factory=dict, sa_type=JSON)
    mfa_config: dict | None = Field(default_factory=dict, sa_type=JSON)
    notification_config: dict | None = Field(default_factory=dict, sa_type=JSON)
    preview_mode: bool = Field(default=False)
    short_link_enabled: bool = Field(default=False)
    html_content: str = Field(default="", sa_type=Text)
    is_deleted: bool = Field(default=False, index=True)
