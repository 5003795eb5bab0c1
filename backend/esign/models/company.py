from enum import Enum
from uuid import UUID

from sqlmodel import Field

from esign.models.base import TimestampedModel, UUIDModel


class Company(UUIDModel, TimestampedModel, table=True):
    __tablename__ = "companies"

    name: str
    slug: str = Field(index=True, unique=True)
    is_active: bool = Field(default=True)


class UserRole(str, Enum):
    ADMIN = "admin"
    MEMBER = "member"


class User(UUIDModel, TimestampedModel, table=True):
    __tablename__ = "users"

    company_id: UUID = Field(foreign_key="companies.id", index=True)
    email: str = Field(index=True, unique=True)
    full_name: str
    password_hash: str
    role: str = Field(default=UserRole.MEMBER.value)
    is_active: bool = Field(default=True)
