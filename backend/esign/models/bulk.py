from datetime import datetime
from enum import Enum
from typing import List, Optional
from uuid import UUID

from sqlalchemy import JSON
from sqlmodel import Field, Relationship

from esign.models.base import TimestampedModel, UUIDModel


class BulkJobStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


class BulkItemStatus(str, Enum):
    PENDING = "pending"
    SUCCESS = "success"
    FAILED = "failed"


class EsignBulkJob(UUIDModel, TimestampedModel, table=True):
    __tablename__ = "esign_bulk_jobs"

    company_id: UUID = Field(foreign_key="companies.id", index=True)
    template_id: UUID = Field(foreign_key="esign_templates.id", index=True)
    api_key_id: UUID | None = Field(default=None, foreign_key="esign_api_keys.id")
    status: BulkJobStatus = Field(default=BulkJobStatus.PENDING)
    column_mapping: dict | None = Field(default_factory=dict, sa_type=JSON)
    callback_url: str | None = Field(default=None)
    total_items: int = Field(default=0)
    processed_items: int = Field(default=0)
    success_count: int = Field(default=0)
    failure_count: int = Field(default=0)
    started_at: Optional[datetime] = Field(default=None)
    completed_at: Optional[datetime] = Field(default=None)

    items: List["EsignBulkJobItem"] = Relationship(
        back_populates="job",
        sa_relationship_kwargs={"order_by": "EsignBulkJobItem.row_number"},
    )

    @property
    def progress_percentage(self) -> int:
        if not self.total_items:
            return 0
        return round(self.processed_items * 100 / self.total_items)


class EsignBulkJobItem(UUIDModel, TimestampedModel, table=True):
    __tablename__ = "esign_bulk_job_items"

    job_id: UUID = Field(foreign_key="esign_bulk_jobs.id", index=True)
    row_number: int
    status: BulkItemStatus = Field(default=BulkItemStatus.PENDING)
    payload: dict | None = Field(default_factory=dict, sa_type=JSON)
    recipients: list | None = Field(default_factory=list, sa_type=JSON)
    document_id: UUID | None = Field(default=None, foreign_key="esign_documents.id")
    error_message: str | None = Field(default=None)

    job: Optional[EsignBulkJob] = Relationship(back_populates="items")
