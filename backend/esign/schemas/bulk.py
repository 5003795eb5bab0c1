from datetime import datetime
from uuid import UUID

from pydantic import BaseModel

from esign.models.bulk import BulkItemStatus, BulkJobStatus


class BulkJobCreated(BaseModel):
    job_id: UUID
    status: BulkJobStatus
    total_items: int


class BulkJobItemError(BaseModel):
    row_number: int
    error_message: str | None


class BulkJobItemRead(BaseModel):
    row_number: int
    status: BulkItemStatus
    document_id: UUID | None
    error_message: str | None


class BulkJobStatusRead(BaseModel):
    job_id: UUID
    status: BulkJobStatus
    total_items: int
    processed_items: int
    success_count: int
    failure_count: int
    progress_percentage: int
    started_at: datetime | None
    completed_at: datetime | None
    items: list[BulkJobItemRead]
    errors: list[BulkJobItemError]
