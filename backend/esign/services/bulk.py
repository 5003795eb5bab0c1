from __future__ import annotations

import csv
import io
from datetime import datetime
from typing import Any
from uuid import UUID

from fastapi import status
from pydantic import ValidationError
from sqlmodel import Session, select

from esign.core.config import settings
from esign.core.errors import EsignError, validation_error
from esign.core.logging_setup import logger
from esign.db import session as db_session_module
from esign.models.bulk import BulkItemStatus, BulkJobStatus, EsignBulkJob, EsignBulkJobItem
from esign.schemas.audit import AuditActor, AuditResource
from esign.schemas.bulk import BulkJobItemError, BulkJobItemRead, BulkJobStatusRead
from esign.schemas.document import InitiateRequest, RecipientInput
from esign.services.audit import AuditService
from esign.services.document import DocumentService
from esign.services.hooks import run_callback
from esign.services.notification import build_notification_service
from esign.services.template import TemplateService

RECIPIENT_FIELDS = ("email", "name", "phone")
MAX_ROWS = 1000


def bulk_job_not_found() -> EsignError:
    return EsignError("BULK_JOB_NOT_FOUND", "Bulk job not found", status.HTTP_404_NOT_FOUND)


def parse_target(target: str) -> tuple[str, Any]:
    """``recipients.<order>.<field>`` or a delimiter key."""
    parts = target.split(".")
    if parts[0] == "recipients":
        if len(parts) != 3 or not parts[1].isdigit() or parts[2] not in RECIPIENT_FIELDS:
            raise validation_error(f"Invalid recipient mapping: {target}")
        return "recipient", (int(parts[1]), parts[2])
    return "payload", target


def map_row(row: dict[str, str], column_mapping: dict[str, str]) -> tuple[dict[str, Any], list[dict[str, Any]]]:
    payload: dict[str, Any] = {}
    recipients: dict[int, dict[str, Any]] = {}
    for column, target in column_mapping.items():
        value = (row.get(column) or "").strip()
        kind, key = parse_target(target)
        if kind == "payload":
            if value:
                payload[key] = value
            continue
        order, field = key
        entry = recipients.setdefault(order, {"signature_order": order})
        if value:
            entry[field] = value
    ordered = [recipients[order] for order in sorted(recipients)]
    return payload, ordered


class BulkService:
    def __init__(self, session: Session, audit_service: AuditService | None = None) -> None:
        self.session = session
        self.audit_service = audit_service or AuditService(session)

    def create_job(
        self,
        company_id: UUID,
        template_id: UUID,
        csv_content: bytes | str,
        column_mapping: dict[str, str],
        *,
        actor: AuditActor,
        api_key_id: UUID | None = None,
        callback_url: str | None = None,
    ) -> EsignBulkJob:
        template = TemplateService(self.session, self.audit_service).get_template(company_id, template_id)
        if not column_mapping:
            raise validation_error("column_mapping is required")
        for target in column_mapping.values():
            parse_target(str(target))

        text = csv_content.decode("utf-8-sig") if isinstance(csv_content, bytes) else csv_content
        reader = csv.DictReader(io.StringIO(text))
        headers = reader.fieldnames or []
        unknown = [column for column in column_mapping if column not in headers]
        if unknown:
            raise validation_error("Mapped columns are missing from the CSV header", missing_columns=unknown)
        rows = [row for row in reader if any((value or "").strip() for value in row.values() if isinstance(value, str))]
        if not rows:
            raise validation_error("The CSV file has no data rows")
        if len(rows) > MAX_ROWS:
            raise validation_error(f"The CSV file exceeds {MAX_ROWS} rows")

        job = EsignBulkJob(
            company_id=company_id,
            template_id=template.id,
            api_key_id=api_key_id,
            column_mapping=dict(column_mapping),
            callback_url=callback_url,
            total_items=len(rows),
        )
        self.session.add(job)
        self.session.flush()
        for index, row in enumerate(rows, start=1):
            payload, recipients = map_row(row, column_mapping)
            self.session.add(
                EsignBulkJobItem(job_id=job.id, row_number=index, payload=payload, recipients=recipients)
            )
        self.audit_service.record(
            "bulk_job.created",
            action="create",
            company_id=company_id,
            actor=actor,
            resource=AuditResource(type="bulk_job", id=str(job.id)),
            details={"template_id": str(template.id), "total_items": len(rows)},
            commit=False,
        )
        self.session.commit()
        self.session.refresh(job)
        return job

    def _get_job(self, company_id: UUID, job_id: UUID) -> EsignBulkJob:
        job = self.session.get(EsignBulkJob, job_id)
        if job is None or job.company_id != company_id:
            raise bulk_job_not_found()
        return job

    def get_status(self, company_id: UUID, job_id: UUID) -> BulkJobStatusRead:
        job = self._get_job(company_id, job_id)
        items = list(
            self.session.exec(
                select(EsignBulkJobItem).where(EsignBulkJobItem.job_id == job.id).order_by(EsignBulkJobItem.row_number)
            ).all()
        )
        return BulkJobStatusRead(
            job_id=job.id,
            status=job.status,
            total_items=job.total_items,
            processed_items=job.processed_items,
            success_count=job.success_count,
            failure_count=job.failure_count,
            progress_percentage=job.progress_percentage,
            started_at=job.started_at,
            completed_at=job.completed_at,
            items=[
                BulkJobItemRead(
                    row_number=item.row_number,
                    status=item.status,
                    document_id=item.document_id,
                    error_message=item.error_message,
                )
                for item in items
            ],
            errors=[
                BulkJobItemError(row_number=item.row_number, error_message=item.error_message)
                for item in items
                if item.status == BulkItemStatus.FAILED
            ],
        )

    def process_job(self, job_id: UUID, document_service: DocumentService, actor: AuditActor) -> EsignBulkJob:
        job = self.session.get(EsignBulkJob, job_id)
        if job is None:
            raise bulk_job_not_found()
        if job.status != BulkJobStatus.PENDING:
            logger.info("Bulk job %s already %s", job_id, job.status.value)
            return job
        job.status = BulkJobStatus.PROCESSING
        job.started_at = datetime.utcnow()
        self.session.add(job)
        self.session.commit()

        item_ids = self.session.exec(
            select(EsignBulkJobItem.id)
            .where(EsignBulkJobItem.job_id == job_id, EsignBulkJobItem.status == BulkItemStatus.PENDING)
            .order_by(EsignBulkJobItem.row_number)
        ).all()
        for item_id in item_ids:
            item = self.session.get(EsignBulkJobItem, item_id)
            document_id = None
            error_message = None
            try:
                request = InitiateRequest(
                    template_id=job.template_id,
                    payload=item.payload or {},
                    recipients=[
                        RecipientInput(
                            email=entry.get("email"),
                            name=entry.get("name") or entry.get("email") or "",
                            phone=entry.get("phone"),
                            signature_order=entry["signature_order"],
                        )
                        for entry in item.recipients or []
                    ]
                    or None,
                    callback_url=job.callback_url,
                )
                response = document_service.initiate(
                    job.company_id,
                    request,
                    actor=actor,
                    api_key_id=job.api_key_id,
                    bulk_job_id=job.id,
                )
                document_id = response.document_id
            except ValidationError as exc:
                self.session.rollback()
                error_message = "; ".join(error["msg"] for error in exc.errors()) or "Invalid row"
            except ValueError as exc:
                self.session.rollback()
                error_message = exc.message if isinstance(exc, EsignError) else str(exc)

            item = self.session.get(EsignBulkJobItem, item_id)
            job = self.session.get(EsignBulkJob, job_id)
            if document_id is not None:
                item.status = BulkItemStatus.SUCCESS
                item.document_id = document_id
                job.success_count += 1
            else:
                item.status = BulkItemStatus.FAILED
                item.error_message = error_message
                job.failure_count += 1
            job.processed_items += 1
            item.touch()
            job.touch()
            self.session.add(item)
            self.session.add(job)
            self.session.commit()

        job = self.session.get(EsignBulkJob, job_id)
        job.status = BulkJobStatus.COMPLETED if job.success_count > 0 else BulkJobStatus.FAILED
        job.completed_at = datetime.utcnow()
        job.touch()
        self.session.add(job)
        self.audit_service.record(
            "bulk_job.completed",
            action="process",
            company_id=job.company_id,
            actor=actor,
            resource=AuditResource(type="bulk_job", id=str(job.id)),
            details={
                "status": job.status.value,
                "success_count": job.success_count,
                "failure_count": job.failure_count,
            },
            commit=False,
        )
        self.session.commit()
        logger.info(
            "Bulk job %s finished: %s succeeded, %s failed",
            job.id,
            job.success_count,
            job.failure_count,
        )
        return job


def run_bulk_job(job_id: UUID, actor: AuditActor) -> None:
    """Entry point for background tasks; opens its own session."""
    with db_session_module.open_session() as session:
        audit_service = AuditService(session)
        document_service = DocumentService(
            session,
            notification_service=build_notification_service(audit_service, settings),
            audit_service=audit_service,
            callback_dispatcher=run_callback,
        )
        try:
            BulkService(session, audit_service).process_job(job_id, document_service, actor)
        except Exception:
            session.rollback()
            logger.exception("Bulk job %s failed", job_id)
            job = session.get(EsignBulkJob, job_id)
            if job is not None and job.status != BulkJobStatus.COMPLETED:
                job.status = BulkJobStatus.FAILED
                job.completed_at = datetime.utcnow()
                session.add(job)
                session.commit()
