from __future__ import annotations

import hashlib
import json
from datetime import datetime, timedelta
from typing import Optional
from uuid import UUID

from sqlalchemy import func
from sqlmodel import Session, select

from esign.models.audit import ActorType, EsignAuditLog
from esign.schemas.audit import AuditActor, AuditResource

SYSTEM_ACTOR = AuditActor(type=ActorType.SYSTEM, id="system")


def compute_entry_hash(entry: EsignAuditLog) -> str:
    material = {
        "previous_hash": entry.previous_hash,
        "company_id": str(entry.company_id) if entry.company_id else None,
        "document_id": str(entry.document_id) if entry.document_id else None,
        "event_type": entry.event_type,
        "action": entry.action,
        "actor_type": entry.actor_type.value if isinstance(entry.actor_type, ActorType) else entry.actor_type,
        "actor_id": entry.actor_id,
        "actor_email": entry.actor_email,
        "resource_type": entry.resource_type,
        "resource_id": entry.resource_id,
        "details": entry.details or {},
        "ip_address": entry.ip_address,
        "created_at": entry.created_at.isoformat(),
    }
    encoded = json.dumps(material, sort_keys=True, default=str).encode("utf-8")
    return hashlib.sha256(encoded).hexdigest()


class AuditService:
    def __init__(self, session: Session) -> None:
        self.session = session

    def _chain_filter(self, company_id: UUID | None, document_id: UUID | None):  # type: ignore[no-untyped-def]
        if document_id:
            return EsignAuditLog.document_id == document_id
        return (EsignAuditLog.company_id == company_id) & (EsignAuditLog.document_id.is_(None))

    def _chain_tip(self, company_id: UUID | None, document_id: UUID | None) -> EsignAuditLog | None:
        return self.session.exec(
            select(EsignAuditLog)
            .where(self._chain_filter(company_id, document_id))
            .order_by(EsignAuditLog.created_at.desc())
            .limit(1)
        ).first()

    def record(
        self,
        event_type: str,
        *,
        action: str,
        company_id: UUID | None = None,
        document_id: UUID | None = None,
        actor: AuditActor | None = None,
        resource: AuditResource | None = None,
        details: dict | None = None,
        ip_address: str | None = None,
        user_agent: str | None = None,
        geo_location: dict | None = None,
        commit: bool = True,
    ) -> EsignAuditLog:
        actor = actor or SYSTEM_ACTOR
        tip = self._chain_tip(company_id, document_id)
        # created_at is strictly increasing along a chain; the newest entry is its tip
        created_at = datetime.utcnow()
        if tip is not None and created_at <= tip.created_at:
            created_at = tip.created_at + timedelta(microseconds=1)
        if resource is None:
            resource = AuditResource(type="document", id=str(document_id) if document_id else None)
        log = EsignAuditLog(
            company_id=company_id,
            document_id=document_id,
            event_type=event_type,
            actor_type=actor.type,
            actor_id=actor.id,
            actor_email=actor.email,
            api_key_prefix=actor.api_key_prefix,
            resource_type=resource.type,
            resource_id=resource.id,
            action=action,
            details=details or {},
            ip_address=ip_address,
            user_agent=user_agent,
            geo_location=geo_location,
            created_at=created_at,
            previous_hash=tip.entry_hash if tip else None,
        )
        log.entry_hash = compute_entry_hash(log)
        self.session.add(log)
        if commit:
            self.session.commit()
        else:
            self.session.flush()
        return log

    def list_events(
        self,
        company_id: UUID,
        event_type: Optional[str] = None,
        document_id: Optional[UUID] = None,
        start_at: Optional[datetime] = None,
        end_at: Optional[datetime] = None,
        page: int = 1,
        page_size: int = 50,
    ) -> tuple[list[EsignAuditLog], int]:
        query = select(EsignAuditLog).where(EsignAuditLog.company_id == company_id)
        if event_type:
            query = query.where(EsignAuditLog.event_type == event_type)
        if document_id:
            query = query.where(EsignAuditLog.document_id == document_id)
        if start_at:
            query = query.where(EsignAuditLog.created_at >= start_at)
        if end_at:
            query = query.where(EsignAuditLog.created_at <= end_at)

        total = self.session.exec(
            select(func.count()).select_from(query.subquery())
        ).one()

        items = self.session.exec(
            query.order_by(EsignAuditLog.created_at.desc())
            .offset((page - 1) * page_size)
            .limit(page_size)
        ).all()
        return list(items), total

    def document_trail(self, document_id: UUID) -> list[EsignAuditLog]:
        """Entries of a document in append order, following the hash chain."""
        entries = list(
            self.session.exec(
                select(EsignAuditLog)
                .where(EsignAuditLog.document_id == document_id)
                .order_by(EsignAuditLog.created_at)
            ).all()
        )
        by_previous: dict[str | None, list[EsignAuditLog]] = {}
        for entry in entries:
            by_previous.setdefault(entry.previous_hash, []).append(entry)

        ordered: list[EsignAuditLog] = []
        seen: set[UUID] = set()
        cursor: str | None = None
        while True:
            candidates = [item for item in by_previous.get(cursor, []) if item.id not in seen]
            if not candidates:
                break
            current = candidates[0]
            ordered.append(current)
            seen.add(current.id)
            cursor = current.entry_hash
        ordered.extend(entry for entry in entries if entry.id not in seen)
        return ordered

    def verify_chain(self, document_id: UUID) -> bool:
        trail = self.document_trail(document_id)
        previous: str | None = None
        for entry in trail:
            if entry.previous_hash != previous:
                return False
            if compute_entry_hash(entry) != entry.entry_hash:
                return False
            previous = entry.entry_hash
        return True
