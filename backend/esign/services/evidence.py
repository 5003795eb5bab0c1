from __future__ import annotations

import hashlib
import io
import json
import zipfile
from datetime import datetime
from uuid import UUID

from fastapi import status
from sqlmodel import Session

from esign.core.errors import EsignError, document_not_found
from esign.models.document import DocumentStatus, EsignDocument
from esign.schemas.audit import AuditLogRead
from esign.schemas.document import VerificationRead
from esign.services.audit import AuditService
from esign.services.storage import StorageBackend, get_storage

ARTIFACTS = {
    "pdf": ("pdf_url", "signed.pdf"),
    "certificate": ("certificate_url", "certificate.pdf"),
}


def document_not_completed() -> EsignError:
    return EsignError("DOCUMENT_NOT_COMPLETED", "Document is not completed yet", status.HTTP_400_BAD_REQUEST)


def artifact_not_found(name: str) -> EsignError:
    return EsignError("ARTIFACT_NOT_FOUND", f"Stored {name} not found", status.HTTP_404_NOT_FOUND)


class EvidenceService:
    """Signed artifacts, evidence package and integrity verification."""

    def __init__(
        self,
        session: Session,
        storage: StorageBackend | None = None,
        audit_service: AuditService | None = None,
    ) -> None:
        self.session = session
        self.storage = storage or get_storage()
        self.audit_service = audit_service or AuditService(session)

    def _get_document(self, company_id: UUID, document_id: UUID) -> EsignDocument:
        document = self.session.get(EsignDocument, document_id)
        if document is None or document.company_id != company_id or document.is_deleted:
            raise document_not_found()
        return document

    def _load(self, document: EsignDocument, artifact: str) -> bytes | None:
        attribute, _ = ARTIFACTS[artifact]
        path = getattr(document, attribute)
        if not path:
            return None
        try:
            return self.storage.load_bytes(path)
        except FileNotFoundError:
            return None

    def load_artifact(self, company_id: UUID, document_id: UUID, artifact: str = "pdf") -> tuple[bytes, str]:
        if artifact not in ARTIFACTS:
            raise EsignError("VALIDATION_ERROR", f"Unknown artifact '{artifact}'", status.HTTP_400_BAD_REQUEST)
        document = self._get_document(company_id, document_id)
        if document.status != DocumentStatus.COMPLETED:
            raise document_not_completed()
        data = self._load(document, artifact)
        if data is None:
            raise artifact_not_found(artifact)
        _, name = ARTIFACTS[artifact]
        return data, f"{document.id}-{name}"

    def build_package(self, company_id: UUID, document_id: UUID) -> tuple[bytes, str]:
        """Zip with manifest, audit trail and whatever signed artifacts exist."""
        document = self._get_document(company_id, document_id)
        trail = self.audit_service.document_trail(document.id)
        audit_json = json.dumps(
            [AuditLogRead.model_validate(entry, from_attributes=True).model_dump(mode="json") for entry in trail],
            indent=2,
        ).encode("utf-8")

        files: dict[str, bytes] = {"audit_trail.json": audit_json}
        for artifact in ARTIFACTS:
            data = self._load(document, artifact)
            if data is not None:
                files[ARTIFACTS[artifact][1]] = data

        manifest = {
            "document_id": str(document.id),
            "company_id": str(document.company_id),
            "template_id": str(document.template_id),
            "template_name": (document.template_snapshot or {}).get("name"),
            "status": document.status.value,
            "created_at": document.created_at.isoformat(),
            "completed_at": document.completed_at.isoformat() if document.completed_at else None,
            "pdf_hash": document.pdf_hash,
            "audit_chain_valid": self.audit_service.verify_chain(document.id),
            "audit_entries": len(trail),
            "recipients": [
                {
                    "email": recipient.email,
                    "name": recipient.name,
                    "signature_order": recipient.signature_order,
                    "status": recipient.status.value,
                    "signed_at": recipient.signed_at.isoformat() if recipient.signed_at else None,
                    "ip_address": recipient.ip_address,
                }
                for recipient in document.recipients
            ],
            "files": {name: hashlib.sha256(content).hexdigest() for name, content in files.items()},
            "generated_at": datetime.utcnow().isoformat(),
        }

        buffer = io.BytesIO()
        with zipfile.ZipFile(buffer, mode="w", compression=zipfile.ZIP_DEFLATED) as archive:
            archive.writestr("manifest.json", json.dumps(manifest, indent=2))
            for name, content in files.items():
                archive.writestr(name, content)
        return buffer.getvalue(), f"evidence-{document.id}.zip"

    def verify(self, company_id: UUID, document_id: UUID, uploaded: bytes | None = None) -> VerificationRead:
        document = self._get_document(company_id, document_id)
        content = uploaded if uploaded else self._load(document, "pdf")
        computed = hashlib.sha256(content).hexdigest() if content else None
        return VerificationRead(
            document_id=document.id,
            status=document.status,
            pdf_hash=document.pdf_hash,
            computed_hash=computed,
            hash_matches=bool(computed and document.pdf_hash and computed == document.pdf_hash),
            audit_chain_valid=self.audit_service.verify_chain(document.id),
            checked_at=datetime.utcnow(),
        )
