from __future__ import annotations

from datetime import datetime
from uuid import UUID

from fastapi import status
from sqlmodel import Session, select

from esign.core.config import settings
from esign.core.errors import EsignError
from esign.models.short_link import EsignShortLink
from esign.utils.security import generate_alphanumeric_code


class ShortLinkService:
    def __init__(self, session: Session, base_url: str | None = None) -> None:
        self.session = session
        self.base_url = (base_url or settings.public_base_url).rstrip("/")

    def build_url(self, short_code: str) -> str:
        return f"{self.base_url}/s/{short_code}"

    def _generate_unique_code(self) -> str:
        for _ in range(settings.short_link_max_attempts):
            candidate = generate_alphanumeric_code(settings.short_link_length)
            exists = self.session.exec(
                select(EsignShortLink.id).where(EsignShortLink.short_code == candidate)
            ).first()
            if exists is None:
                return candidate
        raise RuntimeError("Unable to generate a unique short code")

    def create(
        self,
        *,
        company_id: UUID,
        document_id: UUID,
        target_url: str,
        recipient_id: UUID | None = None,
        expires_at: datetime | None = None,
    ) -> EsignShortLink:
        link = EsignShortLink(
            short_code=self._generate_unique_code(),
            company_id=company_id,
            document_id=document_id,
            recipient_id=recipient_id,
            target_url=target_url,
            expires_at=expires_at,
        )
        self.session.add(link)
        self.session.flush()
        return link

    def resolve(self, short_code: str) -> str:
        link = self.session.exec(
            select(EsignShortLink).where(EsignShortLink.short_code == (short_code or "").strip())
        ).first()
        if link is None:
            raise EsignError("SHORT_LINK_NOT_FOUND", "Short link not found", status.HTTP_404_NOT_FOUND)
        if link.expires_at and link.expires_at <= datetime.utcnow():
            raise EsignError("SHORT_LINK_EXPIRED", "This link has expired", status.HTTP_410_GONE)
        link.click_count += 1
        link.last_accessed_at = datetime.utcnow()
        self.session.add(link)
        self.session.commit()
        return link.target_url
