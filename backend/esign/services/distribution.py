from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta

from esign.models.document import EsignDocument, EsignRecipient
from esign.models.token import TokenType
from esign.services.links import signing_url
from esign.services.short_link import ShortLinkService
from esign.services.token import TokenService


@dataclass
class RecipientLink:
    signing_url: str
    short_url: str | None = None


class RecipientLinkIssuer:
    """Issues a fresh signing token (and short link) for one recipient slot.

    Any previous token of the recipient is revoked first, so a slot only ever
    holds one live link. The caller commits.
    """

    def __init__(self, token_service: TokenService, short_link_service: ShortLinkService) -> None:
        self.token_service = token_service
        self.short_link_service = short_link_service

    def _ttl(self, document: EsignDocument) -> timedelta | None:
        if document.expires_at is None:
            return None
        remaining = document.expires_at - datetime.utcnow()
        return remaining if remaining.total_seconds() > 0 else None

    def issue(
        self,
        document: EsignDocument,
        recipient: EsignRecipient,
        *,
        short_link_enabled: bool = False,
        revoke_reason: str = "reissued",
    ) -> RecipientLink:
        self.token_service.revoke_recipient_tokens(recipient.id, reason=revoke_reason)
        issued = self.token_service.issue_token(
            {
                "document_id": document.id,
                "company_id": document.company_id,
                "recipient_id": recipient.id,
                "email": recipient.email,
            },
            TokenType.SIGNING,
            self._ttl(document),
        )
        recipient.token = issued.token
        recipient.token_id = issued.token_id
        recipient.token_expires_at = issued.expires_at
        url = signing_url(issued.token)

        short_url = None
        if short_link_enabled:
            link = self.short_link_service.create(
                company_id=document.company_id,
                document_id=document.id,
                recipient_id=recipient.id,
                target_url=url,
                expires_at=issued.expires_at,
            )
            recipient.short_code = link.short_code
            short_url = self.short_link_service.build_url(link.short_code)
        else:
            recipient.short_code = None
        recipient.touch()
        return RecipientLink(signing_url=url, short_url=short_url)

    def current(self, recipient: EsignRecipient) -> RecipientLink | None:
        if not recipient.token:
            return None
        short_url = self.short_link_service.build_url(recipient.short_code) if recipient.short_code else None
        return RecipientLink(signing_url=signing_url(recipient.token), short_url=short_url)


def clear_recipient_link(recipient: EsignRecipient) -> None:
    recipient.token = None
    recipient.token_id = None
    recipient.token_expires_at = None
    recipient.touch()
