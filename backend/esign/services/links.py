from uuid import UUID

from esign.core.config import settings


def signing_url(token: str) -> str:
    return f"{settings.resolved_public_app_url()}/sign/{token}"


def preview_url(token: str) -> str:
    return f"{settings.resolved_public_app_url()}/preview/{token}"


def document_download_url(document_id: UUID) -> str:
    base = settings.public_base_url.rstrip("/")
    return f"{base}{settings.api_v1_str}/esign/documents/{document_id}/download"


def certificate_download_url(document_id: UUID) -> str:
    return f"{document_download_url(document_id)}?artifact=certificate"
