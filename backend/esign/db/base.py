# noqa: F401 to ensure models are imported for metadata
from esign.models.api_key import EsignAPIKey
from esign.models.audit import EsignAuditLog
from esign.models.bulk import EsignBulkJob, EsignBulkJobItem
from esign.models.company import Company, User
from esign.models.document import EsignDocument, EsignRecipient
from esign.models.lock import EsignLock
from esign.models.otp import EsignOTP
from esign.models.short_link import EsignShortLink
from esign.models.template import EsignTemplate
from esign.models.token import EsignToken

__all__ = [
    "EsignAPIKey",
    "EsignAuditLog",
    "EsignBulkJob",
    "EsignBulkJobItem",
    "Company",
    "User",
    "EsignDocument",
    "EsignRecipient",
    "EsignLock",
    "EsignOTP",
    "EsignShortLink",
    "EsignTemplate",
    "EsignToken",
]
