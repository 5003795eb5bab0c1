from esign.services.api_key import ApiKeyService
from esign.services.audit import AuditService
from esign.services.auth import AuthService
from esign.services.bulk import BulkService
from esign.services.document import DocumentService
from esign.services.evidence import EvidenceService
from esign.services.notification import NotificationService
from esign.services.otp import OTPService
from esign.services.post_signature import PostSignatureService
from esign.services.signing import SigningService
from esign.services.template import TemplateService
from esign.services.timeline import TimelineService
from esign.services.token import TokenService
from esign.services.webhook import CallbackService, WebhookService

__all__ = [
    "ApiKeyService",
    "AuditService",
    "AuthService",
    "BulkService",
    "CallbackService",
    "DocumentService",
    "EvidenceService",
    "NotificationService",
    "OTPService",
    "PostSignatureService",
    "SigningService",
    "TemplateService",
    "TimelineService",
    "TokenService",
    "WebhookService",
]
