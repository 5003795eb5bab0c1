from esign.schemas import api_key, audit, auth, bulk, common, document, public, template

__all__ = [
    "api_key",
    "audit",
    "auth",
    "bulk",
    "common",
    "document",
    "public",
    "template",
]
