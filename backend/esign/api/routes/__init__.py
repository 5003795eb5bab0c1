from . import admin, auth, company_api, health, public_signing

__all__ = [
    "admin",
    "auth",
    "company_api",
    "health",
    "public_signing",
]
