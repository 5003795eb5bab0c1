from functools import lru_cache
from typing import List, Optional
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """
    Global settings for the e-sign service.
    Values are read from the environment and from the .env file.
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # Project
    project_name: str = "Dealer E-Sign API"
    api_v1_str: str = "/api/v1"
    debug: bool = False

    # Security / JWT
    secret_key: str = "changeme"
    access_token_expire_minutes: int = 60
    algorithm: str = "HS256"

    # Database
    database_url: str = "sqlite:///./esign.db"

    # CORS
    allowed_origins: List[str] = [
        "http://localhost:5173",
        "http://127.0.0.1:5173",
        "http://localhost:3000",
        "http://127.0.0.1:3000",
    ]

    # Public URLs (links sent to recipients)
    public_base_url: str = "http://localhost:8000"
    public_app_url: str = "http://localhost:5173"

    # Signing tokens
    signing_token_ttl_hours: int = 168
    session_token_ttl_minutes: int = 60
    preview_token_ttl_hours: int = 24

    # OTP
    otp_length: int = 6
    otp_expiry_minutes: int = 10
    otp_max_attempts: int = 5
    otp_lockout_minutes: int = 30

    # E-mail
    email_backend: str = "smtp"
    smtp_host: Optional[str] = None
    smtp_port: int = 587
    smtp_username: Optional[str] = None
    smtp_password: Optional[str] = None
    smtp_sender: Optional[str] = None
    smtp_starttls: bool = True
    sendgrid_api_key: Optional[str] = None

    # Twilio (optional)
    twilio_account_sid: Optional[str] = None
    twilio_auth_token: Optional[str] = None
    twilio_from_number: Optional[str] = None
    twilio_messaging_service_sid: Optional[str] = None

    # Notification retries
    notification_max_attempts: int = 3
    notification_backoff_seconds: float = 1.0

    # Webhooks (callback_url of external initiators)
    webhook_secret: str = "changeme-webhook"
    webhook_max_attempts: int = 3
    webhook_backoff_seconds: float = 2.0
    webhook_timeout_seconds: float = 10.0

    # Geolocation of signers
    geolocation_enabled: bool = True
    geolocation_url: str = "http://ip-api.com/json/{ip}"
    geolocation_timeout_seconds: float = 1.0

    # Short links
    short_link_length: int = 8
    short_link_max_attempts: int = 10

    # Distributed locks
    lock_ttl_seconds: int = 60
    lock_max_retries: int = 3

    # Reminder sweep tolerance around each configured interval
    reminder_window_minutes: float = 7.5

    # Local storage for signed artifacts
    storage_path: str = "_storage"

    # Logging
    log_level: str = "INFO"
    log_file: Optional[str] = None

    def resolved_public_app_url(self) -> str:
        """Base URL of the signing front-end used in e-mails and signing links."""
        base = (self.public_app_url or "").strip()
        if base:
            return base.rstrip("/")
        return (self.public_base_url or "").rstrip("/")


@lru_cache
def get_settings() -> Settings:
    """Return the cached global settings instance."""
    return Settings()


settings = get_settings()
