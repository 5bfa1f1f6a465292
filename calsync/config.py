"""Application configuration management."""

from functools import lru_cache
from typing import Optional

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")

    # Database
    database_path: str = "/data/calendar-sync.db"

    # Encryption (64 hex characters = 32 bytes)
    calendar_token_encryption_key: Optional[str] = None

    # Google OAuth client
    google_client_id: str = ""
    google_client_secret: str = ""

    # Server
    public_url: str = "http://localhost:3000"
    log_level: str = "info"

    # Admin session / cron authentication
    session_secret_key: Optional[str] = None
    cron_secret: Optional[str] = None

    # Runtime features
    enable_webhooks: bool = True
    enable_scheduler: bool = True

    # Rate limiting
    rate_limit_per_minute: int = 120

    # Job intervals
    retry_queue_minutes: int = 1
    outbox_minutes: int = 1
    webhook_renewal_hours: int = 6
    token_refresh_minutes: int = 30
    alert_process_minutes: int = 1

    # Retention settings (days)
    sync_log_retention_days: int = 90
    outbox_retention_days: int = 7
    quota_retention_days: int = 30

    # Calendar event content
    business_location: str = "The Puppy Day, La Mirada, CA"
    business_timezone: str = "America/Los_Angeles"
    calendar_sync_tag: str = "appointmentSync"


@lru_cache()
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()


def get_encryption_key() -> bytes:
    """Load the token encryption key from configuration.

    The key must be 64 hex characters. The value itself is never logged.
    """
    from calsync.encryption import InvalidKeyLengthError, MissingKeyError

    raw = get_settings().calendar_token_encryption_key
    if not raw:
        raise MissingKeyError(
            "CALENDAR_TOKEN_ENCRYPTION_KEY environment variable is not set"
        )

    raw = raw.strip()
    if len(raw) != 64:
        raise InvalidKeyLengthError(
            "Invalid encryption key length: expected 64 hex characters (32 bytes)"
        )

    try:
        return bytes.fromhex(raw)
    except ValueError:
        raise InvalidKeyLengthError(
            "Invalid encryption key length: key is not valid hex"
        ) from None


def get_session_secret() -> str:
    """Get session secret key, derived from the encryption key if not set."""
    settings = get_settings()
    if settings.session_secret_key:
        return settings.session_secret_key

    import hashlib
    key = get_encryption_key()
    return hashlib.sha256(key + b"session_secret").hexdigest()
