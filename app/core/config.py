from pathlib import Path

from pydantic import field_validator
from pydantic_settings import BaseSettings

# .env at the project root: app/core/config.py -> app/core -> app -> root
_ROOT = Path(__file__).resolve().parent.parent.parent
_ENV_FILE = _ROOT / ".env"


class Settings(BaseSettings):
    secret_key: str = "change-me-in-production"
    database_url: str = "sqlite:///./edupay_push.db"
    # Comma separated origin list; "*" allows every origin
    cors_origins: str = "*"
    rate_limit_per_minute: int = 60
    # Send trigger is admin-only, keep it tight
    rate_limit_send_per_minute: int = 10
    # X-Admin-Secret for the send trigger and admin listings
    admin_secret: str = ""
    # VAPID (base64url). Public key is served to clients at runtime, private key signs deliveries.
    vapid_public_key: str = ""
    vapid_private_key: str = ""
    vapid_subject: str = "mailto:support@edupay.app"
    # Delivery tuning
    push_ttl_seconds: int = 86400
    push_max_workers: int = 8
    push_endpoint_timeout_seconds: float = 10.0
    push_fanout_timeout_seconds: float = 60.0
    push_max_retries: int = 2
    push_retry_backoff_seconds: float = 0.5
    # Render defaults shared by the sender and the delivery agent
    push_default_title: str = "EduPay Notification"
    push_default_body: str = "You have a new notification"
    push_default_icon: str = "/favicon.ico"
    push_default_badge: str = "/favicon.ico"
    push_default_tag: str = "edupay-notification"

    model_config = {
        "env_file": _ENV_FILE if _ENV_FILE.is_file() else ".env",
        "extra": "ignore",
    }

    @field_validator("vapid_public_key", "vapid_private_key", "admin_secret", mode="before")
    @classmethod
    def strip_keys(cls, v: str | None) -> str:
        """Copy/paste whitespace around keys breaks signing."""
        return (v or "").strip()


settings = Settings()


def is_push_configured() -> bool:
    """Both VAPID keys present?"""
    return bool(settings.vapid_public_key and settings.vapid_private_key)
