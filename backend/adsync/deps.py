"""Dependency providers and settings management."""

from functools import lru_cache
from typing import List, Optional

from fastapi import Header, HTTPException, status
from pydantic_settings import BaseSettings, SettingsConfigDict


DEFAULT_RESULT_ACTION_TYPES = [
    "onsite_conversion.messaging_conversation_started_7d",
    "onsite_conversion.messaging_first_reply",
    "lead",
    "purchase",
    "onsite_conversion.lead",
    "onsite_conversion.purchase",
    "onsite_web_lead",
    "onsite_web_purchase",
    "offsite_complete_registration_add_meta_leads",
]


class Settings(BaseSettings):
    """Application settings loaded from environment or .env."""

    # Shared secret for system-to-system trigger calls (cron, n8n, admin scripts)
    INTERNAL_API_KEY: str = "change-this-internal-key"

    # Fernet key for stored platform tokens and Telegram bot tokens
    TOKEN_ENCRYPTION_KEY: str = ""

    REDIS_URL: str = "redis://localhost:6379/0"

    # Upstream Graph API
    ADS_API_BASE_URL: str = "https://graph.facebook.com/v21.0"
    ADS_API_TIMEOUT_SECONDS: float = 30.0
    ADS_API_PAGE_DELAY_SECONDS: float = 1.0
    ADS_API_MAX_RETRIES: int = 3
    ADS_API_CALLS_PER_HOUR: int = 20000
    RATE_LIMIT_THRESHOLD_PCT: float = 70.0
    RATE_LIMIT_COOLDOWN_SECONDS: float = 10.0

    # Scheduling (fixed offset, not the host locale)
    LOCAL_UTC_OFFSET_HOURS: int = 7
    ACCOUNT_SYNC_CONCURRENCY: int = 5
    HOURLY_SYNC_CONCURRENCY: int = 30

    # Priority-ordered action types, comma-separated; the first one present
    # on a row is that row's "results".
    RESULT_ACTION_TYPES: str = ",".join(DEFAULT_RESULT_ACTION_TYPES)
    MESSAGING_TOTAL_ACTION_TYPE: str = "onsite_conversion.messaging_conversation_started_7d"
    MESSAGING_NEW_ACTION_TYPE: str = "onsite_conversion.messaging_first_reply"
    PURCHASE_VALUE_ACTION_TYPES: str = "purchase,omni_purchase"

    STATS_RETENTION_DAYS: int = 30
    HOURLY_RETENTION_DAYS: int = 30

    LEAD_LOOKUP_DELAY_SECONDS: float = 0.1
    LEAD_ATTRIBUTION_BATCH_LIMIT: int = 100

    TELEGRAM_API_URL: str = "https://api.telegram.org"

    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")

    @property
    def result_action_types(self) -> List[str]:
        return _split_csv(self.RESULT_ACTION_TYPES)

    @property
    def purchase_value_action_types(self) -> List[str]:
        return _split_csv(self.PURCHASE_VALUE_ACTION_TYPES)


def _split_csv(value: str) -> List[str]:
    return [item.strip() for item in value.split(",") if item.strip()]


@lru_cache()
def get_settings() -> Settings:
    """Return cached settings instance."""
    return Settings()  # type: ignore[call-arg]


def require_internal_key(
    x_internal_key: Optional[str] = Header(default=None, alias="X-Internal-Key"),
) -> None:
    """Guard trigger endpoints with the shared internal API key.

    The trigger surface is system-to-system only (cron, automation), so a
    shared secret header is enough; end-user auth lives in another service.
    """
    if not x_internal_key:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Missing internal key")
    if x_internal_key != get_settings().INTERNAL_API_KEY:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid internal key")
