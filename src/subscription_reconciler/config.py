import os
from typing import Optional


def _getenv(name: str, default: Optional[str] = None) -> Optional[str]:
    value = os.getenv(name)
    if value is None:
        return default
    value = value.strip()
    return value if value else default


def _getenv_bool(name: str, default: bool = False) -> bool:
    raw = _getenv(name)
    if raw is None:
        return default
    return raw.lower() in {"1", "true", "yes", "y", "on"}


class Settings:
    """
    Runtime configuration read from environment variables.

    Missing values fall back to defaults; nothing here raises, so the
    application can start without a RevenueCat key (lookups then run in
    mock mode and report every user as free).
    """

    def __init__(self) -> None:
        self.environment = (_getenv("ENVIRONMENT", "development") or "development").lower()
        self.log_level = (_getenv("LOG_LEVEL", "INFO") or "INFO").upper()
        self.database_url = _getenv("DATABASE_URL", "sqlite:///./subscriptions.db") or "sqlite:///./subscriptions.db"
        self.db_auto_create = _getenv_bool("DB_AUTO_CREATE", default=True)

        self.revenuecat_api_key = _getenv("REVENUECAT_API_KEY")
        self.revenuecat_base_url = (
            _getenv("REVENUECAT_BASE_URL", "https://api.revenuecat.com/v1") or "https://api.revenuecat.com/v1"
        ).rstrip("/")
        self.revenuecat_timeout_seconds = float(_getenv("REVENUECAT_TIMEOUT_SECONDS", "5.0") or "5.0")
        self.revenuecat_entitlement_id = _getenv("REVENUECAT_ENTITLEMENT_ID", "premium") or "premium"

    @property
    def is_production(self) -> bool:
        return self.environment == "production"
