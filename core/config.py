"""
core/config.py
Environment-based configuration using pydantic-settings.
Loads from .env file automatically; every key has a working local default.
"""

from functools import lru_cache

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Application settings loaded from environment variables / .env file."""

    # --- OpenClaw (Claude proxy for optional settlement commentary) ---
    OPENCLAW_BASE_URL: str = ""
    OPENCLAW_API_KEY: str = ""
    OPENCLAW_MODEL: str = "claude-sonnet-4-6"
    COMMENTARY_LOCALE: str = "en"
    COMMENTARY_TIMEOUT_SECONDS: float = 5.0

    # --- Position monitor ---
    POSITION_MONITOR_INTERVAL_SECONDS: int = 10
    MONITOR_MAX_CONCURRENCY: int = 8
    PRICE_LOOKUP_TIMEOUT_SECONDS: float = 2.0

    # --- Team reconciliation ---
    TEAM_SYNC_INTERVAL_MINUTES: int = 5

    # --- Combo config cache ---
    COMBO_CONFIG_CACHE_TTL_SECONDS: float = 30.0

    # --- Event push (UI / notification layer) ---
    EVENT_WEBHOOK_URL: str = ""
    EVENT_WEBHOOK_TIMEOUT_SECONDS: float = 3.0

    # --- Database ---
    DATABASE_URL: str = "sqlite+aiosqlite:///./settlement_engine.db"

    LOG_LEVEL: str = "INFO"

    model_config = {
        "env_file": ".env",
        "extra": "ignore",
    }

    @property
    def commentary_enabled(self) -> bool:
        return bool(self.OPENCLAW_BASE_URL and self.OPENCLAW_API_KEY)


@lru_cache
def get_settings() -> Settings:
    """Singleton access to application settings."""
    return Settings()
