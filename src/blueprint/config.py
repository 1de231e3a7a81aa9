"""
Lifestyle Blueprint - Configuration and settings.

BlueprintSettings reads from the environment and .env. Every field has a
default so the package imports cleanly in tests and CLI-only use.
"""

import logging
from functools import lru_cache
from typing import Literal

from pydantic_settings import BaseSettings, SettingsConfigDict


class BlueprintSettings(BaseSettings):
    """
    Application settings.

    Retry bounds and timeouts are per generation operation. Full generation
    gets a long budget, simple mutations (approve) a short one.
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # Supabase
    supabase_url: str = "http://localhost:54321"
    supabase_anon_key: str = ""
    supabase_service_role_key: str = ""

    # Generation service (meal plan / shopping list creation)
    generation_api_url: str = "http://localhost:3000"
    # Shared token the generation service sends with progress updates
    progress_token: str | None = None

    # Conversational AI backend (webhook variant)
    openai_api_key: str = ""
    webhook_secret: str | None = None

    # Application
    blueprint_env: Literal["development", "staging", "production"] = "development"
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = "INFO"

    # Dev user for the CLI chat
    dev_user_id: str = "00000000-0000-0000-0000-000000000001"

    # Generation pipeline bounds
    meal_plan_max_attempts: int = 4
    meal_plan_timeout_seconds: float = 120.0
    revision_max_attempts: int = 3
    revision_timeout_seconds: float = 60.0
    approval_max_attempts: int = 3
    approval_timeout_seconds: float = 30.0
    shopping_list_max_attempts: int = 3
    shopping_list_timeout_seconds: float = 120.0
    retry_base_delay_seconds: float = 1.0

    # Degraded progress (relay unavailable)
    simulated_progress_interval_seconds: float = 2.0

    # In-memory onboarding sessions, cleared on the next request once idle this long
    session_expire_minutes: int = 60
    finished_session_expire_minutes: int = 10

    @property
    def is_development(self) -> bool:
        return self.blueprint_env == "development"

    @property
    def is_production(self) -> bool:
        return self.blueprint_env == "production"


@lru_cache
def get_settings() -> BlueprintSettings:
    """Get cached settings instance."""
    return BlueprintSettings()


class _SettingsProxy:
    """Lazy proxy for settings to avoid loading .env at import time."""

    _instance: BlueprintSettings | None = None

    def __getattr__(self, name: str):
        if self._instance is None:
            self._instance = get_settings()
        return getattr(self._instance, name)


settings = _SettingsProxy()


def configure_logging(level: str | None = None) -> None:
    """Configure root logging from settings (CLI and server startup)."""
    logging.basicConfig(
        level=level or settings.log_level,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    # Supabase/httpx are chatty at INFO
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("hpack").setLevel(logging.WARNING)
