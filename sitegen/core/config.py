"""
SiteForge Pipeline - Configuration
===================================

All application settings loaded from environment variables.
Uses pydantic-settings for validation and type conversion.
"""

from functools import lru_cache
from typing import Literal

from pydantic import computed_field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # ==========================================================================
    # Application
    # ==========================================================================
    APP_NAME: str = "SiteForge Pipeline"
    APP_VERSION: str = "0.1.0"
    ENVIRONMENT: Literal["development", "staging", "production", "test"] = "development"

    # ==========================================================================
    # API
    # ==========================================================================
    API_V1_PREFIX: str = "/api/v1"
    CORS_ORIGINS: list[str] = ["http://localhost:3000", "http://localhost:5173"]

    # Bearer key shared by the dispatcher and the task endpoints.
    # When unset, task endpoints accept unauthenticated calls.
    SERVICE_KEY: str | None = None

    # ==========================================================================
    # Database (supports SQLite and PostgreSQL)
    # ==========================================================================
    DATABASE_URL: str = "sqlite+aiosqlite:///./sitegen.db"
    DATABASE_POOL_SIZE: int = 5
    DATABASE_MAX_OVERFLOW: int = 10
    DATABASE_ECHO: bool = False

    # ==========================================================================
    # Dispatch
    # ==========================================================================
    TASK_BASE_URL: str = "http://localhost:8000/api/v1/agents"
    DISPATCH_TIMEOUT_SECONDS: float = 10.0

    # ==========================================================================
    # Orchestration
    # ==========================================================================
    QUALITY_THRESHOLD: float = 7.0
    MAX_RETRIES: int = 3
    MAX_ATTEMPTS: int = 3

    # Collector budget stays under the host invocation timeout (60s)
    BARRIER_POLL_INTERVAL_SECONDS: float = 2.0
    BARRIER_MAX_WAIT_SECONDS: float = 55.0
    FANOUT_MAX_WAIT_SECONDS: float = 55.0
    FANOUT_WATCHDOG_ENABLED: bool = False

    # chunked: shared-components + section-generator per section, then page-builders
    # paged: shared-components + page-builder per page
    CODEGEN_MODE: Literal["chunked", "paged"] = "chunked"

    # ==========================================================================
    # LLM Completion API (OpenAI-compatible)
    # ==========================================================================
    OPENAI_API_KEY: str | None = None
    OPENAI_BASE_URL: str = "https://api.openai.com/v1"
    LLM_DEFAULT_MODEL: str = "gpt-4o"
    LLM_FAST_MODEL: str = "gpt-4o-mini"
    LLM_TIMEOUT_SECONDS: float = 50.0
    LLM_MAX_ATTEMPTS: int = 3
    LLM_BACKOFF_SECONDS: float = 1.0
    LLM_MAX_BACKOFF_SECONDS: float = 8.0

    # ==========================================================================
    # External Services
    # ==========================================================================
    SANITY_MANAGEMENT_TOKEN: str | None = None
    SANITY_ORGANIZATION_ID: str | None = None
    RESEND_API_KEY: str | None = None
    VERCEL_TOKEN: str | None = None
    VERCEL_TEAM_ID: str | None = None
    PEXELS_API_KEY: str | None = None
    PROVIDER_TIMEOUT_SECONDS: float = 30.0

    # ==========================================================================
    # Computed Properties
    # ==========================================================================
    @computed_field  # type: ignore[misc]
    @property
    def is_development(self) -> bool:
        return self.ENVIRONMENT == "development"

    @computed_field  # type: ignore[misc]
    @property
    def is_production(self) -> bool:
        return self.ENVIRONMENT == "production"


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()


# Convenience export
settings = get_settings()
