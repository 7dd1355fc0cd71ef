"""
SavvyShield - Configuration Settings

Centralized configuration using Pydantic Settings for type-safe
environment variable handling with validation.
"""

from functools import lru_cache
from typing import Literal

from pydantic import Field, computed_field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


DEFAULT_WEBHOOK_SECRET = "default_secret"


class Settings(BaseSettings):
    """
    Application settings loaded from environment variables.

    All settings can be overridden via environment variables.
    Example: WEBHOOK_BASE_URL=https://apps.example.com sets webhook_base_url.
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # =========================================================================
    # Application Settings
    # =========================================================================
    app_env: Literal["development", "staging", "production"] = Field(
        default="development",
        description="Application environment"
    )
    app_debug: bool = Field(
        default=True,
        description="Enable debug mode"
    )
    app_log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = Field(
        default="INFO",
        description="Logging level"
    )

    # =========================================================================
    # Storage Configuration
    # =========================================================================
    storage_backend: Literal["postgres", "memory"] = Field(
        default="postgres",
        description="Where shield events and enforcements are persisted"
    )
    postgres_host: str = Field(
        default="localhost",
        description="PostgreSQL server hostname"
    )
    postgres_port: int = Field(
        default=5432,
        description="PostgreSQL server port"
    )
    postgres_db: str = Field(
        default="savvyshield",
        description="PostgreSQL database name"
    )
    postgres_user: str = Field(
        default="shield_user",
        description="PostgreSQL username"
    )
    postgres_password: str = Field(
        default="",
        description="PostgreSQL password (set via POSTGRES_PASSWORD env var)"
    )

    @computed_field  # type: ignore[prop-decorator]
    @property
    def postgres_url(self) -> str:
        """Construct PostgreSQL connection URL for asyncpg."""
        return (
            f"postgresql+asyncpg://{self.postgres_user}:{self.postgres_password}"
            f"@{self.postgres_host}:{self.postgres_port}/{self.postgres_db}"
        )

    # =========================================================================
    # API Configuration
    # =========================================================================
    api_host: str = Field(
        default="0.0.0.0",
        description="API server bind address"
    )
    api_port: int = Field(
        default=8000,
        description="API server port"
    )

    # =========================================================================
    # Security / Access Control
    # =========================================================================
    api_token: str | None = Field(
        default=None,
        description="Token required by the ingest endpoint (optional)"
    )
    admin_token: str | None = Field(
        default=None,
        description="Token required by shield admin endpoints (optional)"
    )
    metrics_token: str | None = Field(
        default=None,
        description="Token required to access /metrics (optional)"
    )
    cors_allow_origins: str = Field(
        default="http://localhost:3000",
        description="Comma-separated list of allowed CORS origins"
    )

    # =========================================================================
    # Enforcement Webhooks
    # =========================================================================
    webhook_base_url: str = Field(
        default="http://localhost:5000",
        description="Base URL; enforcements POST to {base}/{app}/shield/enforce"
    )
    webhook_secret: str = Field(
        default=DEFAULT_WEBHOOK_SECRET,
        description="Shared secret for HMAC-SHA256 webhook signatures"
    )
    webhook_timeout_seconds: float = Field(
        default=10.0,
        gt=0,
        description="Timeout for a single webhook POST"
    )
    webhook_replay_window_seconds: int = Field(
        default=300,
        description="Max age (either direction) of X-Shield-Timestamp accepted by receivers"
    )
    webhook_queue_size: int = Field(
        default=1000,
        ge=1,
        description="Max enforcements waiting for delivery"
    )
    receiver_app_name: str = Field(
        default="final10",
        description="App whose enforcement receiver is mounted in this process"
    )

    # =========================================================================
    # Proactive Investigation
    # =========================================================================
    proactive_enabled: bool = Field(
        default=True,
        description="Start the periodic investigation sweep on startup"
    )
    proactive_interval_seconds: int = Field(
        default=300,
        ge=1,
        description="Seconds between investigation sweeps"
    )
    proactive_trigger_threshold: float = Field(
        default=0.6,
        ge=0.0,
        le=1.0,
        description="Ingest risk score above which a user is investigated immediately"
    )
    proactive_max_users_per_sweep: int = Field(
        default=100,
        ge=1,
        description="Cap on users investigated per sweep tick"
    )
    game_apps: str = Field(
        default="gamesavvy",
        description="Comma-separated apps whose events carry game outcomes"
    )

    # =========================================================================
    # Decision Tables
    # =========================================================================
    decision_table_path: str | None = Field(
        default="config/decision_table.yaml",
        description="YAML file overriding the built-in decision table"
    )

    # =========================================================================
    # Metrics Configuration
    # =========================================================================
    metrics_enabled: bool = Field(
        default=True,
        description="Enable Prometheus metrics endpoint"
    )

    @computed_field  # type: ignore[prop-decorator]
    @property
    def cors_allow_origins_list(self) -> list[str]:
        """Return CORS origins as a list."""
        if not self.cors_allow_origins:
            return []
        return [origin.strip() for origin in self.cors_allow_origins.split(",") if origin.strip()]

    @computed_field  # type: ignore[prop-decorator]
    @property
    def game_apps_set(self) -> set[str]:
        """Return game apps as a set."""
        return {app.strip() for app in self.game_apps.split(",") if app.strip()}

    @model_validator(mode="after")
    def _validate_production_security(self) -> "Settings":
        """Enforce required security settings in production."""
        if self.app_env == "production":
            missing: list[str] = []
            if not self.api_token:
                missing.append("API_TOKEN")
            if not self.admin_token:
                missing.append("ADMIN_TOKEN")
            if not self.metrics_token:
                missing.append("METRICS_TOKEN")
            if not self.webhook_secret or self.webhook_secret == DEFAULT_WEBHOOK_SECRET:
                missing.append("WEBHOOK_SECRET")
            if missing:
                raise ValueError(
                    "Missing required settings for production: "
                    + ", ".join(missing)
                )
        return self


@lru_cache
def get_settings() -> Settings:
    """
    Get cached settings instance.

    Uses LRU cache to avoid re-parsing environment on every call.
    """
    return Settings()


# Singleton settings instance for easy import
settings = get_settings()
