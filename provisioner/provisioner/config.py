"""Provisioner configuration loaded from environment variables."""

from __future__ import annotations

import logging
from pathlib import Path

from pydantic import SecretStr, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

logger = logging.getLogger(__name__)


class Settings(BaseSettings):
    """Application settings loaded from environment variables with PROVISIONER_ prefix."""

    model_config = SettingsConfigDict(
        env_prefix="PROVISIONER_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
    )

    # State store
    database_url: str = "sqlite+aiosqlite:///.provisioner/state.db"
    database_pool_size: int = 10
    database_max_overflow: int = 20

    # Compute provider (Railway GraphQL API)
    railway_api_url: str = "https://backboard.railway.app/graphql/v2"
    railway_token: SecretStr | None = None
    railway_project_id: str | None = None
    railway_environment_id: str | None = None
    source_repo: str = "tenant-runtime/agent-runtime"
    source_branch: str = "main"

    # Database provider (Neon REST API)
    neon_api_url: str = "https://console.neon.tech/api/v2"
    neon_api_key: SecretStr | None = None
    neon_project_id: str | None = None
    neon_parent_branch_id: str | None = None
    neon_database_name: str = "neondb"
    neon_role_name: str = "neondb_owner"

    # Workspaces
    workspaces_dir: Path = Path(".provisioner/workspaces")
    archive_dir: Path = Path(".provisioner/archive")

    # Retries and timeouts
    provider_max_retries: int = 2
    retry_base_delay: float = 2.0
    retry_max_delay: float = 30.0
    http_timeout: float = 30.0
    deployment_poll_interval: float = 10.0
    deployment_timeout_seconds: float = 300.0
    deployment_max_poll_errors: int = 5
    health_poll_interval: float = 10.0
    health_timeout_seconds: float = 300.0
    health_request_timeout: float = 5.0

    # Tenants
    credential_prefix: str = "tnk_"
    tenant_retention_days: int = 30
    model_api_key: SecretStr | None = None

    # Billing
    stripe_secret_key: SecretStr | None = None
    stripe_webhook_secret: SecretStr | None = None
    stripe_price_id_starter: str = "price_starter"
    stripe_price_id_pro: str = "price_pro"
    stripe_price_id_team: str = "price_team"

    # Logging
    log_level: str = "INFO"
    structured_logging: bool = False

    @field_validator("credential_prefix")
    @classmethod
    def _validate_credential_prefix(cls, value: str) -> str:
        if not value or not value.replace("_", "").isalnum():
            raise ValueError("credential_prefix must be alphanumeric with optional underscores")
        return value

    @field_validator("provider_max_retries", "tenant_retention_days")
    @classmethod
    def _validate_non_negative(cls, value: int) -> int:
        if value < 0:
            raise ValueError("value must be >= 0")
        return value

    @field_validator("log_level")
    @classmethod
    def _validate_log_level(cls, value: str) -> str:
        level = value.upper()
        if level not in logging.getLevelNamesMapping():
            raise ValueError(f"Unknown log level: {value!r}")
        return level

    def is_compute_configured(self) -> bool:
        return self.railway_token is not None and self.railway_project_id is not None

    def is_database_configured(self) -> bool:
        return self.neon_api_key is not None and self.neon_project_id is not None


def load_settings(**overrides: object) -> Settings:
    """Load settings from environment, with optional overrides for testing."""
    settings = Settings(**overrides)  # type: ignore[arg-type]

    if not settings.is_compute_configured():
        logger.debug("Compute provider credentials are not configured")
    if not settings.is_database_configured():
        logger.debug("Database provider credentials are not configured")

    return settings
