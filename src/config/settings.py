"""Application settings and configuration."""

import logging
from datetime import timedelta
from typing import Literal

from pydantic import field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

logger = logging.getLogger(__name__)


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # Application (hardcoded constants)
    app_name: str = "ERP Mobile Auth API"
    app_version: str = "0.1.0"

    # Environment-specific settings
    debug: bool = False
    environment: str  # development, staging, production

    # Database
    database_url: str
    database_pool_size: int = 10
    database_max_overflow: int = 20
    database_pool_timeout: int = 30
    database_pool_recycle: int = 3600
    database_echo: bool = False
    database_create_tables: bool = True

    # API
    api_prefix: str = "/api/v1"
    cors_allow_origins: str | None = None

    # Security
    secret_key: str
    jwt_algorithm: str = "HS256"
    access_token_expire_hours: int = 24
    refresh_token_expire_days: int = 7

    # Session lifecycle policy
    quick_login_window_days: int = 30
    reauth_window_hours: int = 24
    verification_code_ttl_minutes: int = 15
    verification_code_max_attempts: int = 5
    registration_session_ttl_minutes: int = 5
    password_authority: Literal["legacy", "local"] = "legacy"

    # Legacy ERP identity system
    legacy_erp_base_url: str = "http://localhost:8080/api"
    legacy_erp_api_key: str = ""
    legacy_erp_timeout_seconds: float = 10.0

    # Outgoing email
    smtp_host: str | None = None
    smtp_port: int = 587
    smtp_username: str | None = None
    smtp_password: str | None = None
    smtp_use_tls: bool = False
    smtp_start_tls: bool = True
    smtp_timeout_seconds: float = 10.0
    smtp_from: str = "ERP Mobile <noreply@example.com>"

    # Rate limiting
    rate_limit_enabled: bool = True
    registration_rate_limit: str = "10/minute"
    login_rate_limit: str = "20/minute"

    # Operator maintenance endpoints are disabled while this is unset
    maintenance_api_key: str | None = None

    # Logging
    log_level: str = "INFO"
    log_format: Literal["json", "text"] = "json"

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    @field_validator("environment", mode="before")
    @classmethod
    def validate_environment(cls, v: str) -> str:
        """Validate environment value."""
        valid_envs = {"development", "staging", "production"}
        env = str(v).lower()
        if env not in valid_envs:
            raise ValueError(f"Environment must be one of {valid_envs}, got {env}")
        return env

    @field_validator("secret_key")
    @classmethod
    def validate_secret_key(cls, v: str) -> str:
        """Reject signing keys too short for HS256."""
        if len(v) < 32:
            raise ValueError("secret_key must be at least 32 characters")
        return v

    @property
    def cors_origins(self) -> list[str]:
        """Allowed CORS origins parsed from the comma separated setting."""
        if not self.cors_allow_origins:
            return []
        return [origin.strip().rstrip("/") for origin in self.cors_allow_origins.split(",") if origin.strip()]

    @property
    def reauth_window(self) -> timedelta:
        return timedelta(hours=self.reauth_window_hours)

    @property
    def is_sqlite(self) -> bool:
        return self.database_url.startswith("sqlite")


settings = Settings()  # type: ignore[call-arg]
