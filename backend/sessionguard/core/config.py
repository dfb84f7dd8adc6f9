"""SessionGuard configuration."""

import secrets
from functools import lru_cache
from typing import Literal

from pydantic import Field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    app_name: str = "SessionGuard"
    app_version: str = "0.1.0"
    debug: bool = False

    # Development mode generates throwaway secrets - MUST be False in production
    dev_mode: bool = False

    log_level: str = "INFO"
    log_format: Literal["structured", "dev"] = "structured"

    # Comma-separated list of allowed browser origins
    cors_origins: str = "http://localhost:3000"

    # JWT - access and refresh tokens must use different secrets
    jwt_access_secret_key: str | None = None
    jwt_refresh_secret_key: str | None = None
    jwt_algorithm: str = "HS256"
    jwt_issuer: str = "sessionguard"
    jwt_audience: str = "sessionguard-api"
    jwt_access_token_expire_minutes: int = Field(default=15, ge=1)
    jwt_refresh_token_expire_days: int = Field(default=7, ge=1)

    # Sessions
    session_expire_days: int = Field(default=7, ge=1)
    max_sessions_per_subject: int = Field(default=5, ge=1)
    ended_session_retention: int = Field(default=1000, ge=0)
    cleanup_interval_seconds: float = Field(default=3600, gt=0)

    # Devices
    enable_device_tracking: bool = True
    device_trust_days: int = Field(default=30, ge=0)
    device_retention_days: int = Field(default=90, ge=1)

    # Role assigned when the identity provider does not carry one
    default_role: str = "STUDENT"

    # Identity provider
    identity_jwks_url: str | None = None
    identity_issuer: str | None = None
    identity_audience: str | None = None
    identity_admin_url: str | None = None
    identity_admin_api_key: str | None = None
    identity_provider_timeout_seconds: float = Field(default=5.0, gt=0)

    # Storage
    storage_backend: Literal["memory", "database"] = "memory"
    database_url: str = "sqlite+aiosqlite:///./sessionguard.db"

    @model_validator(mode="after")
    def _set_dev_defaults(self) -> "Settings":
        """Generate random secrets in dev mode; require explicit secrets otherwise."""
        if self.dev_mode:
            if not self.jwt_access_secret_key:
                self.jwt_access_secret_key = secrets.token_hex(32)
            if not self.jwt_refresh_secret_key:
                self.jwt_refresh_secret_key = secrets.token_hex(32)
        else:
            missing = []
            if not self.jwt_access_secret_key:
                missing.append("JWT_ACCESS_SECRET_KEY")
            if not self.jwt_refresh_secret_key:
                missing.append("JWT_REFRESH_SECRET_KEY")
            if missing:
                raise ValueError(
                    f"Missing required secrets (set DEV_MODE=true for development): {', '.join(missing)}"
                )
        if self.jwt_access_secret_key == self.jwt_refresh_secret_key:
            raise ValueError("JWT_ACCESS_SECRET_KEY and JWT_REFRESH_SECRET_KEY must differ")
        return self

    @property
    def cors_origins_list(self) -> list[str]:
        return [origin.strip() for origin in self.cors_origins.split(",") if origin.strip()]

    @property
    def identity_provider_configured(self) -> bool:
        return bool(self.identity_jwks_url and self.identity_admin_url)

    def check_security_configuration(self) -> list[str]:
        """Return human-readable warnings about risky settings."""
        warnings: list[str] = []
        if self.dev_mode:
            warnings.append("DEV_MODE is enabled; JWT secrets are regenerated on every restart")
        for name, value in (
            ("JWT_ACCESS_SECRET_KEY", self.jwt_access_secret_key),
            ("JWT_REFRESH_SECRET_KEY", self.jwt_refresh_secret_key),
        ):
            if value and len(value) < 32:
                warnings.append(f"{name} is shorter than 32 characters")
        if self.debug:
            warnings.append("DEBUG is enabled; API docs are publicly reachable")
        if not self.identity_provider_configured:
            warnings.append(
                "Identity provider is not configured; token exchange and refresh are unavailable"
            )
        return warnings


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
