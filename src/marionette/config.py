"""Configuration management for the Marionette server."""

from typing import Literal

from pydantic import Field, SecretStr, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_prefix="MARIONETTE_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # Server configuration
    environment: Literal["development", "staging", "production"] = Field(
        default="development",
        description="Runtime environment (development, staging, production)",
    )
    server_host: str = Field(default="localhost", description="Server bind host")
    server_port: int = Field(default=3340, description="Server bind port")
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = Field(
        default="INFO",
        description="Logging level",
    )

    database_url: str = Field(
        default="sqlite+aiosqlite:///./marionette.db",
        description="SQLAlchemy async database URL",
    )
    database_echo: bool = Field(default=False, description="Echo SQL statements")

    # Auth configuration
    jwt_secret: SecretStr = Field(
        default=SecretStr(""),
        description="Secret used to verify identity-provider access tokens",
    )
    jwt_algorithm: str = Field(default="HS256", description="JWT signing algorithm")
    admin_claim: str = Field(
        default="is_admin",
        description="Boolean claim that marks an administrator token",
    )

    # Client registry
    client_token_ttl_days: int = Field(
        default=90, ge=1, le=365, description="Lifetime of a client API token (days)"
    )
    client_staleness_seconds: int = Field(
        default=90,
        ge=10,
        description="Heartbeat age after which a client stops receiving new jobs",
    )

    # Job queue
    job_ttl_days: int = Field(
        default=7, ge=1, description="Default expiry for jobs that do not set one (days)"
    )
    job_max_retries: int = Field(default=3, ge=0, description="Default retry budget per job")
    expiry_sweep_minutes: int = Field(
        default=1, ge=1, le=60, description="Interval of the expired-job sweeper (minutes)"
    )

    # Redis (arq worker)
    redis_host: str = Field(default="localhost", description="Redis host for the arq worker")
    redis_port: int = Field(default=6379, description="Redis port")
    redis_password: str | None = Field(default=None, description="Redis password")
    redis_jobs_db: int = Field(default=1, description="Redis database number for jobs")

    @model_validator(mode="after")
    def validate_security_settings(self) -> "Settings":
        """Prevent insecure settings in production."""
        if self.environment == "production":
            if not self.jwt_secret.get_secret_value():
                raise ValueError(
                    "CRITICAL: MARIONETTE_JWT_SECRET must be set in production environment."
                )
            if self.database_url.startswith("sqlite"):
                raise ValueError(
                    "CRITICAL: SQLite is not supported in production. "
                    "Set MARIONETTE_DATABASE_URL to a PostgreSQL URL."
                )
        return self


settings = Settings()
