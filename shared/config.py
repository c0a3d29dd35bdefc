"""
Shared configuration management for the storefront customer services.
"""

from typing import FrozenSet, Optional

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class BaseConfig(BaseSettings):
    """Base configuration class with common settings."""

    model_config = SettingsConfigDict(
        env_prefix="STOREFRONT_",
        env_file=".env",
        case_sensitive=False,
        extra="ignore"
    )

    # Environment
    env: str = Field(default="local")
    log_level: str = Field(default="info")

    # Relational store
    postgres_dsn: str = Field(default="postgres://localhost:5432/storefront")
    postgres_pool_min: int = Field(default=2)
    postgres_pool_max: int = Field(default=10)
    store_command_timeout: float = Field(default=30.0)

    # Login identity provider (GoTrue admin API)
    identity_provider_url: str = Field(default="http://localhost:9999")
    identity_service_key: str = Field(default="")
    identity_request_timeout: float = Field(default=10.0)

    # Admin authorization
    admin_api_key: str = Field(default="")
    admin_emails: str = Field(default="")
    session_cookie_name: str = Field(default="sb-access-token")

    # Observability
    enable_tracing: bool = Field(default=False)
    otel_exporter: Optional[str] = Field(default=None)
    enable_console_tracing: bool = Field(default=False)

    @property
    def admin_email_set(self) -> FrozenSet[str]:
        """Administrator allow-list parsed from the comma-separated setting."""
        return frozenset(
            email.strip().lower()
            for email in self.admin_emails.split(",")
            if email.strip()
        )


class ServiceConfig(BaseConfig):
    """Service-specific configuration."""

    service_name: str
    port: int
    host: str = "0.0.0.0"

    def __init__(self, service_name: str, port: int, **kwargs):
        super().__init__(service_name=service_name, port=port, **kwargs)


def get_config(service_name: str, port: int, **overrides) -> ServiceConfig:
    """Get configuration for a specific service."""
    return ServiceConfig(service_name=service_name, port=port, **overrides)
