"""
Shared configuration management for the Patient EHR Access Layer.
"""

from typing import Dict, List

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class BaseConfig(BaseSettings):
    """Base configuration class with common settings."""

    model_config = SettingsConfigDict(
        env_prefix="EHR_",
        env_file=".env",
        case_sensitive=False,
        extra="ignore"
    )

    # Environment
    env: str = Field(default="local")
    log_level: str = Field(default="info")
    cors_origins: List[str] = Field(default_factory=list)

    # Security service (identity, roles, patient directory)
    security_service_url: str = Field(default="http://localhost:3001/api")
    jwt_secret: str = Field(default="change-me")
    jwt_algorithm: str = Field(default="HS256")

    # Outbound HTTP
    http_timeout_seconds: float = Field(default=10.0)
    http_max_attempts: int = Field(default=3)
    http_retry_base_delay: float = Field(default=1.0)
    cached_get_ttl_seconds: int = Field(default=60)

    # Cache namespaces, keyed by namespace value (e.g. {"users": 120})
    cache_ttl_overrides: Dict[str, float] = Field(default_factory=dict)
    cache_max_entries_overrides: Dict[str, int] = Field(default_factory=dict)


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
