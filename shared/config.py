"""
Shared configuration management for the Hospital Booking services.
"""

from typing import Dict, Literal

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class BaseConfig(BaseSettings):
    """Base configuration class with common settings.

    Every field is read from the environment with the ``BOOKING_`` prefix,
    e.g. ``BOOKING_CACHE_BACKEND=tiered``.
    """

    model_config = SettingsConfigDict(
        env_prefix="BOOKING_",
        env_file=".env",
        case_sensitive=False,
        extra="allow",
    )

    # Environment
    env: str = Field(default="local")
    log_level: str = Field(default="info")

    # External services
    redis_url: str = Field(default="redis://localhost:6379/0")
    postgres_dsn: str = Field(default="postgres://localhost:5432/hospital")
    store_backend: Literal["memory", "postgres"] = Field(default="memory")

    # Cache
    cache_backend: Literal["memory", "redis", "tiered"] = Field(default="memory")
    cache_strategy_overrides: Dict[str, int] = Field(default_factory=dict)
    cache_sweep_interval_seconds: float = Field(default=300.0, gt=0)
    cache_sweep_batch_size: int = Field(default=500, gt=0)
    cache_coalesce_misses: bool = Field(default=False)
    cache_memory_ttl_cap_seconds: int = Field(default=60, gt=0)
    cache_warm_on_startup: bool = Field(default=True)
    cache_warm_concurrency: int = Field(default=5, gt=0)


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
