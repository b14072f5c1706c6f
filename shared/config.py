"""
Shared configuration management for the Policy Resolution Service.
"""

from typing import Any, Dict, List, Optional

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


DEFAULT_FEATURE_TOGGLES: Dict[str, Any] = {
    "withoutDriverListings": True,
    "hourlyBookings": True,
    "recurringBookings": True,
    "instantBooking": False,
    "autoApprovalEnabled": False,
    "maintenanceMode": False,
}


class BaseConfig(BaseSettings):
    """Base configuration class with common settings."""

    model_config = SettingsConfigDict(
        env_prefix="POLICY_",
        env_file=".env",
        case_sensitive=False,
        extra="allow"
    )

    # Environment
    env: str = Field(default="local")
    log_level: str = Field(default="info")

    # Backing stores
    rule_store: str = Field(default="memory", description="memory or postgres")
    postgres_dsn: str = Field(default="postgres://localhost:5432/policy")
    counter_store: str = Field(default="memory", description="memory or redis")
    redis_url: str = Field(default="redis://localhost:6379/0")

    # Policy cache
    policy_cache_ttl_seconds: int = Field(default=300)
    policy_cache_max_entries: int = Field(default=10000)
    version_poll_interval_seconds: float = Field(default=5.0)

    # Rate limiting
    counter_shards: int = Field(default=32)
    max_violations: int = Field(default=10000)

    # Audit trail
    max_audit_entries: int = Field(default=50000)

    # Platform configuration
    config_id: str = Field(default="default")
    feature_toggles: Dict[str, Any] = Field(default_factory=lambda: dict(DEFAULT_FEATURE_TOGGLES))
    region_hierarchy_file: Optional[str] = Field(default=None)

    # Enforcement
    protected_path_prefixes: List[str] = Field(default_factory=lambda: ["/api/"])

    # Observability
    enable_tracing: bool = Field(default=False)
    otel_exporter: str = Field(default="http://localhost:4318")
    enable_console_tracing: bool = Field(default=False)


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
