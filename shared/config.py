"""
Shared configuration management for the delivery platform services.

Settings are read from the process environment (or a local ``.env`` file).
Variable names are the upper-cased field names, e.g. ``PORT``, ``HOST``,
``TRUST_PROXY_HOPS``. Constructor keyword arguments take precedence, which
is what the tests rely on.
"""

from pathlib import Path
from typing import List, Optional

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

# Operating modes in which error envelopes carry stack traces.
DIAGNOSTIC_ENVS = frozenset({"local", "development"})

DEFAULT_STATIC_DIR = str(Path(__file__).resolve().parent.parent / "service_gateway" / "app" / "assets")


def _split_csv(value: str) -> List[str]:
    return [item.strip() for item in value.split(",") if item.strip()]


class BaseConfig(BaseSettings):
    """Base configuration class with common settings."""

    model_config = SettingsConfigDict(
        env_file=".env",
        case_sensitive=False,
        extra="ignore",
    )

    service_name: str = "service"

    # Environment
    env: str = Field(default="production")
    log_level: str = Field(default="info")

    # Listener
    host: str = Field(default="localhost")
    port: int = Field(default=8000, ge=0, le=65535)

    @field_validator("env", "log_level")
    @classmethod
    def _lowercase(cls, value: str) -> str:
        return value.strip().lower()

    @property
    def diagnostics_enabled(self) -> bool:
        """Whether error responses may include stack traces."""
        return self.env in DIAGNOSTIC_ENVS

    @property
    def is_production(self) -> bool:
        return self.env == "production"


class GatewayConfig(BaseConfig):
    """Edge gateway configuration."""

    service_name: str = "gateway"
    port: int = Field(default=8080, ge=0, le=65535)

    # Proxy trust
    trust_proxy_hops: int = Field(default=1, ge=0)

    # CORS
    cors_allowed_origins: str = Field(default="http://localhost:3000")
    cors_allowed_headers: str = Field(default="Content-Type,Authorization")
    cors_allowed_methods: str = Field(default="GET,HEAD,PUT,PATCH,POST,DELETE")
    cors_allow_credentials: bool = Field(default=True)
    cors_max_age: int = Field(default=600, ge=0)

    # Request bodies
    max_body_bytes: int = Field(default=50 * 1024 * 1024, gt=0)

    # Rate limiting
    rate_limit_backend: str = Field(default="memory")
    rate_limit_window_seconds: float = Field(default=15 * 60, gt=0)
    rate_limit_max_requests: int = Field(default=100, gt=0)
    rate_limit_max_keys: int = Field(default=100_000, gt=0)
    redis_url: str = Field(default="redis://localhost:6379/0")

    # Routing
    default_upstream_url: Optional[str] = Field(default="http://localhost:6000")
    upstream_routes: str = Field(default="")
    static_dir: str = Field(default=DEFAULT_STATIC_DIR)
    static_prefix: str = Field(default="/assets")

    # Upstream calls
    proxy_timeout_seconds: float = Field(default=30.0, gt=0)
    proxy_max_attempts: int = Field(default=1, ge=1)
    circuit_breaker_threshold: int = Field(default=5, ge=1)
    circuit_breaker_recovery_seconds: float = Field(default=30.0, gt=0)

    @field_validator("rate_limit_backend")
    @classmethod
    def _known_backend(cls, value: str) -> str:
        value = value.strip().lower()
        if value not in ("memory", "redis"):
            raise ValueError("rate_limit_backend must be 'memory' or 'redis'")
        return value

    @field_validator("default_upstream_url")
    @classmethod
    def _blank_is_none(cls, value: Optional[str]) -> Optional[str]:
        if value is not None and not value.strip():
            return None
        return value

    @property
    def allowed_origins(self) -> List[str]:
        return _split_csv(self.cors_allowed_origins)

    @property
    def allowed_headers(self) -> List[str]:
        return _split_csv(self.cors_allowed_headers)

    @property
    def allowed_methods(self) -> List[str]:
        return [method.upper() for method in _split_csv(self.cors_allowed_methods)]


class AuthServiceConfig(BaseConfig):
    """Auth service configuration."""

    service_name: str = "auth"
    port: int = Field(default=6000, ge=0, le=65535)


def get_config(service_name: str) -> BaseConfig:
    """Get configuration for a specific service."""
    if service_name == "gateway":
        return GatewayConfig()
    if service_name == "auth":
        return AuthServiceConfig()
    return BaseConfig(service_name=service_name)
