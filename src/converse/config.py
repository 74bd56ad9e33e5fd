"""
Configuration management using pydantic-settings.

Loads configuration from environment variables and .env files.
Validates required fields and provides typed access to settings.
"""

from __future__ import annotations

from functools import lru_cache
from pathlib import Path
from typing import Literal

from pydantic import Field, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables.

    Required:
        BACKEND_URL: Base URL of the managed data backend (HTTP RPC API)

    Optional:
        BACKEND_DEPLOY_KEY: Admin key used when no user token is forwarded
        AUTH_INTROSPECT_URL: Identity provider token introspection endpoint
        AUTH_CLIENT_SECRET: Secret sent to the introspection endpoint
        CACHE_BACKEND: Cache store (redis, sqlite, memory)
        REDIS_URL: Redis connection string (required for the redis backend)
        CACHE_DIR: Directory for the sqlite cache database
        LOCAL_CACHE_TTL_SECONDS: TTL of the in-process secondary cache (0 = off)
        WEBHOOK_SECRET: Shared secret for the invalidation webhook
        LOG_LEVEL: Logging level
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # Required - data backend
    BACKEND_URL: str = Field(
        ...,
        description="Base URL of the data backend (e.g. https://x.convex.cloud)",
    )
    BACKEND_DEPLOY_KEY: str | None = Field(
        default=None, description="Backend deploy/admin key"
    )
    BACKEND_TIMEOUT_SECONDS: float = Field(
        default=10.0, gt=0.0, description="Timeout for backend RPC calls"
    )

    # Identity provider
    AUTH_INTROSPECT_URL: str | None = Field(
        default=None, description="Token introspection endpoint of the identity provider"
    )
    AUTH_CLIENT_SECRET: str | None = Field(
        default=None, description="Client secret for token introspection"
    )

    # Cache store
    CACHE_BACKEND: Literal["redis", "sqlite", "memory"] = Field(
        default="redis", description="Cache store implementation"
    )
    REDIS_URL: str | None = Field(default=None, description="Redis connection URL")
    CACHE_DIR: Path = Field(default=Path(".cache"), description="Cache directory")
    LOCAL_CACHE_TTL_SECONDS: int = Field(
        default=0, ge=0, le=300, description="In-process secondary cache TTL (0 disables)"
    )
    LOCAL_CACHE_MAX_ENTRIES: int = Field(
        default=1000, ge=1, description="Maximum entries in the in-process secondary cache"
    )

    # HTTP surface
    WEBHOOK_SECRET: str | None = Field(
        default=None, description="Shared secret expected in X-Webhook-Secret"
    )
    APP_URL: str = Field(
        default="http://localhost:8000", description="Public URL of this service"
    )
    ENABLE_DEBUG_ROUTES: bool = Field(
        default=False, description="Expose /cache/get and /cache/set"
    )
    CORS_ORIGINS: list[str] = Field(
        default_factory=lambda: ["http://localhost:3000", "http://127.0.0.1:3000"],
        description="Allowed CORS origins",
    )
    HOST: str = Field(default="127.0.0.1", description="Bind host for `converse serve`")
    PORT: int = Field(default=8000, ge=1, le=65535, description="Bind port")

    # Logging
    LOG_LEVEL: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = Field(
        default="INFO", description="Logging level"
    )
    LOG_FILE: Path | None = Field(default=None, description="JSON lines log file")

    @property
    def backend_url(self) -> str:
        """Get backend URL without trailing slash."""
        return self.BACKEND_URL.rstrip("/")

    @property
    def local_cache_enabled(self) -> bool:
        """Whether the in-process secondary cache is active."""
        return self.LOCAL_CACHE_TTL_SECONDS > 0

    @field_validator("BACKEND_URL", "AUTH_INTROSPECT_URL", "APP_URL")
    @classmethod
    def validate_http_url(cls, v: str | None) -> str | None:
        """Validate that URLs use http or https."""
        if v is None:
            return v
        if not v.startswith(("http://", "https://")):
            raise ValueError("URL must start with http:// or https://")
        return v

    @model_validator(mode="after")
    def validate_redis_url_for_redis_backend(self) -> Settings:
        """Ensure REDIS_URL is configured when the redis backend is selected."""
        if self.CACHE_BACKEND == "redis" and not self.REDIS_URL:
            raise ValueError(
                "REDIS_URL must be configured when CACHE_BACKEND is 'redis' "
                "(or choose CACHE_BACKEND=sqlite|memory)"
            )
        return self

    def ensure_directories(self) -> None:
        """Create the cache directory if it doesn't exist."""
        self.CACHE_DIR.mkdir(parents=True, exist_ok=True)

    def redacted_display(self) -> dict[str, str | int | float | bool | None]:
        """Return settings with secrets redacted for display."""
        def redact(key: str, value: str | None) -> str | None:
            if value is None:
                return None
            if "KEY" in key or "SECRET" in key:
                return f"{value[:8]}...{value[-4:]}" if len(value) > 12 else "***"
            return value

        redis_url = self.REDIS_URL
        if redis_url and "@" in redis_url:
            scheme, _, host = redis_url.rpartition("@")
            redis_url = f"{scheme.split('://')[0]}://***@{host}"

        return {
            "BACKEND_URL": self.BACKEND_URL,
            "BACKEND_DEPLOY_KEY": redact("BACKEND_DEPLOY_KEY", self.BACKEND_DEPLOY_KEY),
            "BACKEND_TIMEOUT_SECONDS": self.BACKEND_TIMEOUT_SECONDS,
            "AUTH_INTROSPECT_URL": self.AUTH_INTROSPECT_URL,
            "AUTH_CLIENT_SECRET": redact("AUTH_CLIENT_SECRET", self.AUTH_CLIENT_SECRET),
            "CACHE_BACKEND": self.CACHE_BACKEND,
            "REDIS_URL": redis_url,
            "CACHE_DIR": str(self.CACHE_DIR),
            "LOCAL_CACHE_TTL_SECONDS": self.LOCAL_CACHE_TTL_SECONDS,
            "LOCAL_CACHE_MAX_ENTRIES": self.LOCAL_CACHE_MAX_ENTRIES,
            "WEBHOOK_SECRET": redact("WEBHOOK_SECRET", self.WEBHOOK_SECRET),
            "APP_URL": self.APP_URL,
            "ENABLE_DEBUG_ROUTES": self.ENABLE_DEBUG_ROUTES,
            "HOST": self.HOST,
            "PORT": self.PORT,
            "LOG_LEVEL": self.LOG_LEVEL,
            "LOG_FILE": str(self.LOG_FILE) if self.LOG_FILE else None,
        }


@lru_cache
def get_settings() -> Settings:
    """Get cached settings singleton.

    Returns:
        Settings instance loaded from environment.

    Raises:
        ValidationError: If required settings are missing or invalid.
    """
    return Settings()


def clear_settings_cache() -> None:
    """Clear the settings cache (useful for testing)."""
    get_settings.cache_clear()
