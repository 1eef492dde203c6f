"""Application configuration using Pydantic Settings.

Configuration is environment-aware:
- APP_ENV determines which .env file to load
- Supports: development, testing, staging, production
- Each environment has its own .env.{environment} file

The rate limit rules themselves live in a YAML file (see
``quotaguard.core.rules``); these settings only point at it and tune how the
limiter behaves around it.
"""

from __future__ import annotations

import os
from enum import Enum
from pathlib import Path
from typing import Literal

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


# Determine which environment to load (default: development)
APP_ENV = os.getenv("APP_ENV", "development")

# Project root (so .env resolution doesn't depend on current working directory)
PROJECT_ROOT = Path(__file__).resolve().parents[2]

# Map environments to their respective .env files (relative to PROJECT_ROOT)
ENV_FILE_MAP = {
    "development": ".env.development",
    "testing": ".env.testing",
    "staging": ".env.staging",
    "production": ".env.production",
}

# Select the .env file for the current environment
_env_filename = ENV_FILE_MAP.get(APP_ENV, ".env.development")
_env_path = PROJECT_ROOT / _env_filename

# Only load from file if it exists (production might inject via env vars only)
_env_file = str(_env_path) if _env_path.is_file() else None


# Load .env file early to populate os.environ before creating nested settings
# This is necessary because Pydantic nested BaseSettings don't inherit env_file
if _env_file:
    from dotenv import load_dotenv
    load_dotenv(_env_file, override=True)


class FailMode(str, Enum):
    """Behavior when the shared counter store cannot be reached."""

    OPEN = "open"
    CLOSED = "closed"


class UnresolvedScopePolicy(str, Enum):
    """What to do with a request whose scope attribute cannot be determined."""

    SHARED = "shared"
    BYPASS = "bypass"


class AppSettings(BaseSettings):
    """Application-wide configuration."""

    name: str = Field(
        "quotaguard",
        description="Service name reported by the health endpoint",
    )
    debug: bool = Field(
        False,
        description="Enable debug mode with verbose logging",
    )

    model_config = SettingsConfigDict(
        env_prefix="APP_",
        case_sensitive=False,
    )


class RateLimitSettings(BaseSettings):
    """Rate limiter behavior.

    ``fail_mode`` defaults to ``closed``: when the store is down every
    rate-limited request is rejected to protect the upstream service.
    ``open`` must be chosen explicitly.
    """

    enabled: bool = Field(
        True,
        description="Enable rate limiting middleware",
    )
    rules_path: str = Field(
        str(PROJECT_ROOT / "rate_limit.yaml"),
        description="Path to the YAML file declaring the rate limit rules",
    )
    fail_mode: FailMode = Field(
        FailMode.CLOSED,
        description="Decision when the counter store is unavailable (open|closed)",
    )
    fail_closed_retry_after_seconds: int = Field(
        1,
        description="Retry-After hint sent when denying because the store is down",
        ge=0,
    )
    key_prefix: str = Field(
        "ratelimit",
        description="Namespace prepended to every counter key in the store",
        min_length=1,
    )
    unresolved_scope: UnresolvedScopePolicy = Field(
        UnresolvedScopePolicy.SHARED,
        description=(
            "Requests without a usable scope attribute share one 'unknown' "
            "bucket (shared) or skip that rule (bypass)"
        ),
    )
    trust_forwarded_for: bool = Field(
        False,
        description=(
            "Derive client IP from X-Forwarded-For instead of the socket peer. "
            "Only safe behind a proxy that overwrites the header."
        ),
    )
    api_key_header: str = Field(
        "X-API-Key",
        description="Header carrying the client API key for api_key scoped rules",
    )
    include_headers: bool = Field(
        True,
        description="Include X-RateLimit-* and Retry-After headers when throttling",
    )
    exempt_paths: list[str] = Field(
        default_factory=lambda: ["/health"],
        description="Paths never subject to rate limiting",
    )

    model_config = SettingsConfigDict(
        env_prefix="RATELIMIT_",
        case_sensitive=False,
    )


class StoreSettings(BaseSettings):
    """Shared counter store connection."""

    backend: Literal["redis", "memory"] = Field(
        "redis",
        description="Counter store backend; 'memory' is per-process only",
    )
    url: str = Field(
        "redis://localhost:6379/0",
        description="Redis connection URL",
    )
    timeout_seconds: float = Field(
        0.5,
        description="Upper bound for one rate limit round trip to the store",
        gt=0,
    )
    connect_timeout_seconds: float = Field(
        1.0,
        description="Socket connect timeout",
        gt=0,
    )
    health_check_interval: int = Field(
        30,
        description="Seconds between connection health checks on idle connections",
        ge=0,
    )
    retries: int = Field(
        1,
        description="Extra attempts for store health pings (increments are never retried)",
        ge=0,
    )

    model_config = SettingsConfigDict(
        env_prefix="STORE_",
        case_sensitive=False,
    )


class LogSettings(BaseSettings):
    """Logging output configuration."""

    level: str = Field("INFO", description="Root log level")
    format: Literal["json", "plain"] = Field("json", description="Log line format")
    output: Literal["stdout", "file"] = Field("stdout", description="Log destination")
    file_path: str | None = Field(None, description="Log file path when output=file")
    max_bytes: int = Field(
        10 * 1024 * 1024,
        description="Rotate log file after this many bytes (0 disables rotation)",
        ge=0,
    )
    backup_count: int = Field(5, description="Rotated files to keep", ge=0)
    request_id_header: str = Field(
        "X-Request-ID",
        description="Header used to propagate the request correlation id",
    )

    model_config = SettingsConfigDict(
        env_prefix="LOG_",
        case_sensitive=False,
    )


class Settings(BaseSettings):
    """Main application settings container.

    Automatically loads from the appropriate .env.{APP_ENV} file.
    Raises validation errors on startup if settings are invalid.
    """

    app_env: str = APP_ENV
    app: AppSettings = Field(default_factory=AppSettings)
    ratelimit: RateLimitSettings = Field(default_factory=RateLimitSettings)
    store: StoreSettings = Field(default_factory=StoreSettings)
    log: LogSettings = Field(default_factory=LogSettings)

    model_config = SettingsConfigDict(
        case_sensitive=False,
    )


# Global settings instance - composed from domain-specific settings
# Nested settings are created via default_factory so env loading works.
settings = Settings()
