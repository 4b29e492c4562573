"""Application configuration using Pydantic Settings.

Configuration is environment-aware:
- APP_ENV determines which .env file to load
- Supports: development, testing, staging, production
- Each environment has its own .env.{environment} file

Throttle tiers are read here as raw data only; validation happens once in
``TierRegistry.from_mapping`` so malformed tiers surface as a
``ConfigurationError`` at startup.
"""

from __future__ import annotations

import os
from pathlib import Path
from typing import Any

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


# Built-in tiers used when THROTTLE_TIERS is not provided.
DEFAULT_TIERS: dict[str, dict[str, int]] = {
    "default": {"window_ms": 60_000, "limit": 100},
    "auth": {"window_ms": 900_000, "limit": 5},
    "api": {"window_ms": 60_000, "limit": 1000},
    "storage": {"window_ms": 3_600_000, "limit": 100},
}

# Low-value probe endpoints that are never throttled.
DEFAULT_EXEMPT_PATHS: list[str] = [
    "/health",
    "/healthcheck",
    "/ping",
    "/status",
    "/metrics",
    "/ready",
    "/live",
]


def _build_app_settings() -> "AppSettings":
    """Build app settings from environment.

    Pydantic Settings (v2) can populate values from environment variables.
    However, static type checkers often treat required fields as required
    constructor arguments, which is not how BaseSettings is intended to be used.
    """

    return AppSettings()  # type: ignore[call-arg]


def _build_log_settings() -> "LogSettings":
    return LogSettings()  # type: ignore[call-arg]


def _build_store_settings() -> "StoreSettings":
    return StoreSettings()  # type: ignore[call-arg]


def _build_throttle_settings() -> "ThrottleSettings":
    return ThrottleSettings()  # type: ignore[call-arg]


class AppSettings(BaseSettings):
    """Application-wide configuration."""

    debug: bool = Field(
        False,
        description="Enable debug mode with verbose logging",
    )
    admin_api_key_required: bool = Field(
        True,
        description="Whether admin endpoints require an X-API-Key header",
    )
    admin_api_keys: str | None = Field(
        None,
        description="Comma-separated list of API keys accepted by admin endpoints",
    )

    model_config = SettingsConfigDict(
        env_prefix="APP_",
        case_sensitive=False,
    )


class LogSettings(BaseSettings):
    """Logging output configuration."""

    level: str = Field("INFO", description="Root log level")
    format: str = Field("json", description="Log format: json or plain")
    output: str = Field("stdout", description="Log destination: stdout or file")
    file_path: str | None = Field(
        None,
        description="Log file path when output is 'file'",
    )
    max_bytes: int = Field(
        10 * 1024 * 1024,
        description="Rotate the log file after this many bytes (0 disables rotation)",
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


class StoreSettings(BaseSettings):
    """Shared counter store (Redis) connection settings."""

    url: str = Field(
        "redis://localhost:6379/0",
        description="Redis connection URL shared by all replicas",
    )
    timeout_ms: int = Field(
        100,
        description="Upper bound for one store round-trip before failing open",
        ge=1,
    )
    key_prefix: str = Field(
        "rate_limit:",
        description="Namespace prepended to every throttle key in the store",
    )

    model_config = SettingsConfigDict(
        env_prefix="REDIS_",
        case_sensitive=False,
    )


class ThrottleSettings(BaseSettings):
    """Admission control configuration."""

    enabled: bool = Field(
        True,
        description="Enable the admission guard on throttled routes",
    )
    include_headers: bool = Field(
        True,
        description="Include X-RateLimit-* headers on allowed responses",
    )
    tiers: dict[str, dict[str, Any]] = Field(
        default_factory=lambda: {name: dict(cfg) for name, cfg in DEFAULT_TIERS.items()},
        description=(
            "JSON mapping of tier name to {window_ms, limit, block_duration_ms}; "
            "must include 'default'"
        ),
    )
    exempt_paths: list[str] = Field(
        default_factory=lambda: list(DEFAULT_EXEMPT_PATHS),
        description="Paths that are never throttled (exact match, case-insensitive)",
    )
    ignore_user_agents: list[str] = Field(
        default_factory=list,
        description=(
            "Regex patterns; matching User-Agent values are never throttled. "
            "Clients choose their User-Agent, so only list agents that cannot "
            "reach sensitive routes, e.g. [\"^kube-probe/\"]"
        ),
    )
    trust_proxy_headers: bool = Field(
        True,
        description="Trust CDN/proxy headers when resolving the client IP",
    )

    model_config = SettingsConfigDict(
        env_prefix="THROTTLE_",
        case_sensitive=False,
    )


class Settings(BaseSettings):
    """Main application settings container.

    Automatically loads from the appropriate .env.{APP_ENV} file.
    Raises validation errors on startup if settings are malformed.
    """

    app_env: str = APP_ENV
    app: AppSettings = Field(default_factory=_build_app_settings)
    log: LogSettings = Field(default_factory=_build_log_settings)
    store: StoreSettings = Field(default_factory=_build_store_settings)
    throttle: ThrottleSettings = Field(default_factory=_build_throttle_settings)

    model_config = SettingsConfigDict(
        case_sensitive=False,
    )


# Global settings instance - composed from domain-specific settings
# Nested settings are created via default_factory so env loading works.
settings = Settings()
