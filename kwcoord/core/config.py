"""Application configuration using Pydantic Settings.

Configuration is environment-aware:
- APP_ENV determines which .env file to load
- Supports: development, testing, staging, production
- Each environment has its own .env.{environment} file
"""

from __future__ import annotations

import os
from pathlib import Path
from typing import Literal

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


# Determine which environment to load (default: development)
APP_ENV = os.getenv("APP_ENV", "development")

# Project root (so .env resolution doesn't depend on current working directory)
PROJECT_ROOT = Path(__file__).resolve().parents[2]

ENV_FILE_MAP = {
    "development": ".env.development",
    "testing": ".env.testing",
    "staging": ".env.staging",
    "production": ".env.production",
}

_env_filename = ENV_FILE_MAP.get(APP_ENV, ".env.development")
_env_path = PROJECT_ROOT / _env_filename

# Only load from file if it exists (production might inject via env vars only)
_env_file = str(_env_path) if _env_path.is_file() else None


# Nested BaseSettings don't inherit env_file, so populate os.environ up front.
if _env_file:
    from dotenv import load_dotenv
    load_dotenv(_env_file, override=True)


class StoreSettings(BaseSettings):
    """Shared key-value store connection settings."""

    backend: Literal["redis", "memory"] = Field(
        "redis",
        description="Store backend: redis (shared, production) or memory (single process)",
    )
    url: str | None = Field(
        None,
        description="Redis connection URL, e.g. redis://localhost:6379/0",
    )
    socket_timeout_seconds: float = Field(
        2.0,
        description="Per-command socket timeout in seconds",
        gt=0,
    )
    connect_timeout_seconds: float = Field(
        2.0,
        description="Connection establishment timeout in seconds",
        gt=0,
    )
    scan_batch_size: int = Field(
        100,
        description="COUNT hint used by maintenance prefix scans",
        ge=1,
    )

    model_config = SettingsConfigDict(
        env_prefix="STORE_",
        case_sensitive=False,
    )


class CoordinationSettings(BaseSettings):
    """Tunables for locks, identity creation, usage metering and idempotency."""

    lock_ttl_seconds: int = Field(
        10,
        description="Lifetime of a distributed lock before the store reclaims it",
        ge=1,
    )
    lock_wait_attempts: int = Field(
        20,
        description="Polls performed while another process creates an identity",
        ge=1,
    )
    lock_wait_initial_delay_seconds: float = Field(
        0.05,
        description="First sleep between identity polls",
        gt=0,
    )
    lock_wait_max_delay_seconds: float = Field(
        0.5,
        description="Upper bound for the exponential poll backoff",
        gt=0,
    )
    usage_min_ttl_seconds: int = Field(
        3600,
        description="Floor applied to usage counter TTLs",
        ge=1,
    )
    idempotency_ttl_seconds: int = Field(
        72 * 60 * 60,
        description="How long processed-event markers live (sender redelivery window)",
        ge=1,
    )
    trial_days: int = Field(
        7,
        description="Length of the trial period granted to new identities",
        ge=1,
    )
    trial_limit: int = Field(
        300,
        description="Keyword lookups allowed during the trial period",
        ge=0,
    )
    pro_limit: int = Field(
        1000,
        description="Keyword lookups allowed per calendar month on the pro tier",
        ge=0,
    )

    model_config = SettingsConfigDict(
        env_prefix="COORD_",
        case_sensitive=False,
    )


class RateLimitSettings(BaseSettings):
    """Per-client request rate limiting."""

    enabled: bool = Field(
        True,
        description="Enable fixed-window rate limiting per client",
    )
    requests: int = Field(
        60,
        description="Maximum number of requests allowed per window",
        ge=1,
    )
    window_seconds: int = Field(
        3600,
        description="Rate limit window size in seconds",
        ge=1,
    )
    include_headers: bool = Field(
        True,
        description="Include X-RateLimit-* and Retry-After headers when throttling",
    )
    fail_mode: Literal["open", "closed"] | None = Field(
        None,
        description="Behaviour when the store fails; unset means open in development, closed elsewhere",
    )
    fail_open_when_unconfigured: bool = Field(
        False,
        description="Allow requests when no store is configured at all",
    )
    trust_proxy: bool | None = Field(
        None,
        description="Read client IPs from proxy headers; unset means trust only in production",
    )
    hmac_secret: str | None = Field(
        None,
        description="Secret used to fingerprint user agents in client ids (>= 32 chars in production)",
    )

    model_config = SettingsConfigDict(
        env_prefix="RATE_LIMIT_",
        case_sensitive=False,
    )


class CacheSettings(BaseSettings):
    """Keyword result cache."""

    ttl_seconds: int = Field(
        7 * 24 * 60 * 60,
        description="Freshness window for cached keyword results",
        ge=1,
    )
    write_deadline_ms: int = Field(
        150,
        description="Hard deadline after which callers stop waiting for a cache write",
        ge=1,
    )
    privacy_mode: bool = Field(
        False,
        description="Disable result caching entirely",
    )

    model_config = SettingsConfigDict(
        env_prefix="CACHE_",
        case_sensitive=False,
    )


class WebhookSettings(BaseSettings):
    """Billing webhook authentication."""

    secret: str | None = Field(
        None,
        description="Shared secret the billing provider signs deliveries with",
    )
    signature_header: str = Field(
        "X-Billing-Signature",
        description="Header carrying ``t=<unix>,v1=<hex hmac-sha256>``",
    )
    tolerance_seconds: int = Field(
        300,
        description="Maximum age of a signed delivery before it is rejected as a replay",
        ge=1,
    )

    model_config = SettingsConfigDict(
        env_prefix="WEBHOOK_",
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
        description="Rotate the log file at this size (0 disables rotation)",
        ge=0,
    )
    backup_count: int = Field(5, description="Rotated files to keep", ge=0)
    request_id_header: str = Field(
        "X-Request-ID",
        description="Header carrying the request correlation id",
    )

    model_config = SettingsConfigDict(
        env_prefix="LOG_",
        case_sensitive=False,
    )


class Settings(BaseSettings):
    """Main application settings container.

    Environments:
    - development: Local development
    - testing: Automated tests (uses .env.testing)
    - staging: Pre-production (uses .env.staging)
    - production: Production deployment (uses .env.production)
    """

    app_env: str = APP_ENV
    store: StoreSettings = Field(default_factory=StoreSettings)
    coordination: CoordinationSettings = Field(default_factory=CoordinationSettings)
    rate_limit: RateLimitSettings = Field(default_factory=RateLimitSettings)
    cache: CacheSettings = Field(default_factory=CacheSettings)
    webhook: WebhookSettings = Field(default_factory=WebhookSettings)
    log: LogSettings = Field(default_factory=LogSettings)

    model_config = SettingsConfigDict(
        case_sensitive=False,
    )

    @property
    def is_production(self) -> bool:
        return self.app_env.lower() == "production"


# Global settings instance - composed from domain-specific settings
settings = Settings()
