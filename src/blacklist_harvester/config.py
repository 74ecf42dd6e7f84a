"""Configuration management service with Pydantic Settings.

This module provides centralized configuration management for the
blacklist harvester, loading and validating environment variables at
startup.
"""

from __future__ import annotations

import logging
from functools import lru_cache
from typing import Literal

from pydantic import Field, SecretStr, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

_ENV_FILE = ".env"
_ENV_FILE_ENCODING = "utf-8"


def _reject_placeholder(name: str, v: str) -> str:
    if "YOUR_" in v:
        raise ValueError(f"Please replace the placeholder value for {name} with a real endpoint")
    return v


class DatabaseSettings(BaseSettings):
    """Database connection settings."""

    model_config = SettingsConfigDict(env_prefix="", extra="ignore")

    url: str = Field(
        default="sqlite+aiosqlite:///./data/blacklist.db",
        alias="DATABASE_URL",
        description="PostgreSQL or SQLite connection string",
    )

    @field_validator("url")
    @classmethod
    def validate_url(cls, v: str) -> str:
        """Validate database URL format."""
        if not v.startswith(("postgresql://", "postgresql+asyncpg://", "sqlite://", "sqlite+aiosqlite://")):
            raise ValueError("DATABASE_URL must be a PostgreSQL or SQLite connection string")
        return v


class RedisSettings(BaseSettings):
    """Optional Redis cache settings (block timestamp lookups)."""

    model_config = SettingsConfigDict(env_prefix="", extra="ignore")

    url: str | None = Field(
        default=None,
        alias="REDIS_URL",
        description="Redis connection string; caching is disabled when unset",
    )

    @field_validator("url")
    @classmethod
    def validate_url(cls, v: str | None) -> str | None:
        """Validate Redis URL format."""
        if v is not None and not v.startswith("redis://"):
            raise ValueError("REDIS_URL must start with redis://")
        return v


class EthereumSettings(BaseSettings):
    """Ethereum RPC and contract settings."""

    model_config = SettingsConfigDict(env_prefix="ETHEREUM_", extra="ignore")

    rpc_url: str = Field(
        alias="ETHEREUM_RPC_URL",
        description="Primary Ethereum JSON-RPC endpoint",
    )
    fallback_rpc_url: str | None = Field(
        default=None,
        alias="ETHEREUM_FALLBACK_RPC_URL",
        description="Fallback Ethereum RPC endpoint",
    )
    ws_url: str | None = Field(
        default=None,
        alias="ETHEREUM_WS_URL",
        description="WebSocket endpoint for live log subscriptions (polling is used when unset)",
    )
    usdt_contract: str | None = Field(
        default="0xdAC17F958D2ee523a2206206994597C13D831ec7",
        alias="ETHEREUM_USDT_CONTRACT",
        description="USDT token contract (empty disables USDT sync)",
    )
    usdc_contract: str | None = Field(
        default="0xA0b86991c6218b36c1d19D4a2e9Eb0cE3606eB48",
        alias="ETHEREUM_USDC_CONTRACT",
        description="USDC token contract (empty disables USDC sync)",
    )
    chunk_size: int = Field(
        default=10_000,
        alias="ETHEREUM_CHUNK_SIZE",
        ge=1,
        le=1_000_000,
        description="Initial block window for eth_getLogs scans",
    )
    super_batch_blocks: int = Field(
        default=172_800,
        alias="ETHEREUM_SUPER_BATCH_BLOCKS",
        ge=1,
        description="Outer batch span in blocks (~24 days at 12s blocks)",
    )
    max_requests_per_second: float = Field(
        default=25.0,
        alias="ETHEREUM_MAX_REQUESTS_PER_SECOND",
        gt=0,
        description="Client-side rate limit for RPC calls",
    )
    live_poll_interval_seconds: float = Field(
        default=12.0,
        alias="ETHEREUM_LIVE_POLL_INTERVAL_SECONDS",
        gt=0,
        le=600,
        description="Polling interval when no WebSocket endpoint is configured",
    )
    live_lookback_blocks: int = Field(
        default=20,
        alias="ETHEREUM_LIVE_LOOKBACK_BLOCKS",
        ge=1,
        le=10_000,
        description="Blocks re-scanned on each live poll",
    )

    @field_validator("rpc_url", "fallback_rpc_url")
    @classmethod
    def validate_url(cls, v: str | None) -> str | None:
        """Validate RPC URL format."""
        if v is None:
            return v
        if not v.startswith(("http://", "https://")):
            raise ValueError("RPC URL must be an HTTP(S) endpoint")
        return _reject_placeholder("ETHEREUM_RPC_URL", v)

    @field_validator("ws_url")
    @classmethod
    def validate_ws_url(cls, v: str | None) -> str | None:
        """Validate WebSocket URL format."""
        if v is None:
            return v
        if not v.startswith(("ws://", "wss://")):
            raise ValueError("WebSocket URL must start with ws:// or wss://")
        return v

    @field_validator("usdt_contract", "usdc_contract", mode="before")
    @classmethod
    def _empty_disables(cls, v: object) -> object:
        if isinstance(v, str) and not v.strip():
            return None
        return v


class TronSettings(BaseSettings):
    """TRON full node / TronGrid settings."""

    model_config = SettingsConfigDict(env_prefix="TRON_", extra="ignore")

    full_node: str = Field(
        default="https://api.trongrid.io",
        alias="TRON_FULL_NODE",
        description="TronGrid (or compatible) HTTP API host",
    )
    api_key: SecretStr | None = Field(
        default=None,
        alias="TRON_GRID_API_KEY",
        description="TronGrid API key (TRON-PRO-API-KEY header)",
    )
    usdt_contract: str | None = Field(
        default="TR7NHqjeKQxGTCi8q8ZY4pL8otSzgjLj6t",
        alias="TRON_USDT_CONTRACT",
        description="USDT TRC20 contract (empty disables TRON sync)",
    )
    page_size: int = Field(
        default=200,
        alias="TRON_PAGE_SIZE",
        ge=1,
        le=200,
        description="Events requested per TronGrid page",
    )
    max_pages_per_window: int = Field(
        default=10_000,
        alias="TRON_MAX_PAGES_PER_WINDOW",
        ge=1,
        description="Hard cap on pages followed inside one time window",
    )
    window_hours: int = Field(
        default=7 * 24,
        alias="TRON_WINDOW_HOURS",
        ge=1,
        le=24 * 31,
        description="Initial time window per fetch",
    )
    min_window_minutes: int = Field(
        default=10,
        alias="TRON_MIN_WINDOW_MINUTES",
        ge=1,
        description="Floor for the adaptive time window",
    )
    super_batch_days: int = Field(
        default=30,
        alias="TRON_SUPER_BATCH_DAYS",
        ge=1,
        le=366,
        description="Outer batch span in days",
    )
    initial_lookback_days: int = Field(
        default=365,
        alias="TRON_INITIAL_LOOKBACK_DAYS",
        ge=1,
        le=3650,
        description="How far back the first sync (or a full resync) starts",
    )
    poll_interval_seconds: float = Field(
        default=3.0,
        alias="TRON_POLL_INTERVAL_SECONDS",
        gt=0,
        le=600,
        description="Live polling interval",
    )
    request_timeout_seconds: float = Field(
        default=30.0,
        alias="TRON_REQUEST_TIMEOUT_SECONDS",
        gt=0,
        description="HTTP timeout for TronGrid requests",
    )

    @field_validator("full_node")
    @classmethod
    def validate_full_node(cls, v: str) -> str:
        if not v.startswith(("http://", "https://")):
            raise ValueError("TRON_FULL_NODE must be an HTTP(S) endpoint")
        return v.rstrip("/")

    @field_validator("usdt_contract", mode="before")
    @classmethod
    def _empty_disables(cls, v: object) -> object:
        if isinstance(v, str) and not v.strip():
            return None
        return v


class SyncSettings(BaseSettings):
    """Backfill and live-mode scheduling settings."""

    model_config = SettingsConfigDict(env_prefix="SYNC_", extra="ignore")

    min_window_blocks: int = Field(
        default=100,
        alias="SYNC_MIN_WINDOW_BLOCKS",
        ge=1,
        description="Floor for the adaptive block window",
    )
    pacing_delay_ms: int = Field(
        default=100,
        alias="SYNC_PACING_DELAY_MS",
        ge=0,
        le=60_000,
        description="Delay between windows to respect provider rate limits",
    )
    interval_minutes: int = Field(
        default=10,
        alias="SYNC_INTERVAL_MINUTES",
        ge=1,
        le=24 * 60,
        description="Period of the reconciling re-backfill in live mode",
    )
    live_queue_size: int = Field(
        default=1000,
        alias="SYNC_LIVE_QUEUE_SIZE",
        ge=1,
        le=1_000_000,
        description="Capacity of the live event channel",
    )
    full_resync: bool = Field(
        default=False,
        alias="SYNC_FULL_RESYNC",
        description="Clear stored data and re-fetch from the origin on the first pass",
    )


class Settings(BaseSettings):
    """Main application settings.

    Loads configuration from environment variables with support for
    .env files via python-dotenv.

    Example:
        ```python
        from blacklist_harvester.config import get_settings

        settings = get_settings()
        print(settings.database.url)
        print(settings.log_level)
        ```
    """

    model_config = SettingsConfigDict(
        env_file=_ENV_FILE,
        env_file_encoding=_ENV_FILE_ENCODING,
        extra="ignore",
    )

    # NOTE: Each nested BaseSettings must be given the same env_file, otherwise it
    # will only read from the process environment (and ignore `.env`).
    database: DatabaseSettings = Field(
        default_factory=lambda: DatabaseSettings(
            _env_file=_ENV_FILE,
            _env_file_encoding=_ENV_FILE_ENCODING,
        )
    )
    redis: RedisSettings = Field(
        default_factory=lambda: RedisSettings(
            _env_file=_ENV_FILE,
            _env_file_encoding=_ENV_FILE_ENCODING,
        )
    )
    ethereum: EthereumSettings = Field(
        default_factory=lambda: EthereumSettings(
            _env_file=_ENV_FILE,
            _env_file_encoding=_ENV_FILE_ENCODING,
        )
    )
    tron: TronSettings = Field(
        default_factory=lambda: TronSettings(
            _env_file=_ENV_FILE,
            _env_file_encoding=_ENV_FILE_ENCODING,
        )
    )
    sync: SyncSettings = Field(
        default_factory=lambda: SyncSettings(
            _env_file=_ENV_FILE,
            _env_file_encoding=_ENV_FILE_ENCODING,
        )
    )

    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = Field(
        default="INFO",
        alias="LOG_LEVEL",
        description="Logging level",
    )

    def get_logging_level(self) -> int:
        """Get the numeric logging level."""
        level: int = getattr(logging, self.log_level)
        return level

    def redacted_summary(self) -> dict[str, str | dict[str, str]]:
        """Get a summary of settings with secrets redacted.

        Returns:
            Dictionary of settings with sensitive values masked.
        """
        return {
            "database_url": self._redact_url(self.database.url),
            "redis_url": self._redact_url(self.redis.url) if self.redis.url else "(not set)",
            "ethereum": {
                "rpc_url": self._redact_url(self.ethereum.rpc_url),
                "fallback_rpc_url": self.ethereum.fallback_rpc_url or "(not set)",
                "ws_url": self.ethereum.ws_url or "(not set)",
                "usdt_contract": self.ethereum.usdt_contract or "(disabled)",
                "usdc_contract": self.ethereum.usdc_contract or "(disabled)",
                "chunk_size": str(self.ethereum.chunk_size),
            },
            "tron": {
                "full_node": self.tron.full_node,
                "api_key": "(set)" if self.tron.api_key else "(not set)",
                "usdt_contract": self.tron.usdt_contract or "(disabled)",
            },
            "sync": {
                "min_window_blocks": str(self.sync.min_window_blocks),
                "interval_minutes": str(self.sync.interval_minutes),
                "full_resync": str(self.sync.full_resync),
            },
            "log_level": self.log_level,
        }

    @staticmethod
    def _redact_url(url: str) -> str:
        """Redact password from URL if present."""
        if "@" in url and "://" in url:
            protocol_end = url.index("://") + 3
            at_pos = url.index("@")
            creds_part = url[protocol_end:at_pos]
            if ":" in creds_part:
                username = creds_part.split(":")[0]
                return f"{url[:protocol_end]}{username}:***@{url[at_pos + 1 :]}"
        return url


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Get the application settings singleton.

    Returns:
        The Settings instance.

    Raises:
        ValidationError: If required environment variables are missing
            or have invalid values.
    """
    return Settings()


def clear_settings_cache() -> None:
    """Clear the settings cache.

    Useful for testing when you need to reload settings with
    different environment variables.
    """
    get_settings.cache_clear()
