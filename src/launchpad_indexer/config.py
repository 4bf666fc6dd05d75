"""Configuration management service with Pydantic Settings.

This module provides centralized configuration management for the
Launchpad Indexer, loading and validating environment variables at startup.
"""

from __future__ import annotations

import logging
from decimal import Decimal
from functools import lru_cache
from typing import Literal

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

_ENV_FILE = ".env"
_ENV_FILE_ENCODING = "utf-8"


def _parse_chain_map(raw: str, *, env_name: str) -> dict[int, str]:
    """Parse a ``chain_id=value`` comma-separated mapping."""
    mapping: dict[int, str] = {}
    for part in raw.split(","):
        part = part.strip()
        if not part:
            continue
        if "=" not in part:
            raise ValueError(f"{env_name} entries must look like <chain_id>=<value>, got {part!r}")
        chain_part, value = part.split("=", 1)
        try:
            chain_id = int(chain_part.strip())
        except ValueError as e:
            raise ValueError(f"{env_name} has a non-numeric chain id: {chain_part!r}") from e
        mapping[chain_id] = value.strip()
    return mapping


class DatabaseSettings(BaseSettings):
    """Database connection settings."""

    model_config = SettingsConfigDict(env_prefix="", extra="ignore")

    url: str = Field(
        alias="DATABASE_URL",
        description="PostgreSQL connection string",
    )

    @field_validator("url")
    @classmethod
    def validate_url(cls, v: str) -> str:
        """Validate database URL format."""
        if not v.startswith(("postgresql://", "postgresql+asyncpg://")):
            raise ValueError("DATABASE_URL must be a PostgreSQL connection string")
        return v


class RedisSettings(BaseSettings):
    """Redis connection settings (optional shared cache)."""

    model_config = SettingsConfigDict(env_prefix="", extra="ignore")

    url: str | None = Field(
        default=None,
        alias="REDIS_URL",
        description="Redis connection string; block timestamps are cached there when set",
    )

    @field_validator("url")
    @classmethod
    def validate_url(cls, v: str | None) -> str | None:
        """Validate Redis URL format."""
        if v is None or v == "":
            return None
        if not v.startswith("redis://"):
            raise ValueError("REDIS_URL must start with redis://")
        return v


class ChainSettings(BaseSettings):
    """Per-chain RPC endpoints and client limits."""

    model_config = SettingsConfigDict(env_prefix="CHAIN_", extra="ignore")

    rpc_urls_raw: str = Field(
        default="",
        alias="CHAIN_RPC_URLS",
        description="Comma-separated <chain_id>=<rpc_url> pairs",
    )
    dex_routers_raw: str = Field(
        default="",
        alias="CHAIN_DEX_ROUTERS",
        description="Comma-separated <chain_id>=<router_address> pairs for pool discovery",
    )
    request_timeout_seconds: float = Field(
        default=30.0,
        alias="CHAIN_REQUEST_TIMEOUT_SECONDS",
        gt=0,
        le=300,
        description="HTTP timeout per RPC request",
    )
    max_requests_per_second: float = Field(
        default=25.0,
        alias="CHAIN_MAX_REQUESTS_PER_SECOND",
        gt=0,
        le=1000,
        description="Client-side rate limit per chain",
    )

    @field_validator("rpc_urls_raw")
    @classmethod
    def validate_rpc_urls(cls, v: str) -> str:
        """Validate every configured RPC URL."""
        for url in _parse_chain_map(v, env_name="CHAIN_RPC_URLS").values():
            if not url.startswith(("http://", "https://")):
                raise ValueError("RPC URL must be an HTTP(S) endpoint")
        return v

    @field_validator("dex_routers_raw")
    @classmethod
    def validate_dex_routers(cls, v: str) -> str:
        """Validate every configured router address."""
        for address in _parse_chain_map(v, env_name="CHAIN_DEX_ROUTERS").values():
            if not (address.startswith("0x") and len(address) == 42):
                raise ValueError("Router address must be a 0x-prefixed 20-byte hex address")
        return v

    @property
    def rpc_urls(self) -> dict[int, str]:
        """Mapping of chain id to RPC URL."""
        return _parse_chain_map(self.rpc_urls_raw, env_name="CHAIN_RPC_URLS")

    @property
    def dex_routers(self) -> dict[int, str]:
        """Mapping of chain id to DEX router address."""
        return {
            chain_id: address.lower()
            for chain_id, address in _parse_chain_map(
                self.dex_routers_raw, env_name="CHAIN_DEX_ROUTERS"
            ).items()
        }


class RetrySettings(BaseSettings):
    """Backoff policy for rate-limited RPC providers."""

    model_config = SettingsConfigDict(env_prefix="RETRY_", extra="ignore")

    max_attempts: int = Field(
        default=10,
        alias="RETRY_MAX_ATTEMPTS",
        ge=1,
        le=50,
        description="Attempts per RPC call before giving up",
    )
    base_delay_seconds: float = Field(
        default=2.0,
        alias="RETRY_BASE_DELAY_SECONDS",
        ge=0.0,
        le=60.0,
        description="Backoff step; the n-th linear retry waits n times this value",
    )
    max_delay_seconds: float = Field(
        default=10.0,
        alias="RETRY_MAX_DELAY_SECONDS",
        ge=0.0,
        le=600.0,
        description="Upper bound on a single backoff sleep",
    )
    exponential: bool = Field(
        default=False,
        alias="RETRY_EXPONENTIAL",
        description="Double the backoff on each retry instead of growing it linearly",
    )


class ScannerSettings(BaseSettings):
    """Block scanning settings."""

    model_config = SettingsConfigDict(env_prefix="SCAN_", extra="ignore")

    reorg_cushion: int = Field(
        default=5,
        alias="SCAN_REORG_CUSHION",
        ge=0,
        le=1000,
        description="Blocks re-scanned behind the cursor on every run",
    )
    address_batch_size: int = Field(
        default=200,
        alias="SCAN_ADDRESS_BATCH_SIZE",
        ge=1,
        le=10_000,
        description="Contract addresses per eth_getLogs query",
    )
    chunk_size: int = Field(
        default=10_000,
        alias="SCAN_CHUNK_SIZE",
        ge=1,
        le=1_000_000,
        description="Initial block window per eth_getLogs query",
    )
    min_chunk_size: int = Field(
        default=500,
        alias="SCAN_MIN_CHUNK_SIZE",
        ge=1,
        le=1_000_000,
        description="Floor for the block window after rate-limit halving",
    )
    header_delay_seconds: float = Field(
        default=0.05,
        alias="SCAN_HEADER_DELAY_SECONDS",
        ge=0.0,
        le=10.0,
        description="Pause between block header lookups",
    )
    timestamp_cache_size: int = Field(
        default=2000,
        alias="SCAN_TIMESTAMP_CACHE_SIZE",
        ge=1,
        le=1_000_000,
        description="Entries kept in the in-process block timestamp LRU",
    )
    token_id: int | None = Field(
        default=None,
        alias="SCAN_TOKEN_ID",
        description="Restrict scanning to a single token id",
    )


class ClassifierSettings(BaseSettings):
    """Transfer classification settings."""

    model_config = SettingsConfigDict(env_prefix="CLASSIFIER_", extra="ignore")

    selectors_raw: str = Field(
        default="",
        alias="CLASSIFIER_SELECTORS",
        description="Extra or overriding <0xselector>=<KIND> pairs for the call-data table",
    )


class ReconcilerSettings(BaseSettings):
    """Ledger reconciliation settings."""

    model_config = SettingsConfigDict(env_prefix="RECONCILE_", extra="ignore")

    backfill_limit: int = Field(
        default=200,
        alias="RECONCILE_BACKFILL_LIMIT",
        ge=0,
        le=100_000,
        description="Maximum transfer rows re-derived per chain per run",
    )


class AggregatorSettings(BaseSettings):
    """Candle and summary aggregation settings."""

    model_config = SettingsConfigDict(env_prefix="AGG_", extra="ignore")

    fallback_base_price: Decimal = Field(
        default=Decimal("0"),
        alias="AGG_FALLBACK_BASE_PRICE",
        ge=Decimal("0"),
        description="Price used when a token has no snapshot, trade or base price",
    )
    exchange_rate_symbol: str = Field(
        default="ETH",
        alias="AGG_EXCHANGE_RATE_SYMBOL",
        description="Row of exchange_rates used to convert liquidity to USD",
    )


class LeaseSettings(BaseSettings):
    """Singleton run lease settings."""

    model_config = SettingsConfigDict(env_prefix="LEASE_", extra="ignore")

    name: str = Field(
        default="indexer",
        alias="LEASE_NAME",
        description="Lease row shared by all indexer processes",
    )
    ttl_seconds: int = Field(
        default=900,
        alias="LEASE_TTL_SECONDS",
        ge=10,
        le=86_400,
        description="Lease lifetime; a crashed holder's lease can be taken over after it expires",
    )


class Settings(BaseSettings):
    """Main application settings.

    Loads configuration from environment variables with support for
    .env files via python-dotenv.

    Example:
        ```python
        from launchpad_indexer.config import get_settings

        settings = get_settings()
        print(settings.database.url)
        print(settings.chains.rpc_urls)
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
    chains: ChainSettings = Field(
        default_factory=lambda: ChainSettings(
            _env_file=_ENV_FILE,
            _env_file_encoding=_ENV_FILE_ENCODING,
        )
    )
    retry: RetrySettings = Field(
        default_factory=lambda: RetrySettings(
            _env_file=_ENV_FILE,
            _env_file_encoding=_ENV_FILE_ENCODING,
        )
    )
    scanner: ScannerSettings = Field(
        default_factory=lambda: ScannerSettings(
            _env_file=_ENV_FILE,
            _env_file_encoding=_ENV_FILE_ENCODING,
        )
    )
    classifier: ClassifierSettings = Field(
        default_factory=lambda: ClassifierSettings(
            _env_file=_ENV_FILE,
            _env_file_encoding=_ENV_FILE_ENCODING,
        )
    )
    reconciler: ReconcilerSettings = Field(
        default_factory=lambda: ReconcilerSettings(
            _env_file=_ENV_FILE,
            _env_file_encoding=_ENV_FILE_ENCODING,
        )
    )
    aggregator: AggregatorSettings = Field(
        default_factory=lambda: AggregatorSettings(
            _env_file=_ENV_FILE,
            _env_file_encoding=_ENV_FILE_ENCODING,
        )
    )
    lease: LeaseSettings = Field(
        default_factory=lambda: LeaseSettings(
            _env_file=_ENV_FILE,
            _env_file_encoding=_ENV_FILE_ENCODING,
        )
    )

    # Application settings
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = Field(
        default="INFO",
        alias="LOG_LEVEL",
        description="Logging level",
    )
    health_check_timeout_seconds: float = Field(
        default=10.0,
        alias="HEALTH_CHECK_TIMEOUT_SECONDS",
        gt=0,
        le=300,
        description="Per-chain liveness probe timeout",
    )
    skip_health_check: bool = Field(
        default=False,
        alias="SKIP_HEALTH_CHECK",
        description="Scan every configured chain without probing it first",
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
            "chains": {
                str(chain_id): self._redact_url(url) for chain_id, url in self.chains.rpc_urls.items()
            },
            "dex_routers": {str(chain_id): router for chain_id, router in self.chains.dex_routers.items()},
            "scanner": {
                "reorg_cushion": str(self.scanner.reorg_cushion),
                "address_batch_size": str(self.scanner.address_batch_size),
                "chunk_size": str(self.scanner.chunk_size),
                "min_chunk_size": str(self.scanner.min_chunk_size),
                "token_id": str(self.scanner.token_id) if self.scanner.token_id is not None else "(all)",
            },
            "retry": {
                "max_attempts": str(self.retry.max_attempts),
                "base_delay_seconds": str(self.retry.base_delay_seconds),
                "max_delay_seconds": str(self.retry.max_delay_seconds),
                "exponential": str(self.retry.exponential),
            },
            "reconciler": {
                "backfill_limit": str(self.reconciler.backfill_limit),
            },
            "lease": {
                "name": self.lease.name,
                "ttl_seconds": str(self.lease.ttl_seconds),
            },
            "log_level": self.log_level,
            "skip_health_check": str(self.skip_health_check),
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
