"""Environment-driven settings for the competition ledger.

Each subsystem reads its own prefixed variables (`CHAIN_`, `INDEXING_`,
`BOOST_`, `REWARDS_`, ...) from the process environment or `.env`.
"""

from __future__ import annotations

import logging
from decimal import Decimal
from functools import lru_cache
from typing import Literal, TypeVar

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict
from sqlalchemy.engine import make_url

_ENV_FILE = ".env"
_ENV_FILE_ENCODING = "utf-8"

_S = TypeVar("_S", bound=BaseSettings)


def _load(settings_cls: type[_S]) -> _S:
    # Nested settings only read `.env` when handed the file explicitly.
    return settings_cls(_env_file=_ENV_FILE, _env_file_encoding=_ENV_FILE_ENCODING)


class DatabaseSettings(BaseSettings):
    """Database connection settings."""

    model_config = SettingsConfigDict(env_prefix="", extra="ignore")

    url: str = Field(
        alias="DATABASE_URL",
        description="PostgreSQL connection string",
    )
    pool_size: int = Field(
        default=5,
        alias="DATABASE_POOL_SIZE",
        ge=1,
        le=100,
        description="Connection pool size",
    )
    max_overflow: int = Field(
        default=10,
        alias="DATABASE_MAX_OVERFLOW",
        ge=0,
        le=100,
        description="Maximum overflow connections above the pool size",
    )
    echo: bool = Field(
        default=False,
        alias="DATABASE_ECHO",
        description="Echo SQL statements for debugging",
    )

    @field_validator("url")
    @classmethod
    def validate_url(cls, v: str) -> str:
        """Validate database URL format."""
        if not v.startswith(("postgresql://", "postgresql+asyncpg://")):
            raise ValueError("DATABASE_URL must be a PostgreSQL connection string")
        return v


class RedisSettings(BaseSettings):
    """Redis connection settings."""

    model_config = SettingsConfigDict(env_prefix="", extra="ignore")

    url: str = Field(
        default="redis://localhost:6379",
        alias="REDIS_URL",
        description="Redis connection string",
    )
    balance_cache_ttl_seconds: int = Field(
        default=300,
        alias="BALANCE_CACHE_TTL_SECONDS",
        ge=1,
        le=86_400,
        description="TTL of cached per-agent balance snapshots",
    )

    @field_validator("url")
    @classmethod
    def validate_url(cls, v: str) -> str:
        """Validate Redis URL format."""
        if not v.startswith("redis://"):
            raise ValueError("REDIS_URL must start with redis://")
        return v


class ChainSettings(BaseSettings):
    """EVM RPC settings for the staking and rewards contracts."""

    model_config = SettingsConfigDict(env_prefix="CHAIN_", extra="ignore")

    rpc_url: str = Field(
        default="https://mainnet.base.org",
        alias="CHAIN_RPC_URL",
        description="Primary RPC endpoint",
    )
    fallback_rpc_url: str | None = Field(
        default=None,
        alias="CHAIN_FALLBACK_RPC_URL",
        description="Fallback RPC endpoint",
    )
    max_requests_per_second: float = Field(
        default=25.0,
        alias="CHAIN_MAX_REQUESTS_PER_SECOND",
        gt=0,
        le=1000,
        description="Client-side RPC rate limit",
    )
    max_retries: int = Field(
        default=3,
        alias="CHAIN_MAX_RETRIES",
        ge=1,
        le=10,
        description="Attempts per RPC call before failing",
    )

    @field_validator("rpc_url", "fallback_rpc_url")
    @classmethod
    def validate_url(cls, v: str | None) -> str | None:
        """Validate RPC URL format."""
        if v is None:
            return v
        if not v.startswith(("http://", "https://")):
            raise ValueError("RPC URL must be an HTTP(S) endpoint")
        return v


class IndexingSettings(BaseSettings):
    """Staking/rewards event indexing settings."""

    model_config = SettingsConfigDict(env_prefix="INDEXING_", extra="ignore")

    staking_contract: str | None = Field(
        default=None,
        alias="INDEXING_STAKING_CONTRACT",
        description="Staking contract address",
    )
    rewards_contract: str | None = Field(
        default=None,
        alias="INDEXING_REWARDS_CONTRACT",
        description="Rewards allocator contract address",
    )
    start_block: int = Field(
        default=0,
        alias="INDEXING_START_BLOCK",
        ge=0,
        description="First block to scan when nothing has been indexed yet",
    )
    logs_chunk_size_blocks: int = Field(
        default=2_000,
        alias="INDEXING_LOGS_CHUNK_SIZE_BLOCKS",
        ge=1,
        le=500_000,
        description="Block chunk size for eth_getLogs scans",
    )
    delay_seconds: float = Field(
        default=3.0,
        alias="INDEXING_DELAY_SECONDS",
        ge=0,
        le=3600,
        description="Sleep between polls once the indexer reaches the chain tip",
    )
    confirmations: int = Field(
        default=0,
        alias="INDEXING_CONFIRMATIONS",
        ge=0,
        le=1000,
        description="Blocks to stay behind the head",
    )

    @field_validator("staking_contract", "rewards_contract")
    @classmethod
    def validate_address(cls, v: str | None) -> str | None:
        if v is None or v == "":
            return None
        if not v.startswith("0x") or len(v) != 42:
            raise ValueError("Contract address must be a 0x-prefixed 20-byte hex string")
        return v.lower()


class LedgerSettings(BaseSettings):
    """Balance ledger and trade settlement settings."""

    model_config = SettingsConfigDict(env_prefix="LEDGER_", extra="ignore")

    trade_max_retries: int = Field(
        default=3,
        alias="LEDGER_TRADE_MAX_RETRIES",
        ge=0,
        le=10,
        description="Retries of a trade on serialization failure or deadlock",
    )
    trade_retry_base_delay_seconds: float = Field(
        default=0.05,
        alias="LEDGER_TRADE_RETRY_BASE_DELAY_SECONDS",
        ge=0,
        le=10,
        description="Base delay of the exponential trade retry backoff",
    )
    specific_chain_tokens: dict[str, dict[str, str]] = Field(
        default_factory=dict,
        alias="LEDGER_SPECIFIC_CHAIN_TOKENS",
        description='Known tokens per chain as JSON, e.g. {"base": {"usdc": "0x..."}}',
    )

    @field_validator("specific_chain_tokens")
    @classmethod
    def _lowercase_addresses(cls, v: dict[str, dict[str, str]]) -> dict[str, dict[str, str]]:
        return {
            chain: {symbol: address.lower() for symbol, address in tokens.items()}
            for chain, tokens in v.items()
        }


class BoostSettings(BaseSettings):
    """Boost award settings."""

    model_config = SettingsConfigDict(env_prefix="BOOST_", extra="ignore", env_parse_none_str="none")

    no_stake_amount: int | None = Field(
        default=10**21,
        alias="BOOST_NO_STAKE_AMOUNT",
        ge=0,
        description="Flat boost granted to users without a stake; 'none' disables it",
    )


class RewardsSettings(BaseSettings):
    """Rewards allocation settings."""

    model_config = SettingsConfigDict(env_prefix="REWARDS_", extra="ignore", env_parse_none_str="none")

    prize_pool_decay_rate: Decimal = Field(
        default=Decimal("0.5"),
        alias="REWARDS_PRIZE_POOL_DECAY_RATE",
        ge=Decimal("0.1"),
        le=Decimal("0.9"),
        description="Rank decay of the prize pool split",
    )
    boost_time_decay_rate: Decimal | None = Field(
        default=Decimal("0.5"),
        alias="REWARDS_BOOST_TIME_DECAY_RATE",
        ge=Decimal("0.1"),
        le=Decimal("0.9"),
        description="Daily decay of boost weight within the boosting window; 'none' disables decay",
    )


class Settings(BaseSettings):
    """Main application settings.

    Loads configuration from environment variables with support for
    .env files via python-dotenv.

    Example:
        ```python
        from compete_ledger.config import get_settings

        settings = get_settings()
        print(settings.database.url)
        print(settings.rewards.prize_pool_decay_rate)
        ```
    """

    model_config = SettingsConfigDict(
        env_file=_ENV_FILE,
        env_file_encoding=_ENV_FILE_ENCODING,
        extra="ignore",
    )

    database: DatabaseSettings = Field(default_factory=lambda: _load(DatabaseSettings))
    redis: RedisSettings = Field(default_factory=lambda: _load(RedisSettings))
    chain: ChainSettings = Field(default_factory=lambda: _load(ChainSettings))
    indexing: IndexingSettings = Field(default_factory=lambda: _load(IndexingSettings))
    ledger: LedgerSettings = Field(default_factory=lambda: _load(LedgerSettings))
    boost: BoostSettings = Field(default_factory=lambda: _load(BoostSettings))
    rewards: RewardsSettings = Field(default_factory=lambda: _load(RewardsSettings))

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
            "redis_url": self._redact_url(self.redis.url),
            "chain": {
                "rpc_url": self.chain.rpc_url,
                "fallback_rpc_url": self.chain.fallback_rpc_url or "(not set)",
            },
            "indexing": {
                "staking_contract": self.indexing.staking_contract or "(not set)",
                "rewards_contract": self.indexing.rewards_contract or "(not set)",
                "start_block": str(self.indexing.start_block),
                "logs_chunk_size_blocks": str(self.indexing.logs_chunk_size_blocks),
            },
            "ledger": {
                "trade_max_retries": str(self.ledger.trade_max_retries),
                "chains": ",".join(sorted(self.ledger.specific_chain_tokens)) or "(none)",
            },
            "boost": {
                "no_stake_amount": str(self.boost.no_stake_amount) if self.boost.no_stake_amount is not None else "(not set)",
            },
            "rewards": {
                "prize_pool_decay_rate": str(self.rewards.prize_pool_decay_rate),
                "boost_time_decay_rate": str(self.rewards.boost_time_decay_rate or "(not set)"),
            },
            "log_level": self.log_level,
        }

    @staticmethod
    def _redact_url(url: str) -> str:
        return make_url(url).render_as_string(hide_password=True)


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Load settings once per process.

    Raises:
        ValidationError: If required environment variables are missing
            or have invalid values.
    """
    return Settings()


def clear_settings_cache() -> None:
    """Forget the cached settings so the next call re-reads the environment."""
    get_settings.cache_clear()
