"""Configuration management service with Pydantic Settings.

This module provides centralized configuration management for the
custody service, loading and validating environment variables at startup.
Chain definitions default to the built-in table below and can be replaced
wholesale with a JSON file (``CHAINS_CONFIG_FILE``).
"""

from __future__ import annotations

import json
import logging
from functools import lru_cache
from pathlib import Path
from typing import Literal

from pydantic import BaseModel, Field, SecretStr, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

_ENV_FILE = ".env"
_ENV_FILE_ENCODING = "utf-8"

ChainFamily = Literal["evm", "solana"]


class TokenConfig(BaseModel):
    """A token contract (EVM) or mint (Solana) accepted for deposits."""

    symbol: str
    address: str
    decimals: int = Field(ge=0, le=36)

    @field_validator("symbol")
    @classmethod
    def normalize_symbol(cls, v: str) -> str:
        return v.upper()


class ChainConfig(BaseModel):
    """Per-chain RPC endpoints and scanning policy."""

    name: str
    family: ChainFamily
    rpc_url: str
    fallback_rpc_url: str | None = None
    native_symbol: str
    native_decimals: int = 18
    required_confirmations: int = Field(default=12, ge=1)
    poll_interval_seconds: float = Field(default=60.0, gt=0)
    max_blocks_per_cycle: int = Field(default=500, ge=1)
    initial_lookback_blocks: int = Field(default=100, ge=0)
    logs_chunk_size_blocks: int = Field(default=2_000, ge=1)
    address_batch_size: int = Field(default=100, ge=1)
    # Accounts polled per cycle by clients that query one address at a time.
    max_addresses_per_cycle: int | None = Field(default=None, ge=1)
    scan_native: bool = True
    request_timeout_seconds: float = Field(default=30.0, gt=0)
    max_requests_per_second: float = Field(default=10.0, gt=0)
    tokens: list[TokenConfig] = Field(default_factory=list)

    @field_validator("name")
    @classmethod
    def normalize_name(cls, v: str) -> str:
        return v.strip().lower()

    @field_validator("rpc_url", "fallback_rpc_url")
    @classmethod
    def validate_url(cls, v: str | None) -> str | None:
        """Validate RPC URL format."""
        if v is None:
            return v
        if not v.startswith(("http://", "https://")):
            raise ValueError("RPC URL must be an HTTP(S) endpoint")
        return v


def _evm_chain(
    name: str,
    *,
    rpc_url: str,
    native_symbol: str,
    required_confirmations: int,
    poll_interval_seconds: float,
    tokens: list[tuple[str, str, int]],
) -> ChainConfig:
    return ChainConfig(
        name=name,
        family="evm",
        rpc_url=rpc_url,
        native_symbol=native_symbol,
        required_confirmations=required_confirmations,
        poll_interval_seconds=poll_interval_seconds,
        tokens=[TokenConfig(symbol=s, address=a, decimals=d) for s, a, d in tokens],
    )


DEFAULT_CHAINS: tuple[ChainConfig, ...] = (
    _evm_chain(
        "ethereum",
        rpc_url="https://ethereum-rpc.publicnode.com",
        native_symbol="ETH",
        required_confirmations=12,
        poll_interval_seconds=60,
        tokens=[
            ("USDT", "0xdac17f958d2ee523a2206206994597c13d831ec7", 6),
            ("USDC", "0xa0b86991c6218b36c1d19d4a2e9eb0ce3606eb48", 6),
            ("WBTC", "0x2260fac5e5542a773aa44fbcfedf7c193bc2c599", 8),
            ("WETH", "0xc02aaa39b223fe8d0a0e5c4f27ead9083c756cc2", 18),
        ],
    ),
    _evm_chain(
        "bsc",
        rpc_url="https://bsc-rpc.publicnode.com",
        native_symbol="BNB",
        required_confirmations=15,
        poll_interval_seconds=30,
        tokens=[
            ("USDT", "0x55d398326f99059ff775485246999027b3197955", 18),
            ("USDC", "0x8ac76a51cc950d9822d68b83fe1ad97b32cd580d", 18),
            ("BTCB", "0x7130d2a12b9bcbfae4f2634d864a1ee1ce3ead9c", 18),
            ("ETH", "0x2170ed0880ac9a755fd29b2688956bd959f933f8", 18),
        ],
    ),
    _evm_chain(
        "polygon",
        rpc_url="https://polygon-rpc.com",
        native_symbol="MATIC",
        required_confirmations=128,
        poll_interval_seconds=30,
        tokens=[
            ("USDT", "0xc2132d05d31c914a87c6611c10748aeb04b58e8f", 6),
            ("USDC", "0x2791bca1f2de4661ed88a30c99a7a9449aa84174", 6),
            ("WBTC", "0x1bfd67037b42cf73acf2047067bd4f2c47d9bfd6", 8),
            ("WETH", "0x7ceb23fd6bc0add59e62ac25578270cff1b9f619", 18),
        ],
    ),
    _evm_chain(
        "arbitrum",
        rpc_url="https://arb1.arbitrum.io/rpc",
        native_symbol="ETH",
        required_confirmations=20,
        poll_interval_seconds=30,
        tokens=[
            ("USDT", "0xfd086bc7cd5c481dcc9c85ebe478a1c0b69fcbb9", 6),
            ("USDC", "0xff970a61a04b1ca14834a43f5de4533ebddb5cc8", 6),
            ("WBTC", "0x2f2a2543b76a4166549f7aab2e75bef0aefc5b0f", 8),
        ],
    ),
    _evm_chain(
        "base",
        rpc_url="https://mainnet.base.org",
        native_symbol="ETH",
        required_confirmations=20,
        poll_interval_seconds=30,
        tokens=[
            ("DAI", "0x50c5725949a6f0c72e6c4a641f24049a917db0cb", 18),
            ("USDC", "0x833589fcd6edb6e08f4c7c32d4f71b54bda02913", 6),
        ],
    ),
    ChainConfig(
        name="solana",
        family="solana",
        rpc_url="https://api.mainnet-beta.solana.com",
        native_symbol="SOL",
        native_decimals=9,
        # Commitment rank: processed=0, confirmed=1, finalized=2.
        required_confirmations=2,
        poll_interval_seconds=15,
        max_blocks_per_cycle=1_000,
        max_addresses_per_cycle=200,
        tokens=[
            TokenConfig(symbol="USDT", address="Es9vMFrzaCERmJfrF4H2FYD4KCoNkY11McCe8BenwNYB", decimals=6),
        ],
    ),
)

# Balance fields configured for the platform (one per token symbol).
DEFAULT_SUPPORTED_TOKENS: tuple[str, ...] = (
    "USDT",
    "USDC",
    "BTC",
    "ETH",
    "SOL",
    "BNB",
    "DOGE",
    "XRP",
    "ADA",
    "MATIC",
    "DOT",
    "AVAX",
    "LINK",
    "UNI",
    "ATOM",
    "BCH",
)


class DatabaseSettings(BaseSettings):
    """Database connection settings."""

    model_config = SettingsConfigDict(env_prefix="", extra="ignore")

    url: str = Field(
        alias="DATABASE_URL",
        description="PostgreSQL (or SQLite, for local runs) connection string",
    )
    pool_size: int = Field(default=5, ge=1, alias="DATABASE_POOL_SIZE")
    max_overflow: int = Field(default=10, ge=0, alias="DATABASE_MAX_OVERFLOW")
    echo: bool = Field(default=False, alias="DATABASE_ECHO", description="Log every SQL statement")

    @field_validator("url")
    @classmethod
    def validate_url(cls, v: str) -> str:
        """Validate database URL format."""
        if not v.startswith(("postgresql://", "postgresql+asyncpg://", "sqlite+aiosqlite://")):
            raise ValueError("DATABASE_URL must be a PostgreSQL or sqlite+aiosqlite connection string")
        return v


class RedisSettings(BaseSettings):
    """Redis connection settings (optional)."""

    model_config = SettingsConfigDict(env_prefix="", extra="ignore")

    url: str | None = Field(
        default=None,
        alias="REDIS_URL",
        description="Redis connection string; enables block caching and scan leases",
    )

    @field_validator("url")
    @classmethod
    def validate_url(cls, v: str | None) -> str | None:
        """Validate Redis URL format."""
        if v is not None and not v.startswith(("redis://", "rediss://")):
            raise ValueError("REDIS_URL must start with redis:// or rediss://")
        return v


class CustodySettings(BaseSettings):
    """Wallet generation and mnemonic encryption settings."""

    model_config = SettingsConfigDict(env_prefix="CUSTODY_", extra="ignore")

    mnemonic_encryption_key: SecretStr | None = Field(
        default=None,
        alias="CUSTODY_MNEMONIC_ENCRYPTION_KEY",
        description="Fernet key used to encrypt stored mnemonics",
    )
    mnemonic_words: int = Field(
        default=24,
        alias="CUSTODY_MNEMONIC_WORDS",
        description="Word count for newly generated mnemonics",
    )
    evm_derivation_path: str = Field(
        default="m/44'/60'/0'/0/0",
        alias="CUSTODY_EVM_DERIVATION_PATH",
        description="BIP-44 path for the shared EVM account",
    )
    solana_derivation_path: str = Field(
        default="m/44'/501'/0'/0'",
        alias="CUSTODY_SOLANA_DERIVATION_PATH",
        description="SLIP-10 path for the Solana account",
    )
    supported_tokens: list[str] = Field(
        default_factory=lambda: list(DEFAULT_SUPPORTED_TOKENS),
        alias="CUSTODY_SUPPORTED_TOKENS",
        description="Token symbols with a balance field on the platform (JSON list)",
    )

    @field_validator("mnemonic_words")
    @classmethod
    def validate_words(cls, v: int) -> int:
        if v not in (12, 15, 18, 21, 24):
            raise ValueError("CUSTODY_MNEMONIC_WORDS must be one of 12, 15, 18, 21, 24")
        return v

    @field_validator("evm_derivation_path", "solana_derivation_path")
    @classmethod
    def validate_path(cls, v: str) -> str:
        if not v.startswith("m/"):
            raise ValueError("Derivation path must start with m/")
        return v

    @field_validator("supported_tokens", mode="after")
    @classmethod
    def normalize_tokens(cls, v: list[str]) -> list[str]:
        return sorted({t.strip().upper() for t in v if t.strip()})


class ScannerSettings(BaseSettings):
    """Deposit scanner scheduling settings."""

    model_config = SettingsConfigDict(env_prefix="SCANNER_", extra="ignore")

    cycle_timeout_seconds: float = Field(
        default=120.0,
        alias="SCANNER_CYCLE_TIMEOUT_SECONDS",
        gt=0,
        description="A scan cycle exceeding this is abandoned without advancing the checkpoint",
    )
    max_backoff_seconds: float = Field(
        default=900.0,
        alias="SCANNER_MAX_BACKOFF_SECONDS",
        gt=0,
        description="Upper bound for per-chain exponential backoff",
    )
    shutdown_grace_seconds: float = Field(
        default=30.0,
        alias="SCANNER_SHUTDOWN_GRACE_SECONDS",
        ge=0,
        description="How long stop() waits for in-flight cycles before cancelling them",
    )
    lease_enabled: bool = Field(
        default=True,
        alias="SCANNER_LEASE_ENABLED",
        description="Take a Redis lease per chain so only one process scans it at a time",
    )
    chains: list[str] | None = Field(
        default=None,
        alias="SCANNER_CHAINS",
        description="Restrict scanning to these chains (JSON list); default all configured",
    )


class ChainsSettings(BaseSettings):
    """Chain definitions."""

    model_config = SettingsConfigDict(env_prefix="CHAINS_", extra="ignore")

    config_file: Path | None = Field(
        default=None,
        alias="CHAINS_CONFIG_FILE",
        description="JSON file with a list of chain definitions replacing the defaults",
    )
    rpc_urls: dict[str, str] = Field(
        default_factory=dict,
        alias="CHAINS_RPC_URLS",
        description="Per-chain primary RPC URL overrides (JSON object)",
    )
    fallback_rpc_urls: dict[str, str] = Field(
        default_factory=dict,
        alias="CHAINS_FALLBACK_RPC_URLS",
        description="Per-chain fallback RPC URLs (JSON object)",
    )

    def load(self) -> list[ChainConfig]:
        """Resolve the effective chain list."""
        if self.config_file is not None:
            raw = json.loads(self.config_file.read_text(encoding="utf-8"))
            if not isinstance(raw, list):
                raise ValueError("CHAINS_CONFIG_FILE must contain a JSON list")
            chains = [ChainConfig.model_validate(item) for item in raw]
        else:
            chains = [c.model_copy(deep=True) for c in DEFAULT_CHAINS]

        resolved: list[ChainConfig] = []
        for chain in chains:
            updates: dict[str, str] = {}
            if chain.name in self.rpc_urls:
                updates["rpc_url"] = self.rpc_urls[chain.name]
            if chain.name in self.fallback_rpc_urls:
                updates["fallback_rpc_url"] = self.fallback_rpc_urls[chain.name]
            resolved.append(ChainConfig.model_validate({**chain.model_dump(), **updates}))

        names = [c.name for c in resolved]
        if len(names) != len(set(names)):
            raise ValueError("Chain names must be unique")
        return resolved


class Settings(BaseSettings):
    """Main application settings.

    Example:
        ```python
        from exchange_custody.config import get_settings

        settings = get_settings()
        print(settings.database.url)
        for chain in settings.chain_configs():
            print(chain.name, chain.required_confirmations)
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
    custody: CustodySettings = Field(
        default_factory=lambda: CustodySettings(
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
    chains: ChainsSettings = Field(
        default_factory=lambda: ChainsSettings(
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

    def chain_configs(self) -> list[ChainConfig]:
        """Chains to scan, after applying the SCANNER_CHAINS filter."""
        chains = self.chains.load()
        if self.scanner.chains is None:
            return chains
        wanted = {c.lower() for c in self.scanner.chains}
        unknown = wanted - {c.name for c in chains}
        if unknown:
            raise ValueError(f"SCANNER_CHAINS references unknown chains: {sorted(unknown)}")
        return [c for c in chains if c.name in wanted]

    def redacted_summary(self) -> dict[str, object]:
        """Get a summary of settings with secrets redacted."""
        return {
            "database_url": self._redact_url(self.database.url),
            "redis_url": self._redact_url(self.redis.url) if self.redis.url else "(not set)",
            "custody": {
                "mnemonic_encryption_key": "(set)" if self.custody.mnemonic_encryption_key else "(not set)",
                "mnemonic_words": str(self.custody.mnemonic_words),
                "evm_derivation_path": self.custody.evm_derivation_path,
                "solana_derivation_path": self.custody.solana_derivation_path,
                "supported_tokens": ",".join(self.custody.supported_tokens),
            },
            "scanner": {
                "cycle_timeout_seconds": str(self.scanner.cycle_timeout_seconds),
                "max_backoff_seconds": str(self.scanner.max_backoff_seconds),
                "lease_enabled": str(self.scanner.lease_enabled),
            },
            "chains": {
                c.name: {
                    "rpc_url": self._redact_url(c.rpc_url),
                    "fallback_rpc_url": self._redact_url(c.fallback_rpc_url) if c.fallback_rpc_url else "(not set)",
                    "required_confirmations": str(c.required_confirmations),
                    "poll_interval_seconds": str(c.poll_interval_seconds),
                }
                for c in self.chains.load()
            },
            "log_level": self.log_level,
        }

    def validate_requirements(self, *, command: str) -> None:
        """Validate command-specific requirements.

        Wallet commands must not run without an encryption key: a wallet
        generated without one could never be stored safely.
        """
        if command in ("run", "create-wallet", "reset-wallet", "addresses") and not self.custody.mnemonic_encryption_key:
            raise ValueError("CUSTODY_MNEMONIC_ENCRYPTION_KEY is required for wallet operations")

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
