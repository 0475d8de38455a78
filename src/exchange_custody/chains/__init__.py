"""Chain clients that poll for incoming transfers."""

from __future__ import annotations

from redis.asyncio import Redis

from exchange_custody.chains.base import ChainClient, DepositEvent, PollResult, normalize_address
from exchange_custody.chains.evm import EVMChainClient
from exchange_custody.chains.solana import SolanaChainClient
from exchange_custody.config import ChainConfig

__all__ = [
    "ChainClient",
    "DepositEvent",
    "EVMChainClient",
    "PollResult",
    "SolanaChainClient",
    "create_chain_client",
    "normalize_address",
]


def create_chain_client(config: ChainConfig, *, redis: Redis | None = None) -> ChainClient:
    """Build the client for a chain's family."""
    if config.family == "evm":
        return EVMChainClient(config, redis=redis)
    if config.family == "solana":
        return SolanaChainClient(config)
    raise ValueError(f"Unsupported chain family: {config.family}")
