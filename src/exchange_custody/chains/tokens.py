"""Token lookup for a chain and raw-unit conversion."""

from __future__ import annotations

from decimal import Decimal

from exchange_custody.chains.base import normalize_address
from exchange_custody.config import ChainConfig, TokenConfig


def token_amount(raw_units: int, decimals: int) -> Decimal:
    """Convert integer base units (wei, lamports, token units) to a Decimal amount."""
    return Decimal(raw_units).scaleb(-decimals)


class TokenRegistry:
    """Configured token contracts (EVM) or mints (Solana) of one chain."""

    def __init__(self, config: ChainConfig) -> None:
        self._native_symbol = config.native_symbol.upper()
        self._native_decimals = config.native_decimals
        self._by_address: dict[str, TokenConfig] = {
            normalize_address(token.address): token for token in config.tokens
        }

    @property
    def native_symbol(self) -> str:
        return self._native_symbol

    @property
    def native_decimals(self) -> int:
        return self._native_decimals

    @property
    def addresses(self) -> list[str]:
        return sorted(self._by_address)

    def lookup(self, address: str) -> TokenConfig | None:
        return self._by_address.get(normalize_address(address))

    def __len__(self) -> int:
        return len(self._by_address)
