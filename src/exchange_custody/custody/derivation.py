"""Deterministic per-chain address derivation from a BIP-39 seed phrase.

All EVM-family chains share one account (BIP-44 coin type 60); Solana uses
its own ed25519 keypair derived with SLIP-10 (coin type 501). The service is
pure: it performs no I/O and never logs the phrase.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable

from eth_account import Account
from eth_account.hdaccount import key_from_seed, seed_from_mnemonic
from eth_utils import ValidationError
from solders.keypair import Keypair

from exchange_custody.errors import InvalidMnemonic

logger = logging.getLogger(__name__)

DEFAULT_EVM_DERIVATION_PATH = "m/44'/60'/0'/0/0"
DEFAULT_SOLANA_DERIVATION_PATH = "m/44'/501'/0'/0'"
DEFAULT_MNEMONIC_WORDS = 24

SOLANA_CHAIN = "solana"

Account.enable_unaudited_hdwallet_features()


def normalize_mnemonic(phrase: str) -> str:
    """Collapse whitespace and lower-case a phrase before validation."""
    return " ".join(phrase.lower().split())


class KeyDerivationService:
    """Turns one seed phrase into the address set for every supported chain.

    Example:
        ```python
        service = KeyDerivationService(evm_chains=["ethereum", "bsc"])
        mnemonic, addresses = service.generate()
        assert service.derive(mnemonic) == addresses
        ```
    """

    def __init__(
        self,
        *,
        evm_chains: Iterable[str],
        solana_enabled: bool = True,
        evm_derivation_path: str = DEFAULT_EVM_DERIVATION_PATH,
        solana_derivation_path: str = DEFAULT_SOLANA_DERIVATION_PATH,
        mnemonic_words: int = DEFAULT_MNEMONIC_WORDS,
    ) -> None:
        self._evm_chains = tuple(sorted({c.lower() for c in evm_chains}))
        self._solana_enabled = solana_enabled
        self._evm_path = evm_derivation_path
        self._solana_path = solana_derivation_path
        self._mnemonic_words = mnemonic_words

    @property
    def chains(self) -> tuple[str, ...]:
        """Every chain an address is derived for."""
        if self._solana_enabled:
            return (*self._evm_chains, SOLANA_CHAIN)
        return self._evm_chains

    def generate(self) -> tuple[str, dict[str, str]]:
        """Create a fresh mnemonic and derive its address set."""
        _, mnemonic = Account.create_with_mnemonic(num_words=self._mnemonic_words)
        return mnemonic, self.derive(mnemonic)

    def derive(self, mnemonic: str) -> dict[str, str]:
        """Derive the address set for a phrase.

        Raises:
            InvalidMnemonic: If the phrase fails BIP-39 word-list or checksum validation.
        """
        phrase = normalize_mnemonic(mnemonic)
        try:
            seed = seed_from_mnemonic(phrase, "")
        except (ValidationError, ValueError) as e:
            raise InvalidMnemonic("Seed phrase failed BIP-39 validation") from e

        addresses: dict[str, str] = {}
        if self._evm_chains:
            evm_address = self._derive_evm_address(seed)
            for chain in self._evm_chains:
                addresses[chain] = evm_address
        if self._solana_enabled:
            addresses[SOLANA_CHAIN] = self._derive_solana_address(seed)
        return addresses

    def _derive_evm_address(self, seed: bytes) -> str:
        private_key = key_from_seed(seed, self._evm_path)
        return Account.from_key(private_key).address

    def _derive_solana_address(self, seed: bytes) -> str:
        keypair = Keypair.from_seed_and_derivation_path(seed, self._solana_path)
        return str(keypair.pubkey())
