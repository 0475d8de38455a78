"""Custody - seed phrases, address derivation and the wallet store."""

from exchange_custody.custody.crypto import MnemonicCipher, generate_key
from exchange_custody.custody.derivation import KeyDerivationService
from exchange_custody.custody.wallets import WalletSecret, WalletStore

__all__ = [
    "KeyDerivationService",
    "MnemonicCipher",
    "WalletSecret",
    "WalletStore",
    "generate_key",
]
