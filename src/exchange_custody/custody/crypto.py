"""Encryption of seed phrases at rest (Fernet)."""

from __future__ import annotations

from cryptography.fernet import Fernet, InvalidToken

from exchange_custody.errors import MnemonicDecryptionError


def generate_key() -> str:
    """Create a new Fernet key suitable for CUSTODY_MNEMONIC_ENCRYPTION_KEY."""
    return Fernet.generate_key().decode("utf-8")


class MnemonicCipher:
    """Encrypts and decrypts mnemonics with a single Fernet key."""

    def __init__(self, key: str) -> None:
        if not key:
            raise ValueError("Mnemonic encryption key is empty")
        self._fernet = Fernet(key.encode("utf-8"))

    def encrypt(self, mnemonic: str) -> str:
        return self._fernet.encrypt(mnemonic.encode("utf-8")).decode("utf-8")

    def decrypt(self, ciphertext: str) -> str:
        try:
            return self._fernet.decrypt(ciphertext.encode("utf-8")).decode("utf-8")
        except InvalidToken as e:
            raise MnemonicDecryptionError("Stored mnemonic cannot be decrypted with the configured key") from e
