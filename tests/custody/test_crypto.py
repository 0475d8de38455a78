"""Tests for mnemonic encryption at rest."""

from __future__ import annotations

import pytest

from exchange_custody.custody.crypto import MnemonicCipher, generate_key
from exchange_custody.errors import MnemonicDecryptionError

PHRASE = "legal winner thank year wave sausage worth useful legal winner thank yellow"


class TestMnemonicCipher:
    def test_decrypt_recovers_phrase(self, cipher: MnemonicCipher) -> None:
        assert cipher.decrypt(cipher.encrypt(PHRASE)) == PHRASE

    def test_ciphertext_hides_phrase(self, cipher: MnemonicCipher) -> None:
        token = cipher.encrypt(PHRASE)
        assert "legal" not in token
        # Fernet tokens carry a random IV.
        assert token != cipher.encrypt(PHRASE)

    def test_wrong_key(self, cipher: MnemonicCipher) -> None:
        other = MnemonicCipher(generate_key())
        with pytest.raises(MnemonicDecryptionError):
            other.decrypt(cipher.encrypt(PHRASE))

    def test_corrupted_ciphertext(self, cipher: MnemonicCipher) -> None:
        with pytest.raises(MnemonicDecryptionError):
            cipher.decrypt("not-a-fernet-token")

    def test_empty_key_rejected(self) -> None:
        with pytest.raises(ValueError):
            MnemonicCipher("")

    def test_malformed_key_rejected(self) -> None:
        with pytest.raises(ValueError):
            MnemonicCipher("too-short")
