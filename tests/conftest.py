"""Pytest configuration and fixtures."""

from __future__ import annotations

from collections.abc import AsyncIterator
from pathlib import Path

import pytest

from exchange_custody.custody.crypto import MnemonicCipher, generate_key
from exchange_custody.custody.derivation import KeyDerivationService
from exchange_custody.custody.wallets import WalletStore
from exchange_custody.ledger import Ledger
from exchange_custody.storage.database import DatabaseManager

SUPPORTED_TOKENS = ["ETH", "USDT", "USDC", "SOL", "BNB"]


@pytest.fixture
async def db(tmp_path: Path) -> AsyncIterator[DatabaseManager]:
    """File-backed SQLite database with the schema created."""
    manager = DatabaseManager(f"sqlite+aiosqlite:///{tmp_path / 'custody.db'}")
    await manager.init_schema_async()
    yield manager
    await manager.dispose_async()


@pytest.fixture
def fernet_key() -> str:
    return generate_key()


@pytest.fixture
def cipher(fernet_key: str) -> MnemonicCipher:
    return MnemonicCipher(fernet_key)


@pytest.fixture
def derivation() -> KeyDerivationService:
    return KeyDerivationService(evm_chains=["ethereum", "bsc", "polygon"], solana_enabled=True)


@pytest.fixture
def wallet_store(db: DatabaseManager, derivation: KeyDerivationService, cipher: MnemonicCipher) -> WalletStore:
    return WalletStore(db.get_async_session, derivation=derivation, cipher=cipher)


@pytest.fixture
def ledger(db: DatabaseManager) -> Ledger:
    return Ledger(db.get_async_session, supported_tokens=SUPPORTED_TOKENS)
