"""Custody service orchestrator.

This module provides the CustodyService class that wires the database,
Redis, chain clients, wallet store, ledger and deposit scanner together
from application settings and manages their lifecycle.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from datetime import UTC, datetime
from enum import Enum
from typing import Any

from redis.asyncio import Redis

from exchange_custody.chains import ChainClient, create_chain_client
from exchange_custody.config import Settings, get_settings
from exchange_custody.custody.crypto import MnemonicCipher
from exchange_custody.custody.derivation import KeyDerivationService
from exchange_custody.custody.wallets import WalletStore
from exchange_custody.errors import CustodyError
from exchange_custody.ledger import Ledger
from exchange_custody.scanner import DepositScanner
from exchange_custody.storage.database import DatabaseManager

logger = logging.getLogger(__name__)


class ServiceState(str, Enum):
    """Service lifecycle states."""

    STOPPED = "stopped"
    STARTING = "starting"
    RUNNING = "running"
    STOPPING = "stopping"
    ERROR = "error"


@dataclass
class ServiceStats:
    """Statistics for the service."""

    started_at: datetime | None = None
    chains: int = 0
    last_error: str | None = None


class CustodyService:
    """Main orchestrator for wallet custody and deposit scanning.

    Components are built from settings in `initialize()`; `start()` also
    launches the per-chain scan loops.

    Example:
        ```python
        from exchange_custody.config import get_settings
        from exchange_custody.service import CustodyService

        async with CustodyService(get_settings()) as service:
            await service.wait()
        ```
    """

    def __init__(self, settings: Settings | None = None) -> None:
        """Initialize the service.

        Args:
            settings: Application settings. If not provided, uses get_settings().
        """
        self._settings = settings or get_settings()

        self._state = ServiceState.STOPPED
        self._stats = ServiceStats()

        # Components (initialized in initialize())
        self._redis: Redis | None = None
        self._db_manager: DatabaseManager | None = None
        self._clients: list[ChainClient] = []
        self._wallet_store: WalletStore | None = None
        self._ledger: Ledger | None = None
        self._scanner: DepositScanner | None = None

        self._stop_event: asyncio.Event | None = None

    @property
    def state(self) -> ServiceState:
        """Current service state."""
        return self._state

    @property
    def stats(self) -> ServiceStats:
        return self._stats

    @property
    def is_running(self) -> bool:
        return self._state == ServiceState.RUNNING

    @property
    def db(self) -> DatabaseManager:
        if self._db_manager is None:
            raise RuntimeError("Service not initialized")
        return self._db_manager

    @property
    def wallet_store(self) -> WalletStore:
        if self._wallet_store is None:
            raise RuntimeError("Service not initialized")
        return self._wallet_store

    @property
    def ledger(self) -> Ledger:
        if self._ledger is None:
            raise RuntimeError("Service not initialized")
        return self._ledger

    @property
    def scanner(self) -> DepositScanner:
        if self._scanner is None:
            raise RuntimeError("Service not initialized")
        return self._scanner

    async def initialize(self) -> None:
        """Build every component without starting the scan loops."""
        if self._db_manager is not None:
            return
        settings = self._settings

        self._db_manager = DatabaseManager.from_settings(settings.database)

        if settings.redis.url:
            self._redis = Redis.from_url(settings.redis.url)
            logger.debug("Redis client created")

        # Addresses are derived for every configured chain, even ones this
        # process does not scan.
        all_chains = settings.chains.load()
        derivation = KeyDerivationService(
            evm_chains=[c.name for c in all_chains if c.family == "evm"],
            solana_enabled=any(c.family == "solana" for c in all_chains),
            evm_derivation_path=settings.custody.evm_derivation_path,
            solana_derivation_path=settings.custody.solana_derivation_path,
            mnemonic_words=settings.custody.mnemonic_words,
        )
        key = settings.custody.mnemonic_encryption_key
        cipher = MnemonicCipher(key.get_secret_value()) if key else None

        session_factory = self._db_manager.get_async_session
        self._wallet_store = WalletStore(session_factory, derivation=derivation, cipher=cipher)
        self._ledger = Ledger(session_factory, supported_tokens=settings.custody.supported_tokens)

        self._clients = [create_chain_client(c, redis=self._redis) for c in settings.chain_configs()]
        self._scanner = DepositScanner(
            clients=self._clients,
            wallet_store=self._wallet_store,
            ledger=self._ledger,
            session_factory=session_factory,
            redis=self._redis,
            cycle_timeout_seconds=settings.scanner.cycle_timeout_seconds,
            max_backoff_seconds=settings.scanner.max_backoff_seconds,
            shutdown_grace_seconds=settings.scanner.shutdown_grace_seconds,
            lease_enabled=settings.scanner.lease_enabled,
        )
        self._stats.chains = len(self._clients)
        logger.info("Custody service initialized (%d chains)", len(self._clients))

    async def ensure_schema(self) -> None:
        """Fail fast when migrations have not been applied.

        Raises:
            CustodyError: If any custody table is missing.
        """
        missing = await self.db.missing_tables()
        if missing:
            raise CustodyError(
                f"Database schema is missing tables ({', '.join(missing)}); "
                "run `exchange-custody init-db` or `alembic upgrade head`"
            )

    async def start(self) -> None:
        """Start the service.

        Raises:
            RuntimeError: If the service is already running.
        """
        if self._state != ServiceState.STOPPED:
            raise RuntimeError(f"Cannot start service in state {self._state}")

        self._state = ServiceState.STARTING
        self._stop_event = asyncio.Event()
        logger.info("Starting custody service...")

        try:
            await self.initialize()
            await self.ensure_schema()
            await self.scanner.start()
            self._stats.started_at = datetime.now(UTC)
            self._state = ServiceState.RUNNING
            logger.info("Custody service started")
        except Exception as e:
            self._state = ServiceState.ERROR
            self._stats.last_error = str(e)
            logger.error("Failed to start custody service: %s", e)
            await self.close()
            raise

    async def stop(self) -> None:
        """Stop scanning and release resources."""
        if self._state == ServiceState.STOPPED:
            return

        self._state = ServiceState.STOPPING
        logger.info("Stopping custody service...")

        if self._stop_event:
            self._stop_event.set()
        if self._scanner is not None:
            await self._scanner.stop()
        await self.close()

        self._state = ServiceState.STOPPED
        logger.info("Custody service stopped")

    def request_stop(self) -> None:
        """Signal-handler friendly stop request."""
        if self._stop_event:
            self._stop_event.set()

    async def wait(self) -> None:
        if self._stop_event:
            await self._stop_event.wait()

    async def close(self) -> None:
        """Close clients, Redis and database connections."""
        for client in self._clients:
            await client.aclose()
        self._clients = []

        if self._db_manager:
            await self._db_manager.dispose_async()
            self._db_manager = None

        if self._redis:
            await self._redis.aclose()
            self._redis = None

        self._wallet_store = None
        self._ledger = None
        self._scanner = None
        logger.debug("Resources cleaned up")

    async def run(self) -> None:
        """Start the service and run until `request_stop()` or cancellation."""
        await self.start()

        try:
            await self.wait()
        except asyncio.CancelledError:
            pass
        finally:
            await self.stop()

    async def __aenter__(self) -> CustodyService:
        await self.start()
        return self

    async def __aexit__(self, *args: Any) -> None:
        await self.stop()
