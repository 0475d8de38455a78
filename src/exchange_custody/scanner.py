"""Deposit scanner: one independent polling loop per chain.

Each chain loop moves through `idle -> scanning -> (idle | backoff)`. A
cycle loads the chain's checkpoint and monitored addresses, polls the chain
client, routes every event (pending upsert below the confirmation threshold,
ledger finalize at or above it) and only then persists the new checkpoint.
A failed, timed-out or cancelled cycle leaves the checkpoint untouched, so
the same range is scanned again.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import uuid
from collections.abc import Iterable, Mapping
from dataclasses import dataclass
from datetime import UTC, datetime
from enum import Enum
from typing import TYPE_CHECKING, Any

from redis.asyncio import Redis
from redis.exceptions import RedisError

from exchange_custody.chains.base import ChainClient, short_address
from exchange_custody.errors import ChainUnavailable, UnknownAddress, UnknownToken
from exchange_custody.storage.repos import STATUS_COMPLETED, STATUS_FAILED, CheckpointRepository

if TYPE_CHECKING:
    from exchange_custody.custody.wallets import SessionFactory, WalletStore
    from exchange_custody.ledger import Ledger

logger = logging.getLogger(__name__)

DEFAULT_CYCLE_TIMEOUT_SECONDS = 120.0
DEFAULT_MAX_BACKOFF_SECONDS = 900.0
DEFAULT_SHUTDOWN_GRACE_SECONDS = 30.0

LEASE_KEY_PREFIX = "custody:scan_lease:"

# Delete the lease only if we still hold it.
_RELEASE_LEASE_SCRIPT = """
if redis.call("get", KEYS[1]) == ARGV[1] then
    return redis.call("del", KEYS[1])
end
return 0
"""


class ChainScanState(str, Enum):
    """Per-chain scan loop states."""

    STOPPED = "stopped"
    IDLE = "idle"
    SCANNING = "scanning"
    BACKOFF = "backoff"


@dataclass
class ScannerStats:
    """Statistics for one chain's scan loop."""

    chain: str
    state: ChainScanState = ChainScanState.STOPPED
    cycles: int = 0
    failures: int = 0
    consecutive_failures: int = 0
    events_seen: int = 0
    pending_recorded: int = 0
    deposits_completed: int = 0
    unknown_tokens: int = 0
    ignored_events: int = 0
    checkpoint: str | None = None
    last_success_at: datetime | None = None
    last_error: str | None = None
    next_delay_seconds: float = 0.0


@dataclass
class CycleResult:
    """Outcome of one scan cycle."""

    chain: str
    events: int = 0
    pending: int = 0
    completed: int = 0
    unknown_tokens: int = 0
    ignored: int = 0
    checkpoint: str | None = None
    skipped: bool = False


def compute_backoff(interval: float, failures: int, max_backoff: float) -> float:
    """Delay before the next cycle after `failures` consecutive failures."""
    if failures <= 0:
        return interval
    return min(interval * (2**failures), max_backoff)


class DepositScanner:
    """Schedules per-chain scan cycles and routes deposit events.

    Example:
        ```python
        scanner = DepositScanner(
            clients=[ethereum_client, solana_client],
            wallet_store=store,
            ledger=ledger,
            session_factory=db.get_async_session,
        )
        await scanner.start()
        ...
        await scanner.stop()
        ```
    """

    def __init__(
        self,
        *,
        clients: Iterable[ChainClient],
        wallet_store: WalletStore,
        ledger: Ledger,
        session_factory: SessionFactory,
        redis: Redis | None = None,
        cycle_timeout_seconds: float = DEFAULT_CYCLE_TIMEOUT_SECONDS,
        max_backoff_seconds: float = DEFAULT_MAX_BACKOFF_SECONDS,
        shutdown_grace_seconds: float = DEFAULT_SHUTDOWN_GRACE_SECONDS,
        lease_enabled: bool = True,
    ) -> None:
        self._clients: dict[str, ChainClient] = {}
        for client in clients:
            if client.name in self._clients:
                raise ValueError(f"Duplicate chain client: {client.name}")
            self._clients[client.name] = client

        self._wallets = wallet_store
        self._ledger = ledger
        self._session_factory = session_factory
        self._redis = redis
        self._cycle_timeout = cycle_timeout_seconds
        self._max_backoff = max_backoff_seconds
        self._shutdown_grace = shutdown_grace_seconds
        self._lease_enabled = lease_enabled and redis is not None
        self._lease_owner = uuid.uuid4().hex

        self._stats = {name: ScannerStats(chain=name) for name in self._clients}
        self._stop_event: asyncio.Event | None = None
        self._tasks: dict[str, asyncio.Task[None]] = {}

    @property
    def chains(self) -> list[str]:
        return list(self._clients)

    @property
    def stats(self) -> Mapping[str, ScannerStats]:
        """Current per-chain statistics."""
        return self._stats

    @property
    def is_running(self) -> bool:
        return bool(self._tasks)

    async def start(self) -> None:
        """Start one scan loop per chain."""
        if self._tasks:
            raise RuntimeError("Scanner already running")
        self._stop_event = asyncio.Event()
        for chain in self._clients:
            self._stats[chain].state = ChainScanState.IDLE
            self._tasks[chain] = asyncio.create_task(self._run_chain_loop(chain), name=f"scan:{chain}")
        logger.info("Deposit scanner started for chains: %s", ", ".join(self._clients))

    async def stop(self) -> None:
        """Stop all loops, giving in-flight cycles the grace period to finish."""
        if not self._tasks:
            return
        if self._stop_event:
            self._stop_event.set()

        tasks = list(self._tasks.values())
        _, pending = await asyncio.wait(tasks, timeout=self._shutdown_grace)
        for task in pending:
            logger.warning("Cancelling in-flight scan %s after grace period", task.get_name())
            task.cancel()
        for task in tasks:
            with contextlib.suppress(asyncio.CancelledError):
                await task

        self._tasks.clear()
        for stats in self._stats.values():
            stats.state = ChainScanState.STOPPED
        logger.info("Deposit scanner stopped")

    async def wait(self) -> None:
        """Block until every loop has exited."""
        if self._tasks:
            await asyncio.gather(*self._tasks.values(), return_exceptions=True)

    async def _run_chain_loop(self, chain: str) -> None:
        if not self._stop_event:
            return
        client = self._clients[chain]
        stats = self._stats[chain]
        interval = client.config.poll_interval_seconds
        delay = 0.0

        while not self._stop_event.is_set():
            if delay > 0:
                try:
                    await asyncio.wait_for(self._stop_event.wait(), timeout=delay)
                    break
                except TimeoutError:
                    pass

            try:
                await self.run_cycle(chain)
            except ChainUnavailable as e:
                delay = self._record_failure(chain, interval, e)
                logger.warning(
                    "%s unavailable, backing off %.1fs (failure %d): %s",
                    chain,
                    delay,
                    stats.consecutive_failures,
                    e.message,
                )
                continue
            except Exception as e:
                delay = self._record_failure(chain, interval, e)
                logger.exception("%s scan cycle failed, backing off %.1fs", chain, delay)
                continue

            stats.consecutive_failures = 0
            stats.state = ChainScanState.IDLE
            stats.next_delay_seconds = delay = interval

    def _record_failure(self, chain: str, interval: float, error: BaseException) -> float:
        stats = self._stats[chain]
        stats.failures += 1
        stats.consecutive_failures += 1
        stats.last_error = str(error)
        stats.state = ChainScanState.BACKOFF
        stats.next_delay_seconds = compute_backoff(interval, stats.consecutive_failures, self._max_backoff)
        return stats.next_delay_seconds

    async def run_once(self, chains: Iterable[str] | None = None) -> dict[str, CycleResult | BaseException]:
        """Run one cycle for each chain concurrently; failures are returned, not raised."""
        names = list(chains) if chains is not None else list(self._clients)
        results = await asyncio.gather(*(self.run_cycle(name) for name in names), return_exceptions=True)
        outcome: dict[str, CycleResult | BaseException] = {}
        for name, result in zip(names, results, strict=True):
            outcome[name] = result
            if isinstance(result, BaseException):
                self._record_failure(name, self._clients[name].config.poll_interval_seconds, result)
        return outcome

    async def run_cycle(self, chain: str) -> CycleResult:
        """Run one bounded scan cycle for a chain.

        Raises:
            KeyError: If the chain is not configured.
            ChainUnavailable: If the chain client fails or the cycle times out.
        """
        if chain not in self._clients:
            raise KeyError(f"Unknown chain: {chain}")
        stats = self._stats[chain]

        lease_token = await self._acquire_lease(chain)
        if lease_token is None:
            logger.debug("%s: scan lease held by another process, skipping cycle", chain)
            return CycleResult(chain=chain, skipped=True)

        stats.state = ChainScanState.SCANNING
        try:
            result = await asyncio.wait_for(self._scan(self._clients[chain]), timeout=self._cycle_timeout)
        except TimeoutError as e:
            raise ChainUnavailable(chain, f"scan cycle exceeded {self._cycle_timeout:g}s") from e
        finally:
            await self._release_lease(chain, lease_token)

        stats.cycles += 1
        stats.last_success_at = datetime.now(UTC)
        stats.last_error = None
        stats.checkpoint = result.checkpoint
        return result

    async def _scan(self, client: ChainClient) -> CycleResult:
        chain = client.name
        stats = self._stats[chain]

        async with self._session_factory() as session:
            checkpoint = await CheckpointRepository(session).get(chain)
        monitored = await self._wallets.get_all_monitored_addresses()
        addresses = monitored.get(chain, set())

        poll = await client.poll_incoming(addresses, checkpoint)
        result = CycleResult(chain=chain, events=len(poll.events), checkpoint=checkpoint)
        stats.events_seen += len(poll.events)

        for event in poll.events:
            if event.amount <= 0:
                result.ignored += 1
                continue
            user_id = await self._wallets.resolve_owner(chain, event.to_address)
            if user_id is None:
                result.ignored += 1
                continue

            if event.confirmations < client.required_confirmations:
                await self._ledger.upsert_pending(event, user_id)
                result.pending += 1
                continue

            try:
                tx = await self._ledger.finalize_deposit(event)
            except UnknownToken as e:
                result.unknown_tokens += 1
                logger.warning(
                    "%s: deposit %s of unsupported token %s needs manual reconciliation",
                    chain,
                    short_address(event.tx_hash),
                    e.token,
                )
                continue
            except UnknownAddress:
                # Address retired between lookup and finalize.
                result.ignored += 1
                continue
            if tx.status == STATUS_COMPLETED:
                result.completed += 1
            elif tx.status == STATUS_FAILED:
                result.ignored += 1

        stats.pending_recorded += result.pending
        stats.deposits_completed += result.completed
        stats.unknown_tokens += result.unknown_tokens
        stats.ignored_events += result.ignored

        if poll.new_checkpoint is not None and poll.new_checkpoint != checkpoint:
            async with self._session_factory() as session:
                await CheckpointRepository(session).set(chain, poll.new_checkpoint)
            result.checkpoint = poll.new_checkpoint

        logger.info(
            "%s cycle: %d events (%d pending, %d completed, %d unknown token, %d ignored)",
            chain,
            result.events,
            result.pending,
            result.completed,
            result.unknown_tokens,
            result.ignored,
        )
        return result

    async def _acquire_lease(self, chain: str) -> str | None:
        """Take the per-chain lease; returns the token, or None if someone else holds it."""
        if not self._lease_enabled or self._redis is None:
            return ""
        token = f"{self._lease_owner}:{uuid.uuid4().hex}"
        ttl_ms = int((self._cycle_timeout + 30) * 1000)
        try:
            acquired = await self._redis.set(f"{LEASE_KEY_PREFIX}{chain}", token, nx=True, px=ttl_ms)
        except RedisError as e:
            # The per-process loop still keeps this chain's cycles sequential.
            logger.warning("%s: scan lease unavailable, scanning without it: %s", chain, e)
            return ""
        return token if acquired else None

    async def _release_lease(self, chain: str, token: str) -> None:
        if not token or self._redis is None:
            return
        try:
            await self._redis.eval(_RELEASE_LEASE_SCRIPT, 1, f"{LEASE_KEY_PREFIX}{chain}", token)
        except RedisError as e:
            logger.warning("%s: failed to release scan lease, it expires on its own: %s", chain, e)

    def snapshot(self) -> dict[str, dict[str, Any]]:
        """Stats as plain dicts, for CLI output."""
        return {
            chain: {
                "state": s.state.value,
                "cycles": s.cycles,
                "failures": s.failures,
                "events_seen": s.events_seen,
                "deposits_completed": s.deposits_completed,
                "pending_recorded": s.pending_recorded,
                "unknown_tokens": s.unknown_tokens,
                "checkpoint": s.checkpoint,
                "last_error": s.last_error,
            }
            for chain, s in self._stats.items()
        }
