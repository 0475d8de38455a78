"""Common chain client types: deposit events, poll results, RPC plumbing.

Every chain family implements `ChainClient.poll_incoming`. Client-internal
failures (`RPCError`, `RateLimitError`, malformed payloads) are converted to
`ChainUnavailable` at that boundary so the scanner only has to handle one
transient error type.
"""

from __future__ import annotations

import asyncio
import logging
import time
from abc import ABC, abstractmethod
from collections.abc import Awaitable, Callable, Collection, Mapping, Sequence
from dataclasses import dataclass, field
from datetime import UTC, datetime
from decimal import Decimal
from typing import Any, Generic, TypeVar

from exchange_custody.config import ChainConfig

logger = logging.getLogger(__name__)

DEFAULT_MAX_RETRIES = 3
DEFAULT_RETRY_DELAY_SECONDS = 1.0
DEFAULT_PRIMARY_RECOVERY_SECONDS = 60.0

T = TypeVar("T")
TargetT = TypeVar("TargetT")


def normalize_address(address: str) -> str:
    """Canonical storage form of an address or hash.

    Hex (EVM) values are case-insensitive and lower-cased; base58 (Solana)
    values are case-sensitive and kept as-is. Base58 has no ``0``, so the
    ``0x`` prefix alone tells the two apart.
    """
    address = address.strip()
    if address[:2].lower() == "0x":
        return address.lower()
    return address


def short_address(address: str) -> str:
    """Truncated form for log lines."""
    if len(address) <= 12:
        return address
    return f"{address[:6]}...{address[-4:]}"


@dataclass(frozen=True)
class DepositEvent:
    """An incoming transfer to a monitored address, as seen on chain."""

    chain: str
    tx_hash: str
    from_address: str | None
    to_address: str
    token_symbol: str
    amount: Decimal
    block_number: int
    confirmations: int
    token_address: str | None = None
    log_index: int = 0
    observed_at: datetime = field(default_factory=lambda: datetime.now(UTC))

    @property
    def natural_key(self) -> tuple[str, str, str]:
        return (self.chain, normalize_address(self.tx_hash), normalize_address(self.to_address))


@dataclass(frozen=True)
class PollResult:
    """Events found by one poll plus the cursor to persist once they are handled."""

    events: list[DepositEvent]
    new_checkpoint: str | None


class ChainClientError(Exception):
    """Base exception for chain client internals."""


class RPCError(ChainClientError):
    """Raised when an RPC call fails on every endpoint."""


class RateLimitError(ChainClientError):
    """Raised when the node rejects a request with HTTP 429."""


class MalformedResponseError(ChainClientError):
    """Raised when an RPC payload does not have the expected shape."""


@dataclass
class RateLimiter:
    """Token bucket rate limiter."""

    max_tokens: float
    refill_rate: float  # tokens per second
    tokens: float
    last_refill: float

    @classmethod
    def create(cls, max_requests_per_second: float) -> RateLimiter:
        """Create a rate limiter with specified max requests per second."""
        return cls(
            max_tokens=max_requests_per_second,
            refill_rate=max_requests_per_second,
            tokens=max_requests_per_second,
            last_refill=time.monotonic(),
        )

    def _refill(self) -> None:
        now = time.monotonic()
        elapsed = now - self.last_refill
        self.tokens = min(self.max_tokens, self.tokens + elapsed * self.refill_rate)
        self.last_refill = now

    async def acquire(self, tokens: float = 1.0) -> None:
        """Acquire tokens, waiting if necessary."""
        while True:
            self._refill()
            if self.tokens >= tokens:
                self.tokens -= tokens
                return
            await asyncio.sleep((tokens - self.tokens) / self.refill_rate)


class FailoverExecutor(Generic[TargetT]):
    """Runs RPC calls with retry, exponential backoff and fallback endpoint.

    `primary` and `fallback` are whatever the client talks to (a web3
    instance, an endpoint URL). After the primary exhausts its retries it is
    marked unhealthy and only retried every `primary_recovery_seconds`.
    """

    def __init__(
        self,
        *,
        chain: str,
        primary: TargetT,
        fallback: TargetT | None = None,
        retry_on: tuple[type[BaseException], ...],
        max_requests_per_second: float,
        max_retries: int = DEFAULT_MAX_RETRIES,
        retry_delay_seconds: float = DEFAULT_RETRY_DELAY_SECONDS,
        primary_recovery_seconds: float = DEFAULT_PRIMARY_RECOVERY_SECONDS,
    ) -> None:
        self._chain = chain
        self._primary = primary
        self._fallback = fallback
        self._retry_on = retry_on
        self._max_retries = max_retries
        self._retry_delay = retry_delay_seconds
        self._rate_limiter = RateLimiter.create(max_requests_per_second)

        self._primary_healthy = True
        self._last_primary_check = 0.0
        self._primary_recovery_interval = primary_recovery_seconds

    @property
    def targets(self) -> list[TargetT]:
        if self._fallback is None:
            return [self._primary]
        return [self._primary, self._fallback]

    def _should_try_primary(self) -> bool:
        if self._primary_healthy:
            return True
        now = time.monotonic()
        if now - self._last_primary_check > self._primary_recovery_interval:
            self._last_primary_check = now
            return True
        return False

    async def _attempt(
        self,
        label: str,
        op_name: str,
        target: TargetT,
        call: Callable[[TargetT], Awaitable[T]],
    ) -> tuple[bool, T | None, BaseException | None]:
        delay = self._retry_delay
        last_error: BaseException | None = None
        for attempt in range(self._max_retries):
            await self._rate_limiter.acquire()
            try:
                return True, await call(target), None
            except self._retry_on as e:
                last_error = e
                logger.warning(
                    "%s %s RPC %s failed (attempt %d/%d): %s",
                    self._chain,
                    label,
                    op_name,
                    attempt + 1,
                    self._max_retries,
                    e,
                )
                if attempt < self._max_retries - 1:
                    await asyncio.sleep(delay)
                    delay *= 2
        return False, None, last_error

    async def run(self, op_name: str, call: Callable[[TargetT], Awaitable[T]]) -> T:
        """Execute `call` against the primary, then the fallback.

        Raises:
            RPCError: If all retries on every endpoint fail.
        """
        last_error: BaseException | None = None

        if self._fallback is None or self._should_try_primary():
            ok, result, last_error = await self._attempt("primary", op_name, self._primary, call)
            if ok:
                self._primary_healthy = True
                return result  # type: ignore[return-value]
            self._primary_healthy = False
            self._last_primary_check = time.monotonic()

        if self._fallback is not None:
            ok, result, error = await self._attempt("fallback", op_name, self._fallback, call)
            if ok:
                logger.info("%s fallback RPC succeeded for %s", self._chain, op_name)
                return result  # type: ignore[return-value]
            last_error = error or last_error

        raise RPCError(f"RPC call {op_name} failed after all retries: {last_error}")


class ChainClient(ABC):
    """Polling interface over one chain's RPC endpoint(s).

    Implementations never mutate persisted state: the caller persists
    `PollResult.new_checkpoint` once every returned event has been handled.
    """

    def __init__(self, config: ChainConfig) -> None:
        self._config = config

    @property
    def config(self) -> ChainConfig:
        return self._config

    @property
    def name(self) -> str:
        return self._config.name

    @property
    def required_confirmations(self) -> int:
        return self._config.required_confirmations

    @abstractmethod
    async def poll_incoming(self, addresses: Collection[str], checkpoint: str | None) -> PollResult:
        """List transfers to `addresses` strictly newer than `checkpoint`.

        Raises:
            ChainUnavailable: On transport errors, timeouts, rate limiting,
                RPC error objects or malformed payloads.
        """

    @abstractmethod
    async def aclose(self) -> None:
        """Release HTTP sessions."""

    async def health_check(self) -> bool:
        return True


def sort_events(events: Sequence[DepositEvent]) -> list[DepositEvent]:
    """Order events by position on chain."""
    return sorted(events, key=lambda e: (e.block_number, e.log_index))


def require(payload: Any, key: str) -> Any:
    """Fetch a mandatory key from an RPC payload."""
    if not isinstance(payload, Mapping) or key not in payload:
        raise MalformedResponseError(f"RPC payload missing '{key}'")
    return payload[key]
