"""EVM-family chain client (Ethereum, BSC, Polygon, Arbitrum, Base, ...).

Incoming transfers are found two ways:
- ERC-20 `Transfer` logs for the configured token contracts, filtered on the
  indexed `to` topic so one `eth_getLogs` call covers a whole address batch.
- Native-coin transfers, by reading full blocks (optional, `scan_native`).

The checkpoint is a block number. It only advances to the highest block in
the scanned range that already has the required confirmations, so a block
holding a pending deposit is scanned again until the deposit matures.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Collection, Iterator
from typing import Any

import aiohttp
from redis.asyncio import Redis
from redis.exceptions import RedisError
from web3 import AsyncWeb3
from web3.exceptions import Web3Exception
from web3.middleware import ExtraDataToPOAMiddleware
from web3.providers import AsyncHTTPProvider

from exchange_custody.chains.base import (
    DEFAULT_MAX_RETRIES,
    DEFAULT_RETRY_DELAY_SECONDS,
    ChainClient,
    ChainClientError,
    DepositEvent,
    FailoverExecutor,
    MalformedResponseError,
    PollResult,
    normalize_address,
    require,
    short_address,
    sort_events,
)
from exchange_custody.chains.tokens import TokenRegistry, token_amount
from exchange_custody.config import ChainConfig
from exchange_custody.errors import ChainUnavailable

logger = logging.getLogger(__name__)

# ERC20 Transfer(address,address,uint256)
TRANSFER_EVENT_SIGNATURE = "0x" + AsyncWeb3.keccak(text="Transfer(address,address,uint256)").hex().removeprefix("0x")

LATEST_BLOCK_CACHE_TTL_SECONDS = 2

_RETRYABLE = (Web3Exception, aiohttp.ClientError, asyncio.TimeoutError, OSError)


def _to_hex(value: Any) -> str:
    """HexBytes/bytes/str -> 0x-prefixed hex string."""
    if isinstance(value, str):
        return value if value.startswith("0x") else "0x" + value
    if isinstance(value, (bytes, bytearray, memoryview)):
        return "0x" + bytes(value).hex()
    raise MalformedResponseError(f"Expected hex value, got {type(value).__name__}")


def _hex_to_int(value: Any) -> int:
    if isinstance(value, int):
        return value
    hexed = _to_hex(value)
    return int(hexed, 16) if len(hexed) > 2 else 0


def _pad_topic_address(address: str) -> str:
    return "0x" + address.lower().replace("0x", "").zfill(64)


def _topic_to_address(topic: Any) -> str:
    return ("0x" + _to_hex(topic)[-40:]).lower()


def _batched(items: list[str], size: int) -> Iterator[list[str]]:
    for i in range(0, len(items), size):
        yield items[i : i + size]


class EVMChainClient(ChainClient):
    """Polls one EVM chain over JSON-RPC with retry and failover.

    Example:
        ```python
        client = EVMChainClient(chain_config, redis=redis)
        result = await client.poll_incoming({"0xabc..."}, checkpoint="19000000")
        for event in result.events:
            print(event.tx_hash, event.amount, event.confirmations)
        ```
    """

    def __init__(
        self,
        config: ChainConfig,
        *,
        redis: Redis | None = None,
        max_retries: int = DEFAULT_MAX_RETRIES,
        retry_delay_seconds: float = DEFAULT_RETRY_DELAY_SECONDS,
    ) -> None:
        super().__init__(config)
        self._redis = redis
        self._tokens = TokenRegistry(config)
        self._cache_prefix = f"custody:{config.name}:"

        primary = self._new_web3_client(config.rpc_url)
        fallback = self._new_web3_client(config.fallback_rpc_url) if config.fallback_rpc_url else None
        self._executor: FailoverExecutor[AsyncWeb3[AsyncHTTPProvider]] = FailoverExecutor(
            chain=config.name,
            primary=primary,
            fallback=fallback,
            retry_on=_RETRYABLE,
            max_requests_per_second=config.max_requests_per_second,
            max_retries=max_retries,
            retry_delay_seconds=retry_delay_seconds,
        )

    def _new_web3_client(self, rpc_url: str) -> AsyncWeb3[AsyncHTTPProvider]:
        provider = AsyncHTTPProvider(
            rpc_url,
            request_kwargs={"timeout": aiohttp.ClientTimeout(total=self._config.request_timeout_seconds)},
        )
        client = AsyncWeb3(provider)
        # Chains such as BSC and Polygon put PoA signatures in extraData; the
        # middleware is a no-op for the others.
        try:
            client.middleware_onion.inject(ExtraDataToPOAMiddleware, layer=0)
        except ValueError as e:
            logger.warning("Failed to inject PoA middleware (chain=%s): %s", self._config.name, e)
        return client

    async def _eth(self, func_name: str, *args: Any) -> Any:
        async def call(w3: AsyncWeb3[AsyncHTTPProvider]) -> Any:
            return await getattr(w3.eth, func_name)(*args)

        return await self._executor.run(func_name, call)

    async def _get_cached(self, key: str) -> str | None:
        if not self._redis:
            return None
        try:
            value = await self._redis.get(key)
        except RedisError as e:
            logger.warning("Cache get failed: %s", e)
            return None
        if isinstance(value, bytes):
            return value.decode()
        return str(value) if value is not None else None

    async def _set_cached(self, key: str, value: str, ttl: int) -> None:
        if not self._redis:
            return
        try:
            await self._redis.set(key, value, ex=ttl)
        except RedisError as e:
            logger.warning("Cache set failed: %s", e)

    async def get_block_number(self) -> int:
        """Latest block number, cached briefly in Redis when available."""
        cache_key = f"{self._cache_prefix}block_number"
        cached = await self._get_cached(cache_key)
        if cached is not None:
            return int(cached)

        number = int(await self._eth("get_block_number"))
        await self._set_cached(cache_key, str(number), LATEST_BLOCK_CACHE_TTL_SECONDS)
        return number

    async def get_logs(self, filter_params: dict[str, Any]) -> list[dict[str, Any]]:
        logs = await self._eth("get_logs", filter_params)
        return [dict(log) for log in logs]

    async def get_block(self, block_number: int) -> dict[str, Any]:
        block = await self._eth("get_block", block_number, True)
        if block is None:
            raise MalformedResponseError(f"Block {block_number} not available")
        return dict(block)

    async def get_receipt_status(self, tx_hash: str) -> int:
        receipt = await self._eth("get_transaction_receipt", tx_hash)
        return int(require(receipt, "status"))

    def _scan_range(self, checkpoint: str | None, latest: int) -> tuple[int, int, int]:
        """Return (last_done, start, end) for this poll."""
        if checkpoint is None:
            last_done = max(latest - self._config.initial_lookback_blocks, 0) - 1
        else:
            try:
                last_done = int(checkpoint)
            except ValueError as e:
                raise MalformedResponseError(f"Invalid EVM checkpoint {checkpoint!r}") from e
        start = last_done + 1
        end = min(latest, last_done + self._config.max_blocks_per_cycle)
        return last_done, start, end

    async def poll_incoming(self, addresses: Collection[str], checkpoint: str | None) -> PollResult:
        try:
            return await self._poll(addresses, checkpoint)
        except (ChainClientError, KeyError, TypeError, ValueError) as e:
            raise ChainUnavailable(self.name, str(e)) from e

    async def _poll(self, addresses: Collection[str], checkpoint: str | None) -> PollResult:
        monitored = sorted({normalize_address(a) for a in addresses if a.lower().startswith("0x")})
        latest = await self.get_block_number()
        last_done, start, end = self._scan_range(checkpoint, latest)

        if end < start:
            # Node is behind our checkpoint (e.g. a lagging fallback); nothing new.
            logger.debug("%s: no new blocks (checkpoint=%s, latest=%d)", self.name, checkpoint, latest)
            return PollResult(events=[], new_checkpoint=str(last_done))

        events: list[DepositEvent] = []
        if monitored:
            events.extend(await self._scan_token_transfers(monitored, start, end, latest))
            if self._config.scan_native:
                events.extend(await self._scan_native_transfers(set(monitored), start, end, latest))

        matured = latest - self._config.required_confirmations + 1
        new_checkpoint = max(last_done, min(end, matured))
        logger.info(
            "%s: scanned blocks %d-%d (latest=%d), %d events, checkpoint -> %d",
            self.name,
            start,
            end,
            latest,
            len(events),
            new_checkpoint,
        )
        return PollResult(events=sort_events(events), new_checkpoint=str(new_checkpoint))

    async def _scan_token_transfers(
        self,
        monitored: list[str],
        start: int,
        end: int,
        latest: int,
    ) -> list[DepositEvent]:
        if not len(self._tokens):
            return []
        token_addresses = [AsyncWeb3.to_checksum_address(t) for t in self._tokens.addresses]
        chunk = self._config.logs_chunk_size_blocks

        events: list[DepositEvent] = []
        for from_block in range(start, end + 1, chunk):
            to_block = min(end, from_block + chunk - 1)
            for batch in _batched(monitored, self._config.address_batch_size):
                logs = await self.get_logs(
                    {
                        "address": token_addresses,
                        "topics": [
                            TRANSFER_EVENT_SIGNATURE,
                            None,
                            [_pad_topic_address(a) for a in batch],
                        ],
                        "fromBlock": from_block,
                        "toBlock": to_block,
                    }
                )
                for log in logs:
                    event = self._event_from_log(log, latest)
                    if event is not None:
                        events.append(event)
        return events

    def _event_from_log(self, log: dict[str, Any], latest: int) -> DepositEvent | None:
        if log.get("removed"):
            return None
        topics = require(log, "topics")
        # ERC-721 transfers share the signature but index the token id as a 4th topic.
        if len(topics) != 3:
            return None

        token_address = normalize_address(str(require(log, "address")))
        token = self._tokens.lookup(token_address)
        if token is None:
            return None

        # Zero-value transfers are free to send and carry no deposit.
        raw_amount = _hex_to_int(require(log, "data"))
        if raw_amount <= 0:
            return None

        block_number = int(require(log, "blockNumber"))
        return DepositEvent(
            chain=self.name,
            tx_hash=normalize_address(_to_hex(require(log, "transactionHash"))),
            from_address=_topic_to_address(topics[1]),
            to_address=_topic_to_address(topics[2]),
            token_symbol=token.symbol,
            amount=token_amount(raw_amount, token.decimals),
            block_number=block_number,
            confirmations=latest - block_number + 1,
            token_address=token_address,
            log_index=int(log.get("logIndex") or 0),
        )

    async def _scan_native_transfers(
        self,
        monitored: set[str],
        start: int,
        end: int,
        latest: int,
    ) -> list[DepositEvent]:
        events: list[DepositEvent] = []
        for block_number in range(start, end + 1):
            block = await self.get_block(block_number)
            for tx in require(block, "transactions"):
                to = tx.get("to")
                if not to or normalize_address(str(to)) not in monitored:
                    continue
                value = int(require(tx, "value"))
                if value <= 0:
                    continue
                tx_hash = normalize_address(_to_hex(require(tx, "hash")))
                if await self.get_receipt_status(tx_hash) != 1:
                    logger.info("%s: skipping reverted transfer %s", self.name, short_address(tx_hash))
                    continue
                events.append(
                    DepositEvent(
                        chain=self.name,
                        tx_hash=tx_hash,
                        from_address=normalize_address(str(tx.get("from") or "")) or None,
                        to_address=normalize_address(str(to)),
                        token_symbol=self._tokens.native_symbol,
                        amount=token_amount(value, self._tokens.native_decimals),
                        block_number=block_number,
                        confirmations=latest - block_number + 1,
                        token_address=None,
                        log_index=int(tx.get("transactionIndex") or 0),
                    )
                )
        return events

    async def health_check(self) -> bool:
        try:
            await self._eth("get_block_number")
            return True
        except ChainClientError:
            return False

    async def aclose(self) -> None:
        """Close async HTTP provider sessions to avoid leaked aiohttp sessions."""
        for w3 in self._executor.targets:
            disconnect = getattr(w3.provider, "disconnect", None)
            if not callable(disconnect):
                continue
            try:
                result = disconnect()
                if asyncio.iscoroutine(result):
                    await result
            except (aiohttp.ClientError, OSError, RuntimeError) as e:
                logger.warning("Failed to close RPC provider session: %s", e)
