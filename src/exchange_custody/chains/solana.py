"""Solana chain client over JSON-RPC (aiohttp).

Per monitored address, new signatures are listed with
`getSignaturesForAddress` (newest first, bounded by the stored cursor) and
each successful transaction is read with `getTransaction` in `jsonParsed`
encoding. Native SOL credits come from the account's pre/post lamport
balances, SPL credits from pre/post token balances owned by the address.

`confirmations` is a commitment rank rather than a block count:
processed=0, confirmed=1, finalized=2.

The checkpoint is a JSON object mapping each address to the newest
signature that no longer needs to be looked at: the cursor only moves over
the oldest-first run of finalized (or failed) signatures, so a signature
that is merely `confirmed` is fetched again next cycle.
"""

from __future__ import annotations

import asyncio
import itertools
import json
import logging
from collections.abc import Collection
from typing import Any

import aiohttp

from exchange_custody.chains.base import (
    DEFAULT_MAX_RETRIES,
    DEFAULT_RETRY_DELAY_SECONDS,
    ChainClient,
    ChainClientError,
    DepositEvent,
    FailoverExecutor,
    MalformedResponseError,
    PollResult,
    RateLimitError,
    RPCError,
    require,
    short_address,
    sort_events,
)
from exchange_custody.chains.tokens import TokenRegistry, token_amount
from exchange_custody.config import ChainConfig
from exchange_custody.errors import ChainUnavailable

logger = logging.getLogger(__name__)

COMMITMENT_RANK = {"processed": 0, "confirmed": 1, "finalized": 2}
FINALIZED = "finalized"

SIGNATURE_PAGE_LIMIT = 1000

_RETRYABLE = (aiohttp.ClientError, asyncio.TimeoutError, OSError, RateLimitError, RPCError)


def parse_cursor(checkpoint: str | None) -> dict[str, str]:
    """Decode the per-address signature cursor."""
    if not checkpoint:
        return {}
    try:
        raw = json.loads(checkpoint)
    except json.JSONDecodeError as e:
        raise MalformedResponseError(f"Invalid Solana checkpoint: {e}") from e
    if not isinstance(raw, dict) or not all(isinstance(k, str) and isinstance(v, str) for k, v in raw.items()):
        raise MalformedResponseError("Solana checkpoint must be a JSON object of address -> signature")
    return raw


def _account_keys(tx: dict[str, Any]) -> list[str]:
    message = require(require(tx, "transaction"), "message")
    keys = require(message, "accountKeys")
    # jsonParsed returns objects, json encoding returns bare strings.
    return [k["pubkey"] if isinstance(k, dict) else str(k) for k in keys]


def _raw_token_amount(entry: dict[str, Any]) -> int:
    return int(require(require(entry, "uiTokenAmount"), "amount"))


class SolanaChainClient(ChainClient):
    """Polls Solana for SOL and SPL deposits to monitored addresses."""

    def __init__(
        self,
        config: ChainConfig,
        *,
        session: aiohttp.ClientSession | None = None,
        max_retries: int = DEFAULT_MAX_RETRIES,
        retry_delay_seconds: float = DEFAULT_RETRY_DELAY_SECONDS,
    ) -> None:
        super().__init__(config)
        self._tokens = TokenRegistry(config)
        self._session = session
        self._owns_session = session is None
        self._ids = itertools.count(1)
        self._rotation_offset = 0
        self._executor: FailoverExecutor[str] = FailoverExecutor(
            chain=config.name,
            primary=config.rpc_url,
            fallback=config.fallback_rpc_url,
            retry_on=_RETRYABLE,
            max_requests_per_second=config.max_requests_per_second,
            max_retries=max_retries,
            retry_delay_seconds=retry_delay_seconds,
        )

    async def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(
                timeout=aiohttp.ClientTimeout(total=self._config.request_timeout_seconds),
                headers={"Content-Type": "application/json"},
            )
            self._owns_session = True
        return self._session

    async def _rpc(self, method: str, params: list[Any]) -> Any:
        async def call(url: str) -> Any:
            session = await self._get_session()
            body = {"jsonrpc": "2.0", "id": next(self._ids), "method": method, "params": params}
            async with session.post(url, json=body) as response:
                return await self._handle_response(method, response)

        return await self._executor.run(method, call)

    async def _handle_response(self, method: str, response: aiohttp.ClientResponse) -> Any:
        if response.status == 429:
            raise RateLimitError(f"{method}: rate limited by RPC node")
        if response.status >= 500:
            raise RPCError(f"{method}: HTTP {response.status}")
        if response.status != 200:
            raise MalformedResponseError(f"{method}: unexpected HTTP {response.status}")

        try:
            payload = await response.json(content_type=None)
        except (json.JSONDecodeError, aiohttp.ContentTypeError) as e:
            raise MalformedResponseError(f"{method}: response is not JSON") from e
        if not isinstance(payload, dict):
            raise MalformedResponseError(f"{method}: response is not a JSON-RPC object")
        if payload.get("error") is not None:
            raise RPCError(f"{method}: {payload['error']}")
        return require(payload, "result")

    async def get_signatures(self, address: str, *, until: str | None) -> list[dict[str, Any]]:
        """New signatures for `address`, newest first.

        With a cursor every page back to it is fetched; without one only the
        newest `initial_lookback_blocks` signatures are considered.
        """
        signatures: list[dict[str, Any]] = []
        before: str | None = None
        limit = SIGNATURE_PAGE_LIMIT if until else min(self._config.initial_lookback_blocks, SIGNATURE_PAGE_LIMIT)
        if limit <= 0:
            return []
        while True:
            options: dict[str, Any] = {"limit": limit, "commitment": "confirmed"}
            if until:
                options["until"] = until
            if before:
                options["before"] = before
            page = await self._rpc("getSignaturesForAddress", [address, options])
            if not isinstance(page, list):
                raise MalformedResponseError("getSignaturesForAddress: result is not a list")
            signatures.extend(page)
            if not until or len(page) < limit:
                return signatures
            before = str(require(page[-1], "signature"))

    async def get_transaction(self, signature: str) -> dict[str, Any] | None:
        return await self._rpc(
            "getTransaction",
            [
                signature,
                {"encoding": "jsonParsed", "commitment": "confirmed", "maxSupportedTransactionVersion": 0},
            ],
        )

    async def poll_incoming(self, addresses: Collection[str], checkpoint: str | None) -> PollResult:
        try:
            return await self._poll(addresses, checkpoint)
        except (ChainClientError, KeyError, TypeError, ValueError) as e:
            raise ChainUnavailable(self.name, str(e)) from e

    async def _poll(self, addresses: Collection[str], checkpoint: str | None) -> PollResult:
        cursors = parse_cursor(checkpoint)
        monitored = sorted({a.strip() for a in addresses if not a.lower().startswith("0x")})
        new_cursors = {a: cursors[a] for a in monitored if a in cursors}

        selected, next_offset = self._select_addresses(monitored)

        events: list[DepositEvent] = []
        for address in selected:
            address_events, cursor = await self._poll_address(address, cursors.get(address))
            events.extend(address_events)
            if cursor is not None:
                new_cursors[address] = cursor
        self._rotation_offset = next_offset

        logger.info(
            "%s: polled %d of %d addresses, %d events",
            self.name,
            len(selected),
            len(monitored),
            len(events),
        )
        return PollResult(events=sort_events(events), new_checkpoint=json.dumps(new_cursors, sort_keys=True))

    def _select_addresses(self, monitored: list[str]) -> tuple[list[str], int]:
        """Slice of addresses to poll this cycle, and the offset to resume from.

        With more addresses than `max_addresses_per_cycle`, successive cycles
        walk the sorted list round-robin; cursors of addresses outside the
        slice are carried over unchanged.
        """
        budget = self._config.max_addresses_per_cycle
        if budget is None or len(monitored) <= budget:
            return monitored, 0
        start = self._rotation_offset % len(monitored)
        selected = [monitored[(start + i) % len(monitored)] for i in range(budget)]
        return selected, (start + budget) % len(monitored)

    async def _poll_address(self, address: str, until: str | None) -> tuple[list[DepositEvent], str | None]:
        signatures = await self.get_signatures(address, until=until)
        events: list[DepositEvent] = []
        cursor = until
        settled_prefix = True

        for entry in reversed(signatures):
            signature = str(require(entry, "signature"))
            status = entry.get("confirmationStatus") or "processed"
            if status not in COMMITMENT_RANK:
                raise MalformedResponseError(f"Unknown confirmationStatus {status!r}")
            failed = entry.get("err") is not None

            if not failed:
                tx = await self.get_transaction(signature)
                if tx is None:
                    if status == FINALIZED:
                        raise MalformedResponseError(f"Finalized transaction {signature} not returned by node")
                    # Not yet visible at `confirmed`; look again next cycle.
                    settled_prefix = False
                    continue
                events.extend(self._events_from_transaction(address, signature, tx, COMMITMENT_RANK[status]))

            if settled_prefix and (failed or status == FINALIZED):
                cursor = signature
            else:
                settled_prefix = False

        if events:
            logger.debug("%s: %d events for %s", self.name, len(events), short_address(address))
        return events, cursor

    def _events_from_transaction(
        self,
        address: str,
        signature: str,
        tx: dict[str, Any],
        rank: int,
    ) -> list[DepositEvent]:
        meta = require(tx, "meta")
        if meta is None or meta.get("err") is not None:
            return []
        slot = int(require(tx, "slot"))
        keys = _account_keys(tx)
        sender = keys[0] if keys else None

        events: list[DepositEvent] = []
        if address in keys and self._config.scan_native:
            idx = keys.index(address)
            pre = require(meta, "preBalances")
            post = require(meta, "postBalances")
            delta = int(post[idx]) - int(pre[idx])
            if delta > 0:
                events.append(
                    DepositEvent(
                        chain=self.name,
                        tx_hash=signature,
                        from_address=sender if sender != address else None,
                        to_address=address,
                        token_symbol=self._tokens.native_symbol,
                        amount=token_amount(delta, self._tokens.native_decimals),
                        block_number=slot,
                        confirmations=rank,
                        token_address=None,
                        log_index=0,
                    )
                )

        pre_tokens = {
            int(require(e, "accountIndex")): e for e in (meta.get("preTokenBalances") or []) if e.get("owner") == address
        }
        for post_entry in meta.get("postTokenBalances") or []:
            if post_entry.get("owner") != address:
                continue
            token = self._tokens.lookup(str(require(post_entry, "mint")))
            if token is None:
                continue
            account_index = int(require(post_entry, "accountIndex"))
            pre_entry = pre_tokens.get(account_index)
            delta = _raw_token_amount(post_entry) - (_raw_token_amount(pre_entry) if pre_entry else 0)
            if delta <= 0:
                continue
            events.append(
                DepositEvent(
                    chain=self.name,
                    tx_hash=signature,
                    from_address=sender,
                    to_address=address,
                    token_symbol=token.symbol,
                    amount=token_amount(delta, token.decimals),
                    block_number=slot,
                    confirmations=rank,
                    token_address=token.address,
                    log_index=account_index,
                )
            )
        return events

    async def health_check(self) -> bool:
        try:
            return await self._rpc("getHealth", []) == "ok"
        except ChainClientError:
            return False

    async def aclose(self) -> None:
        if self._session is not None and self._owns_session and not self._session.closed:
            await self._session.close()
        self._session = None
