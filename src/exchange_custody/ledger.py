"""Deposit ledger: the single writer of deposit transactions and balance credits.

A deposit is credited exactly once. The transaction row is created (or
found) by its natural key `(chain, tx_hash, to_address)`, and the balance
increment only happens in the same database transaction as the one
conditional `pending -> completed` update that actually changed a row. A
repeated or concurrent `finalize_deposit` for the same deposit finds the
row already completed and changes nothing.
"""

from __future__ import annotations

import logging
import uuid
from collections.abc import Callable, Collection
from decimal import Decimal
from typing import TYPE_CHECKING, Protocol

from exchange_custody.chains.base import DepositEvent, short_address
from exchange_custody.errors import UnknownAddress, UnknownToken
from exchange_custody.storage.repos import (
    STATUS_COMPLETED,
    STATUS_FAILED,
    STATUS_PENDING,
    TX_TYPE_DEPOSIT,
    BalanceRepository,
    TransactionDTO,
    TransactionRepository,
    WalletRepository,
)

if TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncSession

    from exchange_custody.custody.wallets import SessionFactory

logger = logging.getLogger(__name__)

UNKNOWN_TOKEN_ERROR = "unknown_token"
NON_POSITIVE_AMOUNT_ERROR = "non_positive_amount"


class UserAccountStore(Protocol):
    """Balance operations the ledger needs, bound to the ledger's session."""

    async def get_balances(self, user_id: str) -> dict[str, Decimal]: ...

    async def increment(self, user_id: str, token: str, delta: Decimal) -> None: ...


AccountStoreFactory = Callable[["AsyncSession"], UserAccountStore]


class Ledger:
    """Applies deposit events to transactions and user balances.

    Example:
        ```python
        ledger = Ledger(db.get_async_session, supported_tokens=["ETH", "USDT"])
        tx = await ledger.finalize_deposit(event)
        assert tx.status == "completed"
        ```
    """

    def __init__(
        self,
        session_factory: SessionFactory,
        *,
        supported_tokens: Collection[str],
        account_store_factory: AccountStoreFactory = BalanceRepository,
    ) -> None:
        self._session_factory = session_factory
        self._supported_tokens = frozenset(t.upper() for t in supported_tokens)
        self._account_store_factory = account_store_factory

    @property
    def supported_tokens(self) -> frozenset[str]:
        return self._supported_tokens

    def is_supported(self, token: str) -> bool:
        return token.upper() in self._supported_tokens

    async def finalize_deposit(self, event: DepositEvent) -> TransactionDTO:
        """Credit a confirmed deposit at most once.

        A deposit with a non-positive amount is parked as `failed` without
        raising; there is nothing to credit.

        Raises:
            UnknownAddress: If `event.to_address` is not an active wallet address.
            UnknownToken: If the token has no balance field; the transaction
                is parked as `failed` for manual reconciliation.
        """
        parked = False
        empty = False
        credited = False
        async with self._session_factory() as session:
            user_id = await WalletRepository(session).resolve_owner(event.chain, event.to_address)
            if user_id is None:
                raise UnknownAddress(event.chain, event.to_address)

            txs = TransactionRepository(session)
            tx = await self._get_or_create(txs, event, user_id)

            if tx.status == STATUS_COMPLETED:
                return tx
            if tx.status == STATUS_FAILED:
                if tx.error == UNKNOWN_TOKEN_ERROR:
                    raise UnknownToken(event.chain, tx.token)
                return tx

            if tx.amount <= 0:
                await txs.mark_failed(tx.id, error=NON_POSITIVE_AMOUNT_ERROR)
                empty = True
            elif not self.is_supported(tx.token):
                await txs.mark_failed(tx.id, error=UNKNOWN_TOKEN_ERROR)
                parked = True
            elif await txs.mark_completed(tx.id, confirmations=event.confirmations, block_number=event.block_number):
                await self._account_store_factory(session).increment(tx.user_id, tx.token, tx.amount)
                credited = True

            refreshed = await txs.get(tx.id)
            if refreshed is None:
                raise RuntimeError(f"Transaction {tx.id} vanished during finalize")

        if empty:
            logger.warning(
                "Deposit %s on %s to %s has no value; parked as failed",
                short_address(event.tx_hash),
                event.chain,
                short_address(event.to_address),
            )
        if parked:
            logger.error(
                "Deposit %s on %s parked as failed: token %s has no balance field",
                short_address(event.tx_hash),
                event.chain,
                tx.token,
            )
            raise UnknownToken(event.chain, tx.token)
        if credited:
            logger.info(
                "Credited %s %s to user %s (%s %s)",
                refreshed.amount,
                refreshed.token,
                refreshed.user_id,
                event.chain,
                short_address(event.tx_hash),
            )
        return refreshed

    async def upsert_pending(self, event: DepositEvent, user_id: str) -> TransactionDTO:
        """Record or refresh a deposit that has not reached its threshold.

        Never touches a row that is already completed or failed.
        """
        async with self._session_factory() as session:
            txs = TransactionRepository(session)
            tx = await self._get_or_create(txs, event, user_id)
            if tx.status == STATUS_PENDING and tx.confirmations != event.confirmations:
                await txs.refresh_pending(
                    tx.id,
                    confirmations=event.confirmations,
                    block_number=event.block_number,
                )
                refreshed = await txs.get(tx.id)
                if refreshed is not None:
                    tx = refreshed
        logger.debug(
            "Pending deposit %s on %s: %d confirmations",
            short_address(event.tx_hash),
            event.chain,
            event.confirmations,
        )
        return tx

    async def _get_or_create(self, txs: TransactionRepository, event: DepositEvent, user_id: str) -> TransactionDTO:
        inserted = await txs.insert_deposit_if_absent(event, user_id=user_id, tx_id=uuid.uuid4().hex)
        tx = await txs.get_deposit(event.chain, event.tx_hash, event.to_address)
        if tx is None:
            raise RuntimeError(f"Deposit {event.tx_hash} on {event.chain} missing after insert")
        if inserted:
            logger.info(
                "New %s deposit observed: %s %s to %s",
                event.chain,
                event.amount,
                event.token_symbol,
                short_address(event.to_address),
            )
        return tx

    async def list_transactions(
        self,
        user_id: str | None = None,
        *,
        tx_type: str | None = TX_TYPE_DEPOSIT,
        status: str | None = None,
        limit: int = 50,
    ) -> list[TransactionDTO]:
        """Transaction history, newest first."""
        async with self._session_factory() as session:
            return await TransactionRepository(session).list_recent(
                user_id=user_id,
                tx_type=tx_type,
                status=status,
                limit=limit,
            )

    async def get_balances(self, user_id: str) -> dict[str, Decimal]:
        async with self._session_factory() as session:
            return await self._account_store_factory(session).get_balances(user_id)
