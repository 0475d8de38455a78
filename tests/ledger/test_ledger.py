"""Tests for the deposit ledger."""

from __future__ import annotations

from decimal import Decimal
from unittest.mock import AsyncMock, patch

import pytest

from exchange_custody.chains.base import DepositEvent
from exchange_custody.custody.wallets import WalletStore
from exchange_custody.errors import UnknownAddress, UnknownToken
from exchange_custody.ledger import NON_POSITIVE_AMOUNT_ERROR, UNKNOWN_TOKEN_ERROR, Ledger
from exchange_custody.storage.database import DatabaseManager
from exchange_custody.storage.repos import (
    STATUS_COMPLETED,
    STATUS_FAILED,
    STATUS_PENDING,
    BalanceRepository,
    TransactionRepository,
)


def make_event(address: str, **overrides) -> DepositEvent:
    fields = {
        "chain": "ethereum",
        "tx_hash": "0x" + "ab" * 32,
        "from_address": "0x" + "f" * 40,
        "to_address": address,
        "token_symbol": "ETH",
        "amount": Decimal("0.5"),
        "block_number": 100,
        "confirmations": 13,
    }
    fields.update(overrides)
    return DepositEvent(**fields)


@pytest.fixture
async def deposit_address(wallet_store: WalletStore) -> str:
    secret = await wallet_store.create_wallet("user-1")
    return secret.addresses["ethereum"]


# ============================================================================
# Finalize
# ============================================================================


class TestFinalizeDeposit:
    @pytest.mark.asyncio
    async def test_credits_balance(self, ledger: Ledger, deposit_address: str) -> None:
        tx = await ledger.finalize_deposit(make_event(deposit_address))

        assert tx.status == STATUS_COMPLETED
        assert tx.user_id == "user-1"
        assert tx.completed_at is not None
        assert await ledger.get_balances("user-1") == {"ETH": Decimal("0.5")}

    @pytest.mark.asyncio
    async def test_idempotent(self, ledger: Ledger, deposit_address: str) -> None:
        event = make_event(deposit_address)
        first = await ledger.finalize_deposit(event)
        second = await ledger.finalize_deposit(event)
        third = await ledger.finalize_deposit(make_event(deposit_address, confirmations=40))

        assert second.id == first.id == third.id
        assert second.completed_at == first.completed_at
        assert third.confirmations == first.confirmations
        assert await ledger.get_balances("user-1") == {"ETH": Decimal("0.5")}
        assert len(await ledger.list_transactions("user-1")) == 1

    @pytest.mark.asyncio
    async def test_promotes_pending_row(self, ledger: Ledger, deposit_address: str) -> None:
        pending = await ledger.upsert_pending(make_event(deposit_address, confirmations=1), "user-1")
        tx = await ledger.finalize_deposit(make_event(deposit_address, confirmations=13))

        assert tx.id == pending.id
        assert tx.status == STATUS_COMPLETED
        assert tx.confirmations == 13

    @pytest.mark.asyncio
    async def test_matches_hash_case_insensitively(self, ledger: Ledger, deposit_address: str) -> None:
        await ledger.finalize_deposit(make_event(deposit_address, tx_hash="0x" + "AB" * 32))
        await ledger.finalize_deposit(make_event(deposit_address.lower(), tx_hash="0x" + "ab" * 32))
        assert await ledger.get_balances("user-1") == {"ETH": Decimal("0.5")}

    @pytest.mark.asyncio
    async def test_separate_recipients_in_one_tx(self, ledger: Ledger, wallet_store: WalletStore) -> None:
        a = (await wallet_store.create_wallet("user-a")).addresses["ethereum"]
        b = (await wallet_store.create_wallet("user-b")).addresses["ethereum"]
        tx_hash = "0x" + "cd" * 32

        await ledger.finalize_deposit(make_event(a, tx_hash=tx_hash, amount=Decimal("1")))
        await ledger.finalize_deposit(make_event(b, tx_hash=tx_hash, amount=Decimal("2")))

        assert await ledger.get_balances("user-a") == {"ETH": Decimal("1")}
        assert await ledger.get_balances("user-b") == {"ETH": Decimal("2")}

    @pytest.mark.asyncio
    async def test_unknown_address(self, ledger: Ledger) -> None:
        with pytest.raises(UnknownAddress):
            await ledger.finalize_deposit(make_event("0x" + "e" * 40))
        assert await ledger.list_transactions() == []

    @pytest.mark.asyncio
    async def test_interleaved_finalize_credits_once(
        self, ledger: Ledger, db: DatabaseManager, deposit_address: str
    ) -> None:
        """Two writers that both saw the row pending: only one transition wins."""
        pending = await ledger.upsert_pending(make_event(deposit_address, confirmations=1), "user-1")

        async with db.get_async_session() as session:
            won_first = await TransactionRepository(session).mark_completed(
                pending.id, confirmations=13, block_number=100
            )
            if won_first:
                await BalanceRepository(session).increment("user-1", "ETH", pending.amount)

        # The slower writer arrives after the commit and must be a no-op.
        tx = await ledger.finalize_deposit(make_event(deposit_address))

        assert won_first is True
        assert tx.status == STATUS_COMPLETED
        assert await ledger.get_balances("user-1") == {"ETH": Decimal("0.5")}

    @pytest.mark.asyncio
    async def test_credit_failure_rolls_back_transition(self, ledger: Ledger, deposit_address: str) -> None:
        event = make_event(deposit_address)
        with patch.object(BalanceRepository, "increment", AsyncMock(side_effect=RuntimeError("db gone"))):
            with pytest.raises(RuntimeError):
                await ledger.finalize_deposit(event)

        # Status change and credit commit together, so a retry still credits.
        assert await ledger.list_transactions("user-1", status=STATUS_COMPLETED) == []
        await ledger.finalize_deposit(event)
        assert await ledger.get_balances("user-1") == {"ETH": Decimal("0.5")}


# ============================================================================
# Unsupported tokens
# ============================================================================


class TestUnknownToken:
    @pytest.mark.asyncio
    async def test_parked_as_failed(self, ledger: Ledger, deposit_address: str) -> None:
        event = make_event(deposit_address, token_symbol="WBTC", amount=Decimal("0.25"))

        with pytest.raises(UnknownToken) as exc_info:
            await ledger.finalize_deposit(event)

        assert exc_info.value.token == "WBTC"
        [tx] = await ledger.list_transactions("user-1")
        assert tx.status == STATUS_FAILED
        assert tx.error == UNKNOWN_TOKEN_ERROR
        assert await ledger.get_balances("user-1") == {}

    @pytest.mark.asyncio
    async def test_parked_row_stays_failed(self, ledger: Ledger, deposit_address: str) -> None:
        event = make_event(deposit_address, token_symbol="WBTC")
        with pytest.raises(UnknownToken):
            await ledger.finalize_deposit(event)
        with pytest.raises(UnknownToken):
            await ledger.finalize_deposit(event)

        [tx] = await ledger.list_transactions("user-1", status=STATUS_FAILED)
        assert tx.token == "WBTC"

    def test_supported_tokens_case_insensitive(self, ledger: Ledger) -> None:
        assert ledger.is_supported("usdt")
        assert not ledger.is_supported("WBTC")


# ============================================================================
# Zero-value deposits
# ============================================================================


class TestZeroAmount:
    @pytest.mark.asyncio
    async def test_zero_amount_parked_without_raising(self, ledger: Ledger, deposit_address: str) -> None:
        event = make_event(deposit_address, amount=Decimal("0"))

        tx = await ledger.finalize_deposit(event)
        again = await ledger.finalize_deposit(event)

        assert tx.status == STATUS_FAILED
        assert tx.error == NON_POSITIVE_AMOUNT_ERROR
        assert again.status == STATUS_FAILED
        assert await ledger.get_balances("user-1") == {}

    @pytest.mark.asyncio
    async def test_does_not_block_later_deposit(self, ledger: Ledger, deposit_address: str) -> None:
        await ledger.finalize_deposit(make_event(deposit_address, amount=Decimal("0"), tx_hash="0x" + "01" * 32))
        tx = await ledger.finalize_deposit(make_event(deposit_address, tx_hash="0x" + "02" * 32))

        assert tx.status == STATUS_COMPLETED
        assert await ledger.get_balances("user-1") == {"ETH": Decimal("0.5")}


# ============================================================================
# Pending
# ============================================================================


class TestUpsertPending:
    @pytest.mark.asyncio
    async def test_records_pending_without_credit(self, ledger: Ledger, deposit_address: str) -> None:
        tx = await ledger.upsert_pending(make_event(deposit_address, confirmations=1), "user-1")

        assert tx.status == STATUS_PENDING
        assert tx.confirmations == 1
        assert tx.completed_at is None
        assert await ledger.get_balances("user-1") == {}

    @pytest.mark.asyncio
    async def test_refreshes_confirmations(self, ledger: Ledger, deposit_address: str) -> None:
        first = await ledger.upsert_pending(make_event(deposit_address, confirmations=1), "user-1")
        second = await ledger.upsert_pending(make_event(deposit_address, confirmations=5), "user-1")

        assert second.id == first.id
        assert second.confirmations == 5

    @pytest.mark.asyncio
    async def test_never_downgrades_completed(self, ledger: Ledger, deposit_address: str) -> None:
        done = await ledger.finalize_deposit(make_event(deposit_address))
        # A lagging node reports fewer confirmations after completion.
        tx = await ledger.upsert_pending(make_event(deposit_address, confirmations=2), "user-1")

        assert tx.status == STATUS_COMPLETED
        assert tx.confirmations == done.confirmations
        assert await ledger.get_balances("user-1") == {"ETH": Decimal("0.5")}


# ============================================================================
# Account store
# ============================================================================


class TestAccountStore:
    @pytest.mark.asyncio
    async def test_custom_account_store(self, db: DatabaseManager, deposit_address: str) -> None:
        store = AsyncMock()
        ledger = Ledger(db.get_async_session, supported_tokens=["ETH"], account_store_factory=lambda _: store)

        await ledger.finalize_deposit(make_event(deposit_address))
        await ledger.finalize_deposit(make_event(deposit_address))

        store.increment.assert_awaited_once_with("user-1", "ETH", Decimal("0.5"))
