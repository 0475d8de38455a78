"""Repository pattern implementations for data access.

This module provides data access for wallets and their address index,
deposit transactions, user balances, scan checkpoints and the security
audit log. Repositories take an open `AsyncSession` and never commit; the
caller owns the transaction boundary.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from datetime import UTC, datetime
from decimal import Decimal
from typing import TYPE_CHECKING, Any

from sqlalchemy import select, update
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert

from exchange_custody.chains.base import DepositEvent, normalize_address
from exchange_custody.storage.models import (
    ScanCheckpointModel,
    SecurityAuditLogModel,
    TransactionModel,
    UserBalanceModel,
    WalletAddressModel,
    WalletModel,
)

if TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncSession

logger = logging.getLogger(__name__)

TX_TYPE_DEPOSIT = "deposit"
TX_TYPE_WITHDRAWAL = "withdrawal"

STATUS_PENDING = "pending"
STATUS_COMPLETED = "completed"
STATUS_FAILED = "failed"


def _insert(session: AsyncSession, model: type[Any]) -> Any:
    """Dialect-specific INSERT supporting ON CONFLICT."""
    dialect = session.get_bind().dialect.name
    if dialect == "postgresql":
        return pg_insert(model)
    if dialect == "sqlite":
        return sqlite_insert(model)
    raise RuntimeError(f"Unsupported database dialect: {dialect}")


@dataclass
class WalletDTO:
    """Data transfer object for wallets.

    `encrypted_mnemonic` is the Fernet token; it is never decrypted by the
    storage layer.
    """

    id: int
    user_id: str
    encrypted_mnemonic: str
    addresses: dict[str, str] = field(default_factory=dict)
    created_at: datetime | None = None
    rotated_at: datetime | None = None

    @classmethod
    def from_model(cls, model: WalletModel, addresses: list[WalletAddressModel]) -> WalletDTO:
        return cls(
            id=model.id,
            user_id=model.user_id,
            encrypted_mnemonic=model.encrypted_mnemonic,
            addresses={a.chain: a.address for a in addresses},
            created_at=model.created_at,
            rotated_at=model.rotated_at,
        )


@dataclass
class TransactionDTO:
    """Data transfer object for ledger transactions."""

    id: str
    user_id: str
    type: str
    chain: str
    token: str
    amount: Decimal
    tx_hash: str
    from_address: str | None
    to_address: str
    status: str
    confirmations: int
    block_number: int
    error: str | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None
    completed_at: datetime | None = None

    @classmethod
    def from_model(cls, model: TransactionModel) -> TransactionDTO:
        return cls(
            id=model.id,
            user_id=model.user_id,
            type=model.type,
            chain=model.chain,
            token=model.token,
            amount=Decimal(model.amount),
            tx_hash=model.tx_hash,
            from_address=model.from_address,
            to_address=model.to_address,
            status=model.status,
            confirmations=model.confirmations,
            block_number=model.block_number,
            error=model.error,
            created_at=model.created_at,
            updated_at=model.updated_at,
            completed_at=model.completed_at,
        )


@dataclass
class AuditLogDTO:
    """Data transfer object for security audit entries."""

    user_id: str
    action: str
    metadata: dict[str, Any]
    created_at: datetime | None = None

    @classmethod
    def from_model(cls, model: SecurityAuditLogModel) -> AuditLogDTO:
        return cls(
            user_id=model.user_id,
            action=model.action,
            metadata=json.loads(model.metadata_json or "{}"),
            created_at=model.created_at,
        )


class WalletRepository:
    """Repository for wallets and the address -> user reverse index."""

    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    async def get_active(self, user_id: str, *, for_update: bool = False) -> WalletDTO | None:
        """Get the user's non-deleted wallet with its active addresses."""
        query = select(WalletModel).where(WalletModel.user_id == user_id, WalletModel.deleted_at.is_(None))
        if for_update:
            query = query.with_for_update()
        result = await self.session.execute(query)
        model = result.scalar_one_or_none()
        if model is None:
            return None

        addresses = await self.session.execute(
            select(WalletAddressModel).where(
                WalletAddressModel.wallet_id == model.id,
                WalletAddressModel.retired_at.is_(None),
            )
        )
        return WalletDTO.from_model(model, list(addresses.scalars().all()))

    async def insert(
        self,
        *,
        user_id: str,
        encrypted_mnemonic: str,
        addresses: dict[str, str],
        rotated_at: datetime | None = None,
    ) -> WalletDTO:
        """Insert a wallet and its address index rows.

        Raises:
            IntegrityError: If the user already has an active wallet or an
                address is already indexed (surfaced on flush).
        """
        now = datetime.now(UTC)
        model = WalletModel(
            user_id=user_id,
            encrypted_mnemonic=encrypted_mnemonic,
            created_at=now,
            rotated_at=rotated_at,
        )
        self.session.add(model)
        await self.session.flush()

        rows = [
            WalletAddressModel(
                wallet_id=model.id,
                user_id=user_id,
                chain=chain,
                address=normalize_address(address),
                created_at=now,
            )
            for chain, address in sorted(addresses.items())
        ]
        self.session.add_all(rows)
        await self.session.flush()
        return WalletDTO.from_model(model, rows)

    async def retire(self, wallet_id: int) -> None:
        """Mark a wallet deleted and retire its addresses."""
        now = datetime.now(UTC)
        await self.session.execute(
            update(WalletModel).where(WalletModel.id == wallet_id).values(deleted_at=now)
        )
        await self.session.execute(
            update(WalletAddressModel)
            .where(WalletAddressModel.wallet_id == wallet_id, WalletAddressModel.retired_at.is_(None))
            .values(retired_at=now)
        )
        await self.session.flush()

    async def list_monitored(self) -> dict[str, set[str]]:
        """All active addresses, grouped by chain."""
        result = await self.session.execute(
            select(WalletAddressModel.chain, WalletAddressModel.address).where(
                WalletAddressModel.retired_at.is_(None)
            )
        )
        monitored: dict[str, set[str]] = {}
        for chain, address in result.all():
            monitored.setdefault(chain, set()).add(address)
        return monitored

    async def resolve_owner(self, chain: str, address: str) -> str | None:
        """Reverse lookup: which user owns this active address."""
        result = await self.session.execute(
            select(WalletAddressModel.user_id).where(
                WalletAddressModel.chain == chain,
                WalletAddressModel.address == normalize_address(address),
                WalletAddressModel.retired_at.is_(None),
            )
        )
        return result.scalar_one_or_none()


class TransactionRepository:
    """Repository for ledger transactions.

    Deposits are keyed by `(type, chain, tx_hash, to_address)`; status
    changes go through conditional updates so concurrent writers converge.
    """

    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    async def get_deposit(self, chain: str, tx_hash: str, to_address: str) -> TransactionDTO | None:
        result = await self.session.execute(
            select(TransactionModel).where(
                TransactionModel.type == TX_TYPE_DEPOSIT,
                TransactionModel.chain == chain,
                TransactionModel.tx_hash == normalize_address(tx_hash),
                TransactionModel.to_address == normalize_address(to_address),
            )
        )
        model = result.scalar_one_or_none()
        return TransactionDTO.from_model(model) if model else None

    async def insert_deposit_if_absent(self, event: DepositEvent, *, user_id: str, tx_id: str) -> bool:
        """Insert a pending deposit row; no-op when the natural key exists.

        Returns:
            True if a row was inserted.
        """
        now = datetime.now(UTC)
        stmt = _insert(self.session, TransactionModel).values(
            id=tx_id,
            user_id=user_id,
            type=TX_TYPE_DEPOSIT,
            chain=event.chain,
            token=event.token_symbol.upper(),
            amount=event.amount,
            tx_hash=normalize_address(event.tx_hash),
            from_address=normalize_address(event.from_address) if event.from_address else None,
            to_address=normalize_address(event.to_address),
            status=STATUS_PENDING,
            confirmations=event.confirmations,
            block_number=event.block_number,
            created_at=now,
            updated_at=now,
        )
        stmt = stmt.on_conflict_do_nothing(index_elements=["type", "chain", "tx_hash", "to_address"])
        result = await self.session.execute(stmt)
        await self.session.flush()
        return bool(result.rowcount)

    async def refresh_pending(self, tx_id: str, *, confirmations: int, block_number: int) -> bool:
        """Update observation fields of a still-pending row."""
        result = await self.session.execute(
            update(TransactionModel)
            .where(TransactionModel.id == tx_id, TransactionModel.status == STATUS_PENDING)
            .values(confirmations=confirmations, block_number=block_number, updated_at=datetime.now(UTC))
        )
        return result.rowcount == 1

    async def mark_completed(self, tx_id: str, *, confirmations: int, block_number: int) -> bool:
        """Transition to `completed` unless already there.

        Returns:
            True only for the single caller that performed the transition.
        """
        now = datetime.now(UTC)
        result = await self.session.execute(
            update(TransactionModel)
            .where(TransactionModel.id == tx_id, TransactionModel.status != STATUS_COMPLETED)
            .values(
                status=STATUS_COMPLETED,
                confirmations=confirmations,
                block_number=block_number,
                completed_at=now,
                updated_at=now,
                error=None,
            )
        )
        return result.rowcount == 1

    async def mark_failed(self, tx_id: str, *, error: str) -> bool:
        """Park a non-completed row as `failed`."""
        result = await self.session.execute(
            update(TransactionModel)
            .where(TransactionModel.id == tx_id, TransactionModel.status == STATUS_PENDING)
            .values(status=STATUS_FAILED, error=error, updated_at=datetime.now(UTC))
        )
        return result.rowcount == 1

    async def get(self, tx_id: str) -> TransactionDTO | None:
        model = await self.session.get(TransactionModel, tx_id, populate_existing=True)
        return TransactionDTO.from_model(model) if model else None

    async def list_recent(
        self,
        *,
        user_id: str | None = None,
        tx_type: str | None = None,
        status: str | None = None,
        limit: int = 50,
    ) -> list[TransactionDTO]:
        """Newest first."""
        query = select(TransactionModel)
        if user_id is not None:
            query = query.where(TransactionModel.user_id == user_id)
        if tx_type is not None:
            query = query.where(TransactionModel.type == tx_type)
        if status is not None:
            query = query.where(TransactionModel.status == status)
        query = query.order_by(TransactionModel.created_at.desc(), TransactionModel.id).limit(limit)
        result = await self.session.execute(query)
        return [TransactionDTO.from_model(m) for m in result.scalars().all()]


class BalanceRepository:
    """Per-user token balances (the platform's user account store)."""

    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    async def get_balances(self, user_id: str) -> dict[str, Decimal]:
        result = await self.session.execute(
            select(UserBalanceModel.token, UserBalanceModel.amount).where(UserBalanceModel.user_id == user_id)
        )
        return {token: Decimal(amount) for token, amount in result.all()}

    async def get_balance(self, user_id: str, token: str) -> Decimal:
        result = await self.session.execute(
            select(UserBalanceModel.amount).where(
                UserBalanceModel.user_id == user_id,
                UserBalanceModel.token == token.upper(),
            )
        )
        amount = result.scalar_one_or_none()
        return Decimal(amount) if amount is not None else Decimal("0")

    async def increment(self, user_id: str, token: str, delta: Decimal) -> None:
        """Atomically add `delta` (must be positive) to a balance."""
        if delta <= 0:
            raise ValueError("Balance increments must be positive")
        now = datetime.now(UTC)
        stmt = _insert(self.session, UserBalanceModel).values(
            user_id=user_id,
            token=token.upper(),
            amount=delta,
            updated_at=now,
        )
        stmt = stmt.on_conflict_do_update(
            index_elements=["user_id", "token"],
            set_={"amount": UserBalanceModel.amount + stmt.excluded.amount, "updated_at": now},
        )
        await self.session.execute(stmt)
        await self.session.flush()


class CheckpointRepository:
    """Per-chain scan cursor."""

    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    async def get(self, chain: str) -> str | None:
        result = await self.session.execute(
            select(ScanCheckpointModel.cursor).where(ScanCheckpointModel.chain == chain)
        )
        return result.scalar_one_or_none()

    async def get_all(self) -> dict[str, str]:
        result = await self.session.execute(select(ScanCheckpointModel.chain, ScanCheckpointModel.cursor))
        return {chain: cursor for chain, cursor in result.all()}

    async def set(self, chain: str, cursor: str) -> None:
        now = datetime.now(UTC)
        stmt = _insert(self.session, ScanCheckpointModel).values(chain=chain, cursor=cursor, updated_at=now)
        stmt = stmt.on_conflict_do_update(
            index_elements=["chain"],
            set_={"cursor": stmt.excluded.cursor, "updated_at": now},
        )
        await self.session.execute(stmt)
        await self.session.flush()


class AuditLogRepository:
    """Append-only security audit trail."""

    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    async def record(self, user_id: str, action: str, metadata: dict[str, Any] | None = None) -> None:
        self.session.add(
            SecurityAuditLogModel(
                user_id=user_id,
                action=action,
                metadata_json=json.dumps(metadata or {}, sort_keys=True, default=str),
                created_at=datetime.now(UTC),
            )
        )
        await self.session.flush()

    async def list_for_user(self, user_id: str) -> list[AuditLogDTO]:
        result = await self.session.execute(
            select(SecurityAuditLogModel)
            .where(SecurityAuditLogModel.user_id == user_id)
            .order_by(SecurityAuditLogModel.created_at, SecurityAuditLogModel.id)
        )
        return [AuditLogDTO.from_model(m) for m in result.scalars().all()]
