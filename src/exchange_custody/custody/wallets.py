"""Wallet store: one encrypted seed phrase and one address set per user.

Wallet writes (generation, rotation) and their audit entries happen in one
database transaction, so readers see either the old complete address set or
the new complete one. The mnemonic leaves this module only through
`WalletSecret` (on creation/reset) and the audited `reveal_mnemonic`.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from contextlib import AbstractAsyncContextManager
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import TYPE_CHECKING

from sqlalchemy.exc import IntegrityError

from exchange_custody.chains.base import short_address
from exchange_custody.errors import CustodyError, WalletAlreadyExists, WalletNotFound
from exchange_custody.storage.repos import AuditLogRepository, WalletRepository

if TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncSession

    from exchange_custody.custody.crypto import MnemonicCipher
    from exchange_custody.custody.derivation import KeyDerivationService

logger = logging.getLogger(__name__)

SessionFactory = Callable[[], AbstractAsyncContextManager["AsyncSession"]]

AUDIT_WALLET_GENERATED = "wallet_generated"
AUDIT_WALLET_RESET = "wallet_reset"
AUDIT_MNEMONIC_REVEALED = "mnemonic_revealed"

ROTATION_WARNING = (
    "Your deposit addresses have changed. Funds sent to the previous addresses "
    "after this reset are no longer detected and may be unrecoverable."
)

RESET_MAX_ATTEMPTS = 3


@dataclass(frozen=True)
class WalletSecret:
    """Result of wallet creation or reset; the only object carrying the phrase."""

    user_id: str
    addresses: dict[str, str]
    created_at: datetime
    mnemonic: str = field(repr=False)
    warning: str | None = None


class WalletStore:
    """Persists per-user wallets and answers address queries.

    Example:
        ```python
        store = WalletStore(db.get_async_session, derivation=service, cipher=cipher)
        secret = await store.create_wallet("user-1")
        show_once(secret.mnemonic)
        await store.get_addresses("user-1")
        ```
    """

    def __init__(
        self,
        session_factory: SessionFactory,
        *,
        derivation: KeyDerivationService,
        cipher: MnemonicCipher | None,
    ) -> None:
        self._session_factory = session_factory
        self._derivation = derivation
        self._cipher = cipher

    def _require_cipher(self) -> MnemonicCipher:
        if self._cipher is None:
            raise CustodyError("Mnemonic encryption key is not configured")
        return self._cipher

    @staticmethod
    def _check_user_id(user_id: str) -> str:
        user_id = user_id.strip()
        if not user_id:
            raise ValueError("user_id must not be empty")
        return user_id

    async def create_wallet(self, user_id: str) -> WalletSecret:
        """Generate a wallet for a user who has none.

        Raises:
            WalletAlreadyExists: If the user already has an active wallet,
                including when a concurrent call created it first.
        """
        user_id = self._check_user_id(user_id)
        mnemonic, addresses = self._derivation.generate()
        encrypted = self._require_cipher().encrypt(mnemonic)

        try:
            async with self._session_factory() as session:
                wallets = WalletRepository(session)
                if await wallets.get_active(user_id) is not None:
                    raise WalletAlreadyExists(user_id)
                wallet = await wallets.insert(user_id=user_id, encrypted_mnemonic=encrypted, addresses=addresses)
                await AuditLogRepository(session).record(
                    user_id,
                    AUDIT_WALLET_GENERATED,
                    {"wallet_id": wallet.id, "chains": sorted(addresses)},
                )
        except IntegrityError as e:
            raise WalletAlreadyExists(user_id) from e

        logger.info("Wallet created for user %s (%d chains)", user_id, len(addresses))
        return WalletSecret(
            user_id=user_id,
            addresses=addresses,
            created_at=wallet.created_at or datetime.now(UTC),
            mnemonic=mnemonic,
        )

    async def reset_wallet(self, user_id: str) -> WalletSecret:
        """Replace the user's wallet (or create one) with a fresh phrase.

        The old wallet is marked deleted and its addresses retired in the
        same transaction that inserts the replacement.
        """
        user_id = self._check_user_id(user_id)
        last_error: IntegrityError | None = None

        for attempt in range(RESET_MAX_ATTEMPTS):
            mnemonic, addresses = self._derivation.generate()
            encrypted = self._require_cipher().encrypt(mnemonic)
            try:
                async with self._session_factory() as session:
                    wallets = WalletRepository(session)
                    previous = await wallets.get_active(user_id, for_update=True)
                    now = datetime.now(UTC)
                    if previous is not None:
                        await wallets.retire(previous.id)
                    wallet = await wallets.insert(
                        user_id=user_id,
                        encrypted_mnemonic=encrypted,
                        addresses=addresses,
                        rotated_at=now if previous is not None else None,
                    )
                    await AuditLogRepository(session).record(
                        user_id,
                        AUDIT_WALLET_RESET if previous is not None else AUDIT_WALLET_GENERATED,
                        {
                            "wallet_id": wallet.id,
                            "previous_wallet_id": previous.id if previous is not None else None,
                            "chains": sorted(addresses),
                        },
                    )
            except IntegrityError as e:
                # A concurrent reset won the race; retry against its wallet.
                last_error = e
                logger.warning("Wallet reset for user %s conflicted (attempt %d)", user_id, attempt + 1)
                continue

            if previous is not None:
                logger.warning(
                    "Wallet rotated for user %s; retired addresses: %s",
                    user_id,
                    ", ".join(sorted({short_address(a) for a in previous.addresses.values()})),
                )
            else:
                logger.info("Wallet created by reset for user %s", user_id)
            return WalletSecret(
                user_id=user_id,
                addresses=addresses,
                created_at=wallet.created_at or now,
                mnemonic=mnemonic,
                warning=ROTATION_WARNING if previous is not None else None,
            )

        raise RuntimeError(f"Wallet reset for user {user_id} kept conflicting") from last_error

    async def get_addresses(self, user_id: str) -> dict[str, str]:
        """Deposit addresses by chain.

        Raises:
            WalletNotFound: If the user has no active wallet.
        """
        async with self._session_factory() as session:
            wallet = await WalletRepository(session).get_active(user_id)
        if wallet is None:
            raise WalletNotFound(user_id)
        return dict(wallet.addresses)

    async def get_or_create_addresses(self, user_id: str) -> dict[str, str]:
        """Deposit addresses, generating the wallet on first use.

        The phrase of an implicitly created wallet is not returned; it stays
        recoverable through `reveal_mnemonic`.
        """
        try:
            return await self.get_addresses(user_id)
        except WalletNotFound:
            pass
        try:
            secret = await self.create_wallet(user_id)
        except WalletAlreadyExists:
            return await self.get_addresses(user_id)
        return dict(secret.addresses)

    async def get_all_monitored_addresses(self) -> dict[str, set[str]]:
        """Every active address owned by any user, grouped by chain."""
        async with self._session_factory() as session:
            return await WalletRepository(session).list_monitored()

    async def resolve_owner(self, chain: str, address: str) -> str | None:
        async with self._session_factory() as session:
            return await WalletRepository(session).resolve_owner(chain, address)

    async def reveal_mnemonic(self, user_id: str, *, actor: str, reason: str) -> str:
        """Decrypt the user's phrase for an explicit recovery request.

        Every reveal is written to the security audit log.

        Raises:
            WalletNotFound: If the user has no active wallet.
            MnemonicDecryptionError: If the configured key cannot decrypt it.
        """
        if not actor.strip() or not reason.strip():
            raise ValueError("Mnemonic reveal requires an actor and a reason")

        async with self._session_factory() as session:
            wallet = await WalletRepository(session).get_active(user_id)
            if wallet is None:
                raise WalletNotFound(user_id)
            mnemonic = self._require_cipher().decrypt(wallet.encrypted_mnemonic)
            await AuditLogRepository(session).record(
                user_id,
                AUDIT_MNEMONIC_REVEALED,
                {"wallet_id": wallet.id, "actor": actor, "reason": reason},
            )

        logger.warning("Mnemonic revealed for user %s by %s", user_id, actor)
        return mnemonic
