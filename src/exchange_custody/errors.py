"""Error taxonomy shared by the custody, chain, scanner and ledger layers."""

from __future__ import annotations


class CustodyError(Exception):
    """Base exception for custody engine errors."""


class InvalidMnemonic(CustodyError):
    """Raised when a seed phrase fails BIP-39 validation.

    Fatal to the call; never retried.
    """


class WalletAlreadyExists(CustodyError):
    """Raised when creating a wallet for a user that already has one."""

    def __init__(self, user_id: str) -> None:
        super().__init__(f"Wallet already exists for user {user_id}")
        self.user_id = user_id


class WalletNotFound(CustodyError):
    """Raised when a user has no active wallet."""

    def __init__(self, user_id: str) -> None:
        super().__init__(f"No wallet for user {user_id}")
        self.user_id = user_id


class MnemonicDecryptionError(CustodyError):
    """Raised when an encrypted mnemonic cannot be decrypted with the configured key."""


class ChainUnavailable(CustodyError):
    """Raised when a chain endpoint fails transiently or returns malformed data.

    The scanner keeps its checkpoint and retries the same range next cycle.
    """

    def __init__(self, chain: str, message: str) -> None:
        super().__init__(f"{chain}: {message}")
        self.chain = chain
        self.message = message


class UnknownToken(CustodyError):
    """Raised when a deposit is for a token with no configured balance field."""

    def __init__(self, chain: str, token: str) -> None:
        super().__init__(f"Unknown token {token!r} on {chain}")
        self.chain = chain
        self.token = token


class UnknownAddress(CustodyError):
    """Raised when a deposit destination is not owned by any tracked wallet."""

    def __init__(self, chain: str, address: str) -> None:
        super().__init__(f"Address {address} on {chain} is not a tracked deposit address")
        self.chain = chain
        self.address = address
