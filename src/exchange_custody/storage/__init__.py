"""Storage layer - Database schemas and repositories."""

from exchange_custody.storage.database import (
    DatabaseManager,
    create_async_db_engine,
    create_async_session_factory,
    init_async_db,
)
from exchange_custody.storage.models import (
    Base,
    ScanCheckpointModel,
    SecurityAuditLogModel,
    TransactionModel,
    UserBalanceModel,
    WalletAddressModel,
    WalletModel,
)
from exchange_custody.storage.repos import (
    AuditLogRepository,
    BalanceRepository,
    CheckpointRepository,
    TransactionDTO,
    TransactionRepository,
    WalletDTO,
    WalletRepository,
)

__all__ = [
    "AuditLogRepository",
    "BalanceRepository",
    "Base",
    "CheckpointRepository",
    "DatabaseManager",
    "ScanCheckpointModel",
    "SecurityAuditLogModel",
    "TransactionDTO",
    "TransactionModel",
    "TransactionRepository",
    "UserBalanceModel",
    "WalletAddressModel",
    "WalletDTO",
    "WalletModel",
    "WalletRepository",
    "create_async_db_engine",
    "create_async_session_factory",
    "init_async_db",
]
