"""Initial schema for wallets, deposit transactions, balances and checkpoints.

Revision ID: 001_initial
Revises:
Create Date: 2026-10-19 00:00:00.000000+00:00
"""

from typing import Sequence, Union

import sqlalchemy as sa
from alembic import op

# revision identifiers, used by Alembic.
revision: str = "001_initial"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    # Wallets (encrypted seed phrase per user)
    op.create_table(
        "wallets",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("user_id", sa.String(128), nullable=False),
        sa.Column("encrypted_mnemonic", sa.Text(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("rotated_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("deleted_at", sa.DateTime(timezone=True), nullable=True),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(
        "uq_wallets_active_user",
        "wallets",
        ["user_id"],
        unique=True,
        postgresql_where=sa.text("deleted_at IS NULL"),
        sqlite_where=sa.text("deleted_at IS NULL"),
    )
    op.create_index("idx_wallets_user", "wallets", ["user_id"])

    # Deposit addresses / reverse index
    op.create_table(
        "wallet_addresses",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("wallet_id", sa.Integer(), nullable=False),
        sa.Column("user_id", sa.String(128), nullable=False),
        sa.Column("chain", sa.String(32), nullable=False),
        sa.Column("address", sa.String(64), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("retired_at", sa.DateTime(timezone=True), nullable=True),
        sa.PrimaryKeyConstraint("id"),
        sa.ForeignKeyConstraint(["wallet_id"], ["wallets.id"]),
        sa.UniqueConstraint("chain", "address", name="uq_wallet_addresses_chain_address"),
    )
    op.create_index("idx_wallet_addresses_wallet", "wallet_addresses", ["wallet_id"])
    op.create_index("idx_wallet_addresses_chain_active", "wallet_addresses", ["chain", "retired_at"])

    # Deposit / withdrawal ledger
    op.create_table(
        "transactions",
        sa.Column("id", sa.String(32), nullable=False),
        sa.Column("user_id", sa.String(128), nullable=False),
        sa.Column("type", sa.String(16), nullable=False),
        sa.Column("chain", sa.String(32), nullable=False),
        sa.Column("token", sa.String(16), nullable=False),
        sa.Column("amount", sa.Numeric(38, 18), nullable=False),
        sa.Column("tx_hash", sa.String(128), nullable=False),
        sa.Column("from_address", sa.String(64), nullable=True),
        sa.Column("to_address", sa.String(64), nullable=False),
        sa.Column("status", sa.String(16), nullable=False),
        sa.Column("confirmations", sa.Integer(), nullable=False),
        sa.Column("block_number", sa.BigInteger(), nullable=False),
        sa.Column("error", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("type", "chain", "tx_hash", "to_address", name="uq_transactions_natural_key"),
    )
    op.create_index("idx_transactions_user_created", "transactions", ["user_id", "created_at"])
    op.create_index("idx_transactions_status", "transactions", ["status"])

    # Balances
    op.create_table(
        "user_balances",
        sa.Column("user_id", sa.String(128), nullable=False),
        sa.Column("token", sa.String(16), nullable=False),
        sa.Column("amount", sa.Numeric(38, 18), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("user_id", "token"),
        sa.CheckConstraint("amount >= 0", name="ck_user_balances_non_negative"),
    )

    # Scanner checkpoints
    op.create_table(
        "scan_checkpoints",
        sa.Column("chain", sa.String(32), nullable=False),
        sa.Column("cursor", sa.Text(), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("chain"),
    )

    # Security audit log
    op.create_table(
        "security_audit_log",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("user_id", sa.String(128), nullable=False),
        sa.Column("action", sa.String(32), nullable=False),
        sa.Column("metadata_json", sa.Text(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("idx_security_audit_log_user_created", "security_audit_log", ["user_id", "created_at"])


def downgrade() -> None:
    op.drop_index("idx_security_audit_log_user_created", table_name="security_audit_log")
    op.drop_table("security_audit_log")
    op.drop_table("scan_checkpoints")
    op.drop_table("user_balances")
    op.drop_index("idx_transactions_status", table_name="transactions")
    op.drop_index("idx_transactions_user_created", table_name="transactions")
    op.drop_table("transactions")
    op.drop_index("idx_wallet_addresses_chain_active", table_name="wallet_addresses")
    op.drop_index("idx_wallet_addresses_wallet", table_name="wallet_addresses")
    op.drop_table("wallet_addresses")
    op.drop_index("idx_wallets_user", table_name="wallets")
    op.drop_index("uq_wallets_active_user", table_name="wallets")
    op.drop_table("wallets")
