"""Create wallet, invoice, settlement and entitlement tables

Revision ID: 4c2e9a7d1b30
Revises:
Create Date: 2026-10-18 09:00:00.000000

"""
from collections.abc import Sequence

import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

from alembic import op

# revision identifiers, used by Alembic.
revision: str = "4c2e9a7d1b30"
down_revision: str | Sequence[str] | None = None
branch_labels: str | Sequence[str] | None = None
depends_on: str | Sequence[str] | None = None

# Exact decimals are stored as text (see DecimalString)
DECIMAL_TEXT = sa.String(80)


def _timestamp(name: str, nullable: bool = True) -> sa.Column:
    return sa.Column(
        name,
        sa.DateTime(timezone=True),
        nullable=nullable,
        server_default=sa.func.now(),
    )


def upgrade() -> None:
    """Create all hdpay tables."""
    # -- Entitlements ---------------------------------------------------
    op.create_table(
        "donation_ranks",
        sa.Column("id", sa.String(50), primary_key=True),
        sa.Column("name", sa.String(100), nullable=False),
        sa.Column("min_amount", sa.Float(), nullable=False, server_default="0"),
        sa.Column("duration", sa.Integer(), nullable=True),
        _timestamp("created_at"),
    )

    op.create_table(
        "users",
        sa.Column("id", sa.BigInteger(), primary_key=True),
        sa.Column("username", sa.String(100), nullable=False),
        sa.Column("email", sa.String(255), nullable=True),
        sa.Column(
            "donation_rank_id",
            sa.String(50),
            sa.ForeignKey("donation_ranks.id", ondelete="SET NULL"),
            nullable=True,
        ),
        sa.Column("rank_expires_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("total_donated", sa.Float(), nullable=False, server_default="0"),
        _timestamp("created_at"),
        _timestamp("updated_at"),
    )
    op.create_index("ix_users_rank_expiry", "users", ["rank_expires_at"])

    op.create_table(
        "donations",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column(
            "user_id",
            sa.BigInteger(),
            sa.ForeignKey("users.id", ondelete="SET NULL"),
            nullable=True,
        ),
        sa.Column("amount", sa.Float(), nullable=False),
        sa.Column("currency", sa.String(3), nullable=False, server_default="USD"),
        sa.Column("method", sa.String(50), nullable=True),
        sa.Column("message", sa.Text(), nullable=True),
        sa.Column("payment_id", sa.String(100), nullable=True),
        sa.Column("invoice_id", sa.String(36), nullable=True, unique=True),
        sa.Column("rank_id", sa.String(50), nullable=True),
        sa.Column("days", sa.Integer(), nullable=True),
        sa.Column("payment_type", sa.String(30), nullable=False, server_default="one_time"),
        sa.Column("status", sa.String(20), nullable=False, server_default="completed"),
        _timestamp("created_at"),
    )
    op.create_index("ix_donations_user", "donations", ["user_id"])

    # -- Wallets & invoices ----------------------------------------------
    op.create_table(
        "crypto_wallets",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("currency", sa.String(10), nullable=False),
        sa.Column("network", sa.String(10), nullable=False, server_default="mainnet"),
        sa.Column("label", sa.String(100), nullable=True),
        sa.Column("encrypted_wallet_data", sa.Text(), nullable=False),
        sa.Column("encrypted_password_hash", sa.Text(), nullable=False),
        sa.Column("master_public_key", sa.String(200), nullable=False),
        sa.Column("qr_code_data_url", sa.Text(), nullable=True),
        sa.Column("derivation_path", sa.String(50), nullable=False),
        sa.Column("next_derivation_index", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("min_confirmations", sa.Integer(), nullable=False, server_default="3"),
        sa.Column("is_active", sa.Boolean(), nullable=True, server_default=sa.true()),
        _timestamp("created_at"),
        _timestamp("updated_at"),
    )
    op.create_index(
        "ix_crypto_wallets_currency_network", "crypto_wallets", ["currency", "network"],
    )

    op.create_table(
        "crypto_invoices",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column("invoice_number", sa.String(40), nullable=False, unique=True),
        sa.Column(
            "user_id",
            sa.BigInteger(),
            sa.ForeignKey("users.id", ondelete="SET NULL"),
            nullable=True,
        ),
        sa.Column("username", sa.String(100), nullable=True),
        sa.Column("email", sa.String(255), nullable=True),
        sa.Column("rank_id", sa.String(50), nullable=True),
        sa.Column("rank_name", sa.String(100), nullable=True),
        sa.Column("usd_amount", sa.Float(), nullable=False),
        sa.Column("fiat_currency", sa.String(3), nullable=False, server_default="USD"),
        sa.Column("currency", sa.String(10), nullable=False),
        sa.Column("crypto_amount", DECIMAL_TEXT, nullable=False),
        sa.Column("exchange_rate", DECIMAL_TEXT, nullable=False),
        sa.Column(
            "wallet_id",
            sa.Integer(),
            sa.ForeignKey("crypto_wallets.id", ondelete="SET NULL"),
            nullable=True,
        ),
        sa.Column("derivation_index", sa.Integer(), nullable=False),
        sa.Column("payment_address", sa.String(100), nullable=False, unique=True),
        sa.Column("qr_code_data_url", sa.Text(), nullable=True),
        sa.Column("status", sa.String(20), nullable=False, server_default="pending"),
        sa.Column("total_received", DECIMAL_TEXT, nullable=False, server_default="0"),
        sa.Column("total_received_usd", sa.Float(), nullable=False, server_default="0"),
        sa.Column(
            "donation_id",
            sa.Integer(),
            sa.ForeignKey("donations.id", ondelete="SET NULL"),
            nullable=True,
        ),
        sa.Column("last_checked_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("check_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("memo", sa.Text(), nullable=True),
        sa.Column("paid_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("cancelled_at", sa.DateTime(timezone=True), nullable=True),
        _timestamp("created_at"),
        _timestamp("updated_at"),
        sa.UniqueConstraint("wallet_id", "derivation_index", name="uq_invoices_wallet_index"),
    )
    op.create_index("ix_crypto_invoices_status", "crypto_invoices", ["status"])
    op.create_index("ix_crypto_invoices_user", "crypto_invoices", ["user_id"])

    op.create_table(
        "crypto_transactions",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column(
            "invoice_id",
            sa.String(36),
            sa.ForeignKey("crypto_invoices.id", ondelete="RESTRICT"),
            nullable=False,
        ),
        sa.Column("tx_hash", sa.String(100), nullable=False, unique=True),
        sa.Column("from_address", sa.String(100), nullable=True),
        sa.Column("to_address", sa.String(100), nullable=False),
        sa.Column("amount", DECIMAL_TEXT, nullable=False),
        sa.Column("currency", sa.String(10), nullable=False),
        sa.Column("network", sa.String(10), nullable=True),
        sa.Column("usd_value", sa.Float(), nullable=True),
        sa.Column("exchange_rate", DECIMAL_TEXT, nullable=True),
        sa.Column("status", sa.String(20), nullable=False, server_default="confirming"),
        sa.Column("confirmations", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("required_confirmations", sa.Integer(), nullable=False, server_default="3"),
        sa.Column("block_number", sa.BigInteger(), nullable=True),
        sa.Column("block_timestamp", sa.DateTime(timezone=True), nullable=True),
        sa.Column("fee", DECIMAL_TEXT, nullable=True),
        sa.Column("detection_method", sa.String(20), nullable=False, server_default="auto_check"),
        _timestamp("detected_at"),
        sa.Column("confirmed_at", sa.DateTime(timezone=True), nullable=True),
    )
    op.create_index("ix_crypto_transactions_invoice", "crypto_transactions", ["invoice_id"])

    # -- Rate cache & audit ------------------------------------------------
    op.create_table(
        "crypto_exchange_rates",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("currency", sa.String(10), nullable=False, unique=True),
        sa.Column("usd_rate", DECIMAL_TEXT, nullable=False),
        sa.Column("provider", sa.String(30), nullable=False, server_default="coingecko"),
        _timestamp("last_updated", nullable=False),
    )

    op.create_table(
        "crypto_wallet_audit_log",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("wallet_id", sa.Integer(), nullable=True),
        sa.Column("invoice_id", sa.String(36), nullable=True),
        sa.Column("user_id", sa.BigInteger(), nullable=True),
        sa.Column("action", sa.String(50), nullable=False),
        sa.Column("details", postgresql.JSONB(), nullable=True),
        sa.Column("ip_address", sa.String(45), nullable=True),
        sa.Column("success", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("error_message", sa.Text(), nullable=True),
        _timestamp("created_at"),
    )
    op.create_index(
        "ix_wallet_audit_wallet_time", "crypto_wallet_audit_log", ["wallet_id", "created_at"],
    )
    op.create_index("ix_wallet_audit_invoice", "crypto_wallet_audit_log", ["invoice_id"])
    op.create_index("ix_wallet_audit_action", "crypto_wallet_audit_log", ["action"])


def downgrade() -> None:
    """Drop all hdpay tables."""
    op.drop_index("ix_wallet_audit_action", table_name="crypto_wallet_audit_log")
    op.drop_index("ix_wallet_audit_invoice", table_name="crypto_wallet_audit_log")
    op.drop_index("ix_wallet_audit_wallet_time", table_name="crypto_wallet_audit_log")
    op.drop_table("crypto_wallet_audit_log")
    op.drop_table("crypto_exchange_rates")

    op.drop_index("ix_crypto_transactions_invoice", table_name="crypto_transactions")
    op.drop_table("crypto_transactions")

    op.drop_index("ix_crypto_invoices_user", table_name="crypto_invoices")
    op.drop_index("ix_crypto_invoices_status", table_name="crypto_invoices")
    op.drop_table("crypto_invoices")

    op.drop_index("ix_crypto_wallets_currency_network", table_name="crypto_wallets")
    op.drop_table("crypto_wallets")

    op.drop_index("ix_donations_user", table_name="donations")
    op.drop_table("donations")

    op.drop_index("ix_users_rank_expiry", table_name="users")
    op.drop_table("users")
    op.drop_table("donation_ranks")
