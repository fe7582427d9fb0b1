"""
hdpay.database.models — SQLAlchemy 2.0 Data Models
===================================================

Tables:
- crypto_wallets          — One HD account root per (currency, network)
- crypto_invoices         — Payment requests bound to one derived address
- crypto_transactions     — Observed on-chain payments (tx_hash unique)
- crypto_exchange_rates   — USD rate cache, one row per asset
- crypto_wallet_audit_log — Append-only trail of sensitive wallet operations
- users                   — Entitlement holders (rank + lifetime donated)
- donation_ranks          — Purchasable ranks with a duration in days
- donations               — Settled donations (invoice_id unique)
"""

from __future__ import annotations

import enum
from datetime import datetime
from decimal import Decimal

from sqlalchemy import (
    BigInteger,
    Boolean,
    DateTime,
    Float,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    TypeDecorator,
    UniqueConstraint,
    func,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship


# ---------------------------------------------------------------------------
# Base
# ---------------------------------------------------------------------------
class Base(DeclarativeBase):
    """Shared base for all hdpay ORM models."""


class DecimalString(TypeDecorator):
    """Exact decimal stored as text.

    Crypto amounts carry up to 18 fractional digits, which neither a float
    nor SQLite's NUMERIC affinity preserve.
    """

    impl = String(80)
    cache_ok = True

    def process_bind_param(self, value, dialect):
        if value is None:
            return None
        return format(Decimal(value), "f")

    def process_result_value(self, value, dialect):
        if value is None:
            return None
        return Decimal(value)


# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------
class InvoiceStatus(enum.StrEnum):
    PENDING = "pending"
    PARTIALLY_PAID = "partially_paid"
    PAID = "paid"
    OVERPAID = "overpaid"
    CANCELLED = "cancelled"


OPEN_INVOICE_STATUSES: frozenset[str] = frozenset({
    InvoiceStatus.PENDING,
    InvoiceStatus.PARTIALLY_PAID,
})

SETTLED_INVOICE_STATUSES: frozenset[str] = frozenset({
    InvoiceStatus.PAID,
    InvoiceStatus.OVERPAID,
})


class TransactionStatus(enum.StrEnum):
    CONFIRMING = "confirming"
    CONFIRMED = "confirmed"


class AuditAction(enum.StrEnum):
    """Action tags recorded in crypto_wallet_audit_log."""
    WALLET_CREATED = "wallet_created"
    WALLET_ACCESSED = "wallet_accessed"
    WALLET_ACCESS_DENIED = "wallet_access_denied"
    ADDRESS_DERIVED = "address_derived"
    PASSWORD_UPDATED = "password_updated"
    WALLET_DELETED = "wallet_deleted"
    INVOICE_CREATED = "invoice_created"
    INVOICE_CANCELLED = "invoice_cancelled"
    PAYMENT_DETECTED = "payment_detected"
    PAYMENT_CONFIRMED = "payment_confirmed"
    INVOICE_SETTLED = "invoice_settled"


# ---------------------------------------------------------------------------
# Wallet — one HD account root
# ---------------------------------------------------------------------------
class Wallet(Base):
    __tablename__ = "crypto_wallets"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    currency: Mapped[str] = mapped_column(String(10), nullable=False)
    network: Mapped[str] = mapped_column(String(10), nullable=False, default="mainnet")
    label: Mapped[str | None] = mapped_column(String(100), default=None)

    # Encrypted blobs: salt(32) || iv(16) || ciphertext || tag(16), base64
    encrypted_wallet_data: Mapped[str] = mapped_column(Text, nullable=False)
    encrypted_password_hash: Mapped[str] = mapped_column(Text, nullable=False)

    # Account-level extended public key, stored in the clear
    master_public_key: Mapped[str] = mapped_column(String(200), nullable=False)
    qr_code_data_url: Mapped[str | None] = mapped_column(Text, default=None)
    derivation_path: Mapped[str] = mapped_column(String(50), nullable=False)
    next_derivation_index: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    min_confirmations: Mapped[int] = mapped_column(Integer, nullable=False, default=3)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )

    invoices: Mapped[list[Invoice]] = relationship(back_populates="wallet")

    __table_args__ = (
        Index("ix_crypto_wallets_currency_network", "currency", "network"),
    )

    def __repr__(self) -> str:
        return (
            f"<Wallet id={self.id} {self.currency}/{self.network} "
            f"next={self.next_derivation_index}>"
        )


# ---------------------------------------------------------------------------
# Invoice — one payment request, one derived address
# ---------------------------------------------------------------------------
class Invoice(Base):
    __tablename__ = "crypto_invoices"

    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    invoice_number: Mapped[str] = mapped_column(String(40), nullable=False, unique=True)

    # Who is paying
    user_id: Mapped[int | None] = mapped_column(
        BigInteger, ForeignKey("users.id", ondelete="SET NULL"), nullable=True
    )
    username: Mapped[str | None] = mapped_column(String(100), default=None)
    email: Mapped[str | None] = mapped_column(String(255), default=None)

    # What is being bought
    rank_id: Mapped[str | None] = mapped_column(String(50), nullable=True)
    rank_name: Mapped[str | None] = mapped_column(String(100), default=None)
    usd_amount: Mapped[float] = mapped_column(Float, nullable=False)
    fiat_currency: Mapped[str] = mapped_column(String(3), nullable=False, default="USD")
    currency: Mapped[str] = mapped_column(String(10), nullable=False)
    crypto_amount: Mapped[Decimal] = mapped_column(DecimalString, nullable=False)
    exchange_rate: Mapped[Decimal] = mapped_column(DecimalString, nullable=False)

    # Where it is paid; never reused across invoices
    wallet_id: Mapped[int | None] = mapped_column(
        Integer, ForeignKey("crypto_wallets.id", ondelete="SET NULL"), nullable=True
    )
    derivation_index: Mapped[int] = mapped_column(Integer, nullable=False)
    payment_address: Mapped[str] = mapped_column(String(100), nullable=False, unique=True)
    qr_code_data_url: Mapped[str | None] = mapped_column(Text, default=None)

    # State
    status: Mapped[str] = mapped_column(
        String(20), nullable=False, default=InvoiceStatus.PENDING.value
    )
    total_received: Mapped[Decimal] = mapped_column(
        DecimalString, nullable=False, default=Decimal("0")
    )
    total_received_usd: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)
    donation_id: Mapped[int | None] = mapped_column(
        Integer, ForeignKey("donations.id", ondelete="SET NULL"), nullable=True
    )

    # Checker liveness
    last_checked_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    check_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    memo: Mapped[str | None] = mapped_column(Text, default=None)
    paid_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    cancelled_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )

    wallet: Mapped[Wallet | None] = relationship(back_populates="invoices")
    transactions: Mapped[list[ChainTransaction]] = relationship(
        back_populates="invoice", order_by="ChainTransaction.id",
    )

    __table_args__ = (
        UniqueConstraint(
            "wallet_id", "derivation_index", name="uq_invoices_wallet_index",
        ),
        Index("ix_crypto_invoices_status", "status"),
        Index("ix_crypto_invoices_user", "user_id"),
    )

    def __repr__(self) -> str:
        return (
            f"<Invoice id={self.id} number={self.invoice_number!r} "
            f"status={self.status}>"
        )


# ---------------------------------------------------------------------------
# ChainTransaction — observed on-chain payment
# ---------------------------------------------------------------------------
class ChainTransaction(Base):
    """Never deleted; an invoice that holds any cannot be deleted either."""
    __tablename__ = "crypto_transactions"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    invoice_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("crypto_invoices.id", ondelete="RESTRICT"), nullable=False
    )
    tx_hash: Mapped[str] = mapped_column(String(100), nullable=False, unique=True)
    from_address: Mapped[str | None] = mapped_column(String(100), default=None)
    to_address: Mapped[str] = mapped_column(String(100), nullable=False)
    amount: Mapped[Decimal] = mapped_column(DecimalString, nullable=False)
    currency: Mapped[str] = mapped_column(String(10), nullable=False)
    network: Mapped[str | None] = mapped_column(String(10), default=None)

    # USD conversion at detection time (reporting only)
    usd_value: Mapped[float | None] = mapped_column(Float, nullable=True)
    exchange_rate: Mapped[Decimal | None] = mapped_column(DecimalString, nullable=True)

    status: Mapped[str] = mapped_column(
        String(20), nullable=False, default=TransactionStatus.CONFIRMING.value
    )
    confirmations: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    required_confirmations: Mapped[int] = mapped_column(Integer, nullable=False, default=3)

    block_number: Mapped[int | None] = mapped_column(BigInteger, nullable=True)
    block_timestamp: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    fee: Mapped[Decimal | None] = mapped_column(DecimalString, nullable=True)
    detection_method: Mapped[str] = mapped_column(
        String(20), nullable=False, default="auto_check"
    )
    detected_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )
    confirmed_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )

    invoice: Mapped[Invoice] = relationship(back_populates="transactions")

    __table_args__ = (
        Index("ix_crypto_transactions_invoice", "invoice_id"),
    )

    def __repr__(self) -> str:
        return (
            f"<ChainTransaction hash={self.tx_hash[:12]!r} "
            f"amount={self.amount} status={self.status}>"
        )


# ---------------------------------------------------------------------------
# ExchangeRate — USD rate cache entry
# ---------------------------------------------------------------------------
class ExchangeRate(Base):
    __tablename__ = "crypto_exchange_rates"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    currency: Mapped[str] = mapped_column(String(10), nullable=False, unique=True)
    usd_rate: Mapped[Decimal] = mapped_column(DecimalString, nullable=False)
    provider: Mapped[str] = mapped_column(String(30), nullable=False, default="coingecko")
    last_updated: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, server_default=func.now()
    )

    def __repr__(self) -> str:
        return f"<ExchangeRate {self.currency}={self.usd_rate} @ {self.last_updated}>"


# ---------------------------------------------------------------------------
# WalletAuditLog — append-only audit trail
# ---------------------------------------------------------------------------
class WalletAuditLog(Base):
    """Never updated or deleted.

    References are plain columns (no FK) so deleting a wallet cannot
    cascade into its own audit history.
    """
    __tablename__ = "crypto_wallet_audit_log"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    wallet_id: Mapped[int | None] = mapped_column(Integer, nullable=True)
    invoice_id: Mapped[str | None] = mapped_column(String(36), nullable=True)
    user_id: Mapped[int | None] = mapped_column(BigInteger, nullable=True)
    action: Mapped[str] = mapped_column(String(50), nullable=False)
    details: Mapped[dict | None] = mapped_column(JSONB, nullable=True)
    ip_address: Mapped[str | None] = mapped_column(String(45), nullable=True)
    success: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )

    __table_args__ = (
        Index("ix_wallet_audit_wallet_time", "wallet_id", "created_at"),
        Index("ix_wallet_audit_invoice", "invoice_id"),
        Index("ix_wallet_audit_action", "action"),
    )

    def __repr__(self) -> str:
        return (
            f"<WalletAuditLog id={self.id} wallet={self.wallet_id} "
            f"action={self.action} ok={self.success}>"
        )


# ---------------------------------------------------------------------------
# Users — entitlement holders
# ---------------------------------------------------------------------------
class User(Base):
    __tablename__ = "users"

    id: Mapped[int] = mapped_column(BigInteger, primary_key=True)
    username: Mapped[str] = mapped_column(String(100), nullable=False)
    email: Mapped[str | None] = mapped_column(String(255), default=None)
    donation_rank_id: Mapped[str | None] = mapped_column(
        String(50), ForeignKey("donation_ranks.id", ondelete="SET NULL"), nullable=True
    )
    rank_expires_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    total_donated: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )

    rank: Mapped[DonationRank | None] = relationship()

    __table_args__ = (
        Index("ix_users_rank_expiry", "rank_expires_at"),
    )

    def __repr__(self) -> str:
        return f"<User id={self.id} name={self.username!r} rank={self.donation_rank_id}>"


# ---------------------------------------------------------------------------
# DonationRank — purchasable rank
# ---------------------------------------------------------------------------
class DonationRank(Base):
    __tablename__ = "donation_ranks"

    id: Mapped[str] = mapped_column(String(50), primary_key=True)
    name: Mapped[str] = mapped_column(String(100), nullable=False)
    min_amount: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)
    duration: Mapped[int | None] = mapped_column(Integer, nullable=True, default=30)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )

    def __repr__(self) -> str:
        return f"<DonationRank id={self.id!r} name={self.name!r} days={self.duration}>"


# ---------------------------------------------------------------------------
# Donation — settled payment record
# ---------------------------------------------------------------------------
class Donation(Base):
    __tablename__ = "donations"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    user_id: Mapped[int | None] = mapped_column(
        BigInteger, ForeignKey("users.id", ondelete="SET NULL"), nullable=True
    )
    amount: Mapped[float] = mapped_column(Float, nullable=False)
    currency: Mapped[str] = mapped_column(String(3), nullable=False, default="USD")
    method: Mapped[str | None] = mapped_column(String(50), default=None)
    message: Mapped[str | None] = mapped_column(Text, default=None)
    payment_id: Mapped[str | None] = mapped_column(String(100), default=None)
    # One donation per invoice: the storage-level settlement guard
    invoice_id: Mapped[str | None] = mapped_column(String(36), nullable=True, unique=True)
    rank_id: Mapped[str | None] = mapped_column(String(50), default=None)
    days: Mapped[int | None] = mapped_column(Integer, default=None)
    payment_type: Mapped[str] = mapped_column(String(30), nullable=False, default="one_time")
    status: Mapped[str] = mapped_column(String(20), nullable=False, default="completed")
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )

    __table_args__ = (
        Index("ix_donations_user", "user_id"),
    )

    def __repr__(self) -> str:
        return f"<Donation id={self.id} user={self.user_id} amount={self.amount}>"
