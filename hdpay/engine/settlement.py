"""
hdpay.engine.settlement — Pure Settlement Math
===============================================

The decision rules the transaction checker and invoice lifecycle share:
crypto amount for a fiat request, invoice status for a received total, the
fiat value credited on settlement and the new expiry of a granted rank.

Everything here is deterministic and side-effect free.
"""

from __future__ import annotations

from datetime import UTC, datetime, timedelta
from decimal import ROUND_HALF_UP, Decimal

from hdpay.database.models import InvoiceStatus

CRYPTO_QUANTUM = Decimal("0.00000001")
FIAT_QUANTUM = Decimal("0.01")
DEFAULT_TOLERANCE = Decimal("0.01")


def ensure_utc(value: datetime | None) -> datetime | None:
    """Attach UTC to naive datetimes (SQLite drops the tzinfo)."""
    if value is None or value.tzinfo is not None:
        return value
    return value.replace(tzinfo=UTC)


def crypto_amount_for(fiat_amount: Decimal, rate: Decimal) -> Decimal:
    """``fiat_amount / rate`` rounded to 8 decimal places."""
    if rate <= 0:
        raise ValueError(f"Exchange rate must be positive, got {rate}")
    return (fiat_amount / rate).quantize(CRYPTO_QUANTUM, rounding=ROUND_HALF_UP)


def fiat_value(amount: Decimal, rate: Decimal) -> float:
    """Fiat value of a crypto *amount* at *rate*, rounded to cents."""
    return float((amount * rate).quantize(FIAT_QUANTUM, rounding=ROUND_HALF_UP))


def resolve_invoice_status(
    received: Decimal,
    expected: Decimal,
    tolerance: Decimal = DEFAULT_TOLERANCE,
) -> InvoiceStatus:
    """Map a cumulative received amount onto an invoice status.

    ``0`` → pending, below expected → partially_paid, up to
    ``expected * (1 + tolerance)`` → paid, above that → overpaid.
    """
    if received <= 0:
        return InvoiceStatus.PENDING
    if received < expected:
        return InvoiceStatus.PARTIALLY_PAID
    if received <= expected * (1 + tolerance):
        return InvoiceStatus.PAID
    return InvoiceStatus.OVERPAID


def compute_rank_expiry(
    current_rank_id: str | None,
    current_expiry: datetime | None,
    new_rank_id: str,
    days: int,
    now: datetime | None = None,
) -> datetime:
    """New expiry for granting *new_rank_id* for *days*.

    Holding the same rank with time left extends from the current expiry;
    anything else starts the clock at *now*.
    """
    now = now or datetime.now(UTC)
    current_expiry = ensure_utc(current_expiry)
    if (
        current_rank_id == new_rank_id
        and current_expiry is not None
        and current_expiry > now
    ):
        return current_expiry + timedelta(days=days)
    return now + timedelta(days=days)
