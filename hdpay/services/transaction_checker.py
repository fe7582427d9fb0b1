"""
hdpay.services.transaction_checker — Chain Reconciliation & Settlement
=======================================================================

**Why this file exists:**
Payers send funds to an invoice's address whenever they like; the only way
to find out is to ask the chain.  This module does that for one invoice at
a time, records what it finds exactly once, recomputes the invoice's
totals and status from scratch, and — the first time an invoice is fully
paid — settles it into a donation plus a rank grant.

One check, in order:

1. Read a snapshot of the invoice.  Terminal invoices stop here.
2. Query the explorer for the invoice's address (no transaction open).
3. Fetch the current USD rate only if an unseen hash came back.
4. One write transaction: bump the liveness counters (this also takes
   the row lock), re-read the invoice, ingest each transaction through a
   SAVEPOINT guarded by the unique ``tx_hash``, advance confirmations,
   recompute totals from *all* of the invoice's transactions, apply the
   status rule, and settle in the same transaction.  The unique
   ``donations.invoice_id`` makes settlement exactly-once even if two
   checkers race.
5. After commit, announce a settlement (best-effort).

Any failure after step 1 still bumps ``last_checked_at``/``check_count``
so a stalled checker is visible, and leaves everything else untouched.

Settlement counts **confirmed** transactions only: an invoice becomes
``paid``/``overpaid`` once transactions with at least the wallet's
``min_confirmations`` cover the expected amount, and the paid/overpaid
split, the donation amount and the lifetime total all use that confirmed
sum.  Unconfirmed value makes an invoice ``partially_paid`` at most;
``total_received`` reports everything seen, confirmed or not.
"""

from __future__ import annotations

import logging
from collections.abc import Callable, Iterable
from dataclasses import dataclass, field
from datetime import UTC, datetime
from decimal import Decimal

from sqlalchemy import Engine, func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from hdpay.constants import DEFAULT_MIN_CONFIRMATIONS, DEFAULT_RANK_DAYS
from hdpay.database.engine import get_session
from hdpay.database.models import (
    OPEN_INVOICE_STATUSES,
    SETTLED_INVOICE_STATUSES,
    AuditAction,
    ChainTransaction,
    Donation,
    Invoice,
    InvoiceStatus,
    TransactionStatus,
    Wallet,
)
from hdpay.engine.settlement import (
    DEFAULT_TOLERANCE,
    ensure_utc,
    fiat_value,
    resolve_invoice_status,
)
from hdpay.exceptions import (
    ConcurrencyConflict,
    DomainInvariantViolation,
    NotFoundError,
    UpstreamUnavailable,
)
from hdpay.services import audit_service, entitlement_service
from hdpay.services.exchange_rate_service import ExchangeRateService
from hdpay.services.explorers import ExplorerGateway, ExplorerTransaction
from hdpay.services.notification_service import DonationNotice, DonationNotifier

logger = logging.getLogger(__name__)

AUTO_CHECK = "auto_check"
MANUAL_CHECK = "manual_check"


def _utcnow() -> datetime:
    return datetime.now(UTC)


@dataclass(frozen=True, slots=True)
class InvoiceSnapshot:
    """Read-only view of an invoice taken before any network call."""

    id: str
    status: str
    currency: str
    network: str
    address: str
    min_confirmations: int
    known_hashes: frozenset[str]


@dataclass(slots=True)
class CheckResult:
    """Outcome of one :meth:`TransactionChecker.check_invoice` call."""

    invoice_id: str
    status: str
    skipped: bool = False
    new_transactions: int = 0
    newly_confirmed: int = 0
    rejected_transactions: int = 0
    status_changed: bool = False
    settled: bool = False
    total_received: Decimal = Decimal("0")
    donation_id: int | None = None
    notice: DonationNotice | None = field(default=None, repr=False)

    @property
    def had_activity(self) -> bool:
        return bool(self.new_transactions or self.newly_confirmed or self.status_changed)


@dataclass(frozen=True, slots=True)
class CheckerHealth:
    open_invoices: int
    never_checked: int
    oldest_check: datetime | None
    lag_seconds: float | None


class TransactionChecker:
    """Reconciles open invoices against the chain and settles paid ones."""

    def __init__(
        self,
        engine: Engine,
        rates: ExchangeRateService,
        explorers: ExplorerGateway,
        *,
        tolerance: Decimal = DEFAULT_TOLERANCE,
        default_rank_days: int = DEFAULT_RANK_DAYS,
        notifier: DonationNotifier | None = None,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self.engine = engine
        self.rates = rates
        self.explorers = explorers
        self.tolerance = tolerance
        self.default_rank_days = default_rank_days
        self.notifier = notifier
        self._clock = clock

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------
    def check_invoice(self, invoice_id: str, *, detection_method: str = AUTO_CHECK) -> CheckResult:
        """Reconcile one invoice against the chain.

        Raises
        ------
        NotFoundError
            Unknown invoice.
        UpstreamUnavailable
            The explorer failed; only the liveness counters were updated.
        """
        snapshot = self._snapshot(invoice_id)
        if snapshot.status not in OPEN_INVOICE_STATUSES:
            return CheckResult(invoice_id=invoice_id, status=snapshot.status, skipped=True)

        try:
            chain = self.explorers.fetch_transactions(
                snapshot.currency, snapshot.network, snapshot.address,
            )
        except UpstreamUnavailable:
            self._touch(invoice_id)
            raise

        rate = None
        if any(tx.tx_hash not in snapshot.known_hashes for tx in chain):
            try:
                rate = self.rates.get_rate(snapshot.currency)
            except UpstreamUnavailable as exc:
                # Only the per-transaction USD report needs it
                logger.warning("No %s rate for new payment on %s: %s", snapshot.currency, invoice_id, exc)

        try:
            result = self._apply(invoice_id, chain, rate, snapshot.min_confirmations, detection_method)
        except Exception:
            self._touch(invoice_id)
            raise

        if result.notice is not None and self.notifier is not None:
            self.notifier.send(result.notice)
        return result

    def open_invoice_ids(self) -> list[str]:
        """Ids of every pending/partially_paid invoice, least recently checked first."""
        with Session(self.engine) as session:
            return list(session.scalars(
                select(Invoice.id)
                .where(Invoice.status.in_(OPEN_INVOICE_STATUSES))
                .order_by(Invoice.check_count, Invoice.created_at)
            ))

    def check_all_pending_invoices(self, *, detection_method: str = AUTO_CHECK) -> int:
        """Sweep every open invoice; returns how many had new activity.

        One invoice's failure is logged and never stops the sweep.
        """
        active = 0
        for invoice_id in self.open_invoice_ids():
            try:
                result = self.check_invoice(invoice_id, detection_method=detection_method)
            except UpstreamUnavailable as exc:
                logger.warning("Check of invoice %s deferred: %s", invoice_id, exc)
                continue
            except Exception:
                logger.exception("Check of invoice %s failed", invoice_id)
                continue
            if result.had_activity:
                active += 1
        logger.info("Sweep finished: %d invoice(s) with new activity", active)
        return active

    def health(self, now: datetime | None = None) -> CheckerHealth:
        return get_checker_health(self.engine, now or self._clock())

    # ------------------------------------------------------------------
    # Steps
    # ------------------------------------------------------------------
    def _snapshot(self, invoice_id: str) -> InvoiceSnapshot:
        with Session(self.engine) as session:
            invoice = session.get(Invoice, invoice_id)
            if invoice is None:
                raise NotFoundError(f"Invoice {invoice_id} not found")
            wallet = session.get(Wallet, invoice.wallet_id) if invoice.wallet_id else None
            if wallet is None and invoice.status in OPEN_INVOICE_STATUSES:
                raise DomainInvariantViolation(f"Open invoice {invoice_id} has no wallet")
            hashes = session.scalars(
                select(ChainTransaction.tx_hash).where(ChainTransaction.invoice_id == invoice_id)
            )
            return InvoiceSnapshot(
                id=invoice.id,
                status=invoice.status,
                currency=invoice.currency,
                network=wallet.network if wallet else "",
                address=invoice.payment_address,
                min_confirmations=(
                    wallet.min_confirmations if wallet else DEFAULT_MIN_CONFIRMATIONS
                ),
                known_hashes=frozenset(hashes),
            )

    def _touch(self, invoice_id: str) -> None:
        """Liveness only: bump ``check_count`` and ``last_checked_at``."""
        with get_session(self.engine) as session:
            session.execute(
                update(Invoice)
                .where(Invoice.id == invoice_id, Invoice.status.in_(OPEN_INVOICE_STATUSES))
                .values(check_count=Invoice.check_count + 1, last_checked_at=self._clock())
            )

    def _apply(
        self,
        invoice_id: str,
        chain: Iterable[ExplorerTransaction],
        rate: Decimal | None,
        min_confirmations: int,
        detection_method: str,
    ) -> CheckResult:
        now = self._clock()
        with get_session(self.engine) as session:
            # First statement is a write so the row lock is held from here on
            session.execute(
                update(Invoice)
                .where(Invoice.id == invoice_id)
                .values(check_count=Invoice.check_count + 1, last_checked_at=now)
            )
            invoice = session.get(
                Invoice, invoice_id, with_for_update=True, populate_existing=True,
            )
            result = CheckResult(invoice_id=invoice_id, status=invoice.status)
            if invoice.status not in OPEN_INVOICE_STATUSES:
                # Another checker finished it since the snapshot
                result.skipped = True
                return result

            for tx in chain:
                self._ingest(session, invoice, tx, rate, min_confirmations, detection_method, now, result)
            session.flush()

            received, confirmed = self._totals(session, invoice_id)
            invoice.total_received = received
            invoice.total_received_usd = fiat_value(received, invoice.exchange_rate)
            result.total_received = received

            new_status = self._status_for(received, confirmed, invoice.crypto_amount)
            if new_status != invoice.status:
                logger.info(
                    "Invoice %s: %s → %s (received %s / %s %s)",
                    invoice.invoice_number, invoice.status, new_status,
                    received, invoice.crypto_amount, invoice.currency,
                )
                invoice.status = new_status.value
                result.status_changed = True
            result.status = invoice.status

            if new_status in SETTLED_INVOICE_STATUSES:
                invoice.paid_at = invoice.paid_at or now
                donation = self._settle(session, invoice, confirmed, now)
                if donation is not None:
                    result.settled = True
                    result.donation_id = donation.id
                    result.notice = DonationNotice(
                        username=invoice.username or "Anonymous",
                        amount=donation.amount,
                        crypto_currency=invoice.currency,
                        rank_name=invoice.rank_name,
                        days=donation.days,
                        message=invoice.memo,
                    )
            return result

    def _ingest(
        self,
        session: Session,
        invoice: Invoice,
        tx: ExplorerTransaction,
        rate: Decimal | None,
        min_confirmations: int,
        detection_method: str,
        now: datetime,
        result: CheckResult,
    ) -> None:
        """Record *tx* once; on later sightings only advance confirmations."""
        existing = session.scalar(
            select(ChainTransaction).where(ChainTransaction.tx_hash == tx.tx_hash)
        )
        if existing is None:
            confirmed = tx.confirmations >= min_confirmations
            row = ChainTransaction(
                invoice_id=invoice.id,
                tx_hash=tx.tx_hash,
                from_address=tx.from_address,
                to_address=tx.to_address,
                amount=tx.amount,
                currency=invoice.currency,
                network=invoice.wallet.network if invoice.wallet else None,
                usd_value=fiat_value(tx.amount, rate) if rate is not None else None,
                exchange_rate=rate,
                status=(TransactionStatus.CONFIRMED if confirmed else TransactionStatus.CONFIRMING).value,
                confirmations=tx.confirmations,
                required_confirmations=min_confirmations,
                block_number=tx.block_number,
                block_timestamp=tx.timestamp,
                fee=tx.fee,
                detection_method=detection_method,
                detected_at=now,
                confirmed_at=now if confirmed else None,
            )
            try:
                with session.begin_nested():
                    session.add(row)
                    session.flush()
            except IntegrityError:
                # A concurrent checker recorded the same hash first
                existing = session.scalar(
                    select(ChainTransaction).where(ChainTransaction.tx_hash == tx.tx_hash)
                )
                if existing is None:
                    raise ConcurrencyConflict(f"Insert of {tx.tx_hash} collided") from None
            else:
                result.new_transactions += 1
                audit_service.record(
                    session, AuditAction.PAYMENT_DETECTED,
                    wallet_id=invoice.wallet_id,
                    invoice_id=invoice.id,
                    user_id=invoice.user_id,
                    details={
                        "tx_hash": tx.tx_hash,
                        "amount": tx.amount,
                        "currency": invoice.currency,
                        "confirmations": tx.confirmations,
                        "detection_method": detection_method,
                    },
                )
                logger.info(
                    "Payment %s of %s %s detected for invoice %s (%d conf)",
                    tx.tx_hash, tx.amount, invoice.currency, invoice.invoice_number, tx.confirmations,
                )
                return

        if existing.invoice_id != invoice.id:
            result.rejected_transactions += 1
            logger.critical(
                "Rejected tx %s for invoice %s: already credited to invoice %s",
                tx.tx_hash, invoice.id, existing.invoice_id,
            )
            return

        if tx.confirmations > existing.confirmations:
            existing.confirmations = tx.confirmations
            if existing.block_number is None and tx.block_number is not None:
                existing.block_number = tx.block_number
                existing.block_timestamp = tx.timestamp

        if (
            existing.status == TransactionStatus.CONFIRMING
            and existing.confirmations >= existing.required_confirmations
        ):
            existing.status = TransactionStatus.CONFIRMED.value
            existing.confirmed_at = now
            result.newly_confirmed += 1
            audit_service.record(
                session, AuditAction.PAYMENT_CONFIRMED,
                wallet_id=invoice.wallet_id,
                invoice_id=invoice.id,
                user_id=invoice.user_id,
                details={"tx_hash": existing.tx_hash, "confirmations": existing.confirmations},
            )

    @staticmethod
    def _totals(session: Session, invoice_id: str) -> tuple[Decimal, Decimal]:
        """(all received, confirmed received) over every transaction of the invoice."""
        rows = session.scalars(
            select(ChainTransaction).where(ChainTransaction.invoice_id == invoice_id)
        ).all()
        received = sum((row.amount for row in rows), Decimal("0"))
        confirmed = sum(
            (row.amount for row in rows if row.status == TransactionStatus.CONFIRMED),
            Decimal("0"),
        )
        return received, confirmed

    def _status_for(self, received: Decimal, confirmed: Decimal, expected: Decimal) -> InvoiceStatus:
        """Paid/overpaid from confirmed value; anything seen short of that is partial."""
        status = resolve_invoice_status(confirmed, expected, self.tolerance)
        if status in SETTLED_INVOICE_STATUSES:
            return status
        return InvoiceStatus.PARTIALLY_PAID if received > 0 else InvoiceStatus.PENDING

    def _settle(
        self, session: Session, invoice: Invoice, confirmed: Decimal, now: datetime,
    ) -> Donation | None:
        """Turn a paid invoice into a donation + rank grant, at most once.

        Only *confirmed* value is credited; unconfirmed transactions can still
        be double-spent.
        """
        if invoice.donation_id is not None:
            return None

        amount = fiat_value(confirmed, invoice.exchange_rate)
        days = None
        if invoice.rank_id is not None:
            days = entitlement_service.rank_duration(
                session, invoice.rank_id, self.default_rank_days,
            )

        try:
            with session.begin_nested():
                donation = entitlement_service.create_donation(
                    session,
                    user_id=invoice.user_id,
                    amount=amount,
                    method=f"Crypto ({invoice.currency})",
                    rank_id=invoice.rank_id,
                    days=days,
                    invoice_id=invoice.id,
                    payment_id=invoice.id,
                    message=invoice.memo,
                )
        except IntegrityError:
            logger.warning("Invoice %s was already settled by a concurrent checker", invoice.id)
            return None

        invoice.donation_id = donation.id
        expires_at = None
        if invoice.user_id is not None:
            if invoice.rank_id is not None:
                expires_at = entitlement_service.assign_rank_subscription(
                    session, invoice.user_id, invoice.rank_id, days, now,
                )
            entitlement_service.add_to_total_donated(session, invoice.user_id, amount)

        audit_service.record(
            session, AuditAction.INVOICE_SETTLED,
            wallet_id=invoice.wallet_id,
            invoice_id=invoice.id,
            user_id=invoice.user_id,
            details={
                "donation_id": donation.id,
                "confirmed_received": confirmed,
                "amount_usd": amount,
                "rank_id": invoice.rank_id,
                "days": days,
                "rank_expires_at": expires_at,
            },
        )
        logger.info(
            "Invoice %s settled → donation %d ($%.2f)", invoice.invoice_number, donation.id, amount,
        )
        return donation


# ---------------------------------------------------------------------------
# Liveness
# ---------------------------------------------------------------------------
def get_checker_health(engine: Engine, now: datetime | None = None) -> CheckerHealth:
    """How stale the oldest open invoice's last check is."""
    now = now or _utcnow()
    with Session(engine) as session:
        open_filter = Invoice.status.in_(OPEN_INVOICE_STATUSES)
        open_count = session.scalar(select(func.count(Invoice.id)).where(open_filter)) or 0
        never = session.scalar(
            select(func.count(Invoice.id)).where(open_filter, Invoice.last_checked_at.is_(None))
        ) or 0
        oldest = ensure_utc(session.scalar(
            select(func.min(Invoice.last_checked_at)).where(open_filter)
        ))

    lag = (now - oldest).total_seconds() if oldest is not None else None
    return CheckerHealth(
        open_invoices=open_count,
        never_checked=never,
        oldest_check=oldest,
        lag_seconds=lag,
    )
