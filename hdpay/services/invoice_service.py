"""
hdpay.services.invoice_service — Invoice Lifecycle
===================================================

Creates payment requests bound to a freshly derived address and a locked
exchange rate, and handles the one status change that does not come from
the chain: cancelling a still-pending invoice.

State machine::

    pending ──► partially_paid ──► paid | overpaid
       │
       └──► cancelled

Every other transition belongs to
:mod:`hdpay.services.transaction_checker`.
"""

from __future__ import annotations

import logging
import secrets
import string
import time
import uuid
from datetime import UTC, datetime
from decimal import Decimal, InvalidOperation

from sqlalchemy import Engine, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, selectinload

from hdpay.constants import FIAT_CURRENCY
from hdpay.database.engine import get_session
from hdpay.database.models import (
    AuditAction,
    DonationRank,
    Invoice,
    InvoiceStatus,
    User,
)
from hdpay.engine.settlement import crypto_amount_for
from hdpay.exceptions import ConcurrencyConflict, DomainInvariantViolation, NotFoundError
from hdpay.services import audit_service
from hdpay.services.exchange_rate_service import ExchangeRateService
from hdpay.services.qr_service import render_qr_data_url
from hdpay.services.wallet_service import WalletManager

logger = logging.getLogger(__name__)

_SUFFIX_ALPHABET = string.ascii_uppercase + string.digits


def generate_invoice_number() -> str:
    """``INV-<epoch millis>-<6 random uppercase alphanumerics>``."""
    suffix = "".join(secrets.choice(_SUFFIX_ALPHABET) for _ in range(6))
    return f"INV-{int(time.time() * 1000)}-{suffix}"


def _to_decimal(value) -> Decimal:
    try:
        amount = Decimal(str(value))
    except InvalidOperation:
        raise ValueError(f"Invalid amount: {value!r}") from None
    if not amount.is_finite() or amount <= 0:
        raise ValueError(f"Amount must be positive, got {value!r}")
    return amount


class InvoiceService:
    """Invoice creation, cancellation and reads."""

    def __init__(
        self,
        engine: Engine,
        wallets: WalletManager,
        rates: ExchangeRateService,
    ) -> None:
        self.engine = engine
        self.wallets = wallets
        self.rates = rates

    def create_invoice(
        self,
        wallet_id: int,
        password: str,
        fiat_amount,
        currency: str | None = None,
        *,
        rank_id: str | None = None,
        user_id: int | None = None,
        username: str | None = None,
        email: str | None = None,
        memo: str | None = None,
        ip_address: str | None = None,
    ) -> Invoice:
        """Bind a new pending invoice to the wallet's next address.

        The exchange rate fetched here is stored on the invoice and used for
        every later settlement calculation.

        Raises
        ------
        AuthorizationError
            Wrong wallet password (or unknown wallet).
        UpstreamUnavailable
            No fresh exchange rate could be obtained.
        """
        amount = _to_decimal(fiat_amount)
        wallet = self.wallets.authorize(
            wallet_id, password, operation="create_invoice", ip_address=ip_address,
        )
        if currency is not None and currency.upper() != wallet.currency:
            raise ValueError(
                f"Wallet {wallet_id} holds {wallet.currency}, not {currency.upper()}"
            )

        rank_name = None
        with Session(self.engine) as session:
            if rank_id is not None:
                rank = session.get(DonationRank, rank_id)
                if rank is None:
                    raise NotFoundError(f"Rank {rank_id!r} not found")
                rank_name = rank.name
            if user_id is not None and (username is None or email is None):
                user = session.get(User, user_id)
                if user is not None:
                    username = username or user.username
                    email = email or user.email

        rate = self.rates.get_rate(wallet.currency)
        crypto_amount = crypto_amount_for(amount, rate)

        try:
            with get_session(self.engine) as session:
                address, index = self.wallets.allocate_address(session, wallet)
                invoice = Invoice(
                    id=str(uuid.uuid4()),
                    invoice_number=generate_invoice_number(),
                    user_id=user_id,
                    username=username,
                    email=email,
                    rank_id=rank_id,
                    rank_name=rank_name,
                    usd_amount=float(amount),
                    fiat_currency=FIAT_CURRENCY,
                    currency=wallet.currency,
                    crypto_amount=crypto_amount,
                    exchange_rate=rate,
                    wallet_id=wallet.id,
                    derivation_index=index,
                    payment_address=address,
                    qr_code_data_url=render_qr_data_url(address),
                    status=InvoiceStatus.PENDING.value,
                    total_received=Decimal("0"),
                    total_received_usd=0.0,
                    check_count=0,
                    memo=memo,
                )
                session.add(invoice)
                session.flush()
                audit_service.record(
                    session, AuditAction.INVOICE_CREATED,
                    wallet_id=wallet.id,
                    invoice_id=invoice.id,
                    user_id=user_id,
                    details={
                        "invoice_number": invoice.invoice_number,
                        "usd_amount": float(amount),
                        "crypto_amount": crypto_amount,
                        "exchange_rate": rate,
                        "derivation_index": index,
                        "address": address,
                    },
                    ip_address=ip_address,
                )
                session.refresh(invoice)
        except IntegrityError as exc:
            raise ConcurrencyConflict("Invoice allocation collided; retry") from exc

        logger.info(
            "Invoice %s: $%s → %s %s at index %d",
            invoice.invoice_number, amount, crypto_amount, wallet.currency, index,
        )
        return invoice

    def cancel_invoice(
        self, invoice_id: str, *, reason: str | None = None, ip_address: str | None = None,
    ) -> Invoice:
        """Cancel a still-pending invoice.

        Raises
        ------
        DomainInvariantViolation
            If any payment has been seen or the invoice is already terminal.
        """
        with get_session(self.engine) as session:
            invoice = session.get(Invoice, invoice_id, with_for_update=True)
            if invoice is None:
                raise NotFoundError(f"Invoice {invoice_id} not found")
            if invoice.status != InvoiceStatus.PENDING:
                raise DomainInvariantViolation(
                    f"Invoice {invoice.invoice_number} is {invoice.status}; only pending invoices can be cancelled"
                )
            invoice.status = InvoiceStatus.CANCELLED.value
            invoice.cancelled_at = datetime.now(UTC)
            audit_service.record(
                session, AuditAction.INVOICE_CANCELLED,
                wallet_id=invoice.wallet_id,
                invoice_id=invoice.id,
                user_id=invoice.user_id,
                details={"reason": reason} if reason else None,
                ip_address=ip_address,
            )
            session.flush()
            session.refresh(invoice)

        logger.info("Invoice %s cancelled", invoice.invoice_number)
        return invoice

    def get_invoice(self, invoice_id: str) -> Invoice:
        """Invoice with its transactions loaded."""
        with Session(self.engine, expire_on_commit=False) as session:
            invoice = session.scalar(
                select(Invoice)
                .options(selectinload(Invoice.transactions))
                .where(Invoice.id == invoice_id)
            )
            if invoice is None:
                raise NotFoundError(f"Invoice {invoice_id} not found")
            session.expunge_all()
            return invoice

    def list_invoices(
        self, *, status: str | None = None, wallet_id: int | None = None, limit: int = 100,
    ) -> list[Invoice]:
        with Session(self.engine, expire_on_commit=False) as session:
            stmt = select(Invoice).order_by(Invoice.created_at.desc(), Invoice.id)
            if status is not None:
                stmt = stmt.where(Invoice.status == status)
            if wallet_id is not None:
                stmt = stmt.where(Invoice.wallet_id == wallet_id)
            invoices = list(session.scalars(stmt.limit(limit)))
            session.expunge_all()
            return invoices
