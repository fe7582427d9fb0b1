"""
hdpay.api.routes.invoices — Public invoice status endpoints
============================================================

Payers poll these.  Upstream trouble never reaches them: a manual check
whose explorer call fails still answers with the last known state and its
``last_checked_at``.
"""

from __future__ import annotations

import logging

from fastapi import APIRouter

from hdpay.api.deps import ContextDep
from hdpay.database.models import ChainTransaction, Invoice
from hdpay.exceptions import UpstreamUnavailable
from hdpay.services.transaction_checker import MANUAL_CHECK

logger = logging.getLogger(__name__)

router = APIRouter(tags=["invoices"])


# ---------------------------------------------------------------------------
# Serializers
# ---------------------------------------------------------------------------
def _iso(value):
    return value.isoformat() if value else None


def _transaction_dict(tx: ChainTransaction) -> dict:
    return {
        "tx_hash": tx.tx_hash,
        "from_address": tx.from_address,
        "amount": format(tx.amount, "f"),
        "usd_value": tx.usd_value,
        "status": tx.status,
        "confirmations": tx.confirmations,
        "required_confirmations": tx.required_confirmations,
        "block_number": tx.block_number,
        "detected_at": _iso(tx.detected_at),
        "confirmed_at": _iso(tx.confirmed_at),
    }


def invoice_dict(invoice: Invoice, transactions: list[ChainTransaction] | None = None) -> dict:
    data = {
        "id": invoice.id,
        "invoice_number": invoice.invoice_number,
        "status": invoice.status,
        "currency": invoice.currency,
        "usd_amount": invoice.usd_amount,
        "crypto_amount": format(invoice.crypto_amount, "f"),
        "exchange_rate": format(invoice.exchange_rate, "f"),
        "payment_address": invoice.payment_address,
        "qr_code_data_url": invoice.qr_code_data_url,
        "total_received": format(invoice.total_received, "f"),
        "total_received_usd": invoice.total_received_usd,
        "rank_name": invoice.rank_name,
        "check_count": invoice.check_count,
        "last_checked_at": _iso(invoice.last_checked_at),
        "paid_at": _iso(invoice.paid_at),
        "cancelled_at": _iso(invoice.cancelled_at),
        "created_at": _iso(invoice.created_at),
    }
    if transactions is not None:
        data["transactions"] = [_transaction_dict(tx) for tx in transactions]
    return data


# ---------------------------------------------------------------------------
# Endpoints
# ---------------------------------------------------------------------------
@router.get("/invoices/{invoice_id}")
def get_invoice(invoice_id: str, ctx: ContextDep):
    invoice = ctx.invoices.get_invoice(invoice_id)
    return invoice_dict(invoice, invoice.transactions)


@router.post("/invoices/{invoice_id}/check")
def check_invoice(invoice_id: str, ctx: ContextDep):
    """Run one on-demand check, then return the invoice as it now stands."""
    try:
        ctx.checker.check_invoice(invoice_id, detection_method=MANUAL_CHECK)
    except UpstreamUnavailable as exc:
        logger.warning("Manual check of %s deferred: %s", invoice_id, exc)
    invoice = ctx.invoices.get_invoice(invoice_id)
    return invoice_dict(invoice, invoice.transactions)


@router.get("/health/checker")
def checker_health(ctx: ContextDep):
    health = ctx.checker.health()
    return {
        "open_invoices": health.open_invoices,
        "never_checked": health.never_checked,
        "oldest_check": _iso(health.oldest_check),
        "lag_seconds": health.lag_seconds,
    }
