"""
hdpay.api.routes.admin — Wallet & invoice administration (JWT‑protected)
=========================================================================

Wallet passwords travel in request bodies only; responses never contain
secret material, only the public ``xpub`` and its QR code.
"""

from __future__ import annotations

from decimal import Decimal

from fastapi import APIRouter, Query, Request
from pydantic import BaseModel, Field

from hdpay.api.deps import AdminDep, ContextDep
from hdpay.api.routes.invoices import invoice_dict
from hdpay.constants import Network
from hdpay.database.models import Wallet, WalletAuditLog
from hdpay.services import audit_service

router = APIRouter(prefix="/admin", tags=["admin"])


# ---------------------------------------------------------------------------
# Pydantic schemas
# ---------------------------------------------------------------------------
class WalletCreate(BaseModel):
    currency: str
    password: str = Field(min_length=8)
    network: Network = Network.MAINNET
    label: str | None = None
    min_confirmations: int | None = Field(default=None, ge=1)


class PasswordUpdate(BaseModel):
    old_password: str
    new_password: str = Field(min_length=8)


class WalletPassword(BaseModel):
    password: str


class InvoiceCreate(BaseModel):
    wallet_id: int
    password: str
    amount_usd: Decimal = Field(gt=0)
    currency: str | None = None
    rank_id: str | None = None
    user_id: int | None = None
    username: str | None = None
    email: str | None = None
    memo: str | None = None


class InvoiceCancel(BaseModel):
    reason: str | None = None


# ---------------------------------------------------------------------------
# Serializers
# ---------------------------------------------------------------------------
def _client_ip(request: Request) -> str | None:
    return request.client.host if request.client else None


def _wallet_dict(wallet: Wallet) -> dict:
    return {
        "id": wallet.id,
        "currency": wallet.currency,
        "network": wallet.network,
        "label": wallet.label,
        "master_public_key": wallet.master_public_key,
        "qr_code_data_url": wallet.qr_code_data_url,
        "derivation_path": wallet.derivation_path,
        "next_derivation_index": wallet.next_derivation_index,
        "min_confirmations": wallet.min_confirmations,
        "is_active": wallet.is_active,
        "created_at": wallet.created_at.isoformat() if wallet.created_at else None,
    }


def _audit_dict(entry: WalletAuditLog) -> dict:
    return {
        "id": entry.id,
        "wallet_id": entry.wallet_id,
        "invoice_id": entry.invoice_id,
        "user_id": entry.user_id,
        "action": entry.action,
        "details": entry.details,
        "success": entry.success,
        "error_message": entry.error_message,
        "ip_address": entry.ip_address,
        "created_at": entry.created_at.isoformat() if entry.created_at else None,
    }


# ---------------------------------------------------------------------------
# Wallets
# ---------------------------------------------------------------------------
@router.post("/wallets", status_code=201)
def create_wallet(body: WalletCreate, admin: AdminDep, ctx: ContextDep):
    wallet = ctx.wallets.create_wallet(
        body.currency,
        password=body.password,
        network=body.network,
        label=body.label,
        min_confirmations=body.min_confirmations,
    )
    return _wallet_dict(wallet)


@router.get("/wallets")
def list_wallets(
    admin: AdminDep,
    ctx: ContextDep,
    currency: str | None = Query(None),
):
    return [_wallet_dict(w) for w in ctx.wallets.list_wallets(currency=currency)]


@router.put("/wallets/{wallet_id}/password")
def update_password(
    wallet_id: int, body: PasswordUpdate, request: Request, admin: AdminDep, ctx: ContextDep,
):
    ctx.wallets.update_password(
        wallet_id, body.old_password, body.new_password, ip_address=_client_ip(request),
    )
    return {"status": "ok"}


@router.delete("/wallets/{wallet_id}")
def delete_wallet(
    wallet_id: int, body: WalletPassword, request: Request, admin: AdminDep, ctx: ContextDep,
):
    ctx.wallets.delete_wallet(wallet_id, body.password, ip_address=_client_ip(request))
    return {"status": "deleted"}


@router.get("/wallets/{wallet_id}/audit")
def wallet_audit(
    wallet_id: int,
    admin: AdminDep,
    ctx: ContextDep,
    limit: int = Query(100, ge=1, le=1000),
):
    entries = audit_service.list_entries(ctx.engine, wallet_id=wallet_id, limit=limit)
    return [_audit_dict(e) for e in entries]


# ---------------------------------------------------------------------------
# Invoices
# ---------------------------------------------------------------------------
@router.post("/invoices", status_code=201)
def create_invoice(body: InvoiceCreate, request: Request, admin: AdminDep, ctx: ContextDep):
    invoice = ctx.invoices.create_invoice(
        body.wallet_id,
        body.password,
        body.amount_usd,
        body.currency,
        rank_id=body.rank_id,
        user_id=body.user_id,
        username=body.username,
        email=body.email,
        memo=body.memo,
        ip_address=_client_ip(request),
    )
    return invoice_dict(invoice)


@router.post("/invoices/{invoice_id}/cancel")
def cancel_invoice(
    invoice_id: str, body: InvoiceCancel, request: Request, admin: AdminDep, ctx: ContextDep,
):
    invoice = ctx.invoices.cancel_invoice(
        invoice_id, reason=body.reason, ip_address=_client_ip(request),
    )
    return invoice_dict(invoice)
