"""
hdpay.services.audit_service — Wallet Audit Trail
==================================================

Single entry point for ``crypto_wallet_audit_log``.  Every state-changing
wallet/invoice boundary calls :func:`record` inside its own transaction so
the audit row commits (or rolls back) together with the change it
describes.  Denied accesses have no surrounding change to ride on, so they
go through :func:`record_standalone`, which commits on its own.

Rows are only ever inserted; nothing in the package updates or deletes
them.
"""

from __future__ import annotations

import logging
from datetime import datetime
from decimal import Decimal
from typing import Any

from sqlalchemy import Engine, select
from sqlalchemy.orm import Session

from hdpay.database.models import AuditAction, WalletAuditLog

logger = logging.getLogger(__name__)


def _jsonable(details: dict[str, Any] | None) -> dict[str, Any] | None:
    """Coerce Decimals and datetimes so the JSONB column accepts them."""
    if details is None:
        return None
    result: dict[str, Any] = {}
    for key, value in details.items():
        if isinstance(value, Decimal):
            value = format(value, "f")
        elif isinstance(value, datetime):
            value = value.isoformat()
        result[key] = value
    return result


def record(
    session: Session,
    action: AuditAction | str,
    *,
    wallet_id: int | None = None,
    invoice_id: str | None = None,
    user_id: int | None = None,
    details: dict[str, Any] | None = None,
    success: bool = True,
    error_message: str | None = None,
    ip_address: str | None = None,
) -> WalletAuditLog:
    """Insert one audit row within the caller's transaction."""
    entry = WalletAuditLog(
        wallet_id=wallet_id,
        invoice_id=invoice_id,
        user_id=user_id,
        action=str(action),
        details=_jsonable(details),
        success=success,
        error_message=error_message,
        ip_address=ip_address,
    )
    session.add(entry)
    return entry


def record_standalone(engine: Engine, action: AuditAction | str, **kwargs: Any) -> None:
    """Insert and commit one audit row in a dedicated session."""
    with Session(engine) as session:
        record(session, action, **kwargs)
        session.commit()
    if not kwargs.get("success", True):
        logger.warning(
            "Audit: %s wallet=%s (%s)",
            action, kwargs.get("wallet_id"), kwargs.get("error_message"),
        )


def list_entries(
    engine: Engine,
    *,
    wallet_id: int | None = None,
    invoice_id: str | None = None,
    limit: int = 100,
) -> list[WalletAuditLog]:
    """Most recent audit rows, newest first."""
    with Session(engine, expire_on_commit=False) as session:
        stmt = select(WalletAuditLog)
        if wallet_id is not None:
            stmt = stmt.where(WalletAuditLog.wallet_id == wallet_id)
        if invoice_id is not None:
            stmt = stmt.where(WalletAuditLog.invoice_id == invoice_id)
        stmt = stmt.order_by(WalletAuditLog.id.desc()).limit(limit)
        rows = list(session.scalars(stmt))
        session.expunge_all()
        return rows
