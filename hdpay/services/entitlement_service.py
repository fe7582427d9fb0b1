"""
hdpay.services.entitlement_service — Donations & Timed Ranks
=============================================================

The entitlement side of settlement: a donation row plus a rank that
expires.  The session-level functions run inside the caller's transaction
so the transaction checker can settle an invoice atomically; the
engine-level :func:`expire_ranks` is the hourly cleanup job.

Rank extension rule: a user who already holds the same rank with time
left gets the new days added to their current expiry; anyone else starts
from now.
"""

from __future__ import annotations

import logging
from datetime import UTC, datetime

from sqlalchemy import Engine, select, update
from sqlalchemy.orm import Session

from hdpay.constants import DEFAULT_RANK_DAYS, FIAT_CURRENCY
from hdpay.database.models import Donation, DonationRank, User
from hdpay.engine.settlement import compute_rank_expiry

logger = logging.getLogger(__name__)


def create_donation(
    session: Session,
    *,
    user_id: int | None,
    amount: float,
    method: str,
    currency: str = FIAT_CURRENCY,
    rank_id: str | None = None,
    days: int | None = None,
    invoice_id: str | None = None,
    payment_id: str | None = None,
    message: str | None = None,
) -> Donation:
    """Insert a completed one-time donation and flush to get its id.

    A second donation for the same *invoice_id* violates the unique
    constraint; the ``IntegrityError`` surfaces at flush.
    """
    donation = Donation(
        user_id=user_id,
        amount=round(amount, 2),
        currency=currency,
        method=method,
        message=message,
        payment_id=payment_id,
        invoice_id=invoice_id,
        rank_id=rank_id,
        days=days,
        payment_type="one_time",
        status="completed",
    )
    session.add(donation)
    session.flush()
    return donation


def grant_rank(
    session: Session, user_id: int, rank_id: str, expires_at: datetime,
) -> User | None:
    """Set *user_id*'s rank and its expiry.  Returns ``None`` for unknown users."""
    user = session.get(User, user_id, with_for_update=True)
    if user is None:
        logger.warning("Cannot grant rank %s: user %s does not exist", rank_id, user_id)
        return None
    user.donation_rank_id = rank_id
    user.rank_expires_at = expires_at
    return user


def rank_duration(session: Session, rank_id: str, default_days: int = DEFAULT_RANK_DAYS) -> int:
    rank = session.get(DonationRank, rank_id)
    if rank is None or not rank.duration:
        return default_days
    return rank.duration


def assign_rank_subscription(
    session: Session,
    user_id: int,
    rank_id: str,
    days: int,
    now: datetime | None = None,
) -> datetime | None:
    """Grant or extend *rank_id* on the user by *days*; returns the new expiry."""
    user = session.get(User, user_id, with_for_update=True)
    if user is None:
        logger.warning("Cannot assign rank %s: user %s does not exist", rank_id, user_id)
        return None

    expires_at = compute_rank_expiry(
        user.donation_rank_id, user.rank_expires_at, rank_id, days, now,
    )
    grant_rank(session, user_id, rank_id, expires_at)
    logger.info("User %s holds rank %s until %s", user_id, rank_id, expires_at.isoformat())
    return expires_at


def add_to_total_donated(session: Session, user_id: int, amount: float) -> None:
    user = session.get(User, user_id)
    if user is None:
        return
    user.total_donated = round((user.total_donated or 0.0) + amount, 2)


# ---------------------------------------------------------------------------
# Periodic cleanup
# ---------------------------------------------------------------------------
def expire_ranks(engine: Engine, now: datetime | None = None) -> int:
    """Strip ranks whose expiry has passed.  Returns the number of users touched."""
    now = now or datetime.now(UTC)
    with Session(engine) as session:
        expired_ids = list(session.scalars(
            select(User.id).where(
                User.donation_rank_id.is_not(None),
                User.rank_expires_at.is_not(None),
                User.rank_expires_at <= now,
            )
        ))
        if not expired_ids:
            return 0
        session.execute(
            update(User)
            .where(User.id.in_(expired_ids))
            .values(donation_rank_id=None, rank_expires_at=None)
        )
        session.commit()

    logger.info("Expired ranks for %d user(s)", len(expired_ids))
    return len(expired_ids)
