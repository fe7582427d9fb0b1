"""
hdpay.services.notification_service — Donation Announcements
=============================================================

Posts a Discord webhook embed after a crypto donation settles.  Entirely
best-effort: a missing webhook URL, a timeout or a rejected payload is
logged and swallowed, because settlement has already committed by the time
this runs.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import UTC, datetime

import httpx

logger = logging.getLogger(__name__)

EMBED_COLOR = 0x00FF88
FOOTER_TEXT = "hdpay"


@dataclass(frozen=True, slots=True)
class DonationNotice:
    username: str
    amount: float
    currency: str = "USD"
    crypto_currency: str | None = None
    rank_name: str | None = None
    days: int | None = None
    message: str | None = None


def build_donation_embed(notice: DonationNotice) -> dict:
    """Discord embed payload for one settled donation."""
    method = f"Crypto ({notice.crypto_currency})" if notice.crypto_currency else "Crypto"
    fields = [
        {"name": "Amount", "value": f"${notice.amount:.2f} {notice.currency}", "inline": True},
        {"name": "Method", "value": method, "inline": True},
    ]
    if notice.rank_name:
        fields.append({"name": "Rank", "value": notice.rank_name, "inline": True})
    if notice.days and notice.days > 0:
        fields.append({"name": "Duration", "value": f"{notice.days} days", "inline": True})
    if notice.message:
        fields.append({"name": "Message", "value": notice.message[:1024], "inline": False})

    return {
        "title": "New Donation!",
        "description": f"**{notice.username}** just supported the server!",
        "color": EMBED_COLOR,
        "fields": fields,
        "footer": {"text": FOOTER_TEXT},
        "timestamp": datetime.now(UTC).isoformat(),
    }


class DonationNotifier:
    """Sends :class:`DonationNotice` embeds to a webhook, if one is configured."""

    def __init__(self, client: httpx.Client, webhook_url: str | None) -> None:
        self.client = client
        self.webhook_url = webhook_url or None

    def send(self, notice: DonationNotice) -> bool:
        if self.webhook_url is None:
            logger.debug("No donation webhook configured, skipping notification")
            return False
        try:
            response = self.client.post(
                self.webhook_url, json={"embeds": [build_donation_embed(notice)]},
            )
        except httpx.HTTPError as exc:
            logger.warning("Donation webhook failed: %s", exc)
            return False
        if response.status_code >= 400:
            logger.warning("Donation webhook rejected: HTTP %d", response.status_code)
            return False
        return True
