"""
tests/test_notifications.py — Donation webhook, QR codes & audit payloads
==========================================================================
"""

from __future__ import annotations

import base64
import json
from datetime import UTC, datetime
from decimal import Decimal

import httpx
import pytest

from hdpay.services.audit_service import _jsonable
from hdpay.services.notification_service import (
    EMBED_COLOR,
    DonationNotice,
    DonationNotifier,
    build_donation_embed,
)
from hdpay.services.qr_service import DATA_URL_PREFIX, render_qr_data_url

WEBHOOK = "https://discord.test/api/webhooks/1/abc"


def _notifier(handler, url=WEBHOOK):
    return DonationNotifier(httpx.Client(transport=httpx.MockTransport(handler)), url)


class TestEmbed:
    def test_full_notice(self):
        embed = build_donation_embed(DonationNotice(
            username="alice", amount=50, crypto_currency="BTC",
            rank_name="VIP", days=30, message="keep it up",
        ))
        fields = {f["name"]: f["value"] for f in embed["fields"]}

        assert embed["color"] == EMBED_COLOR
        assert "**alice**" in embed["description"]
        assert fields == {
            "Amount": "$50.00 USD",
            "Method": "Crypto (BTC)",
            "Rank": "VIP",
            "Duration": "30 days",
            "Message": "keep it up",
        }

    def test_minimal_notice(self):
        embed = build_donation_embed(DonationNotice(username="Anonymous", amount=5.5))
        assert [f["name"] for f in embed["fields"]] == ["Amount", "Method"]
        assert embed["fields"][1]["value"] == "Crypto"

    def test_long_message_is_truncated(self):
        embed = build_donation_embed(DonationNotice(username="a", amount=1, message="x" * 5000))
        assert len(embed["fields"][-1]["value"]) == 1024


class TestNotifier:
    def test_posts_embed(self):
        seen = []

        def handler(request):
            seen.append(request)
            return httpx.Response(204)

        notice = DonationNotice(username="alice", amount=50, crypto_currency="ETH")
        assert _notifier(handler).send(notice) is True

        [request] = seen
        assert str(request.url) == WEBHOOK
        body = json.loads(request.content)
        assert body["embeds"][0]["title"] == "New Donation!"

    def test_without_webhook_does_nothing(self):
        def handler(request):
            raise AssertionError("no request expected")

        assert _notifier(handler, url="").send(DonationNotice(username="a", amount=1)) is False

    def test_rejected_payload(self):
        notifier = _notifier(lambda request: httpx.Response(400))
        assert notifier.send(DonationNotice(username="a", amount=1)) is False

    def test_network_error_is_swallowed(self):
        def handler(request):
            raise httpx.ConnectError("unreachable", request=request)

        assert _notifier(handler).send(DonationNotice(username="a", amount=1)) is False


class TestQrCode:
    def test_png_data_url(self):
        url = render_qr_data_url("bc1qexampleaddress")
        assert url.startswith(DATA_URL_PREFIX)
        png = base64.b64decode(url[len(DATA_URL_PREFIX):])
        assert png[:8] == b"\x89PNG\r\n\x1a\n"

    def test_empty_payload(self):
        with pytest.raises(ValueError):
            render_qr_data_url("")


class TestAuditDetails:
    def test_decimals_and_datetimes_are_stringified(self):
        when = datetime(2026, 1, 2, 3, 4, 5, tzinfo=UTC)
        assert _jsonable({"amount": Decimal("0.00100000"), "at": when, "n": 3}) == {
            "amount": "0.00100000",
            "at": "2026-01-02T03:04:05+00:00",
            "n": 3,
        }

    def test_none(self):
        assert _jsonable(None) is None
