"""
hdpay.services.exchange_rate_service — Cached USD Rates
========================================================

USD price per asset from the CoinGecko ``simple/price`` endpoint, cached in
``crypto_exchange_rates`` for ``rate_ttl_seconds`` (5 minutes by default).

A cached rate is served only while ``now - last_updated < ttl``; anything
older is refreshed before use.  Concurrent refreshes race benignly: the
last writer wins, since the row is only a cache.  A failed refresh raises
:class:`UpstreamUnavailable` rather than falling back to a stale rate.
"""

from __future__ import annotations

import logging
from collections.abc import Callable, Iterable
from datetime import UTC, datetime, timedelta
from decimal import Decimal, InvalidOperation

import httpx
from sqlalchemy import Engine, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from hdpay.config import DEFAULT_PRICE_ORACLE_URL
from hdpay.constants import get_asset
from hdpay.database.models import ExchangeRate
from hdpay.engine.settlement import ensure_utc
from hdpay.exceptions import UnsupportedCurrency, UpstreamUnavailable
from hdpay.services.upstream import get_json

logger = logging.getLogger(__name__)

PROVIDER = "coingecko"


def _utcnow() -> datetime:
    return datetime.now(UTC)


class ExchangeRateService:
    """DB-backed TTL cache in front of the price oracle."""

    def __init__(
        self,
        engine: Engine,
        client: httpx.Client,
        *,
        base_url: str = DEFAULT_PRICE_ORACLE_URL,
        ttl_seconds: int = 300,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self.engine = engine
        self.client = client
        self.base_url = base_url.rstrip("/")
        self.ttl = timedelta(seconds=ttl_seconds)
        self._clock = clock

    # ------------------------------------------------------------------
    # Cache
    # ------------------------------------------------------------------
    def cached_rate(self, currency: str) -> Decimal | None:
        """Fresh cached rate for *currency*, or ``None`` if absent/stale."""
        with Session(self.engine) as session:
            row = session.scalar(
                select(ExchangeRate).where(ExchangeRate.currency == currency)
            )
            if row is None:
                return None
            if self._clock() - ensure_utc(row.last_updated) >= self.ttl:
                return None
            return row.usd_rate

    def _store(self, currency: str, rate: Decimal) -> None:
        now = self._clock()
        with Session(self.engine) as session:
            row = session.scalar(
                select(ExchangeRate).where(ExchangeRate.currency == currency)
            )
            if row is None:
                try:
                    with session.begin_nested():
                        session.add(ExchangeRate(
                            currency=currency, usd_rate=rate,
                            provider=PROVIDER, last_updated=now,
                        ))
                except IntegrityError:
                    # Another refresher inserted first
                    row = session.scalar(
                        select(ExchangeRate).where(ExchangeRate.currency == currency)
                    )
            if row is not None:
                row.usd_rate = rate
                row.provider = PROVIDER
                row.last_updated = now
            session.commit()

    # ------------------------------------------------------------------
    # Oracle
    # ------------------------------------------------------------------
    def fetch_rate(self, currency: str) -> Decimal:
        """Ask the oracle directly, bypassing the cache."""
        oracle_id = get_asset(currency).oracle_id
        payload = get_json(
            self.client,
            f"{self.base_url}/simple/price",
            params={"ids": oracle_id, "vs_currencies": "usd"},
            source="price oracle",
        )
        try:
            rate = Decimal(str(payload[oracle_id]["usd"]))
        except (KeyError, TypeError, InvalidOperation) as exc:
            raise UpstreamUnavailable(f"Price oracle has no USD rate for {currency}") from exc
        if not rate.is_finite() or rate <= 0:
            raise UpstreamUnavailable(f"Price oracle returned a non-positive rate for {currency}")
        return rate

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------
    def get_rate(self, currency: str) -> Decimal:
        """USD per one unit of *currency*, refreshed if the cache is stale.

        Raises
        ------
        UnsupportedCurrency
            Unknown symbol.
        UpstreamUnavailable
            The cache was stale and the oracle could not be reached.
        """
        currency = get_asset(currency).symbol
        cached = self.cached_rate(currency)
        if cached is not None:
            return cached

        rate = self.fetch_rate(currency)
        self._store(currency, rate)
        logger.info("Refreshed %s rate: $%s", currency, rate)
        return rate

    def get_rates(self, currencies: Iterable[str]) -> dict[str, Decimal]:
        """Best-effort multi-asset lookup; failing assets are skipped."""
        rates: dict[str, Decimal] = {}
        for currency in currencies:
            try:
                rates[currency.upper()] = self.get_rate(currency)
            except (UpstreamUnavailable, UnsupportedCurrency) as exc:
                logger.warning("Skipping %s rate: %s", currency, exc)
        return rates
