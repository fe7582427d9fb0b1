"""
hdpay.services.context — Process-Wide Service Context
======================================================

**Why this file exists:**
The HTTP client, the encryption service, the rate cache and every service
built on them are process-wide.  Instead of module-level globals they hang
off one :class:`AppContext`, built lazily on first use.  Tests construct a
fresh context per run and inject whatever pieces they want to fake by
passing them to the constructor.

Usage::

    ctx = AppContext.from_env(load_config())
    ctx.checker.check_all_pending_invoices()
    ctx.close()
"""

from __future__ import annotations

import logging
import os
from functools import cached_property

import httpx
from sqlalchemy import Engine

from hdpay.config import HdPayConfig
from hdpay.database.engine import create_db_engine
from hdpay.engine.encryption import EncryptionService
from hdpay.services.exchange_rate_service import ExchangeRateService
from hdpay.services.explorers import ExplorerGateway
from hdpay.services.invoice_service import InvoiceService
from hdpay.services.notification_service import DonationNotifier
from hdpay.services.transaction_checker import TransactionChecker
from hdpay.services.upstream import build_client
from hdpay.services.wallet_service import WalletManager

logger = logging.getLogger(__name__)


class AppContext:
    """Owns the engine, the HTTP client and every service built on them."""

    def __init__(
        self,
        config: HdPayConfig,
        engine: Engine,
        *,
        encryption: EncryptionService | None = None,
        http_client: httpx.Client | None = None,
        etherscan_api_key: str | None = None,
        webhook_url: str | None = None,
    ) -> None:
        self.config = config
        self.engine = engine
        self.etherscan_api_key = etherscan_api_key
        self.webhook_url = webhook_url
        self._owns_client = http_client is None
        # Injected instances shadow the lazy properties below
        if encryption is not None:
            self.encryption = encryption
        if http_client is not None:
            self.http_client = http_client

    @classmethod
    def from_env(cls, config: HdPayConfig, engine: Engine | None = None) -> AppContext:
        """Build from ``DATABASE_URL``, ``ETHERSCAN_API_KEY`` and friends."""
        return cls(
            config,
            engine or create_db_engine(),
            etherscan_api_key=os.getenv("ETHERSCAN_API_KEY"),
            webhook_url=os.getenv("DISCORD_DONATION_WEBHOOK_URL"),
        )

    # ------------------------------------------------------------------
    # Lazily-built singletons
    # ------------------------------------------------------------------
    @cached_property
    def http_client(self) -> httpx.Client:
        return build_client(self.config.request_timeout_seconds)

    @cached_property
    def encryption(self) -> EncryptionService:
        return EncryptionService.from_env()

    @cached_property
    def rates(self) -> ExchangeRateService:
        return ExchangeRateService(
            self.engine,
            self.http_client,
            base_url=self.config.price_oracle_url,
            ttl_seconds=self.config.rate_ttl_seconds,
        )

    @cached_property
    def explorers(self) -> ExplorerGateway:
        if not self.etherscan_api_key:
            logger.warning("ETHERSCAN_API_KEY is not set; account-chain lookups will be rate-limited")
        return ExplorerGateway(
            self.http_client,
            explorer_urls=self.config.explorer_urls,
            etherscan_api_key=self.etherscan_api_key,
        )

    @cached_property
    def wallets(self) -> WalletManager:
        return WalletManager(
            self.engine,
            self.encryption,
            default_confirmations=self.config.default_confirmations,
        )

    @cached_property
    def invoices(self) -> InvoiceService:
        return InvoiceService(self.engine, self.wallets, self.rates)

    @cached_property
    def notifier(self) -> DonationNotifier:
        return DonationNotifier(self.http_client, self.webhook_url)

    @cached_property
    def checker(self) -> TransactionChecker:
        return TransactionChecker(
            self.engine,
            self.rates,
            self.explorers,
            tolerance=self.config.overpayment_tolerance,
            default_rank_days=self.config.default_rank_days,
            notifier=self.notifier,
        )

    def close(self) -> None:
        """Close the HTTP client if this context created it."""
        if self._owns_client and "http_client" in self.__dict__:
            self.http_client.close()
