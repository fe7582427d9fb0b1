"""
hdpay.worker.scheduler — Periodic invoice sweep & rank expiry
==============================================================

Two background loops share one event loop:

- **sweep** — every ``sweep_interval_seconds`` check each open invoice,
  at most ``sweep_concurrency`` at a time, each on a worker thread.
- **rank expiry** — every ``rank_expiry_interval_seconds`` strip ranks
  whose time has run out.

A failing invoice never stops a sweep, and a failing iteration never
stops its loop.
"""

from __future__ import annotations

import asyncio
import logging

from hdpay.database.engine import run_db
from hdpay.exceptions import UpstreamUnavailable
from hdpay.services import entitlement_service
from hdpay.services.context import AppContext

logger = logging.getLogger(__name__)


class Scheduler:
    """Owns the sweep and rank-expiry tasks for one :class:`AppContext`."""

    def __init__(self, ctx: AppContext) -> None:
        self.ctx = ctx
        self._tasks: list[asyncio.Task] = []

    async def sweep_once(self) -> int:
        """Check every open invoice concurrently.  Returns how many had activity."""
        checker = self.ctx.checker
        invoice_ids = await run_db(checker.open_invoice_ids)
        if not invoice_ids:
            return 0

        semaphore = asyncio.Semaphore(max(1, self.ctx.config.sweep_concurrency))

        async def _check(invoice_id: str) -> bool:
            async with semaphore:
                try:
                    result = await run_db(checker.check_invoice, invoice_id)
                except UpstreamUnavailable as exc:
                    logger.warning("Check of invoice %s deferred: %s", invoice_id, exc)
                    return False
                except Exception:
                    logger.exception("Check of invoice %s failed", invoice_id)
                    return False
                return result.had_activity

        outcomes = await asyncio.gather(*(_check(i) for i in invoice_ids))
        active = sum(outcomes)
        logger.info(
            "Sweep finished: %d of %d open invoice(s) with new activity",
            active, len(invoice_ids),
        )
        return active

    async def expire_once(self) -> int:
        return await run_db(entitlement_service.expire_ranks, self.ctx.engine)

    async def _every(self, seconds: int, step, label: str) -> None:
        while True:
            try:
                await step()
            except Exception:
                logger.exception("%s iteration failed", label)
            await asyncio.sleep(seconds)

    def start(self) -> None:
        """Start both loops on the running event loop."""
        if self._tasks:
            return
        cfg = self.ctx.config
        self._tasks = [
            asyncio.create_task(
                self._every(cfg.sweep_interval_seconds, self.sweep_once, "Sweep"),
                name="invoice-sweep",
            ),
            asyncio.create_task(
                self._every(cfg.rank_expiry_interval_seconds, self.expire_once, "Rank expiry"),
                name="rank-expiry",
            ),
        ]

    async def stop(self) -> None:
        """Cancel both loops and wait for them to unwind."""
        for task in self._tasks:
            task.cancel()
        await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks = []
