"""
tests/test_scheduler.py — Background sweep & rank expiry
=========================================================
"""

from __future__ import annotations

import asyncio
import threading
import time
from datetime import UTC, datetime, timedelta
from types import SimpleNamespace

from sqlalchemy.orm import Session

from conftest import TEST_PASSWORD, btc_payment, seed_user_and_rank
from hdpay.database.models import User
from hdpay.exceptions import UpstreamUnavailable
from hdpay.services.context import AppContext
from hdpay.worker.scheduler import Scheduler


class StubChecker:
    """Records how many checks overlap; outcome per id comes from ``behaviour``."""

    def __init__(self, ids, behaviour=None, delay=0.05):
        self.ids = list(ids)
        self.behaviour = behaviour or {}
        self.delay = delay
        self.running = 0
        self.peak = 0
        self.checked = []
        self._lock = threading.Lock()

    def open_invoice_ids(self):
        return list(self.ids)

    def check_invoice(self, invoice_id):
        with self._lock:
            self.running += 1
            self.peak = max(self.peak, self.running)
        try:
            time.sleep(self.delay)
            self.checked.append(invoice_id)
            outcome = self.behaviour.get(invoice_id, True)
            if isinstance(outcome, Exception):
                raise outcome
            return SimpleNamespace(had_activity=outcome)
        finally:
            with self._lock:
                self.running -= 1


def _stub_context(checker, *, concurrency=2, engine=None):
    config = SimpleNamespace(
        sweep_concurrency=concurrency,
        sweep_interval_seconds=3600,
        rank_expiry_interval_seconds=3600,
    )
    return SimpleNamespace(config=config, checker=checker, engine=engine)


class TestSweepOnce:
    def test_concurrency_is_bounded(self):
        checker = StubChecker([f"inv-{i}" for i in range(6)])
        active = asyncio.run(Scheduler(_stub_context(checker, concurrency=2)).sweep_once())

        assert active == 6
        assert sorted(checker.checked) == sorted(checker.ids)
        assert 1 <= checker.peak <= 2

    def test_failures_do_not_stop_the_sweep(self):
        checker = StubChecker(
            ["a", "b", "c", "d"],
            behaviour={
                "a": UpstreamUnavailable("explorer down"),
                "b": RuntimeError("boom"),
                "c": False,
            },
            delay=0,
        )
        active = asyncio.run(Scheduler(_stub_context(checker)).sweep_once())

        assert active == 1
        assert sorted(checker.checked) == ["a", "b", "c", "d"]

    def test_nothing_open(self):
        checker = StubChecker([])
        assert asyncio.run(Scheduler(_stub_context(checker)).sweep_once()) == 0

    def test_real_invoices_settle(self, config, file_engine, encryption, http_client, upstream):
        upstream.set_price("bitcoin", 50000)
        ctx = AppContext(config, file_engine, encryption=encryption, http_client=http_client)
        wallet = ctx.wallets.create_wallet("BTC", password=TEST_PASSWORD)
        invoices = [ctx.invoices.create_invoice(wallet.id, TEST_PASSWORD, 50) for _ in range(3)]
        upstream.routes["/q/getblockcount"] = "800010"
        for n, invoice in enumerate(invoices[:2]):
            upstream.routes[f"/rawaddr/{invoice.payment_address}"] = {"txs": [
                btc_payment(f"{n:064x}", invoice.payment_address, 100_000, block_height=800_000),
            ]}
        upstream.routes[f"/rawaddr/{invoices[2].payment_address}"] = {"txs": []}

        active = asyncio.run(Scheduler(ctx).sweep_once())

        assert active == 2
        assert ctx.checker.open_invoice_ids() == [invoices[2].id]


class TestRankExpiry:
    def test_expire_once(self, db_engine):
        seed_user_and_rank(db_engine, user_id=5)
        with Session(db_engine) as session:
            user = session.get(User, 5)
            user.donation_rank_id = "vip"
            user.rank_expires_at = datetime.now(UTC) - timedelta(minutes=1)
            session.commit()

        scheduler = Scheduler(_stub_context(StubChecker([]), engine=db_engine))
        assert asyncio.run(scheduler.expire_once()) == 1

        with Session(db_engine) as session:
            assert session.get(User, 5).donation_rank_id is None


class TestLoops:
    def test_failing_iteration_keeps_looping(self):
        calls = []

        async def step():
            calls.append(len(calls))
            if len(calls) == 1:
                raise RuntimeError("first run fails")

        async def scenario():
            task = asyncio.create_task(Scheduler(_stub_context(None))._every(0, step, "Test"))
            while len(calls) < 3:
                await asyncio.sleep(0)
            task.cancel()
            await asyncio.gather(task, return_exceptions=True)

        asyncio.run(asyncio.wait_for(scenario(), timeout=5))
        assert len(calls) >= 3

    def test_start_and_stop(self, db_engine):
        scheduler = Scheduler(_stub_context(StubChecker([]), engine=db_engine))

        async def scenario():
            scheduler.start()
            names = sorted(task.get_name() for task in scheduler._tasks)
            scheduler.start()
            assert len(scheduler._tasks) == 2
            await asyncio.sleep(0.05)
            await scheduler.stop()
            return names

        assert asyncio.run(scenario()) == ["invoice-sweep", "rank-expiry"]
        assert scheduler._tasks == []
