"""
hdpay.worker.__main__ — Entry point for ``python -m hdpay.worker``
==================================================================

Wiring:
1. Load .env (secrets).
2. Load config.yaml (soft settings).
3. Build the service context and ensure tables exist.
4. Refuse to start without the master encryption secret.
5. Run the invoice sweep and rank-expiry loops until interrupted.

Run with::

    uv run python -m hdpay.worker
"""

from __future__ import annotations

import asyncio
import logging
import sys

from dotenv import load_dotenv

from hdpay.config import load_config
from hdpay.database.engine import init_db
from hdpay.services.context import AppContext
from hdpay.worker.scheduler import Scheduler

# ---------------------------------------------------------------------------
# Logging
# ---------------------------------------------------------------------------
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s │ %(levelname)-8s │ %(name)s │ %(message)s",
    datefmt="%H:%M:%S",
)
logger = logging.getLogger("hdpay")


async def _run(ctx: AppContext) -> None:
    scheduler = Scheduler(ctx)
    scheduler.start()
    try:
        await asyncio.Event().wait()
    finally:
        await scheduler.stop()


def main() -> None:
    """Bootstrap and run the hdpay background worker."""

    # 1. Environment variables (secrets).
    load_dotenv()

    # 2. Soft configuration.
    cfg = load_config()
    logger.info(
        "Config loaded — sweep every %ds, %d concurrent check(s)",
        cfg.sweep_interval_seconds, cfg.sweep_concurrency,
    )

    # 3. Database + services.
    ctx = AppContext.from_env(cfg)
    init_db(ctx.engine)

    # 4. Encryption must be usable before anything touches a wallet.
    if not ctx.encryption.configured:
        logger.critical(
            "CRYPTO_MASTER_SECRET is not set.  "
            "Copy .env.example → .env and set a strong secret."
        )
        sys.exit(1)

    # 5. Run (blocks until Ctrl+C or SIGTERM).
    logger.info("Starting hdpay worker…")
    try:
        asyncio.run(_run(ctx))
    except KeyboardInterrupt:
        logger.info("Shutting down gracefully…")
    finally:
        ctx.close()


if __name__ == "__main__":
    main()
