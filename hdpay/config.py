"""
hdpay.config — YAML Configuration Loader
=========================================

**Why this file exists:**
Secrets (``DATABASE_URL``, ``CRYPTO_MASTER_SECRET``, ``ETHERSCAN_API_KEY``,
``JWT_SECRET``) live in the environment / ``.env``.  Everything else — how
many confirmations settle a payment, how long an exchange rate stays fresh,
where the explorers live — is read from ``config.yaml`` into an immutable,
typed object.  Every key is optional so a bare ``{}`` file is valid.

Usage::

    from hdpay.config import load_config

    cfg = load_config()                 # reads ./config.yaml by default
    print(cfg.default_confirmations)    # 3
    print(cfg.rate_ttl_seconds)         # 300
"""

from __future__ import annotations

from dataclasses import dataclass, field
from decimal import Decimal
from pathlib import Path

import yaml

from hdpay.constants import DEFAULT_MIN_CONFIRMATIONS, DEFAULT_RANK_DAYS

DEFAULT_EXPLORER_URLS: dict[str, str] = {
    "blockchain_info": "https://blockchain.info",
    "esplora_testnet": "https://blockstream.info/testnet/api",
    "etherscan_mainnet": "https://api.etherscan.io/api",
    "etherscan_testnet": "https://api-sepolia.etherscan.io/api",
}

DEFAULT_PRICE_ORACLE_URL = "https://api.coingecko.com/api/v3"


# ---------------------------------------------------------------------------
# Typed settings object
# ---------------------------------------------------------------------------
@dataclass(frozen=True, slots=True)
class HdPayConfig:
    """Immutable configuration loaded from ``config.yaml``."""

    # Settlement policy
    default_confirmations: int = DEFAULT_MIN_CONFIRMATIONS
    overpayment_tolerance: Decimal = Decimal("0.01")
    default_rank_days: int = DEFAULT_RANK_DAYS

    # Upstreams
    rate_ttl_seconds: int = 300
    request_timeout_seconds: float = 10.0
    price_oracle_url: str = DEFAULT_PRICE_ORACLE_URL
    explorer_urls: dict[str, str] = field(
        default_factory=lambda: dict(DEFAULT_EXPLORER_URLS)
    )

    # Worker
    sweep_interval_seconds: int = 300
    sweep_concurrency: int = 4
    rank_expiry_interval_seconds: int = 3600


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------
def load_config(path: str | Path = "config.yaml") -> HdPayConfig:
    """Read *path* and return a :class:`HdPayConfig` instance.

    Parameters
    ----------
    path:
        Filesystem path to the YAML configuration file.
        Defaults to ``config.yaml`` in the current working directory.

    Raises
    ------
    FileNotFoundError
        If the YAML file doesn't exist.
    """
    config_path = Path(path)
    if not config_path.exists():
        raise FileNotFoundError(
            f"Configuration file not found: {config_path.resolve()}\n"
            "Hint: copy config.yaml.example → config.yaml and edit it."
        )

    with open(config_path, encoding="utf-8") as fh:
        raw: dict = yaml.safe_load(fh) or {}

    defaults = HdPayConfig()
    explorer_urls = dict(DEFAULT_EXPLORER_URLS)
    explorer_urls.update(raw.get("explorer_urls") or {})

    return HdPayConfig(
        default_confirmations=int(
            raw.get("default_confirmations", defaults.default_confirmations)
        ),
        overpayment_tolerance=Decimal(
            str(raw.get("overpayment_tolerance", defaults.overpayment_tolerance))
        ),
        default_rank_days=int(raw.get("default_rank_days", defaults.default_rank_days)),
        rate_ttl_seconds=int(raw.get("rate_ttl_seconds", defaults.rate_ttl_seconds)),
        request_timeout_seconds=float(
            raw.get("request_timeout_seconds", defaults.request_timeout_seconds)
        ),
        price_oracle_url=str(raw.get("price_oracle_url", defaults.price_oracle_url)),
        explorer_urls=explorer_urls,
        sweep_interval_seconds=int(
            raw.get("sweep_interval_seconds", defaults.sweep_interval_seconds)
        ),
        sweep_concurrency=int(raw.get("sweep_concurrency", defaults.sweep_concurrency)),
        rank_expiry_interval_seconds=int(
            raw.get("rank_expiry_interval_seconds", defaults.rank_expiry_interval_seconds)
        ),
    )
