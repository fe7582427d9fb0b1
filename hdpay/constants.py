"""
hdpay.constants — Supported Assets & Shared Constants
======================================================

Single source of truth for what each supported asset *is*: which address
family derives it, how many decimals its minor unit has, which price-oracle
id prices it and (for tokens) which contract emits its transfers.

Import from here instead of branching on currency strings in services.
"""

from __future__ import annotations

import enum
from dataclasses import dataclass

from hdpay.exceptions import UnsupportedCurrency


class AssetFamily(enum.StrEnum):
    """Address/derivation family an asset belongs to."""
    UTXO = "utxo"
    ACCOUNT = "account"


class Network(enum.StrEnum):
    MAINNET = "mainnet"
    TESTNET = "testnet"


@dataclass(frozen=True, slots=True)
class AssetInfo:
    symbol: str
    family: AssetFamily
    decimals: int
    oracle_id: str
    coin_type: int  # BIP44 coin type on mainnet
    # network → ERC-20 contract address; None for the chain's native asset
    token_contracts: dict[str, str] | None = None

    @property
    def is_token(self) -> bool:
        return self.token_contracts is not None

    def contract_for(self, network: str) -> str | None:
        if self.token_contracts is None:
            return None
        return self.token_contracts.get(network)


# ---------------------------------------------------------------------------
# Asset table
# ---------------------------------------------------------------------------
ASSETS: dict[str, AssetInfo] = {
    "BTC": AssetInfo("BTC", AssetFamily.UTXO, 8, "bitcoin", 0),
    "ETH": AssetInfo("ETH", AssetFamily.ACCOUNT, 18, "ethereum", 60),
    "USDT": AssetInfo(
        "USDT", AssetFamily.ACCOUNT, 6, "tether", 60,
        token_contracts={"mainnet": "0xdAC17F958D2ee523a2206206994597C13D831ec7"},
    ),
    "USDC": AssetInfo(
        "USDC", AssetFamily.ACCOUNT, 6, "usd-coin", 60,
        token_contracts={
            "mainnet": "0xA0b86991c6218b36c1d19D4a2E9Eb0cE3606eB48",
            "testnet": "0x1c7D4B196Cb0C7B01d743Fbc6116a902379C7238",
        },
    ),
    "BNB": AssetInfo(
        "BNB", AssetFamily.ACCOUNT, 18, "binancecoin", 60,
        token_contracts={"mainnet": "0xB8c77482e45F1F44dE1745F52C74426C631bDD52"},
    ),
}

SUPPORTED_CURRENCIES: tuple[str, ...] = tuple(ASSETS)

# BIP44 uses coin type 1 for every testnet
TESTNET_COIN_TYPE = 1

# External (receiving) chain under the BIP44 account node
EXTERNAL_CHAIN = 0

DEFAULT_MIN_CONFIRMATIONS = 3
DEFAULT_RANK_DAYS = 30
FIAT_CURRENCY = "USD"


def get_asset(symbol: str) -> AssetInfo:
    """Look up *symbol* (case-insensitive) in :data:`ASSETS`.

    Raises
    ------
    UnsupportedCurrency
        If the symbol is unknown.
    """
    info = ASSETS.get(symbol.upper())
    if info is None:
        raise UnsupportedCurrency(f"Unsupported currency: {symbol}")
    return info


def account_path(symbol: str, network: str) -> str:
    """BIP44 account-level derivation path for *symbol* on *network*."""
    info = get_asset(symbol)
    coin_type = info.coin_type
    if info.family is AssetFamily.UTXO and network == Network.TESTNET:
        coin_type = TESTNET_COIN_TYPE
    return f"m/44'/{coin_type}'/0'"
