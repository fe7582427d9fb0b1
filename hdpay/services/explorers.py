"""
hdpay.services.explorers — Blockchain Explorer Bindings
========================================================

Each binding answers one question: *which transactions have credited this
address, and how deeply are they buried?*  Results are normalised into
:class:`ExplorerTransaction` with amounts already in base units.

Bindings:

* :class:`BlockchainInfoExplorer` — Bitcoin mainnet (``/rawaddr``).
* :class:`EsploraExplorer` — Bitcoin testnet (Blockstream Esplora API).
* :class:`EtherscanExplorer` — Ethereum + ERC-20 (``txlist`` for the native
  asset, ``tokentx`` filtered by contract for tokens).

:class:`ExplorerGateway` picks the binding for a (currency, network) pair.
Every upstream failure surfaces as :class:`UpstreamUnavailable`.
"""

from __future__ import annotations

import abc
import logging
from dataclasses import dataclass
from datetime import UTC, datetime
from decimal import Decimal

import httpx

from hdpay.config import DEFAULT_EXPLORER_URLS
from hdpay.constants import AssetFamily, AssetInfo, Network, get_asset
from hdpay.exceptions import UnsupportedCurrency, UpstreamUnavailable
from hdpay.services.upstream import get_json, get_text

logger = logging.getLogger(__name__)

SATOSHI = 8
WEI = 18


@dataclass(frozen=True, slots=True)
class ExplorerTransaction:
    """One on-chain payment into a watched address."""

    tx_hash: str
    to_address: str
    amount: Decimal
    confirmations: int
    from_address: str | None = None
    block_number: int | None = None
    timestamp: datetime | None = None
    fee: Decimal | None = None


def _from_unix(value) -> datetime | None:
    if value in (None, "", 0, "0"):
        return None
    return datetime.fromtimestamp(int(value), UTC)


def _minor_to_base(value, decimals: int) -> Decimal:
    return Decimal(str(value)).scaleb(-decimals)


class BlockchainExplorer(abc.ABC):
    """Address → incoming transactions."""

    source = "explorer"

    def __init__(self, client: httpx.Client, base_url: str) -> None:
        self.client = client
        self.base_url = base_url.rstrip("/")

    @abc.abstractmethod
    def fetch_transactions(
        self, address: str, asset: AssetInfo, network: str,
    ) -> list[ExplorerTransaction]:
        ...

    def __repr__(self) -> str:
        return f"<{type(self).__name__} {self.base_url}>"


# ---------------------------------------------------------------------------
# Bitcoin
# ---------------------------------------------------------------------------
class _UtxoExplorer(BlockchainExplorer):
    """Shared confirmation math for UTXO explorers."""

    tip_path: str

    def tip_height(self) -> int:
        text = get_text(self.client, f"{self.base_url}{self.tip_path}", source=self.source)
        try:
            return int(text.strip())
        except ValueError as exc:
            raise UpstreamUnavailable(f"{self.source} returned a bad tip height") from exc

    @staticmethod
    def confirmations(tip: int, block_height: int | None) -> int:
        if not block_height:
            return 0
        return max(tip - block_height + 1, 0)


class BlockchainInfoExplorer(_UtxoExplorer):
    source = "blockchain.info"
    tip_path = "/q/getblockcount"

    def fetch_transactions(self, address, asset, network):
        payload = get_json(
            self.client, f"{self.base_url}/rawaddr/{address}", source=self.source,
        )
        try:
            txs = payload.get("txs", [])
        except AttributeError as exc:
            raise UpstreamUnavailable(f"{self.source} returned an unexpected payload") from exc
        if not txs:
            return []

        tip = self.tip_height()
        results: list[ExplorerTransaction] = []
        for tx in txs:
            received = sum(
                int(out.get("value", 0))
                for out in tx.get("out", [])
                if out.get("addr") == address
            )
            if received <= 0:
                continue
            inputs = tx.get("inputs") or [{}]
            sender = (inputs[0].get("prev_out") or {}).get("addr")
            height = tx.get("block_height")
            results.append(ExplorerTransaction(
                tx_hash=tx["hash"],
                to_address=address,
                amount=_minor_to_base(received, SATOSHI),
                confirmations=self.confirmations(tip, height),
                from_address=sender,
                block_number=height,
                timestamp=_from_unix(tx.get("time")),
                fee=_minor_to_base(tx["fee"], SATOSHI) if tx.get("fee") is not None else None,
            ))
        return results


class EsploraExplorer(_UtxoExplorer):
    source = "esplora"
    tip_path = "/blocks/tip/height"

    def fetch_transactions(self, address, asset, network):
        txs = get_json(
            self.client, f"{self.base_url}/address/{address}/txs", source=self.source,
        )
        if not isinstance(txs, list):
            raise UpstreamUnavailable(f"{self.source} returned an unexpected payload")
        if not txs:
            return []

        tip = self.tip_height()
        results: list[ExplorerTransaction] = []
        for tx in txs:
            received = sum(
                int(out.get("value", 0))
                for out in tx.get("vout", [])
                if out.get("scriptpubkey_address") == address
            )
            if received <= 0:
                continue
            vin = tx.get("vin") or [{}]
            sender = (vin[0].get("prevout") or {}).get("scriptpubkey_address")
            status = tx.get("status") or {}
            height = status.get("block_height") if status.get("confirmed") else None
            results.append(ExplorerTransaction(
                tx_hash=tx["txid"],
                to_address=address,
                amount=_minor_to_base(received, SATOSHI),
                confirmations=self.confirmations(tip, height),
                from_address=sender,
                block_number=height,
                timestamp=_from_unix(status.get("block_time")),
                fee=_minor_to_base(tx["fee"], SATOSHI) if tx.get("fee") is not None else None,
            ))
        return results


# ---------------------------------------------------------------------------
# Ethereum + ERC-20
# ---------------------------------------------------------------------------
class EtherscanExplorer(BlockchainExplorer):
    source = "etherscan"

    def __init__(self, client: httpx.Client, base_url: str, api_key: str | None) -> None:
        super().__init__(client, base_url)
        self.api_key = api_key or ""

    def _query(self, params: dict[str, str]) -> list[dict]:
        params = {
            "module": "account",
            "startblock": "0",
            "endblock": "99999999",
            "sort": "asc",
            "apikey": self.api_key,
            **params,
        }
        payload = get_json(self.client, self.base_url, params=params, source=self.source)
        if not isinstance(payload, dict):
            raise UpstreamUnavailable(f"{self.source} returned an unexpected payload")

        result = payload.get("result")
        if payload.get("status") == "1" and isinstance(result, list):
            return result
        # status "0" doubles as "empty history" and as an error envelope
        if isinstance(result, list) and not result:
            return []
        raise UpstreamUnavailable(
            f"{self.source} error: {payload.get('message')} {result!r}"
        )

    def fetch_transactions(self, address, asset, network):
        if asset.is_token:
            contract = asset.contract_for(network)
            if contract is None:
                raise UnsupportedCurrency(f"{asset.symbol} has no token contract on {network}")
            rows = self._query({
                "action": "tokentx", "address": address, "contractaddress": contract,
            })
        else:
            rows = [
                row for row in self._query({"action": "txlist", "address": address})
                if row.get("isError", "0") == "0"
            ]

        merged: dict[str, ExplorerTransaction] = {}
        for row in rows:
            if str(row.get("to", "")).lower() != address.lower():
                continue
            decimals = int(row.get("tokenDecimal") or asset.decimals)
            amount = _minor_to_base(row.get("value", "0"), decimals)
            if amount <= 0:
                continue

            fee = None
            if row.get("gasUsed") and row.get("gasPrice"):
                fee = _minor_to_base(int(row["gasUsed"]) * int(row["gasPrice"]), WEI)

            tx_hash = row["hash"]
            previous = merged.get(tx_hash)
            if previous is not None:
                # Several token transfers to us inside one transaction
                amount += previous.amount
            merged[tx_hash] = ExplorerTransaction(
                tx_hash=tx_hash,
                to_address=address,
                amount=amount,
                confirmations=int(row.get("confirmations") or 0),
                from_address=row.get("from"),
                block_number=int(row["blockNumber"]) if row.get("blockNumber") else None,
                timestamp=_from_unix(row.get("timeStamp")),
                fee=fee,
            )
        return list(merged.values())


# ---------------------------------------------------------------------------
# Gateway
# ---------------------------------------------------------------------------
class ExplorerGateway:
    """Routes a (currency, network) pair to its explorer binding."""

    def __init__(
        self,
        client: httpx.Client,
        *,
        explorer_urls: dict[str, str] | None = None,
        etherscan_api_key: str | None = None,
    ) -> None:
        urls = dict(DEFAULT_EXPLORER_URLS)
        urls.update(explorer_urls or {})
        self._explorers: dict[tuple[AssetFamily, str], BlockchainExplorer] = {
            (AssetFamily.UTXO, Network.MAINNET): BlockchainInfoExplorer(
                client, urls["blockchain_info"],
            ),
            (AssetFamily.UTXO, Network.TESTNET): EsploraExplorer(
                client, urls["esplora_testnet"],
            ),
            (AssetFamily.ACCOUNT, Network.MAINNET): EtherscanExplorer(
                client, urls["etherscan_mainnet"], etherscan_api_key,
            ),
            (AssetFamily.ACCOUNT, Network.TESTNET): EtherscanExplorer(
                client, urls["etherscan_testnet"], etherscan_api_key,
            ),
        }

    def explorer_for(self, currency: str, network: str) -> BlockchainExplorer:
        asset = get_asset(currency)
        return self._explorers[(asset.family, Network(network))]

    def fetch_transactions(
        self, currency: str, network: str, address: str,
    ) -> list[ExplorerTransaction]:
        asset = get_asset(currency)
        explorer = self.explorer_for(currency, network)
        try:
            txs = explorer.fetch_transactions(address, asset, network)
        except UnsupportedCurrency:
            raise
        except (KeyError, TypeError, ValueError, ArithmeticError) as exc:
            raise UpstreamUnavailable(f"{explorer.source} returned a malformed transaction") from exc
        logger.debug("%s: %d incoming tx(s) for %s", explorer.source, len(txs), address)
        return txs
