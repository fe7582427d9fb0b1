"""
tests/test_assets.py — Asset table & address families
======================================================
"""

from __future__ import annotations

from decimal import Decimal

import pytest

from hdpay.constants import (
    SUPPORTED_CURRENCIES,
    AssetFamily,
    Network,
    account_path,
    get_asset,
)
from hdpay.engine.assets import AccountAddressFamily, UtxoAddressFamily, family_for
from hdpay.engine.hd_keys import ExtendedKey
from hdpay.exceptions import UnsupportedCurrency

SEED = bytes(range(64))


class TestAssetTable:
    def test_supported_currencies(self):
        assert set(SUPPORTED_CURRENCIES) == {"BTC", "ETH", "USDT", "USDC", "BNB"}

    def test_lookup_is_case_insensitive(self):
        assert get_asset("btc").symbol == "BTC"

    def test_unknown_currency(self):
        with pytest.raises(UnsupportedCurrency):
            get_asset("DOGE")

    def test_unknown_currency_is_a_value_error(self):
        with pytest.raises(ValueError):
            get_asset("DOGE")

    def test_tokens_share_the_account_family(self):
        for symbol in ("USDT", "USDC", "BNB"):
            info = get_asset(symbol)
            assert info.family is AssetFamily.ACCOUNT
            assert info.is_token

    def test_token_without_testnet_contract(self):
        assert get_asset("USDT").contract_for(Network.TESTNET) is None
        assert get_asset("USDC").contract_for(Network.TESTNET) is not None

    @pytest.mark.parametrize(("symbol", "network", "path"), [
        ("BTC", Network.MAINNET, "m/44'/0'/0'"),
        ("BTC", Network.TESTNET, "m/44'/1'/0'"),
        ("ETH", Network.MAINNET, "m/44'/60'/0'"),
        ("USDC", Network.TESTNET, "m/44'/60'/0'"),
    ])
    def test_account_paths(self, symbol, network, path):
        assert account_path(symbol, network) == path


class TestUtxoFamily:
    def _xpub(self, network):
        root = ExtendedKey.from_seed(SEED, network)
        return root.derive_path(account_path("BTC", network)).neuter().serialize()

    def test_mainnet_addresses(self):
        family = family_for("BTC")
        assert isinstance(family, UtxoAddressFamily)
        address = family.derive_address(self._xpub(Network.MAINNET), 0, Network.MAINNET)
        assert address.startswith("1")
        assert family.validate_address(address, Network.MAINNET)
        assert not family.validate_address(address, Network.TESTNET)

    def test_testnet_addresses(self):
        family = family_for("BTC")
        address = family.derive_address(self._xpub(Network.TESTNET), 0, Network.TESTNET)
        assert address[0] in "mn"
        assert family.validate_address(address, Network.TESTNET)

    def test_distinct_indices_give_distinct_addresses(self):
        family = family_for("BTC")
        xpub = self._xpub(Network.MAINNET)
        addresses = {family.derive_address(xpub, i, Network.MAINNET) for i in range(10)}
        assert len(addresses) == 10

    def test_negative_index(self):
        with pytest.raises(ValueError):
            family_for("BTC").derive_address(self._xpub(Network.MAINNET), -1, Network.MAINNET)

    def test_garbage_is_not_an_address(self):
        assert not family_for("BTC").validate_address("not-an-address", Network.MAINNET)


class TestAccountFamily:
    def test_checksummed_addresses(self):
        root = ExtendedKey.from_seed(SEED)
        xpub = root.derive_path("m/44'/60'/0'").neuter().serialize()
        family = family_for("ETH")
        assert isinstance(family, AccountAddressFamily)
        address = family.derive_address(xpub, 0, Network.MAINNET)
        assert address.startswith("0x") and len(address) == 42
        assert address != address.lower()
        assert family.validate_address(address, Network.MAINNET)

    def test_tokens_derive_like_eth(self):
        root = ExtendedKey.from_seed(SEED)
        xpub = root.derive_path("m/44'/60'/0'").neuter().serialize()
        assert family_for("USDT").derive_address(xpub, 3, Network.MAINNET) == \
            family_for("ETH").derive_address(xpub, 3, Network.MAINNET)

    def test_bad_checksum_is_rejected(self):
        good = "0x9858EfFD232B4033E47d90003D41EC34EcaEda94"
        bad = good[:-1] + "a"
        assert not family_for("ETH").validate_address(bad, Network.MAINNET)


class TestParseAmount:
    def test_minor_units(self):
        assert UtxoAddressFamily.parse_amount(150_000, 8) == Decimal("0.00150000")
        assert AccountAddressFamily.parse_amount("1000000000000000000", 18) == Decimal("1")
        assert AccountAddressFamily.parse_amount("2500000", 6) == Decimal("2.5")
