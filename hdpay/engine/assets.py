"""
hdpay.engine.assets — Asset-Family Address Capability
======================================================

Every supported asset belongs to one address family.  The wallet manager
only ever talks to the family object returned by :func:`family_for`; adding
an asset with a new address scheme means adding a subclass here and an
entry in :data:`hdpay.constants.ASSETS`, nothing else.

Families:

* :class:`UtxoAddressFamily` — legacy P2PKH base58check (``1…`` / ``m…``).
* :class:`AccountAddressFamily` — EIP-55 checksummed ``0x…`` addresses,
  shared by ETH and every ERC-20 token.
"""

from __future__ import annotations

import abc
from decimal import Decimal

import base58
from web3 import Web3

from hdpay.constants import EXTERNAL_CHAIN, AssetFamily, Network, get_asset
from hdpay.engine.hd_keys import ExtendedKey, hash160, uncompressed_point


class AddressFamily(abc.ABC):
    """Derivation + validation capability for one family of assets."""

    family: AssetFamily

    @abc.abstractmethod
    def encode_public_key(self, public_key: bytes, network: str) -> str:
        """Render a compressed secp256k1 public key as an address."""

    @abc.abstractmethod
    def validate_address(self, address: str, network: str) -> bool:
        """Whether *address* is well-formed for this family on *network*."""

    def derive_address(self, xpub: str, index: int, network: str) -> str:
        """Receiving address *index* under an account-level extended public key.

        Walks ``<account>/0/<index>`` with public child derivation only.
        """
        if index < 0:
            raise ValueError(f"Derivation index must be non-negative, got {index}")
        account = ExtendedKey.parse(xpub)
        node = account.child(EXTERNAL_CHAIN).child(index)
        return self.encode_public_key(node.public_key, network)

    def derive_address_from_seed(
        self, seed: bytes, account_path: str, index: int, network: str,
    ) -> str:
        """Same address as :meth:`derive_address`, computed from the seed."""
        root = ExtendedKey.from_seed(seed, network)
        node = root.derive_path(account_path).child(EXTERNAL_CHAIN).child(index)
        return self.encode_public_key(node.public_key, network)

    @staticmethod
    def parse_amount(raw: int | str, decimals: int) -> Decimal:
        """Convert an integer minor-unit amount into base units."""
        return Decimal(str(raw)).scaleb(-decimals)

    def __repr__(self) -> str:
        return f"<{type(self).__name__} family={self.family}>"


# ---------------------------------------------------------------------------
# UTXO family (Bitcoin P2PKH)
# ---------------------------------------------------------------------------
class UtxoAddressFamily(AddressFamily):
    family = AssetFamily.UTXO

    VERSION_BYTES = {
        Network.MAINNET: 0x00,
        Network.TESTNET: 0x6F,
    }

    def encode_public_key(self, public_key: bytes, network: str) -> str:
        payload = bytes([self.VERSION_BYTES[Network(network)]]) + hash160(public_key)
        return base58.b58encode_check(payload).decode("ascii")

    def validate_address(self, address: str, network: str) -> bool:
        try:
            payload = base58.b58decode_check(address)
        except ValueError:
            return False
        return len(payload) == 21 and payload[0] == self.VERSION_BYTES[Network(network)]


# ---------------------------------------------------------------------------
# Account family (Ethereum + ERC-20)
# ---------------------------------------------------------------------------
class AccountAddressFamily(AddressFamily):
    family = AssetFamily.ACCOUNT

    def encode_public_key(self, public_key: bytes, network: str) -> str:
        digest = Web3.keccak(uncompressed_point(public_key))
        return Web3.to_checksum_address("0x" + bytes(digest[-20:]).hex())

    def validate_address(self, address: str, network: str) -> bool:
        # Mixed-case input must carry a valid EIP-55 checksum
        return Web3.is_address(address)


# ---------------------------------------------------------------------------
# Registry
# ---------------------------------------------------------------------------
FAMILIES: dict[AssetFamily, AddressFamily] = {
    AssetFamily.UTXO: UtxoAddressFamily(),
    AssetFamily.ACCOUNT: AccountAddressFamily(),
}


def family_for(currency: str) -> AddressFamily:
    """Address family for *currency*; raises ``UnsupportedCurrency``."""
    return FAMILIES[get_asset(currency).family]
