"""
hdpay.engine.hd_keys — BIP39 / BIP32 Key Derivation
====================================================

Pure functions over secp256k1, no I/O.

* BIP39 mnemonics and seeds through the ``mnemonic`` package.
* BIP32 master key, private child derivation (CKDpriv) and public child
  derivation (CKDpub) over ``ecdsa``'s SECP256k1 curve.
* Extended key (de)serialization as base58check ``xpub``/``xprv``
  (mainnet) and ``tpub``/``tprv`` (testnet).

Public child derivation is what lets the service hand out receiving
addresses from the stored account ``xpub`` without ever decrypting the
seed.
"""

from __future__ import annotations

import hashlib
import hmac
from dataclasses import dataclass, replace

import base58
from Crypto.Hash import RIPEMD160
from ecdsa import SECP256k1, SigningKey, VerifyingKey
from ecdsa.errors import MalformedPointError
from mnemonic import Mnemonic

from hdpay.constants import Network

HARDENED_OFFSET = 0x80000000
CURVE_ORDER = SECP256k1.order

MAINNET_PUBLIC = 0x0488B21E
MAINNET_PRIVATE = 0x0488ADE4
TESTNET_PUBLIC = 0x043587CF
TESTNET_PRIVATE = 0x04358394

_VERSIONS: dict[int, tuple[str, bool]] = {
    MAINNET_PUBLIC: (Network.MAINNET, False),
    MAINNET_PRIVATE: (Network.MAINNET, True),
    TESTNET_PUBLIC: (Network.TESTNET, False),
    TESTNET_PRIVATE: (Network.TESTNET, True),
}


# ---------------------------------------------------------------------------
# Hash helpers
# ---------------------------------------------------------------------------
def hash160(data: bytes) -> bytes:
    """RIPEMD-160 of SHA-256."""
    return RIPEMD160.new(hashlib.sha256(data).digest()).digest()


def _hmac_sha512(key: bytes, data: bytes) -> bytes:
    return hmac.new(key, data, hashlib.sha512).digest()


def private_to_public(private_key: bytes) -> bytes:
    """Compressed 33-byte SEC1 public key for a 32-byte private key."""
    signing_key = SigningKey.from_string(private_key, curve=SECP256k1)
    return signing_key.get_verifying_key().to_string("compressed")


def uncompressed_point(public_key: bytes) -> bytes:
    """64-byte ``X || Y`` encoding of a compressed public key."""
    return VerifyingKey.from_string(public_key, curve=SECP256k1).to_string("raw")


# ---------------------------------------------------------------------------
# BIP39
# ---------------------------------------------------------------------------
def generate_mnemonic(strength: int = 256) -> str:
    """Fresh English mnemonic; 256 bits of entropy gives 24 words."""
    return Mnemonic("english").generate(strength=strength)


def validate_mnemonic(words: str) -> bool:
    return Mnemonic("english").check(words)


def mnemonic_to_seed(words: str, passphrase: str = "") -> bytes:
    return Mnemonic.to_seed(words, passphrase)


# ---------------------------------------------------------------------------
# Paths
# ---------------------------------------------------------------------------
def parse_path(path: str) -> list[int]:
    """Turn ``m/44'/0'/0'/0/7`` into child numbers (hardened offset applied).

    Raises
    ------
    ValueError
        On a malformed path.
    """
    parts = path.strip().split("/")
    if not parts or parts[0] != "m":
        raise ValueError(f"Derivation path must start with 'm': {path!r}")

    indices: list[int] = []
    for part in parts[1:]:
        hardened = part.endswith(("'", "h", "H"))
        digits = part[:-1] if hardened else part
        if not digits.isdigit():
            raise ValueError(f"Invalid path component {part!r} in {path!r}")
        index = int(digits)
        if index >= HARDENED_OFFSET:
            raise ValueError(f"Path component out of range: {part!r}")
        indices.append(index + HARDENED_OFFSET if hardened else index)
    return indices


# ---------------------------------------------------------------------------
# Extended keys
# ---------------------------------------------------------------------------
@dataclass(frozen=True, slots=True)
class ExtendedKey:
    """A BIP32 node.  ``private_key`` is ``None`` for neutered (public) keys."""

    chain_code: bytes
    public_key: bytes
    private_key: bytes | None = None
    depth: int = 0
    parent_fingerprint: bytes = b"\x00\x00\x00\x00"
    child_number: int = 0
    network: str = Network.MAINNET

    def __repr__(self) -> str:
        kind = "private" if self.is_private else "public"
        return f"<ExtendedKey {kind} depth={self.depth} child={self.child_number}>"

    @property
    def is_private(self) -> bool:
        return self.private_key is not None

    @property
    def fingerprint(self) -> bytes:
        return hash160(self.public_key)[:4]

    @classmethod
    def from_seed(cls, seed: bytes, network: str = Network.MAINNET) -> ExtendedKey:
        digest = _hmac_sha512(b"Bitcoin seed", seed)
        key, chain_code = digest[:32], digest[32:]
        secret = int.from_bytes(key, "big")
        if secret == 0 or secret >= CURVE_ORDER:
            raise ValueError("Seed produced an invalid master key; use another seed")
        return cls(
            chain_code=chain_code,
            public_key=private_to_public(key),
            private_key=key,
            network=network,
        )

    def neuter(self) -> ExtendedKey:
        """Drop the private half."""
        return replace(self, private_key=None)

    def child(self, index: int) -> ExtendedKey:
        """Derive child *index* (CKDpriv for private keys, CKDpub otherwise)."""
        hardened = index >= HARDENED_OFFSET
        if hardened:
            if self.private_key is None:
                raise ValueError("Cannot derive a hardened child from a public key")
            data = b"\x00" + self.private_key + index.to_bytes(4, "big")
        else:
            data = self.public_key + index.to_bytes(4, "big")

        digest = _hmac_sha512(self.chain_code, data)
        il = int.from_bytes(digest[:32], "big")
        chain_code = digest[32:]
        if il >= CURVE_ORDER:
            raise ValueError(f"Invalid child at index {index}; skip to the next one")

        if self.private_key is not None:
            secret = (il + int.from_bytes(self.private_key, "big")) % CURVE_ORDER
            if secret == 0:
                raise ValueError(f"Invalid child at index {index}; skip to the next one")
            private_key = secret.to_bytes(32, "big")
            public_key = private_to_public(private_key)
        else:
            private_key = None
            parent_point = VerifyingKey.from_string(
                self.public_key, curve=SECP256k1
            ).pubkey.point
            point = SECP256k1.generator * il + parent_point
            public_key = VerifyingKey.from_public_point(
                point, curve=SECP256k1
            ).to_string("compressed")

        return ExtendedKey(
            chain_code=chain_code,
            public_key=public_key,
            private_key=private_key,
            depth=self.depth + 1,
            parent_fingerprint=self.fingerprint,
            child_number=index,
            network=self.network,
        )

    def derive_path(self, path: str) -> ExtendedKey:
        """Walk *path* from this node (``m`` denotes this node)."""
        node = self
        for index in parse_path(path):
            node = node.child(index)
        return node

    # ------------------------------------------------------------------
    # Serialization
    # ------------------------------------------------------------------
    def serialize(self, private: bool = False) -> str:
        """``xpub``/``tpub`` string, or ``xprv``/``tprv`` with *private*."""
        testnet = self.network == Network.TESTNET
        if private:
            if self.private_key is None:
                raise ValueError("Public extended key has no private half")
            version = TESTNET_PRIVATE if testnet else MAINNET_PRIVATE
            key_data = b"\x00" + self.private_key
        else:
            version = TESTNET_PUBLIC if testnet else MAINNET_PUBLIC
            key_data = self.public_key

        payload = (
            version.to_bytes(4, "big")
            + bytes([self.depth])
            + self.parent_fingerprint
            + self.child_number.to_bytes(4, "big")
            + self.chain_code
            + key_data
        )
        return base58.b58encode_check(payload).decode("ascii")

    @classmethod
    def parse(cls, encoded: str) -> ExtendedKey:
        """Inverse of :meth:`serialize`.

        Raises
        ------
        ValueError
            On bad checksum, unknown version or malformed key data.
        """
        payload = base58.b58decode_check(encoded)
        if len(payload) != 78:
            raise ValueError("Extended key payload must be 78 bytes")

        version = int.from_bytes(payload[:4], "big")
        if version not in _VERSIONS:
            raise ValueError(f"Unknown extended key version 0x{version:08x}")
        network, is_private = _VERSIONS[version]

        depth = payload[4]
        parent_fingerprint = payload[5:9]
        child_number = int.from_bytes(payload[9:13], "big")
        chain_code = payload[13:45]
        key_data = payload[45:]

        if is_private:
            if key_data[0] != 0:
                raise ValueError("Private key data must be 0x00-prefixed")
            private_key = key_data[1:]
        else:
            private_key = None

        try:
            if private_key is not None:
                public_key = private_to_public(private_key)
            else:
                # Round-trip through ecdsa rejects points off the curve
                public_key = VerifyingKey.from_string(
                    key_data, curve=SECP256k1
                ).to_string("compressed")
        except MalformedPointError as exc:
            raise ValueError(f"Invalid extended key material: {exc}") from None

        return cls(
            chain_code=chain_code,
            public_key=public_key,
            private_key=private_key,
            depth=depth,
            parent_fingerprint=parent_fingerprint,
            child_number=child_number,
            network=network,
        )
