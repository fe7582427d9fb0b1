"""
hdpay.engine.encryption — Secrets at Rest
==========================================

AES-256-GCM blobs and PBKDF2 password hashes protecting wallet material.

Blob layout (base64 of the concatenation)::

    salt (32 B) || iv (16 B) || ciphertext (variable) || auth tag (16 B)

The AES key is derived per blob: PBKDF2-HMAC-SHA256 over the process-wide
master secret (optionally joined with a caller passphrase) and the blob's
own random salt.  Anything that decrypts these blobs outside this module
must replicate the layout exactly.

Usage::

    from hdpay.engine.encryption import EncryptionService

    svc = EncryptionService.from_env()          # reads CRYPTO_MASTER_SECRET
    blob = svc.encrypt("secret", passphrase="wallet-password")
    svc.decrypt(blob, passphrase="wallet-password")   # → "secret"
"""

from __future__ import annotations

import base64
import binascii
import hmac
import logging
import os
import secrets

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC

from hdpay.exceptions import ConfigurationError, DecryptionError

logger = logging.getLogger(__name__)

SALT_LENGTH = 32
IV_LENGTH = 16
TAG_LENGTH = 16
KEY_LENGTH = 32
PBKDF2_ITERATIONS = 100_000

MASTER_SECRET_ENV = "CRYPTO_MASTER_SECRET"


class EncryptionService:
    """Authenticated encryption + password hashing under one master secret.

    Parameters
    ----------
    master_secret:
        Process-wide secret.  ``None`` or empty makes every operation raise
        :class:`ConfigurationError` instead of running insecurely.
    iterations:
        PBKDF2 work factor.  Lowered only in tests.
    """

    def __init__(
        self, master_secret: str | None, *, iterations: int = PBKDF2_ITERATIONS,
    ) -> None:
        self._master_secret = master_secret or None
        self.iterations = iterations

    @classmethod
    def from_env(cls, *, iterations: int = PBKDF2_ITERATIONS) -> EncryptionService:
        secret = os.getenv(MASTER_SECRET_ENV)
        if not secret:
            logger.critical("%s is not set; wallet encryption is disabled", MASTER_SECRET_ENV)
        return cls(secret, iterations=iterations)

    @property
    def configured(self) -> bool:
        return self._master_secret is not None

    # ------------------------------------------------------------------
    # Key derivation
    # ------------------------------------------------------------------
    def _require_secret(self) -> str:
        if self._master_secret is None:
            raise ConfigurationError(
                f"{MASTER_SECRET_ENV} environment variable is required for wallet encryption"
            )
        return self._master_secret

    def _pbkdf2(self, material: bytes, salt: bytes) -> bytes:
        kdf = PBKDF2HMAC(
            algorithm=hashes.SHA256(),
            length=KEY_LENGTH,
            salt=salt,
            iterations=self.iterations,
        )
        return kdf.derive(material)

    def _derive_key(self, salt: bytes, passphrase: str | None) -> bytes:
        material = self._require_secret()
        if passphrase is not None:
            material = f"{material}\x00{passphrase}"
        return self._pbkdf2(material.encode("utf-8"), salt)

    # ------------------------------------------------------------------
    # Blobs
    # ------------------------------------------------------------------
    def encrypt(self, plaintext: str, passphrase: str | None = None) -> str:
        """Encrypt *plaintext* into a fresh base64 blob.

        A new salt and IV are drawn from the OS CSPRNG on every call.
        """
        salt = secrets.token_bytes(SALT_LENGTH)
        iv = secrets.token_bytes(IV_LENGTH)
        key = self._derive_key(salt, passphrase)
        # AESGCM appends the 16-byte tag to the ciphertext
        sealed = AESGCM(key).encrypt(iv, plaintext.encode("utf-8"), None)
        return base64.b64encode(salt + iv + sealed).decode("ascii")

    def decrypt(self, blob: str, passphrase: str | None = None) -> str:
        """Decrypt a blob produced by :meth:`encrypt`.

        Raises
        ------
        DecryptionError
            On any malformed, truncated or tampered blob, and on a wrong
            key.  The message is the same in every case.
        ConfigurationError
            If the master secret is missing.
        """
        self._require_secret()
        try:
            raw = base64.b64decode(blob, validate=True)
        except (binascii.Error, ValueError):
            raise DecryptionError() from None

        if len(raw) < SALT_LENGTH + IV_LENGTH + TAG_LENGTH:
            raise DecryptionError()

        salt = raw[:SALT_LENGTH]
        iv = raw[SALT_LENGTH:SALT_LENGTH + IV_LENGTH]
        sealed = raw[SALT_LENGTH + IV_LENGTH:]

        key = self._derive_key(salt, passphrase)
        try:
            plaintext = AESGCM(key).decrypt(iv, sealed, None)
            return plaintext.decode("utf-8")
        except (InvalidTag, UnicodeDecodeError):
            raise DecryptionError() from None

    # ------------------------------------------------------------------
    # Password hashes
    # ------------------------------------------------------------------
    def hash_password(self, password: str) -> str:
        """Return ``base64(salt || PBKDF2(password, salt))``."""
        salt = secrets.token_bytes(SALT_LENGTH)
        digest = self._pbkdf2(password.encode("utf-8"), salt)
        return base64.b64encode(salt + digest).decode("ascii")

    def verify_password(self, password: str, stored_hash: str) -> bool:
        """Constant-time check of *password* against :meth:`hash_password` output."""
        try:
            raw = base64.b64decode(stored_hash, validate=True)
        except (binascii.Error, ValueError):
            return False
        if len(raw) != SALT_LENGTH + KEY_LENGTH:
            return False

        salt, expected = raw[:SALT_LENGTH], raw[SALT_LENGTH:]
        candidate = self._pbkdf2(password.encode("utf-8"), salt)
        return hmac.compare_digest(candidate, expected)
