"""
tests/test_encryption.py — Secrets-at-rest tests
=================================================
Blob round-trips, tamper detection, passphrase binding, the missing-secret
failure mode and password hashing.
"""

from __future__ import annotations

import base64

import pytest

from hdpay.engine.encryption import (
    IV_LENGTH,
    PBKDF2_ITERATIONS,
    SALT_LENGTH,
    TAG_LENGTH,
    EncryptionService,
)
from hdpay.exceptions import ConfigurationError, DecryptionError


@pytest.fixture
def svc(encryption):
    return encryption


class TestBlobs:
    def test_round_trip(self, svc):
        blob = svc.encrypt("seed words go here")
        assert svc.decrypt(blob) == "seed words go here"

    def test_round_trip_with_passphrase(self, svc):
        blob = svc.encrypt("bundle", passphrase="hunter22")
        assert svc.decrypt(blob, passphrase="hunter22") == "bundle"

    def test_layout_is_salt_iv_ciphertext_tag(self, svc):
        raw = base64.b64decode(svc.encrypt("abc"))
        assert len(raw) == SALT_LENGTH + IV_LENGTH + len("abc") + TAG_LENGTH

    def test_fresh_salt_and_iv_every_call(self, svc):
        assert svc.encrypt("same") != svc.encrypt("same")

    def test_unicode_survives(self, svc):
        assert svc.decrypt(svc.encrypt("ключ 🔑")) == "ключ 🔑"

    @pytest.mark.parametrize("position", [0, SALT_LENGTH, SALT_LENGTH + IV_LENGTH, -1])
    def test_single_byte_tamper_is_rejected(self, svc, position):
        raw = bytearray(base64.b64decode(svc.encrypt("do not touch")))
        raw[position] ^= 0x01
        with pytest.raises(DecryptionError):
            svc.decrypt(base64.b64encode(bytes(raw)).decode())

    def test_wrong_passphrase_is_rejected(self, svc):
        blob = svc.encrypt("bundle", passphrase="right-password")
        with pytest.raises(DecryptionError):
            svc.decrypt(blob, passphrase="wrong-password")

    def test_missing_passphrase_is_rejected(self, svc):
        blob = svc.encrypt("bundle", passphrase="right-password")
        with pytest.raises(DecryptionError):
            svc.decrypt(blob)

    def test_other_master_secret_is_rejected(self, svc):
        blob = svc.encrypt("bundle")
        other = EncryptionService("a-different-master-secret", iterations=svc.iterations)
        with pytest.raises(DecryptionError):
            other.decrypt(blob)

    @pytest.mark.parametrize("blob", ["not base64!!", "", base64.b64encode(b"short").decode()])
    def test_malformed_blobs_are_rejected(self, svc, blob):
        with pytest.raises(DecryptionError):
            svc.decrypt(blob)

    def test_error_message_is_uniform(self, svc):
        blob = svc.encrypt("x", passphrase="a")
        with pytest.raises(DecryptionError) as wrong_key:
            svc.decrypt(blob, passphrase="b")
        with pytest.raises(DecryptionError) as garbage:
            svc.decrypt("%%%")
        assert str(wrong_key.value) == str(garbage.value)


class TestMissingSecret:
    def test_encrypt_refuses_without_secret(self):
        svc = EncryptionService(None)
        assert not svc.configured
        with pytest.raises(ConfigurationError):
            svc.encrypt("anything")

    def test_decrypt_refuses_without_secret(self, svc):
        blob = svc.encrypt("anything")
        with pytest.raises(ConfigurationError):
            EncryptionService("").decrypt(blob)

    def test_from_env_reads_master_secret(self, monkeypatch):
        monkeypatch.setenv("CRYPTO_MASTER_SECRET", "from-the-environment")
        assert EncryptionService.from_env().configured

    def test_from_env_without_secret_is_unconfigured(self, monkeypatch):
        monkeypatch.delenv("CRYPTO_MASTER_SECRET", raising=False)
        assert not EncryptionService.from_env().configured


class TestPasswordHashing:
    def test_default_work_factor(self):
        assert PBKDF2_ITERATIONS >= 100_000
        assert EncryptionService("secret").iterations == PBKDF2_ITERATIONS

    def test_verify_accepts_right_password(self, svc):
        stored = svc.hash_password("open sesame")
        assert svc.verify_password("open sesame", stored)

    def test_verify_rejects_wrong_password(self, svc):
        stored = svc.hash_password("open sesame")
        assert not svc.verify_password("open sesame!", stored)

    def test_hashes_are_salted(self, svc):
        assert svc.hash_password("pw") != svc.hash_password("pw")

    @pytest.mark.parametrize("stored", ["", "@@@", base64.b64encode(b"too short").decode()])
    def test_verify_rejects_malformed_hash(self, svc, stored):
        assert not svc.verify_password("pw", stored)
