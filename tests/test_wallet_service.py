"""
tests/test_wallet_service.py — HD Wallet Manager tests
=======================================================
Covers wallet creation (only encrypted secrets stored), password-gated
access with audited denials, index allocation that never repeats (also
under concurrent callers), password rotation and guarded deletion.
"""

from __future__ import annotations

import json
from concurrent.futures import ThreadPoolExecutor

import pytest
from sqlalchemy import func, select
from sqlalchemy.orm import Session

from conftest import TEST_PASSWORD
from hdpay.constants import Network
from hdpay.database.models import (
    AuditAction,
    Invoice,
    InvoiceStatus,
    Wallet,
    WalletAuditLog,
)
from hdpay.engine.assets import family_for
from hdpay.engine.hd_keys import ExtendedKey, mnemonic_to_seed
from hdpay.exceptions import (
    AuthorizationError,
    DomainInvariantViolation,
    NotFoundError,
    UnsupportedCurrency,
)
from hdpay.services import audit_service
from hdpay.services.wallet_service import WalletManager


@pytest.fixture
def manager(db_engine, encryption):
    return WalletManager(db_engine, encryption)


def _actions(engine, wallet_id):
    return [e.action for e in audit_service.list_entries(engine, wallet_id=wallet_id)]


def _add_invoice(engine, wallet, index, status=InvoiceStatus.PENDING):
    with Session(engine) as session:
        session.add(Invoice(
            id=f"inv-{index}",
            invoice_number=f"INV-TEST-{index}",
            usd_amount=10.0,
            currency=wallet.currency,
            crypto_amount="0.001",
            exchange_rate="10000",
            wallet_id=wallet.id,
            derivation_index=index,
            payment_address=f"addr-{index}",
            status=status.value,
        ))
        session.commit()


# ===========================================================================
# Creation
# ===========================================================================
class TestCreateWallet:
    def test_only_public_material_in_the_clear(self, manager, db_engine):
        wallet = manager.create_wallet("BTC", password=TEST_PASSWORD, label="main")
        assert wallet.id is not None
        assert wallet.master_public_key.startswith("xpub")
        assert wallet.derivation_path == "m/44'/0'/0'"
        assert wallet.next_derivation_index == 0
        assert wallet.qr_code_data_url.startswith("data:image/png;base64,")
        assert wallet.created_at is not None

        with Session(db_engine) as session:
            row = session.get(Wallet, wallet.id)
            stored = " ".join([row.encrypted_wallet_data, row.encrypted_password_hash])
        assert "xprv" not in stored
        assert "abandon" not in stored

    def test_creation_is_audited(self, manager, db_engine):
        wallet = manager.create_wallet("ETH", password=TEST_PASSWORD)
        assert _actions(db_engine, wallet.id) == [AuditAction.WALLET_CREATED]

    def test_testnet_wallet(self, manager):
        wallet = manager.create_wallet("BTC", password=TEST_PASSWORD, network=Network.TESTNET)
        assert wallet.master_public_key.startswith("tpub")
        assert wallet.derivation_path == "m/44'/1'/0'"

    def test_min_confirmations_default_and_override(self, db_engine, encryption):
        manager = WalletManager(db_engine, encryption, default_confirmations=6)
        assert manager.create_wallet("BTC", password=TEST_PASSWORD).min_confirmations == 6
        assert manager.create_wallet(
            "BTC", password=TEST_PASSWORD, min_confirmations=1,
        ).min_confirmations == 1

    def test_unsupported_currency(self, manager):
        with pytest.raises(UnsupportedCurrency):
            manager.create_wallet("DOGE", password=TEST_PASSWORD)

    def test_token_without_contract_on_network(self, manager):
        with pytest.raises(UnsupportedCurrency):
            manager.create_wallet("USDT", password=TEST_PASSWORD, network=Network.TESTNET)

    def test_short_password(self, manager):
        with pytest.raises(ValueError):
            manager.create_wallet("BTC", password="short")

    def test_multiple_wallets_per_currency(self, manager):
        first = manager.create_wallet("BTC", password=TEST_PASSWORD)
        second = manager.create_wallet("BTC", password=TEST_PASSWORD)
        assert first.master_public_key != second.master_public_key
        assert [w.id for w in manager.list_wallets(currency="btc")] == [first.id, second.id]


# ===========================================================================
# Secret access
# ===========================================================================
class TestWalletData:
    def test_bundle_matches_stored_xpub(self, manager):
        wallet = manager.create_wallet("BTC", password=TEST_PASSWORD)
        bundle = manager.get_wallet_data(wallet.id, TEST_PASSWORD)

        assert len(bundle["mnemonic"].split()) == 24
        account = ExtendedKey.from_seed(mnemonic_to_seed(bundle["mnemonic"])).derive_path(
            bundle["derivation_path"]
        )
        assert account.neuter().serialize() == wallet.master_public_key
        assert bundle["account_xpub"] == wallet.master_public_key

    def test_access_is_audited(self, manager, db_engine):
        wallet = manager.create_wallet("BTC", password=TEST_PASSWORD)
        manager.get_wallet_data(wallet.id, TEST_PASSWORD, ip_address="10.0.0.1")
        latest = audit_service.list_entries(db_engine, wallet_id=wallet.id)[0]
        assert latest.action == AuditAction.WALLET_ACCESSED
        assert latest.ip_address == "10.0.0.1"

    def test_wrong_password_is_denied_and_audited(self, manager, db_engine):
        wallet = manager.create_wallet("BTC", password=TEST_PASSWORD)
        with pytest.raises(AuthorizationError):
            manager.get_wallet_data(wallet.id, "not the password")

        denied = audit_service.list_entries(db_engine, wallet_id=wallet.id)[0]
        assert denied.action == AuditAction.WALLET_ACCESS_DENIED
        assert denied.success is False
        assert denied.error_message == "invalid password"

    def test_unknown_wallet_looks_like_wrong_password(self, manager):
        wallet = manager.create_wallet("BTC", password=TEST_PASSWORD)
        with pytest.raises(AuthorizationError) as missing:
            manager.get_wallet_data(9999, TEST_PASSWORD)
        with pytest.raises(AuthorizationError) as wrong:
            manager.get_wallet_data(wallet.id, "bad password")
        assert str(missing.value) == str(wrong.value)


# ===========================================================================
# Address allocation
# ===========================================================================
class TestDeriveUniqueAddress:
    def test_sequential_indices(self, manager):
        wallet = manager.create_wallet("BTC", password=TEST_PASSWORD)
        results = [manager.derive_unique_address(wallet.id, TEST_PASSWORD) for _ in range(3)]
        assert [index for _, index in results] == [0, 1, 2]
        assert len({address for address, _ in results}) == 3
        assert manager.get_wallet(wallet.id).next_derivation_index == 3

    def test_address_matches_xpub_derivation(self, manager):
        wallet = manager.create_wallet("ETH", password=TEST_PASSWORD)
        address, index = manager.derive_unique_address(wallet.id, TEST_PASSWORD)
        assert address == family_for("ETH").derive_address(
            wallet.master_public_key, index, wallet.network,
        )

    def test_wrong_password_does_not_consume_an_index(self, manager):
        wallet = manager.create_wallet("BTC", password=TEST_PASSWORD)
        with pytest.raises(AuthorizationError):
            manager.derive_unique_address(wallet.id, "wrong password")
        assert manager.get_wallet(wallet.id).next_derivation_index == 0

    def test_derivation_is_audited(self, manager, db_engine):
        wallet = manager.create_wallet("BTC", password=TEST_PASSWORD)
        address, _ = manager.derive_unique_address(wallet.id, TEST_PASSWORD)
        entry = audit_service.list_entries(db_engine, wallet_id=wallet.id)[0]
        assert entry.action == AuditAction.ADDRESS_DERIVED
        assert entry.details["address"] == address

    def test_concurrent_callers_never_share_an_index(self, file_engine, encryption):
        manager = WalletManager(file_engine, encryption)
        wallet = manager.create_wallet("BTC", password=TEST_PASSWORD)

        with ThreadPoolExecutor(max_workers=8) as pool:
            results = list(pool.map(
                lambda _: manager.derive_unique_address(wallet.id, TEST_PASSWORD),
                range(24),
            ))

        indices = sorted(index for _, index in results)
        assert indices == list(range(24))
        assert len({address for address, _ in results}) == 24
        assert manager.get_wallet(wallet.id).next_derivation_index == 24


# ===========================================================================
# Password rotation
# ===========================================================================
class TestUpdatePassword:
    def test_new_password_unlocks_same_bundle(self, manager):
        wallet = manager.create_wallet("BTC", password=TEST_PASSWORD)
        before = manager.get_wallet_data(wallet.id, TEST_PASSWORD)

        manager.update_password(wallet.id, TEST_PASSWORD, "a brand new password")

        assert manager.get_wallet_data(wallet.id, "a brand new password") == before
        with pytest.raises(AuthorizationError):
            manager.get_wallet_data(wallet.id, TEST_PASSWORD)

    def test_wrong_old_password(self, manager):
        wallet = manager.create_wallet("BTC", password=TEST_PASSWORD)
        with pytest.raises(AuthorizationError):
            manager.update_password(wallet.id, "wrong password", "a brand new password")

    def test_short_new_password(self, manager):
        wallet = manager.create_wallet("BTC", password=TEST_PASSWORD)
        with pytest.raises(ValueError):
            manager.update_password(wallet.id, TEST_PASSWORD, "short")

    def test_rotation_is_audited(self, manager, db_engine):
        wallet = manager.create_wallet("BTC", password=TEST_PASSWORD)
        manager.update_password(wallet.id, TEST_PASSWORD, "a brand new password")
        assert AuditAction.PASSWORD_UPDATED in _actions(db_engine, wallet.id)


# ===========================================================================
# Deletion
# ===========================================================================
class TestDeleteWallet:
    def test_delete_without_invoices(self, manager, db_engine):
        wallet = manager.create_wallet("BTC", password=TEST_PASSWORD)
        manager.delete_wallet(wallet.id, TEST_PASSWORD)

        with pytest.raises(NotFoundError):
            manager.get_wallet(wallet.id)
        # The audit trail outlives the wallet
        assert _actions(db_engine, wallet.id)[0] == AuditAction.WALLET_DELETED

    def test_open_invoice_blocks_deletion(self, manager, db_engine):
        wallet = manager.create_wallet("BTC", password=TEST_PASSWORD)
        _add_invoice(db_engine, wallet, 0, InvoiceStatus.PARTIALLY_PAID)

        with pytest.raises(DomainInvariantViolation):
            manager.delete_wallet(wallet.id, TEST_PASSWORD)
        assert manager.get_wallet(wallet.id).id == wallet.id

    def test_closed_invoices_are_kept_and_detached(self, manager, db_engine):
        wallet = manager.create_wallet("BTC", password=TEST_PASSWORD)
        _add_invoice(db_engine, wallet, 0, InvoiceStatus.PAID)
        _add_invoice(db_engine, wallet, 1, InvoiceStatus.CANCELLED)

        manager.delete_wallet(wallet.id, TEST_PASSWORD)

        with Session(db_engine) as session:
            rows = session.scalars(select(Invoice).order_by(Invoice.derivation_index)).all()
            assert [r.wallet_id for r in rows] == [None, None]
            assert [r.payment_address for r in rows] == ["addr-0", "addr-1"]

    def test_wrong_password_keeps_wallet(self, manager, db_engine):
        wallet = manager.create_wallet("BTC", password=TEST_PASSWORD)
        with pytest.raises(AuthorizationError):
            manager.delete_wallet(wallet.id, "wrong password")
        with Session(db_engine) as session:
            assert session.scalar(select(func.count(Wallet.id))) == 1

    def test_deleted_wallet_stays_out_of_listings(self, manager):
        keep = manager.create_wallet("BTC", password=TEST_PASSWORD)
        gone = manager.create_wallet("BTC", password=TEST_PASSWORD)
        manager.delete_wallet(gone.id, TEST_PASSWORD)
        assert [w.id for w in manager.list_wallets()] == [keep.id]


class TestAuditTrail:
    def test_entries_are_newest_first(self, manager, db_engine):
        wallet = manager.create_wallet("BTC", password=TEST_PASSWORD)
        manager.derive_unique_address(wallet.id, TEST_PASSWORD)
        with pytest.raises(AuthorizationError):
            manager.derive_unique_address(wallet.id, "wrong password")
        assert _actions(db_engine, wallet.id) == [
            AuditAction.WALLET_ACCESS_DENIED,
            AuditAction.ADDRESS_DERIVED,
            AuditAction.WALLET_CREATED,
        ]

    def test_details_are_json_safe(self, manager, db_engine):
        wallet = manager.create_wallet("BTC", password=TEST_PASSWORD)
        with Session(db_engine) as session:
            entry = session.scalar(
                select(WalletAuditLog).where(WalletAuditLog.wallet_id == wallet.id)
            )
            json.dumps(entry.details)
