"""
hdpay.services.wallet_service — HD Wallet Manager
==================================================

Creates and guards hierarchical-deterministic wallets, one account root per
wallet, and hands out receiving addresses that are never reused.

What lives where:

* ``encrypted_wallet_data`` — JSON secret bundle (mnemonic, root ``xprv``,
  account ``xprv``/``xpub``, path), encrypted under the master secret
  *and* the wallet password.
* ``encrypted_password_hash`` — PBKDF2 hash of the wallet password,
  encrypted under the master secret.
* ``master_public_key`` — account-level ``xpub`` in the clear.  Receiving
  addresses are derived from it by public child derivation, so issuing an
  address never decrypts the seed.

Index allocation is one ``UPDATE … RETURNING`` against the wallet row, so
two concurrent callers can never be handed the same index.

Usage::

    manager = WalletManager(engine, encryption)
    wallet = manager.create_wallet("BTC", password="correct horse")
    address, index = manager.derive_unique_address(wallet.id, "correct horse")
"""

from __future__ import annotations

import json
import logging
from typing import Any

from sqlalchemy import Engine, func, select, update
from sqlalchemy.orm import Session

from hdpay.constants import DEFAULT_MIN_CONFIRMATIONS, Network, account_path, get_asset
from hdpay.database.engine import get_session
from hdpay.database.models import (
    OPEN_INVOICE_STATUSES,
    AuditAction,
    Invoice,
    Wallet,
)
from hdpay.engine.assets import family_for
from hdpay.engine.encryption import EncryptionService
from hdpay.engine.hd_keys import ExtendedKey, generate_mnemonic, mnemonic_to_seed
from hdpay.exceptions import (
    AuthorizationError,
    DecryptionError,
    DomainInvariantViolation,
    NotFoundError,
    UnsupportedCurrency,
)
from hdpay.services import audit_service
from hdpay.services.qr_service import render_qr_data_url

logger = logging.getLogger(__name__)

MIN_PASSWORD_LENGTH = 8


class WalletManager:
    """Create, unlock, re-key and delete HD wallets; allocate addresses."""

    def __init__(
        self,
        engine: Engine,
        encryption: EncryptionService,
        *,
        default_confirmations: int = DEFAULT_MIN_CONFIRMATIONS,
    ) -> None:
        self.engine = engine
        self.encryption = encryption
        self.default_confirmations = default_confirmations

    # ------------------------------------------------------------------
    # Creation
    # ------------------------------------------------------------------
    def create_wallet(
        self,
        currency: str,
        *,
        password: str,
        network: str = Network.MAINNET,
        label: str | None = None,
        min_confirmations: int | None = None,
    ) -> Wallet:
        """Generate a fresh 24-word wallet and persist only encrypted secrets."""
        asset = get_asset(currency)
        network = Network(network)
        if asset.is_token and asset.contract_for(network) is None:
            raise UnsupportedCurrency(f"{asset.symbol} has no token contract on {network}")
        if len(password) < MIN_PASSWORD_LENGTH:
            raise ValueError(f"Wallet password must be at least {MIN_PASSWORD_LENGTH} characters")

        path = account_path(asset.symbol, network)
        words = generate_mnemonic(256)
        root = ExtendedKey.from_seed(mnemonic_to_seed(words), network)
        account = root.derive_path(path)
        xpub = account.neuter().serialize()

        bundle = json.dumps({
            "mnemonic": words,
            "root_xprv": root.serialize(private=True),
            "account_xprv": account.serialize(private=True),
            "account_xpub": xpub,
            "derivation_path": path,
            "currency": asset.symbol,
            "network": str(network),
        })
        encrypted_bundle = self.encryption.encrypt(bundle, passphrase=password)
        encrypted_hash = self.encryption.encrypt(self.encryption.hash_password(password))
        del bundle, words, root, account

        wallet = Wallet(
            currency=asset.symbol,
            network=str(network),
            label=label,
            encrypted_wallet_data=encrypted_bundle,
            encrypted_password_hash=encrypted_hash,
            master_public_key=xpub,
            qr_code_data_url=render_qr_data_url(xpub),
            derivation_path=path,
            next_derivation_index=0,
            min_confirmations=min_confirmations or self.default_confirmations,
            is_active=True,
        )
        with get_session(self.engine) as session:
            session.add(wallet)
            session.flush()
            audit_service.record(
                session, AuditAction.WALLET_CREATED,
                wallet_id=wallet.id,
                details={"currency": asset.symbol, "network": str(network), "derivation_path": path},
            )
            session.refresh(wallet)

        logger.info("Created %s/%s wallet id=%d", asset.symbol, network, wallet.id)
        return wallet

    # ------------------------------------------------------------------
    # Authorization
    # ------------------------------------------------------------------
    def _password_matches(self, wallet: Wallet, password: str) -> bool:
        try:
            stored_hash = self.encryption.decrypt(wallet.encrypted_password_hash)
        except DecryptionError:
            logger.warning("Password hash blob of wallet %d failed authentication", wallet.id)
            return False
        return self.encryption.verify_password(password, stored_hash)

    def _deny(
        self, wallet_id: int, operation: str, reason: str, ip_address: str | None,
    ) -> AuthorizationError:
        audit_service.record_standalone(
            self.engine, AuditAction.WALLET_ACCESS_DENIED,
            wallet_id=wallet_id,
            details={"operation": operation},
            success=False,
            error_message=reason,
            ip_address=ip_address,
        )
        return AuthorizationError()

    def authorize(
        self,
        wallet_id: int,
        password: str,
        *,
        operation: str,
        ip_address: str | None = None,
    ) -> Wallet:
        """Return the wallet if *password* unlocks it.

        Raises
        ------
        AuthorizationError
            Same message whether the wallet is missing or the password wrong.
        """
        with Session(self.engine, expire_on_commit=False) as session:
            wallet = session.get(Wallet, wallet_id)
            if wallet is not None:
                session.expunge(wallet)

        if wallet is None:
            raise self._deny(wallet_id, operation, "wallet not found", ip_address)
        if not self._password_matches(wallet, password):
            raise self._deny(wallet_id, operation, "invalid password", ip_address)
        return wallet

    def _unlock_bundle(
        self, wallet: Wallet, password: str, operation: str, ip_address: str | None,
    ) -> dict[str, Any]:
        try:
            return json.loads(
                self.encryption.decrypt(wallet.encrypted_wallet_data, passphrase=password)
            )
        except DecryptionError:
            raise self._deny(wallet.id, operation, "wallet data failed authentication", ip_address) from None

    # ------------------------------------------------------------------
    # Address allocation
    # ------------------------------------------------------------------
    def allocate_address(self, session: Session, wallet: Wallet) -> tuple[str, int]:
        """Claim the next index on *wallet* and derive its address.

        Runs inside the caller's transaction; the index is committed (or
        released) together with whatever the caller binds it to.
        """
        stmt = (
            update(Wallet)
            .where(Wallet.id == wallet.id, Wallet.is_active.is_(True))
            .values(next_derivation_index=Wallet.next_derivation_index + 1)
            .returning(Wallet.next_derivation_index)
        )
        new_next = session.execute(stmt).scalar_one_or_none()
        if new_next is None:
            raise DomainInvariantViolation(f"Wallet {wallet.id} is inactive or deleted")
        index = new_next - 1

        address = family_for(wallet.currency).derive_address(
            wallet.master_public_key, index, wallet.network,
        )
        logger.debug("Wallet %d issued index %d", wallet.id, index)
        return address, index

    def derive_unique_address(
        self, wallet_id: int, password: str, *, ip_address: str | None = None,
    ) -> tuple[str, int]:
        """Password-gated: allocate a never-before-issued receiving address."""
        wallet = self.authorize(
            wallet_id, password, operation="derive_address", ip_address=ip_address,
        )
        with get_session(self.engine) as session:
            address, index = self.allocate_address(session, wallet)
            audit_service.record(
                session, AuditAction.ADDRESS_DERIVED,
                wallet_id=wallet.id,
                details={"derivation_index": index, "address": address},
                ip_address=ip_address,
            )
        return address, index

    # ------------------------------------------------------------------
    # Secret access
    # ------------------------------------------------------------------
    def get_wallet_data(
        self, wallet_id: int, password: str, *, ip_address: str | None = None,
    ) -> dict[str, Any]:
        """Decrypt and return the secret bundle.  Every call is audited."""
        wallet = self.authorize(
            wallet_id, password, operation="get_wallet_data", ip_address=ip_address,
        )
        bundle = self._unlock_bundle(wallet, password, "get_wallet_data", ip_address)
        audit_service.record_standalone(
            self.engine, AuditAction.WALLET_ACCESSED,
            wallet_id=wallet.id,
            details={"operation": "get_wallet_data"},
            ip_address=ip_address,
        )
        return bundle

    def update_password(
        self,
        wallet_id: int,
        old_password: str,
        new_password: str,
        *,
        ip_address: str | None = None,
    ) -> None:
        """Re-encrypt the secret bundle under *new_password*."""
        if len(new_password) < MIN_PASSWORD_LENGTH:
            raise ValueError(f"Wallet password must be at least {MIN_PASSWORD_LENGTH} characters")

        wallet = self.authorize(
            wallet_id, old_password, operation="update_password", ip_address=ip_address,
        )
        bundle = self._unlock_bundle(wallet, old_password, "update_password", ip_address)
        encrypted_bundle = self.encryption.encrypt(json.dumps(bundle), passphrase=new_password)
        encrypted_hash = self.encryption.encrypt(self.encryption.hash_password(new_password))
        del bundle

        with get_session(self.engine) as session:
            row = session.get(Wallet, wallet_id, with_for_update=True)
            if row is None:
                raise NotFoundError(f"Wallet {wallet_id} was deleted concurrently")
            row.encrypted_wallet_data = encrypted_bundle
            row.encrypted_password_hash = encrypted_hash
            audit_service.record(
                session, AuditAction.PASSWORD_UPDATED,
                wallet_id=wallet_id, ip_address=ip_address,
            )
        logger.info("Password rotated for wallet %d", wallet_id)

    # ------------------------------------------------------------------
    # Deletion
    # ------------------------------------------------------------------
    def delete_wallet(
        self, wallet_id: int, password: str, *, ip_address: str | None = None,
    ) -> None:
        """Irreversibly destroy a wallet's key material.

        Raises
        ------
        DomainInvariantViolation
            While any invoice bound to the wallet is still open.
        """
        wallet = self.authorize(
            wallet_id, password, operation="delete_wallet", ip_address=ip_address,
        )
        with get_session(self.engine) as session:
            row = session.get(Wallet, wallet_id, with_for_update=True)
            if row is None:
                raise NotFoundError(f"Wallet {wallet_id} was deleted concurrently")

            open_count = session.scalar(
                select(func.count(Invoice.id)).where(
                    Invoice.wallet_id == wallet_id,
                    Invoice.status.in_(OPEN_INVOICE_STATUSES),
                )
            )
            if open_count:
                raise DomainInvariantViolation(
                    f"Wallet {wallet_id} still has {open_count} open invoice(s)"
                )

            # Closed invoices keep their address + index as history
            session.execute(
                update(Invoice).where(Invoice.wallet_id == wallet_id).values(wallet_id=None)
            )
            session.delete(row)
            audit_service.record(
                session, AuditAction.WALLET_DELETED,
                wallet_id=wallet_id,
                details={
                    "currency": wallet.currency,
                    "network": wallet.network,
                    "issued_indices": wallet.next_derivation_index,
                },
                ip_address=ip_address,
            )
        logger.warning("Deleted wallet %d (%s/%s)", wallet_id, wallet.currency, wallet.network)

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------
    def get_wallet(self, wallet_id: int) -> Wallet:
        with Session(self.engine, expire_on_commit=False) as session:
            wallet = session.get(Wallet, wallet_id)
            if wallet is None:
                raise NotFoundError(f"Wallet {wallet_id} not found")
            session.expunge(wallet)
            return wallet

    def list_wallets(self, *, currency: str | None = None) -> list[Wallet]:
        with Session(self.engine, expire_on_commit=False) as session:
            stmt = select(Wallet).order_by(Wallet.id)
            if currency is not None:
                stmt = stmt.where(Wallet.currency == currency.upper())
            wallets = list(session.scalars(stmt))
            session.expunge_all()
            return wallets
