"""
hdpay — Non-Custodial HD Wallet & Invoice Settlement Engine
============================================================
Derives a fresh receiving address per invoice from an encrypted
hierarchical-deterministic wallet, watches the chain for payments, and turns
a confirmed payment into a donation record plus a timed rank grant.

Package layout::

    hdpay/
    ├── config.py          # YAML → typed Python config
    ├── constants.py       # Supported assets, families, decimals
    ├── exceptions.py      # Error taxonomy
    ├── database/
    │   ├── engine.py      # SQLAlchemy engine + async helper
    │   └── models.py      # Wallets, invoices, transactions, audit, donations
    ├── engine/
    │   ├── encryption.py  # AES-256-GCM blobs + PBKDF2 password hashes
    │   ├── hd_keys.py     # BIP39 / BIP32 key derivation
    │   ├── assets.py      # Asset-family address capability (UTXO / account)
    │   └── settlement.py  # Invoice status rule + rank expiry math
    ├── services/
    │   ├── wallet_service.py        # HD wallet manager
    │   ├── invoice_service.py       # Invoice lifecycle
    │   ├── transaction_checker.py   # Chain reconciliation + settlement
    │   ├── exchange_rate_service.py # Cached USD rates
    │   ├── explorers.py             # Blockchain explorer bindings
    │   ├── entitlement_service.py   # Donations + rank grants
    │   └── context.py               # Process-wide service context
    ├── api/
    │   ├── main.py        # FastAPI app
    │   └── routes/        # Invoice + admin wallet endpoints
    └── worker/
        └── __main__.py    # Periodic sweep (python -m hdpay.worker)
"""

__version__ = "0.1.0"
