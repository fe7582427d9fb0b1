"""
tests/conftest.py — Shared Test Fixtures
=========================================
"""

from __future__ import annotations

import os

# ---------------------------------------------------------------------------
# Ensure a valid JWT_SECRET is always set for test runs.
# This must happen before any import of hdpay.api.deps which validates
# the secret at module-load time.
# ---------------------------------------------------------------------------
_TEST_JWT_SECRET = "test-secret-for-pytest-only-" + "x" * 40  # > 32 chars
os.environ.setdefault("JWT_SECRET", _TEST_JWT_SECRET)

import json  # noqa: E402
from decimal import Decimal  # noqa: E402

import httpx  # noqa: E402
import pytest  # noqa: E402
from sqlalchemy import Engine, create_engine, event  # noqa: E402
from sqlalchemy.dialects.postgresql import JSONB as PG_JSONB  # noqa: E402
from sqlalchemy.orm import Session  # noqa: E402
from sqlalchemy.pool import StaticPool  # noqa: E402

from hdpay.config import HdPayConfig  # noqa: E402
from hdpay.database.models import Base, DonationRank, User  # noqa: E402
from hdpay.engine.encryption import EncryptionService  # noqa: E402

TEST_MASTER_SECRET = "pytest-master-secret-" + "m" * 32
TEST_PASSWORD = "correct horse battery"
FAST_ITERATIONS = 1_000

ORACLE_URL = "https://oracle.test/api/v3"
EXPLORER_URLS = {
    "blockchain_info": "https://btc.test",
    "esplora_testnet": "https://esplora.test/api",
    "etherscan_mainnet": "https://eth.test/api",
    "etherscan_testnet": "https://sepolia.test/api",
}

# ---------------------------------------------------------------------------
# Make JSONB columns work in SQLite for testing.
# ---------------------------------------------------------------------------
_jsonb_sqlite_registered = False


def _register_jsonb_sqlite_compat():
    """Register SQLite compilation for PG JSONB type (idempotent).

    Also maps BigInteger → INTEGER so autoincrement works on SQLite.
    """
    global _jsonb_sqlite_registered
    if _jsonb_sqlite_registered:
        return
    from sqlalchemy import BigInteger
    from sqlalchemy.ext.compiler import compiles

    @compiles(PG_JSONB, "sqlite")
    def _compile_jsonb_as_text(type_, compiler, **kw):
        return "TEXT"

    @compiles(BigInteger, "sqlite")
    def _compile_bigint_as_integer(type_, compiler, **kw):
        return "INTEGER"

    _jsonb_sqlite_registered = True


_register_jsonb_sqlite_compat()


def _sqlite_engine(url: str, *, begin: str = "BEGIN", **kwargs) -> Engine:
    """SQLite engine whose transactions (and SAVEPOINTs) behave like Postgres.

    pysqlite defers BEGIN until the first DML statement, which breaks
    SAVEPOINT nesting; take over transaction control instead.
    """
    engine = create_engine(url, echo=False, **kwargs)

    @event.listens_for(engine, "connect")
    def _disable_pysqlite_transactions(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None

    @event.listens_for(engine, "begin")
    def _emit_begin(conn):
        conn.exec_driver_sql(begin)

    Base.metadata.create_all(engine)
    return engine


@pytest.fixture
def db_engine() -> Engine:
    """In-memory SQLite engine with all hdpay tables.

    Uses StaticPool so all threads share the same in-memory database
    (required by ``asyncio.to_thread`` used in the worker).
    """
    return _sqlite_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )


@pytest.fixture
def file_engine(tmp_path) -> Engine:
    """File-backed SQLite engine for tests that need real concurrent connections.

    ``BEGIN IMMEDIATE`` serialises writers; the busy timeout makes them
    wait instead of failing.
    """
    return _sqlite_engine(
        f"sqlite:///{tmp_path / 'hdpay.db'}",
        begin="BEGIN IMMEDIATE",
        connect_args={"check_same_thread": False, "timeout": 30},
    )


@pytest.fixture
def db_session(db_engine: Engine):
    """Provide a transactional session that rolls back after each test."""
    with Session(db_engine) as session:
        yield session
        session.rollback()


# ---------------------------------------------------------------------------
# Services
# ---------------------------------------------------------------------------
@pytest.fixture
def encryption() -> EncryptionService:
    """Encryption service with a low work factor so tests stay fast."""
    return EncryptionService(TEST_MASTER_SECRET, iterations=FAST_ITERATIONS)


@pytest.fixture
def config() -> HdPayConfig:
    return HdPayConfig(
        price_oracle_url=ORACLE_URL,
        explorer_urls=dict(EXPLORER_URLS),
        sweep_concurrency=2,
    )


class FakeUpstream:
    """Routes httpx requests to canned JSON/text by URL path.

    ``routes`` maps a path (no host) to a payload, a callable
    ``(request) -> payload`` or an :class:`httpx.Response`.
    Every request is recorded in ``calls``.
    """

    def __init__(self) -> None:
        self.routes: dict[str, object] = {}
        self.calls: list[httpx.Request] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.calls.append(request)
        target = self.routes.get(request.url.path)
        if callable(target):
            target = target(request)
        if target is None:
            return httpx.Response(404, json={"error": "not found"})
        if isinstance(target, httpx.Response):
            return target
        if isinstance(target, str):
            return httpx.Response(200, text=target)
        return httpx.Response(200, content=json.dumps(target).encode())

    def set_price(self, oracle_id: str, usd) -> None:
        self.routes["/api/v3/simple/price"] = {oracle_id: {"usd": usd}}

    def calls_to(self, path: str) -> int:
        return sum(1 for req in self.calls if req.url.path == path)


@pytest.fixture
def upstream() -> FakeUpstream:
    return FakeUpstream()


@pytest.fixture
def http_client(upstream: FakeUpstream):
    client = httpx.Client(transport=httpx.MockTransport(upstream))
    yield client
    client.close()


@pytest.fixture
def app_context(config, db_engine, encryption, http_client):
    """A full service graph over in-memory SQLite and the fake upstream."""
    from hdpay.services.context import AppContext

    return AppContext(config, db_engine, encryption=encryption, http_client=http_client)


# ---------------------------------------------------------------------------
# Seed data
# ---------------------------------------------------------------------------
def seed_user_and_rank(
    engine: Engine,
    *,
    user_id: int = 1001,
    rank_id: str = "vip",
    duration: int | None = 30,
) -> None:
    with Session(engine) as session:
        session.add(DonationRank(id=rank_id, name=rank_id.upper(), min_amount=10.0, duration=duration))
        session.add(User(id=user_id, username="alice", email="alice@example.com", total_donated=0.0))
        session.commit()


def btc_payment(tx_hash: str, address: str, satoshis: int, *, block_height: int | None) -> dict:
    """One blockchain.info ``/rawaddr`` transaction paying *address*."""
    return {
        "hash": tx_hash,
        "time": 1_700_000_000,
        "block_height": block_height,
        "fee": 1500,
        "inputs": [{"prev_out": {"addr": "1SenderAddressxxxxxxxxxxxxxxxxxxx", "value": satoshis + 5000}}],
        "out": [
            {"addr": address, "value": satoshis},
            {"addr": "1ChangeAddressxxxxxxxxxxxxxxxxxxx", "value": 3500},
        ],
    }


# ---------------------------------------------------------------------------
# API helpers
# ---------------------------------------------------------------------------
@pytest.fixture
def admin_token():
    """Generate a valid admin JWT for use in API integration tests."""
    return make_admin_token()


def make_admin_token(sub: str = "99999", username: str = "FixtureAdmin") -> str:
    """Create an admin JWT.  Usable as both a fixture and a factory function."""
    import jwt

    from hdpay.api.deps import JWT_ALGORITHM, JWT_SECRET

    return jwt.encode(
        {"sub": sub, "username": username, "is_admin": True},
        JWT_SECRET,
        algorithm=JWT_ALGORITHM,
    )


@pytest.fixture
def client(app_context):
    """FastAPI TestClient wired to the test service context."""
    from fastapi.testclient import TestClient

    from hdpay.api.deps import get_context
    from hdpay.api.main import app

    app.dependency_overrides[get_context] = lambda: app_context
    yield TestClient(app, raise_server_exceptions=False)
    app.dependency_overrides.clear()


def as_decimal(value) -> Decimal:
    return Decimal(str(value))
