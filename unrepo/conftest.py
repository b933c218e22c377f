# unrepo/conftest.py
import os
import pytest
from datetime import datetime, timezone

os.environ.setdefault("SKIP_ENV_VALIDATION", "1")

from unrepo.tests.mocks import FakeAnalysis, FakeGitHub, FakeOracle, WalletKeypair  # noqa: E402


@pytest.fixture
def db_url(tmp_path):
    """File-backed SQLite database, fresh per test."""
    return f"sqlite:///{tmp_path / 'unrepo_test.db'}"


@pytest.fixture
def engine(db_url):
    from unrepo.core.database import init_engine, create_all_tables

    eng = init_engine(db_url)
    create_all_tables()
    yield eng
    eng.dispose()


@pytest.fixture
def session_factory(engine):
    from unrepo.core.database import get_session_factory

    return get_session_factory()


@pytest.fixture
def db(session_factory):
    session = session_factory()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def make_account(db):
    from unrepo.features.accounts.service import get_or_create_account_by_email, set_tier_flags

    counter = {"n": 0}

    def _make(email=None, *, payment_verified=False, is_token_holder=False):
        counter["n"] += 1
        account = get_or_create_account_by_email(db, email or f"user{counter['n']}@example.com")
        if payment_verified or is_token_holder:
            account = set_tier_flags(
                db, account.id, payment_verified=payment_verified, is_token_holder=is_token_holder
            )
        return account

    return _make


@pytest.fixture
def make_key(db, make_account):
    """Issue a key; returns IssuedApiKey (key row + plaintext token)."""
    from unrepo.features.keys.service import issue_api_key
    from unrepo.models.capability import Capability

    def _make(capability=Capability.RESEARCH, *, account=None, premium=False, name="test key"):
        owner = account or make_account(payment_verified=premium)
        return issue_api_key(db, owner, capability, name)

    return _make


@pytest.fixture
def wallet_keypair():
    return WalletKeypair()


@pytest.fixture
def make_wallet(db):
    """Register a wallet with a valid signature; returns (keypair, wallet)."""
    from unrepo.features.wallets.service import register_wallet

    def _make(*, token_holder=False):
        pair = WalletKeypair()
        message = f"Sign in to UnRepo: {pair.address}"
        wallet, _ = register_wallet(db, pair.address, pair.sign(message), message, mode="strict")
        if token_holder:
            from sqlalchemy import update
            from unrepo.core.database import wallet_users
            from unrepo.features.wallets.service import get_wallet

            db.execute(
                update(wallet_users)
                .where(wallet_users.c.wallet_address == pair.address)
                .values(is_token_holder=True, token_balance=2_000_000)
            )
            db.commit()
            wallet = get_wallet(db, pair.address)
        return pair, wallet

    return _make


@pytest.fixture
def now():
    return datetime.now(timezone.utc)


@pytest.fixture
def fakes():
    return {"github": FakeGitHub(), "analysis": FakeAnalysis(), "oracle": FakeOracle()}


@pytest.fixture
def client(engine, fakes):
    """TestClient with every external collaborator replaced by a fake."""
    from fastapi.testclient import TestClient

    from unrepo.core.collaborators import get_analysis_service, get_github_service, get_token_oracle
    from unrepo.main import app

    app.dependency_overrides[get_github_service] = lambda: fakes["github"]
    app.dependency_overrides[get_analysis_service] = lambda: fakes["analysis"]
    app.dependency_overrides[get_token_oracle] = lambda: fakes["oracle"]
    try:
        yield TestClient(app, raise_server_exceptions=False)
    finally:
        app.dependency_overrides.clear()
