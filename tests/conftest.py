"""Shared test fixtures for the payment reconciliation test suite.

Provides:
- app: Flask app configured for testing (in-memory SQLite, fake provider keys)
- client: Flask test client
- db_session: clean database per test (tables created/dropped)
- seed_data: a user plus pending transactions for each provider and item kind
- utc: helper that normalizes datetimes read back from SQLite
"""

from datetime import timezone

import pytest

from app import create_app
from app.extensions import db as _db
from app.models.user import User
from app.models.transaction import PurchaseTransaction


@pytest.fixture(scope="session")
def app():
    """Create the Flask application configured for testing."""
    app = create_app("testing")
    yield app


@pytest.fixture(autouse=True)
def db_session(app):
    """Create all tables before each test, drop after."""
    with app.app_context():
        _db.create_all()
        yield _db.session
        _db.session.rollback()
        _db.drop_all()


@pytest.fixture
def client(app):
    """Flask test client."""
    return app.test_client()


def make_transaction(session, user_id, **overrides):
    """Create and commit a pending transaction. Returns its id."""
    fields = {
        "user_id": user_id,
        "item_kind": PurchaseTransaction.SONG,
        "item_id": "song_1",
        "provider": "stripe",
        "amount_minor": 199,
        "currency": "USD",
    }
    fields.update(overrides)
    tx = PurchaseTransaction(**fields)
    session.add(tx)
    session.commit()
    return tx.id


@pytest.fixture
def seed_data(app, db_session):
    """Seed a listener and one pending transaction per scenario.

    Returns a dict of plain ids so tests can reload objects freely.
    """
    user = User(email="listener@example.com", full_name="Test Listener")
    db_session.add(user)
    db_session.commit()
    user_id = user.id

    return {
        "user_id": user_id,
        # Stripe one-time song purchase
        "song_tx_id": make_transaction(
            db_session, user_id,
            item_kind=PurchaseTransaction.SONG,
            item_id="song_42",
            provider="stripe",
            payment_intent_id="pi_song_42",
        ),
        # Razorpay one-time album purchase
        "album_tx_id": make_transaction(
            db_session, user_id,
            item_kind=PurchaseTransaction.ALBUM,
            item_id="album_7",
            provider="razorpay",
            order_id="order_album_7",
            amount_minor=49900,
            currency="INR",
        ),
        # Stripe 3-month artist subscription
        "sub_tx_id": make_transaction(
            db_session, user_id,
            item_kind=PurchaseTransaction.ARTIST_SUBSCRIPTION,
            item_id="artist_9",
            artist_id="artist_9",
            provider="stripe",
            subscription_id="sub_artist_9",
            amount_minor=999,
            metadata_={"cycle": "3m"},
        ),
        # PayPal one-time song purchase
        "paypal_tx_id": make_transaction(
            db_session, user_id,
            item_kind=PurchaseTransaction.SONG,
            item_id="song_77",
            provider="paypal",
            order_id="5O190127TN364715T",
            amount_minor=999,
        ),
    }


@pytest.fixture
def utc():
    """SQLite drops tzinfo on the way back; reattach UTC for comparisons."""

    def _utc(value):
        if value is None or value.tzinfo is not None:
            return value
        return value.replace(tzinfo=timezone.utc)

    return _utc


@pytest.fixture
def make_tx(db_session):
    """Factory fixture: make_tx(user_id, **fields) -> transaction id."""

    def _make(user_id, **overrides):
        return make_transaction(db_session, user_id, **overrides)

    return _make


@pytest.fixture
def clients(app):
    """The provider client registry built by create_app()."""
    return app.extensions["payment_providers"]
