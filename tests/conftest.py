"""Shared test fixtures for the checkout broker test suite.

Provides:
- app: Flask app configured for testing (in-memory SQLite, fake Stripe keys)
- client: Flask test client
- db_session: clean database per test (tables created/dropped)
- make_order: factory that inserts a committed order
- sign_payload / stripe_session helpers for webhook and gateway fakes
"""

import hashlib
import hmac
import json
import time
from unittest.mock import MagicMock

import pytest

from checkout_broker import create_app
from checkout_broker.extensions import db as _db
from checkout_broker.services import order_store

WEBHOOK_SECRET = "whsec_test_fake"
SUBJECT_HEADERS = {"X-Subject-Id": "u1"}


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


@pytest.fixture
def make_order(db_session):
    """Insert and commit an order; returns its id."""
    counter = {"n": 0}

    def _make(subject_id="u1", status="pending", **fields):
        counter["n"] += 1
        order_id = fields.pop("order_id", f"order_test{counter['n']:04d}")
        order_store.create_order(
            order_id=order_id,
            subject_id=subject_id,
            product_id="monthly-plan",
            plan="monthly-plan",
            amount=990,
            currency="usd",
        )
        if status != "pending" or fields:
            order_store.update_order(order_id, status=status, **fields)
        order_store.commit()
        return order_id

    return _make


def stripe_session(session_id="cs_test_123", url=None, customer=None):
    """A stand-in for the stripe.checkout.Session returned by create()."""
    session = MagicMock()
    session.id = session_id
    session.url = url or f"https://checkout.stripe.com/c/pay/{session_id}"
    session.customer = customer
    return session


def sign_payload(payload, secret=WEBHOOK_SECRET, timestamp=None):
    """Build a Stripe-Signature header for ``payload`` (a str)."""
    timestamp = timestamp or int(time.time())
    signed = f"{timestamp}.{payload}".encode("utf-8")
    signature = hmac.new(secret.encode("utf-8"), signed, hashlib.sha256).hexdigest()
    return f"t={timestamp},v1={signature}"


def post_event(client, event, secret=WEBHOOK_SECRET):
    """POST a signed webhook event to /stripe/webhooks."""
    payload = json.dumps(event)
    return client.post(
        "/stripe/webhooks",
        data=payload,
        content_type="application/json",
        headers={"Stripe-Signature": sign_payload(payload, secret)},
    )
