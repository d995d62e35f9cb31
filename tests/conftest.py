"""Shared test fixtures for the payhook test suite.

Provides:
- app: Flask app configured for testing (in-memory SQLite)
- client: Flask test client
- db_session: clean database per test (tables created/dropped)
- sign / make_body: helpers to build correctly signed notifications
- seed_user / seed_subscription: factories for pre-existing ledger rows
"""

import hashlib
import hmac
import json
import time
from datetime import timedelta
from decimal import Decimal

import pytest

from payhook import clock, create_app
from payhook.extensions import db as _db
from payhook.models.subscription import Subscription
from payhook.models.user import User

WEBHOOK_SECRET = "whsec_test_fake"


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


def sign_body(body, secret=WEBHOOK_SECRET, timestamp=None):
    """Build a "t=...,v1=..." signature header for `body`."""
    timestamp = int(timestamp if timestamp is not None else time.time())
    signed = f"{timestamp}.{body}".encode("utf-8")
    digest = hmac.new(secret.encode("utf-8"), signed, hashlib.sha256).hexdigest()
    return f"t={timestamp},v1={digest}"


def build_body(**overrides):
    """JSON notification body with sensible defaults.

    Pass a value of None to drop a field entirely.
    """
    data = {
        "eventId": "evt_001",
        "paymentId": "pay_001",
        "eventType": "payment.completed",
        "email": "customer@example.com",
        "amount": "29.99",
        "currency": "USD",
        "planId": "pro",
        "status": "completed",
    }
    data.update(overrides)
    data = {k: v for k, v in data.items() if v is not None}
    return json.dumps(data)


@pytest.fixture
def sign():
    return sign_body


@pytest.fixture
def make_body():
    return build_body


@pytest.fixture
def seed_user(db_session):
    """Factory: create (and commit) a user by email."""

    def _seed(email="existing@example.com"):
        user = User(email=email)
        db_session.add(user)
        db_session.commit()
        return user

    return _seed


@pytest.fixture
def seed_subscription(db_session):
    """Factory: create (and commit) a subscription for a user."""

    def _seed(user, status=Subscription.ACTIVE, plan_id="pro",
              amount=Decimal("29.99"), expires_in=timedelta(days=10), now=None):
        now = now or clock.utcnow()
        sub = Subscription(
            user_id=user.id,
            status=status,
            plan_id=plan_id,
            amount=amount,
            currency="USD",
            started_at=now - timedelta(days=20),
            expires_at=now + expires_in if expires_in is not None else None,
        )
        db_session.add(sub)
        db_session.commit()
        return sub

    return _seed
