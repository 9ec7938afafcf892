"""Shared test fixtures for the commerce test suite.

Provides:
- app: Flask app configured for testing (in-memory SQLite, CSRF off)
- client: Flask test client
- db_session: clean database per test (tables created/dropped)
- seed_data: buyer u1, product p1, an admin user
- sign_payload / post_event: Stripe-signed webhook deliveries
"""

import hashlib
import hmac
import json
import time

import pytest
from werkzeug.security import generate_password_hash

from commerce import create_app, reliability
from commerce.extensions import db as _db
from commerce.models.product import Product
from commerce.models.user import User

WEBHOOK_SECRET = "whsec_test_fake"


@pytest.fixture(scope="session")
def app():
    """Create the Flask application configured for testing."""
    app = create_app("testing")
    yield app


@pytest.fixture(autouse=True)
def db_session(app):
    """Create all tables before each test, drop after.

    Bulkheads and feature flags are rebuilt so a flag switched off in one
    test does not leak into the next.
    """
    with app.app_context():
        reliability.init_app(app)
        _db.create_all()
        yield _db.session
        _db.session.rollback()
        _db.drop_all()


@pytest.fixture
def client(app):
    """Flask test client."""
    return app.test_client()


@pytest.fixture
def seed_data(app, db_session):
    """Seed a buyer (u1), a product (p1) and an admin.

    Returns a dict of plain IDs and values for easy access in tests.
    """
    buyer = User(
        id="u1",
        email="buyer@example.com",
        password_hash=generate_password_hash("buyer-pass-123"),
        full_name="Jane Buyer",
    )
    admin = User(
        email="admin@commerce.local",
        password_hash=generate_password_hash("admin123"),
        full_name="Admin User",
        is_admin=True,
    )
    product = Product(
        id="p1",
        slug="intro-to-sql",
        title="Intro to SQL",
        format="PDF",
        price_cents=5900,
        currency="USD",
        download_manifest=[
            {"name": "intro-to-sql.pdf", "url": "https://cdn.example.com/intro-to-sql.pdf"},
        ],
    )
    second_product = Product(
        id="p2",
        slug="advanced-sql",
        title="Advanced SQL",
        format="PDF",
        price_cents=7900,
        currency="USD",
        download_manifest=[
            {"name": "advanced-sql.pdf", "url": "https://cdn.example.com/advanced-sql.pdf"},
        ],
    )
    _db.session.add_all([buyer, admin, product, second_product])
    _db.session.commit()

    return {
        "buyer_id": buyer.id,
        "buyer_email": buyer.email,
        "buyer_password": "buyer-pass-123",
        "admin_id": admin.id,
        "admin_email": admin.email,
        "admin_password": "admin123",
        "product_id": product.id,
        "product_slug": product.slug,
        "second_product_id": second_product.id,
    }


# ──────────────────────────────────────────────
# Stripe webhook helpers
# ──────────────────────────────────────────────

def sign_payload(payload, secret=WEBHOOK_SECRET, timestamp=None):
    """Build a Stripe-Signature header for `payload`."""
    timestamp = timestamp or int(time.time())
    signed = f"{timestamp}.{payload}".encode("utf-8")
    signature = hmac.new(secret.encode("utf-8"), signed, hashlib.sha256).hexdigest()
    return f"t={timestamp},v1={signature}"


def checkout_completed_event(event_id="evt_1", session_id="cs_1", user_id="u1",
                             product_id="p1", amount=5900, payment_intent="pi_1",
                             email="buyer@example.com", payment_status="paid",
                             event_type="checkout.session.completed", metadata=None):
    if metadata is None:
        metadata = {"product_id": product_id}
        if user_id:
            metadata["user_id"] = user_id
    return {
        "id": event_id,
        "type": event_type,
        "data": {
            "object": {
                "id": session_id,
                "object": "checkout.session",
                "payment_intent": payment_intent,
                "payment_status": payment_status,
                "amount_total": amount,
                "currency": "usd",
                "customer_email": email,
                "customer_details": {"email": email, "name": "Jane Buyer"},
                "metadata": metadata,
            }
        },
    }


def charge_refunded_event(event_id="evt_2", payment_intent="pi_1", amount=5900):
    return {
        "id": event_id,
        "type": "charge.refunded",
        "data": {
            "object": {
                "id": "ch_1",
                "object": "charge",
                "payment_intent": payment_intent,
                "amount_refunded": amount,
                "refunded": True,
            }
        },
    }


@pytest.fixture
def post_event(client):
    """POST a correctly signed webhook delivery. Returns the response."""

    def _post(event):
        payload = json.dumps(event)
        return client.post(
            "/stripe/webhooks",
            data=payload,
            content_type="application/json",
            headers={"Stripe-Signature": sign_payload(payload)},
        )

    return _post


@pytest.fixture
def login(client):
    """Log a user in through /auth/login."""

    def _login(email, password):
        resp = client.post("/auth/login", json={"email": email, "password": password})
        assert resp.status_code == 200
        return resp

    return _login
