"""Shared test fixtures for the popstore test suite.

Provides:
- app: Flask app configured for testing (in-memory SQLite, CSRF off)
- client: Flask test client
- db_session: clean database per test (tables created/dropped)
- seed_data: owners, a 10% plan, stores in every state, products
- sign_payload: builds a valid Stripe-Signature header for a body
"""

import hashlib
import hmac
import json
import time
from datetime import datetime, timedelta, timezone

import pytest
from werkzeug.security import generate_password_hash

from popstore import create_app
from popstore.extensions import db as _db
from popstore.models.order import Order
from popstore.models.plan import StorePlan
from popstore.models.store import Product, Store
from popstore.models.user import User

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


def _user(email, username, role="user", stripe_account_id=None, payouts=False):
    user = User(
        email=email,
        username=username,
        password_hash=generate_password_hash("password123"),
        role=role,
        stripe_account_id=stripe_account_id,
        stripe_account_status="active" if payouts else None,
        stripe_onboarding_complete=payouts,
    )
    _db.session.add(user)
    return user


def _store(owner, plan, slug, is_active=True, expires_at=None):
    store = Store(
        owner_id=owner.id,
        plan_id=plan.id,
        name=slug.replace("-", " ").title(),
        slug=slug,
        is_active=is_active,
        expires_at=expires_at or datetime.now(timezone.utc) + timedelta(hours=48),
    )
    _db.session.add(store)
    _db.session.flush()
    return store


@pytest.fixture
def seed_data(app, db_session):
    """Seed the database with users, a plan, stores and products.

    Returns a dict of plain IDs so tests can use them across app contexts.
    """
    with app.app_context():
        # --- Users ---
        admin = _user("admin@popstore.local", "admin", role="admin")
        owner = _user(
            "owner@popstore.local", "owner",
            stripe_account_id="acct_owner_123", payouts=True,
        )
        other_owner = _user(
            "other@popstore.local", "other",
            stripe_account_id="acct_other_456", payouts=True,
        )
        unpaid_owner = _user("nopayout@popstore.local", "nopayout")
        _db.session.flush()

        # --- Plan (10% commission) ---
        plan = StorePlan(
            title="Weekend Pop-up",
            duration_hours=48,
            base_price=1500,
            discount_percentage=0,
            final_price=1500,
            commission_percentage=10,
        )
        _db.session.add(plan)
        _db.session.flush()

        # --- Stores ---
        store = _store(owner, plan, "active-store")
        inactive_store = _store(owner, plan, "closed-store", is_active=False)
        expired_store = _store(
            owner, plan, "expired-store",
            expires_at=datetime.now(timezone.utc) - timedelta(hours=1),
        )
        no_payout_store = _store(unpaid_owner, plan, "no-payout-store")
        other_store = _store(other_owner, plan, "other-store")

        # --- Products ---
        product = Product(store_id=store.id, name="T-shirt", price=2500)
        limited_product = Product(
            store_id=store.id, name="Poster", price=1000, quantity_available=2
        )
        inactive_product = Product(store_id=inactive_store.id, name="Mug", price=1200)
        expired_product = Product(store_id=expired_store.id, name="Hat", price=1800)
        no_payout_product = Product(store_id=no_payout_store.id, name="Sticker", price=300)
        other_product = Product(store_id=other_store.id, name="Tote", price=4000)
        _db.session.add_all([
            product, limited_product, inactive_product,
            expired_product, no_payout_product, other_product,
        ])
        _db.session.commit()

        return {
            "admin_id": admin.id,
            "owner_id": owner.id,
            "other_owner_id": other_owner.id,
            "unpaid_owner_id": unpaid_owner.id,
            "plan_id": plan.id,
            "store_id": store.id,
            "inactive_store_id": inactive_store.id,
            "expired_store_id": expired_store.id,
            "no_payout_store_id": no_payout_store.id,
            "other_store_id": other_store.id,
            "product_id": product.id,
            "limited_product_id": limited_product.id,
            "inactive_product_id": inactive_product.id,
            "expired_product_id": expired_product.id,
            "no_payout_product_id": no_payout_product.id,
            "other_product_id": other_product.id,
        }


@pytest.fixture
def make_order(app, seed_data):
    """Factory for orders in the active store.

    Usage: order_id = make_order(total_price=5000, status="paid")
    """

    def _make(total_price=2500, status="pending", store_id=None, product_id=None,
              session_id=None, payment_intent_id=None, fee=None):
        order = Order(
            store_id=store_id or seed_data["store_id"],
            product_id=product_id or seed_data["product_id"],
            buyer_email="buyer@example.com",
            quantity=1,
            total_price=total_price,
            application_fee_amount=fee if fee is not None else total_price // 10,
            stripe_session_id=session_id,
            stripe_payment_intent_id=payment_intent_id,
            status=status,
        )
        _db.session.add(order)
        _db.session.commit()
        return order.id

    return _make


def _signature_header(payload, secret=WEBHOOK_SECRET, timestamp=None):
    timestamp = int(timestamp if timestamp is not None else time.time())
    signed = f"{timestamp}.{payload}".encode("utf-8")
    digest = hmac.new(secret.encode("utf-8"), signed, hashlib.sha256).hexdigest()
    return f"t={timestamp},v1={digest}"


@pytest.fixture
def sign_payload():
    """Return a helper that signs a payload the way Stripe does."""
    return _signature_header


@pytest.fixture
def post_event(client, sign_payload):
    """POST a correctly signed Stripe event to the webhook endpoint."""

    def _post(event_id, event_type, obj):
        payload = json.dumps({
            "id": event_id,
            "type": event_type,
            "data": {"object": obj},
        })
        return client.post(
            "/stripe/webhooks",
            data=payload,
            content_type="application/json",
            headers={"Stripe-Signature": sign_payload(payload)},
        )

    return _post


@pytest.fixture
def login(client):
    """Log a user in by writing the Flask-Login session keys directly."""

    def _login(user_id):
        with client.session_transaction() as sess:
            sess["_user_id"] = user_id
            sess["_fresh"] = True

    return _login
