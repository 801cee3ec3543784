import copy
import hashlib
import hmac
import json
import os
import time
import uuid

# Settings are read at import time
os.environ["DATABASE_URL"] = "sqlite://"
os.environ["STRIPE_SECRET_KEY"] = "sk_test_framevault"
os.environ["STRIPE_WEBHOOK_SECRET"] = "whsec_test_framevault"
os.environ.pop("BILLING_WEBHOOK_SECRET", None)
os.environ.pop("REVALIDATE_URL", None)

import pytest
import stripe
from fastapi.testclient import TestClient
from sqlalchemy import create_engine, event
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from app.api.deps import get_billing_provider, get_cache_invalidator
from app.core.config import settings
from app.db.base import Base
from app.db.models.profile import Profile
from app.db.session import get_db
from app.main import app

PLUS_PRICE = settings.STRIPE_PLUS_PRICE_ID
PRO_PRICE = settings.STRIPE_PRO_PRICE_ID

DAY = 24 * 60 * 60


def make_engine():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )

    # pysqlite's own transaction handling breaks SAVEPOINT; let SQLAlchemy emit BEGIN
    @event.listens_for(engine, "connect")
    def _disable_pysqlite_transactions(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None

    @event.listens_for(engine, "begin")
    def _emit_begin(conn):
        conn.exec_driver_sql("BEGIN")

    return engine


@pytest.fixture
def db():
    engine = make_engine()
    Base.metadata.create_all(engine)
    session = sessionmaker(bind=engine, autoflush=False)()
    try:
        yield session
    finally:
        session.close()
        Base.metadata.drop_all(engine)
        engine.dispose()


@pytest.fixture
def make_profile(db):
    def _make(username: str = "cinephile", **fields) -> Profile:
        profile = Profile(id=uuid.uuid4(), username=username, **fields)
        db.add(profile)
        db.commit()
        return profile

    return _make


@pytest.fixture
def profile(make_profile):
    return make_profile()


class FakeProvider:
    """In-memory stand-in for StripeBillingProvider."""

    def __init__(self):
        self.subscriptions: dict[str, dict] = {}
        self.gone: set[str] = set()
        self.retrieve_calls: list[str] = []
        self.cancel_calls: list[str] = []
        self.retrieve_error: Exception | None = None
        self.checkout_sessions: list[dict] = []
        self.customers: list[dict] = []

    def add(self, subscription: dict) -> dict:
        self.subscriptions[subscription["id"]] = subscription
        return subscription

    def retrieve_subscription(self, subscription_id):
        self.retrieve_calls.append(subscription_id)
        if self.retrieve_error is not None:
            raise self.retrieve_error
        if subscription_id not in self.subscriptions:
            raise stripe.InvalidRequestError(
                f"No such subscription: '{subscription_id}'", "id", code="resource_missing"
            )
        return copy.deepcopy(self.subscriptions[subscription_id])

    def list_customer_subscriptions(self, customer_id):
        return [
            copy.deepcopy(subscription)
            for subscription in self.subscriptions.values()
            if subscription.get("customer") == customer_id
        ]

    def cancel_subscription(self, subscription_id):
        self.cancel_calls.append(subscription_id)
        if subscription_id in self.gone or subscription_id not in self.subscriptions:
            raise stripe.InvalidRequestError(
                f"No such subscription: '{subscription_id}'", "id", code="resource_missing"
            )
        subscription = self.subscriptions[subscription_id]
        subscription["status"] = "canceled"
        subscription["ended_at"] = int(time.time())
        return copy.deepcopy(subscription)

    def create_customer(self, *, user_id, username, email=None):
        customer_id = f"cus_{len(self.customers) + 1}"
        self.customers.append({"id": customer_id, "user_id": user_id, "username": username, "email": email})
        return customer_id

    def create_checkout_session(self, **kwargs):
        self.checkout_sessions.append(kwargs)
        return f"https://checkout.stripe.test/{len(self.checkout_sessions)}"

    def create_portal_session(self, *, customer_id, return_url):
        return f"https://billing.stripe.test/{customer_id}"


class RecordingInvalidator:
    def __init__(self):
        self.calls: list[list[str]] = []

    def invalidate(self, paths):
        self.calls.append(list(paths))


@pytest.fixture
def provider():
    return FakeProvider()


@pytest.fixture
def invalidator():
    return RecordingInvalidator()


@pytest.fixture
def client(db, provider, invalidator):
    def override_get_db():
        yield db

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_billing_provider] = lambda: provider
    app.dependency_overrides[get_cache_invalidator] = lambda: invalidator
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()


def make_item(
    price_id: str | None,
    *,
    created: int = 1_700_000_000,
    quantity: int = 1,
    unit_amount: int | None = 900,
    metadata: dict | None = None,
    price_metadata: dict | None = None,
    product_metadata: dict | None = None,
) -> dict:
    return {
        "id": f"si_{uuid.uuid4().hex[:12]}",
        "object": "subscription_item",
        "created": created,
        "quantity": quantity,
        "metadata": metadata or {},
        "price": {
            "id": price_id,
            "object": "price",
            "unit_amount": unit_amount,
            "metadata": price_metadata or {},
            "product": {"id": "prod_framevault", "object": "product", "metadata": product_metadata or {}},
        },
    }


def make_subscription(
    subscription_id: str,
    user_id=None,
    *,
    items: list[dict],
    status: str = "active",
    customer: str = "cus_1",
    period_start: int | None = None,
    period_end: int | None = None,
    cancel_at_period_end: bool = False,
    ended_at: int | None = None,
    pending_update: dict | None = None,
    schedule: dict | None = None,
    metadata: dict | None = None,
) -> dict:
    now = int(time.time())
    if metadata is None:
        metadata = {"user_id": str(user_id)} if user_id else {}
    return {
        "id": subscription_id,
        "object": "subscription",
        "customer": customer,
        "status": status,
        "current_period_start": period_start if period_start is not None else now - 10 * DAY,
        "current_period_end": period_end if period_end is not None else now + 20 * DAY,
        "cancel_at_period_end": cancel_at_period_end,
        "cancel_at": None,
        "ended_at": ended_at,
        "items": {"object": "list", "data": items},
        "pending_update": pending_update,
        "schedule": schedule,
        "metadata": metadata,
    }


def sign(payload: str, secret: str, timestamp: int | None = None) -> str:
    """Stripe-Signature header for payload."""
    ts = int(time.time()) if timestamp is None else timestamp
    signature = hmac.new(secret.encode(), f"{ts}.{payload}".encode(), hashlib.sha256).hexdigest()
    return f"t={ts},v1={signature}"


def make_event(event_id: str, event_type: str, obj: dict) -> str:
    return json.dumps({
        "id": event_id,
        "object": "event",
        "type": event_type,
        "data": {"object": obj},
    })


@pytest.fixture
def post_event(client):
    def _post(event_id: str, event_type: str, obj: dict, secret: str | None = None):
        payload = make_event(event_id, event_type, obj)
        return client.post(
            "/api/billing/webhook",
            content=payload,
            headers={
                "stripe-signature": sign(payload, secret or settings.webhook_secret),
                "content-type": "application/json",
            },
        )

    return _post
