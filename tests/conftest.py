"""Test configuration: in-memory SQLite, a fake Paystack gateway, a frozen clock."""
import hashlib
import hmac
import json
import os
from datetime import datetime, timedelta

# configure settings before any accessedu import
os.environ["DATABASE_URL"] = "sqlite://"
os.environ["RATE_LIMIT_ENABLED"] = "false"
os.environ["PAYSTACK_SECRET_KEY"] = "sk_test_secret"
os.environ["PAYSTACK_PUBLIC_KEY"] = "pk_test_public"
os.environ["PAYSTACK_WEBHOOK_SECRET"] = "whsec_test"
os.environ["ADMIN_TOKEN"] = "admin-test-token"
os.environ["RESEND_API_KEY"] = ""

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from accessedu.core.database import Base
from accessedu.core.errors import GatewayError
import accessedu.models  # noqa: F401
from accessedu.services.paystack_gateway import Ack, InitializeResult, TransactionResult
from accessedu.services.plan_catalog import DEFAULT_PLANS, PlanCatalog
from accessedu.services.reconciliation import ReconciliationEngine
from accessedu.services.subscription_store import SubscriptionStore

WEBHOOK_SECRET = "whsec_test"
ADMIN_TOKEN = "admin-test-token"
T0 = datetime(2026, 1, 1, 12, 0, 0)


class FrozenClock:
    def __init__(self, now: datetime):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs):
        self.now = self.now + timedelta(**kwargs)


class FakeGateway:
    """In-memory stand-in for PaystackGateway"""

    def __init__(self):
        self.transactions = {}
        self.initialized = []
        self.verify_calls = []
        self.disabled = []
        self.enabled = []
        self.plans_created = []
        self.fail_with = None

    def set_transaction(self, reference, status="success", amount=5000, **overrides):
        result = TransactionResult(
            status=status,
            reference=reference,
            amount=amount,
            currency="NGN",
            channel="card",
            gateway_response="Approved" if status == "success" else "Declined",
            paid_at=T0 if status == "success" else None,
            customer={"email": "a@b.com", "customer_code": "CUS_1"},
            plan_code="PLN_monthly",
            metadata={"userId": "u1", "planCode": "monthly"},
        )
        for key, value in overrides.items():
            setattr(result, key, value)
        self.transactions[reference] = result
        return result

    def initialize_payment(self, email, plan_code, amount, metadata=None, reference=None, callback_url=None, currency=None):
        if self.fail_with:
            raise self.fail_with
        self.initialized.append({
            "email": email, "plan_code": plan_code, "amount": amount,
            "metadata": metadata, "reference": reference,
        })
        reference = reference or "gen_ref_1"
        return InitializeResult(
            authorization_url=f"https://checkout.paystack.com/{reference}",
            access_code=f"ac_{reference}",
            reference=reference,
        )

    def verify_transaction(self, reference):
        self.verify_calls.append(reference)
        if self.fail_with:
            raise self.fail_with
        if reference not in self.transactions:
            raise GatewayError("rejected", "Transaction reference not found", status_code=400)
        return self.transactions[reference]

    def create_plan(self, name, amount, interval, description=None, currency=None):
        if self.fail_with:
            raise self.fail_with
        code = f"PLN_{len(self.plans_created) + 1:03d}"
        self.plans_created.append({"name": name, "amount": amount, "interval": interval, "code": code})
        return code

    def disable_subscription(self, subscription_code, token):
        if self.fail_with:
            raise self.fail_with
        self.disabled.append((subscription_code, token))
        return Ack(message="Subscription disabled")

    def enable_subscription(self, subscription_code, token):
        if self.fail_with:
            raise self.fail_with
        self.enabled.append((subscription_code, token))
        return Ack(message="Subscription enabled")

    def close(self):
        pass


class RecordingNotifier:
    def __init__(self):
        self.sent = []

    def payment_failed(self, sub):
        self.sent.append(("payment_failed", sub.subscription_code))
        return True

    def subscription_cancelled(self, sub):
        self.sent.append(("cancelled", sub.subscription_code))
        return True


def sign(body: bytes, secret: str = WEBHOOK_SECRET) -> str:
    return hmac.new(secret.encode(), body, hashlib.sha512).hexdigest()


def webhook_body(event: str, data: dict) -> bytes:
    return json.dumps({"event": event, "data": data}).encode()


def subscription_payload(code="SUB_1", status="active", email="a@b.com", **extra) -> dict:
    payload = {
        "subscription_code": code,
        "email_token": "tok_1",
        "status": status,
        "amount": 5000,
        "next_payment_date": "2026-01-31T12:00:00.000Z",
        "plan": {"plan_code": "PLN_monthly", "name": "Monthly Plan", "interval": "monthly", "amount": 5000},
        "customer": {"email": email, "customer_code": "CUS_1"},
    }
    payload.update(extra)
    return payload


def charge_payload(reference, status="success", amount=5000, subscription_code=None, **extra) -> dict:
    payload = {
        "reference": reference,
        "status": status,
        "amount": amount,
        "currency": "NGN",
        "channel": "card",
        "gateway_response": "Approved" if status == "success" else "Declined",
        "paid_at": "2026-01-06T12:00:00.000Z",
        "customer": {"email": "a@b.com", "customer_code": "CUS_1"},
        "plan": {"plan_code": "PLN_monthly", "interval": "monthly"},
        "metadata": {"userId": "u1"},
    }
    if subscription_code:
        payload["subscription"] = {"subscription_code": subscription_code}
    payload.update(extra)
    return payload


@pytest.fixture
def session_factory():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(bind=engine)
    factory = sessionmaker(bind=engine, autocommit=False, autoflush=False, expire_on_commit=False)
    yield factory
    Base.metadata.drop_all(bind=engine)
    engine.dispose()


@pytest.fixture
def clock():
    return FrozenClock(T0)


@pytest.fixture
def gateway():
    return FakeGateway()


@pytest.fixture
def notifier():
    return RecordingNotifier()


@pytest.fixture
def store(session_factory):
    return SubscriptionStore(session_factory)


@pytest.fixture
def catalog(session_factory):
    catalog = PlanCatalog(session_factory)
    for plan_def in DEFAULT_PLANS:
        catalog.save(
            plan_code=plan_def["plan_code"],
            name=plan_def["name"],
            amount=plan_def["amount"],
            interval=plan_def["interval"],
            gateway_plan_code=f"PLN_{plan_def['plan_code']}",
            sort_order=plan_def["sort_order"],
        )
    return catalog


@pytest.fixture
def engine(gateway, store, catalog, notifier, clock):
    return ReconciliationEngine(gateway, store, catalog, notifier=notifier, clock=clock)


@pytest.fixture
def client(engine):
    from fastapi.testclient import TestClient
    from accessedu.main import app
    from accessedu.routers.deps import get_reconciler

    app.dependency_overrides[get_reconciler] = lambda: engine
    yield TestClient(app)
    app.dependency_overrides.clear()


@pytest.fixture
def activate(engine, gateway):
    """Initialize + verify + subscription.create: an active subscription keyed SUB_1"""

    def _activate(reference="ref_1", code="SUB_1"):
        engine.initialize_subscription("a@b.com", "monthly", "u1", reference=reference)
        gateway.set_transaction(reference, status="success", amount=5000)
        engine.verify_transaction(reference)
        engine.handle_webhook("subscription.create", subscription_payload(code))
        return engine.store.get(code)

    return _activate
