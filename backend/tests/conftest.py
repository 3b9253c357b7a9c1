"""
Pytest configuration and shared fixtures for the billing engine.
"""
import sys
from pathlib import Path

# Ensure backend package is importable
sys.path.insert(0, str(Path(__file__).resolve().parents[1]))

# Patch PostgreSQL UUID type BEFORE any imports
from sqlalchemy.dialects import postgresql
from sqlalchemy import JSON, TypeDecorator, CHAR
import uuid as uuid_module

class GUID(TypeDecorator):
    """Platform-independent GUID type. Uses PostgreSQL's UUID type, otherwise uses CHAR(36)."""
    impl = CHAR
    cache_ok = True

    def __init__(self, as_uuid=True):
        """Accept as_uuid parameter for compatibility with PostgreSQL UUID."""
        self.as_uuid = as_uuid
        super().__init__()

    def load_dialect_impl(self, dialect):
        if dialect.name == 'postgresql':
            return dialect.type_descriptor(_original_uuid(as_uuid=self.as_uuid))
        else:
            return dialect.type_descriptor(CHAR(36))

    def process_bind_param(self, value, dialect):
        if value is None:
            return value
        return str(value)

    def process_result_value(self, value, dialect):
        if value is None:
            return value
        elif isinstance(value, uuid_module.UUID):
            return value
        else:
            return uuid_module.UUID(value)

# Monkey patch BEFORE models are imported
_original_uuid = postgresql.UUID
postgresql.UUID = GUID
_original_jsonb = postgresql.JSONB


def _to_jsonable(value):  # noqa: ANN001
    if value is None:
        return None
    if isinstance(value, uuid_module.UUID):
        return str(value)
    if isinstance(value, (list, tuple)):
        return [_to_jsonable(v) for v in value]
    if isinstance(value, dict):
        return {k: _to_jsonable(v) for k, v in value.items()}
    return value


class JSONB(TypeDecorator):
    """SQLite-friendly stand-in for PostgreSQL JSONB."""

    impl = JSON
    cache_ok = True

    def load_dialect_impl(self, dialect):
        if dialect.name == "postgresql":
            return dialect.type_descriptor(_original_jsonb())
        return dialect.type_descriptor(JSON())

    def process_bind_param(self, value, dialect):
        return _to_jsonable(value)


postgresql.JSONB = JSONB

import hashlib
import hmac
import time
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional
from unittest.mock import MagicMock

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from app.core.errors import ProviderFetchFailed
from app.core.plans import get_plan
from app.schemas.stripe_events import (
    StripeCustomer,
    StripeInvoice,
    StripeSubscription,
    parse_event,
)
from app.services.email import EmailNotifier
from app.services.stripe_gateway import StripeGateway


STARTER_MONTHLY = get_plan("starter").stripe_price_id_monthly
STARTER_YEARLY = get_plan("starter").stripe_price_id_yearly
PROFESSIONAL_MONTHLY = get_plan("professional").stripe_price_id_monthly
ENTERPRISE_MONTHLY = get_plan("enterprise").stripe_price_id_monthly

WEBHOOK_SECRET = "whsec_test_secret"


# =============================================================================
# Stripe payload builders
# =============================================================================


def _ts(value: datetime) -> int:
    return int((value - datetime(1970, 1, 1)).total_seconds())


def build_subscription(
    sub_id: str = "sub_123",
    customer: Any = "cus_123",
    status: str = "active",
    price_id: Optional[str] = STARTER_MONTHLY,
    amount: int = 900,
    interval: str = "month",
    user_id: Optional[Any] = None,
    metadata: Optional[Dict[str, str]] = None,
    cancel_at_period_end: bool = False,
    trial_days: int = 0,
    latest_invoice: Any = None,
    period_start: Optional[datetime] = None,
    items: bool = True,
) -> Dict[str, Any]:
    """A customer.subscription object as Stripe sends it."""
    start = period_start or datetime(2026, 10, 1)
    end = start + timedelta(days=365 if interval == "year" else 30)
    if metadata is None:
        metadata = {"user_id": str(user_id)} if user_id else {}

    data = []
    if items:
        data.append({
            "id": f"si_{sub_id}",
            "object": "subscription_item",
            "price": {
                "id": price_id,
                "object": "price",
                "unit_amount": amount,
                "currency": "usd",
                "recurring": {"interval": interval, "interval_count": 1},
            },
            "quantity": 1,
            "current_period_start": _ts(start),
            "current_period_end": _ts(end),
        })

    return {
        "id": sub_id,
        "object": "subscription",
        "customer": customer,
        "status": status,
        "metadata": metadata,
        "items": {"object": "list", "data": data},
        "trial_end": _ts(start + timedelta(days=trial_days)) if trial_days else None,
        "cancel_at": None,
        "cancel_at_period_end": cancel_at_period_end,
        "canceled_at": None,
        "latest_invoice": latest_invoice,
    }


def build_invoice(
    invoice_id: str = "in_123",
    subscription: Optional[str] = "sub_123",
    customer: Any = "cus_123",
    amount_paid: int = 900,
    amount_due: Optional[int] = None,
    status: str = "paid",
    billing_reason: str = "subscription_cycle",
    starting_balance: int = 0,
    user_id: Optional[Any] = None,
    customer_email: Optional[str] = None,
    attempt_count: int = 1,
) -> Dict[str, Any]:
    """An invoice object as Stripe sends it."""
    return {
        "id": invoice_id,
        "object": "invoice",
        "customer": customer,
        "customer_email": customer_email,
        "subscription": subscription,
        "subscription_details": {"metadata": {"user_id": str(user_id)} if user_id else {}},
        "status": status,
        "amount_paid": amount_paid,
        "amount_due": amount_paid if amount_due is None else amount_due,
        "currency": "usd",
        "starting_balance": starting_balance,
        "billing_reason": billing_reason,
        "number": f"INV-{invoice_id[-4:]}",
        "hosted_invoice_url": f"https://invoice.stripe.test/{invoice_id}",
        "attempt_count": attempt_count,
        "payment_intent": f"pi_{invoice_id}",
    }


def build_checkout_session(
    session_id: str = "cs_123",
    subscription: Optional[str] = "sub_123",
    customer: Any = "cus_123",
    user_id: Optional[Any] = None,
    email: Optional[str] = None,
) -> Dict[str, Any]:
    return {
        "id": session_id,
        "object": "checkout.session",
        "mode": "subscription",
        "customer": customer,
        "customer_email": None,
        "customer_details": {"email": email, "name": None},
        "subscription": subscription,
        "metadata": {"user_id": str(user_id) if user_id else "pending"},
    }


def build_event(event_type: str, obj: Dict[str, Any], event_id: Optional[str] = None) -> Dict[str, Any]:
    return {
        "id": event_id or f"evt_{uuid_module.uuid4().hex[:16]}",
        "object": "event",
        "type": event_type,
        "created": int(time.time()),
        "livemode": False,
        "data": {"object": obj},
    }


def sign_payload(payload: str, secret: str = WEBHOOK_SECRET, timestamp: Optional[int] = None) -> str:
    """Build a stripe-signature header the way Stripe does."""
    timestamp = timestamp or int(time.time())
    signed = f"{timestamp}.{payload}".encode("utf-8")
    signature = hmac.new(secret.encode("utf-8"), signed, hashlib.sha256).hexdigest()
    return f"t={timestamp},v1={signature}"


# =============================================================================
# Fakes
# =============================================================================


class FakeStripeGateway(StripeGateway):
    """
    In-memory Stripe.

    Objects live in plain dicts so tests can change what "Stripe" reports
    between deliveries. Signature verification is inherited unchanged.
    """

    def __init__(self):
        self.subscriptions: Dict[str, Dict[str, Any]] = {}
        self.customers: Dict[str, Dict[str, Any]] = {}
        self.invoices: Dict[str, Dict[str, Any]] = {}
        self.fail_with: Optional[Exception] = None
        # When set, fail_with only trips these calls
        self.fail_on: Optional[set] = None
        self.calls: List[tuple] = []

    def add_subscription(self, data: Dict[str, Any]) -> Dict[str, Any]:
        self.subscriptions[data["id"]] = data
        return data

    def _maybe_fail(self):
        if self.fail_with is None:
            return
        if self.fail_on is None or self.calls[-1][0] in self.fail_on:
            raise self.fail_with

    def retrieve_subscription(self, subscription_id: str) -> StripeSubscription:
        self.calls.append(("retrieve_subscription", subscription_id))
        self._maybe_fail()
        if subscription_id not in self.subscriptions:
            raise ProviderFetchFailed(f"No such subscription: '{subscription_id}'")
        return StripeSubscription.model_validate(self.subscriptions[subscription_id])

    def retrieve_invoice(self, invoice_id: str) -> StripeInvoice:
        self.calls.append(("retrieve_invoice", invoice_id))
        self._maybe_fail()
        if invoice_id not in self.invoices:
            raise ProviderFetchFailed(f"No such invoice: '{invoice_id}'")
        return StripeInvoice.model_validate(self.invoices[invoice_id])

    def retrieve_customer(self, customer_id: str) -> StripeCustomer:
        self.calls.append(("retrieve_customer", customer_id))
        self._maybe_fail()
        return StripeCustomer.model_validate(self.customers.get(customer_id, {"id": customer_id}))

    def create_customer(self, email: str, name: Optional[str], user_id: str) -> StripeCustomer:
        self.calls.append(("create_customer", email))
        customer = {"id": f"cus_{len(self.customers) + 1:04d}", "email": email, "name": name,
                    "metadata": {"user_id": user_id}}
        self.customers[customer["id"]] = customer
        return StripeCustomer.model_validate(customer)

    def create_checkout_session(self, customer_id, price_id, success_url, cancel_url, metadata, trial_days=0):
        self.calls.append(("create_checkout_session", customer_id, price_id, dict(metadata), trial_days))
        return {"checkout_url": "https://checkout.stripe.test/cs_test_1", "session_id": "cs_test_1"}

    def create_portal_session(self, customer_id: str, return_url: str) -> str:
        self.calls.append(("create_portal_session", customer_id, return_url))
        return f"https://billing.stripe.test/p/{customer_id}"

    def change_subscription_price(self, subscription, price_id, metadata=None):
        self.calls.append(("change_subscription_price", subscription.id, price_id, dict(metadata or {})))
        self._maybe_fail()
        return subscription

    def schedule_price_change(self, subscription, price_id):
        self.calls.append(("schedule_price_change", subscription.id, price_id))
        self._maybe_fail()
        return "sub_sched_123"

    def release_schedule(self, schedule_id):
        self.calls.append(("release_schedule", schedule_id))
        self._maybe_fail()
        return True

    def call_names(self) -> List[str]:
        return [call[0] for call in self.calls]


def make_notifier() -> MagicMock:
    """EmailNotifier double; every send reports success."""
    notifier = MagicMock(spec=EmailNotifier)
    for name in (
        "send_payment_receipt_email",
        "send_subscription_cancelled_email",
        "send_plan_upgraded_email",
        "send_plan_downgraded_email",
        "send_payment_failed_email",
        "send_admin_alert_email",
    ):
        getattr(notifier, name).return_value = True
    return notifier


# =============================================================================
# Fixtures
# =============================================================================


@pytest.fixture(scope="function")
def db():
    """
    Create a fresh database for each test.

    Uses an in-memory SQLite database for fast, isolated testing.
    UUID type has been patched at module level to work with SQLite.
    """
    from app.db.base import Base
    import app.models  # noqa: F401

    # Create in-memory SQLite database
    engine = create_engine(
        "sqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )

    # Create all tables
    Base.metadata.create_all(bind=engine)

    # Create session
    TestingSessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)
    session = TestingSessionLocal()

    try:
        yield session
    finally:
        session.close()
        Base.metadata.drop_all(bind=engine)


@pytest.fixture
def user(db):
    """A regular user with no subscription."""
    from app.models import User

    user = User(
        email="owner@example.com",
        full_name="Olivia Owner",
        oauth_provider="google",
        oauth_provider_id="oauth_owner",
        is_active=True,
        is_superuser=False,
    )
    db.add(user)
    db.commit()
    db.refresh(user)
    return user


@pytest.fixture
def admin_user(db):
    from app.models import User

    user = User(
        email="admin@example.com",
        full_name="Ada Admin",
        oauth_provider="google",
        oauth_provider_id="oauth_admin",
        is_active=True,
        is_superuser=True,
    )
    db.add(user)
    db.commit()
    db.refresh(user)
    return user


@pytest.fixture
def gateway():
    return FakeStripeGateway()


@pytest.fixture
def notifier():
    return make_notifier()


@pytest.fixture
def handler(db, gateway, notifier):
    from app.services.webhook_handler import StripeWebhookHandler

    return StripeWebhookHandler(db, gateway, notifier)


@pytest.fixture
def deliver(handler):
    """Parse a raw event dict and run it through the handler."""

    def _deliver(event: Dict[str, Any]):
        return handler.handle(parse_event(event))

    return _deliver


@pytest.fixture
def active_subscription(db, user, gateway):
    """User on Starter monthly, known to both the store and fake Stripe."""
    from app.services.reconciliation import ReconciliationService

    gateway.add_subscription(build_subscription(user_id=user.id))
    result = ReconciliationService(db, gateway).reconcile("sub_123")
    return result.subscription
