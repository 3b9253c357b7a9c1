"""
Integration tests for subscription API endpoints.

Tests the full request/response cycle for subscription routes including:
- GET /subscriptions/plans
- GET /subscriptions/current
- GET /subscriptions/payments
- POST /subscriptions/checkout
- POST /subscriptions/portal
- POST /subscriptions/change-plan
- POST /subscriptions/cancel-scheduled
- POST /subscriptions/preview-upgrade
- POST /subscriptions/sync
- GET /usage/summary
"""
import pytest
from fastapi.testclient import TestClient
from sqlalchemy.orm import Session

from app.core.config import settings
from app.core.errors import ProviderFetchFailed
from app.core.nextauth import get_current_user
from app.core.rate_limit import limiter
from app.db.base import get_db
from app.main import app
from app.schemas.stripe_events import StripeInvoice
from app.services.email import get_email_notifier
from app.services.payments import PaymentLedger
from app.services.stripe_gateway import get_stripe_gateway

from conftest import build_invoice

API = settings.api_v1_prefix


@pytest.fixture
def client(db: Session, user, gateway, notifier, monkeypatch):
    """Create a test client authenticated as the regular user."""
    monkeypatch.setattr(limiter, "enabled", False)

    def override_get_db():
        yield db

    app.dependency_overrides[get_current_user] = lambda: user
    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_stripe_gateway] = lambda: gateway
    app.dependency_overrides[get_email_notifier] = lambda: notifier

    yield TestClient(app)

    app.dependency_overrides.clear()


class TestPlans:
    def test_plans_are_public(self, client):
        app.dependency_overrides.pop(get_current_user)
        response = client.get(f"{API}/subscriptions/plans")

        assert response.status_code == 200
        plans = response.json()
        assert [p["id"] for p in plans] == ["free", "starter", "professional", "enterprise"]
        assert plans[1]["limits"]["posts_per_month"] == -1


class TestCurrentSubscription:
    def test_free_without_subscription(self, client):
        response = client.get(f"{API}/subscriptions/current")
        assert response.status_code == 200
        assert response.json() == {"plan_id": "free", "plan_name": "Free", "status": None, "subscription": None}

    def test_active_subscription(self, client, active_subscription):
        data = client.get(f"{API}/subscriptions/current").json()
        assert data["plan_id"] == "starter"
        assert data["subscription"]["stripe_subscription_id"] == "sub_123"
        assert data["subscription"]["is_active"] is True


class TestPayments:
    def test_payment_history(self, client, db, user):
        PaymentLedger(db).record_invoice_payment(
            user.id,
            StripeInvoice.model_validate(build_invoice(starting_balance=-100)),
            plan_id="starter",
            billing_cycle="monthly",
        )

        data = client.get(f"{API}/subscriptions/payments").json()
        assert data["total"] == 1
        payment = data["payments"][0]
        assert payment["amount"] == 900
        assert payment["metadata"]["credit_applied"] == 100

    def test_limit_is_validated(self, client):
        assert client.get(f"{API}/subscriptions/payments?limit=0").status_code == 422


class TestCheckout:
    def test_creates_session(self, client, gateway):
        response = client.post(f"{API}/subscriptions/checkout", json={
            "plan_id": "professional",
            "billing_cycle": "yearly",
            "success_url": "http://test.com/success",
            "cancel_url": "http://test.com/cancel",
        })

        assert response.status_code == 200
        assert response.json() == {
            "checkout_url": "https://checkout.stripe.test/cs_test_1",
            "session_id": "cs_test_1",
        }
        assert "create_checkout_session" in gateway.call_names()

    def test_free_plan_rejected_by_schema(self, client):
        response = client.post(f"{API}/subscriptions/checkout", json={
            "plan_id": "free",
            "success_url": "http://s",
            "cancel_url": "http://c",
        })
        assert response.status_code == 422

    def test_stripe_failure_is_502(self, client, gateway, monkeypatch):
        def broken(*args, **kwargs):
            raise ProviderFetchFailed("card declined")

        monkeypatch.setattr(gateway, "create_customer", broken)
        response = client.post(f"{API}/subscriptions/checkout", json={
            "plan_id": "starter",
            "success_url": "http://s",
            "cancel_url": "http://c",
        })
        assert response.status_code == 502


class TestPortal:
    def test_requires_customer(self, client):
        response = client.post(f"{API}/subscriptions/portal", json={"return_url": "http://test.com"})
        assert response.status_code == 400

    def test_portal_url(self, client, db, user):
        user.stripe_customer_id = "cus_123"
        db.commit()
        response = client.post(f"{API}/subscriptions/portal", json={"return_url": "http://test.com"})
        assert response.json() == {"portal_url": "https://billing.stripe.test/p/cus_123"}


class TestChangePlan:
    def test_upgrade(self, client, active_subscription):
        response = client.post(f"{API}/subscriptions/change-plan", json={
            "plan_id": "enterprise", "billing_cycle": "monthly",
        })

        assert response.status_code == 200
        data = response.json()
        assert data["change_type"] == "upgrade"
        assert (data["old_plan_id"], data["new_plan_id"]) == ("starter", "enterprise")
        assert "prorated" in data["message"]

    def test_downgrade_message(self, client, db, user, gateway, notifier, active_subscription):
        active_subscription.plan_id = "enterprise"
        db.commit()

        data = client.post(f"{API}/subscriptions/change-plan", json={"plan_id": "starter"}).json()
        assert data["change_type"] == "downgrade"
        assert data["message"] == "Your plan will change at the end of the current billing period."
        notifier.send_plan_downgraded_email.assert_called_once()

    def test_without_subscription_is_400(self, client):
        response = client.post(f"{API}/subscriptions/change-plan", json={"plan_id": "starter"})
        assert response.status_code == 400

    def test_stripe_failure_is_502(self, client, gateway, active_subscription):
        gateway.fail_with = ProviderFetchFailed("stripe down")
        response = client.post(f"{API}/subscriptions/change-plan", json={"plan_id": "enterprise"})
        assert response.status_code == 502


class TestScheduledChange:
    def _schedule_downgrade(self, client, db, active_subscription):
        active_subscription.plan_id = "enterprise"
        db.commit()
        client.post(f"{API}/subscriptions/change-plan", json={"plan_id": "starter"})

    def test_pending_downgrade_is_shown(self, client, db, active_subscription):
        self._schedule_downgrade(client, db, active_subscription)

        subscription = client.get(f"{API}/subscriptions/current").json()["subscription"]
        assert subscription["plan_id"] == "enterprise"
        assert subscription["scheduled_plan_id"] == "starter"
        assert subscription["scheduled_billing_cycle"] == "monthly"

    def test_cancel_scheduled(self, client, db, gateway, active_subscription):
        self._schedule_downgrade(client, db, active_subscription)

        response = client.post(f"{API}/subscriptions/cancel-scheduled")

        assert response.status_code == 200
        data = response.json()
        assert (data["plan_id"], data["canceled_plan_id"]) == ("enterprise", "starter")
        assert ("release_schedule", "sub_sched_123") in gateway.calls
        subscription = client.get(f"{API}/subscriptions/current").json()["subscription"]
        assert subscription["scheduled_plan_id"] is None

    def test_nothing_scheduled_is_400(self, client, active_subscription):
        response = client.post(f"{API}/subscriptions/cancel-scheduled")
        assert response.status_code == 400
        assert response.json()["detail"] == "No scheduled plan change to cancel"

    def test_stripe_failure_is_502(self, client, db, gateway, active_subscription):
        self._schedule_downgrade(client, db, active_subscription)
        gateway.fail_with = ProviderFetchFailed("stripe down")
        assert client.post(f"{API}/subscriptions/cancel-scheduled").status_code == 502


class TestPreviewUpgrade:
    def test_preview_without_subscription(self, client):
        response = client.post(f"{API}/subscriptions/preview-upgrade", json={"plan_id": "professional"})

        assert response.status_code == 200
        data = response.json()
        assert (data["current_plan"], data["new_plan"]) == ("free", "professional")
        assert data["amount_due"] == data["full_price"] == 1900
        assert data["has_existing_subscription"] is False

    def test_preview_credits_current_plan(self, client, active_subscription):
        data = client.post(f"{API}/subscriptions/preview-upgrade", json={
            "plan_id": "professional", "billing_cycle": "monthly",
        }).json()

        assert data["has_existing_subscription"] is True
        assert data["amount_due"] == data["full_price"] - data["credit"]
        assert 0 <= data["credit"] <= 900

    def test_stripe_failure_quotes_full_price(self, client, gateway, active_subscription):
        gateway.fail_with = ProviderFetchFailed("stripe down")
        data = client.post(f"{API}/subscriptions/preview-upgrade", json={"plan_id": "professional"}).json()
        assert data["amount_due"] == 1900
        assert data["error"] == "Could not calculate exact proration"

    def test_downgrade_is_400(self, client, db, active_subscription):
        active_subscription.plan_id = "enterprise"
        db.commit()
        response = client.post(f"{API}/subscriptions/preview-upgrade", json={"plan_id": "starter"})
        assert response.status_code == 400

    def test_free_plan_rejected_by_schema(self, client):
        response = client.post(f"{API}/subscriptions/preview-upgrade", json={"plan_id": "free"})
        assert response.status_code == 422


class TestSync:
    def test_no_subscription(self, client):
        assert client.post(f"{API}/subscriptions/sync").json() == {
            "status": "no_subscription",
            "subscription": None,
        }

    def test_synced_from_stripe(self, client, gateway, active_subscription):
        gateway.subscriptions["sub_123"]["status"] = "past_due"
        data = client.post(f"{API}/subscriptions/sync").json()
        assert data["status"] == "synced"
        assert data["subscription"]["status"] == "past_due"


class TestUsageSummary:
    def test_summary_for_paid_user(self, client, active_subscription):
        response = client.get(f"{API}/usage/summary")
        assert response.status_code == 200
        data = response.json()
        assert data["plan_id"] == "starter"
        assert data["ai_suggestions_limit"] == 50
        assert data["posts_used"] == 0
