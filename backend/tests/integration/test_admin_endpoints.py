"""
Integration tests for admin API endpoints.

Tests the full request/response cycle for admin routes.
"""
import pytest
from fastapi.testclient import TestClient
from sqlalchemy.orm import Session

from app.core.config import settings
from app.core.errors import ProviderFetchFailed
from app.core.nextauth import get_current_user
from app.db.base import get_db
from app.main import app
from app.models import Subscription, WebhookEvent
from app.services.stripe_gateway import get_stripe_gateway
from app.services.webhook_events import PENDING, WebhookEventLog

from conftest import PROFESSIONAL_MONTHLY, build_subscription

API = settings.api_v1_prefix


def make_client(db: Session, current_user, gateway) -> TestClient:
    def override_get_db():
        yield db

    app.dependency_overrides[get_current_user] = lambda: current_user
    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_stripe_gateway] = lambda: gateway
    return TestClient(app)


@pytest.fixture
def admin_client(db, admin_user, gateway):
    yield make_client(db, admin_user, gateway)
    app.dependency_overrides.clear()


@pytest.fixture
def user_client(db, user, gateway):
    yield make_client(db, user, gateway)
    app.dependency_overrides.clear()


class TestAdminAccess:
    def test_regular_user_forbidden(self, user_client):
        response = user_client.post(f"{API}/admin/subscriptions/sub_123/resync")
        assert response.status_code == 403
        assert "Admin access required" in response.json()["detail"]

    def test_regular_user_cannot_sweep(self, user_client):
        assert user_client.post(f"{API}/admin/subscriptions/resync-pending").status_code == 403


class TestResyncSubscription:
    def test_resync_overwrites_local_row(self, admin_client, db, user, gateway, active_subscription):
        gateway.add_subscription(build_subscription(
            user_id=user.id, price_id=PROFESSIONAL_MONTHLY, amount=1900,
        ))

        response = admin_client.post(f"{API}/admin/subscriptions/sub_123/resync")

        assert response.status_code == 200
        data = response.json()
        assert data["status"] == "synced"
        assert data["subscription"]["plan_id"] == "professional"
        assert data["subscription"]["user_id"] == str(user.id)

    def test_resync_unknown_owner_is_deferred(self, admin_client, gateway):
        gateway.add_subscription(build_subscription(sub_id="sub_orphan", metadata={}))
        data = admin_client.post(f"{API}/admin/subscriptions/sub_orphan/resync").json()
        assert data == {"status": "deferred", "subscription": None}

    def test_resync_stripe_failure_is_502(self, admin_client, gateway):
        gateway.fail_with = ProviderFetchFailed("No such subscription")
        response = admin_client.post(f"{API}/admin/subscriptions/sub_123/resync")
        assert response.status_code == 502


class TestResyncPending:
    def test_sweep(self, admin_client, db, user, gateway):
        gateway.add_subscription(build_subscription(user_id=user.id))
        log = WebhookEventLog(db)
        log.finish(log.start("evt_pending", "customer.subscription.updated", "sub_123"), PENDING)

        response = admin_client.post(f"{API}/admin/subscriptions/resync-pending?limit=10")

        assert response.status_code == 200
        assert response.json() == {"processed": 1, "deferred": 0, "failed": 0, "skipped": 0}
        assert db.query(WebhookEvent).one().status == "processed"
        assert db.query(Subscription).count() == 1

    def test_limit_is_validated(self, admin_client):
        assert admin_client.post(f"{API}/admin/subscriptions/resync-pending?limit=0").status_code == 422
