"""
Integration tests for the Stripe webhook endpoint.

Signed requests go through the real signature check, the typed parser, the
handler and the event log.
"""
import asyncio
import json

import pytest
from fastapi import HTTPException
from fastapi.testclient import TestClient
from sqlalchemy.orm import Session

from app.api.routes.webhooks import process_stripe_event
from app.core.config import settings
from app.core.errors import ProviderFetchFailed, ProviderTimeout
from app.core.rate_limit import limiter
from app.db.base import get_db
from app.main import app
from app.models import AlertRecord, Subscription, WebhookEvent
from app.services.email import get_email_notifier
from app.services.stripe_gateway import get_stripe_gateway
from app.services.webhook_handler import StripeWebhookHandler

from conftest import (
    WEBHOOK_SECRET,
    build_event,
    build_invoice,
    build_subscription,
    sign_payload,
)

WEBHOOK_URL = f"{settings.api_v1_prefix}/webhooks/stripe"


@pytest.fixture
def client(db: Session, gateway, notifier, monkeypatch):
    """Test client wired to the in-memory database, fake Stripe and a mock notifier."""
    monkeypatch.setattr(settings, "stripe_webhook_secret", WEBHOOK_SECRET)
    monkeypatch.setattr(settings, "stripe_webhook_secret_local", "")
    monkeypatch.setattr(limiter, "enabled", False)

    def override_get_db():
        yield db

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_stripe_gateway] = lambda: gateway
    app.dependency_overrides[get_email_notifier] = lambda: notifier

    yield TestClient(app)

    app.dependency_overrides.clear()


def post_event(client: TestClient, event: dict, secret: str = WEBHOOK_SECRET):
    payload = json.dumps(event)
    return client.post(
        WEBHOOK_URL,
        content=payload,
        headers={"stripe-signature": sign_payload(payload, secret=secret), "content-type": "application/json"},
    )


class TestRequestValidation:
    def test_missing_secret_is_500(self, client, monkeypatch):
        monkeypatch.setattr(settings, "stripe_webhook_secret", "")
        response = post_event(client, build_event("invoice.paid", build_invoice()))
        assert response.status_code == 500
        assert response.json()["detail"] == "Stripe webhook secret not configured"

    def test_bad_signature_is_400(self, client, db):
        response = post_event(client, build_event("invoice.paid", build_invoice()), secret="whsec_wrong")
        assert response.status_code == 400
        assert response.json()["detail"] == "Invalid signature"
        assert db.query(WebhookEvent).count() == 0

    def test_missing_signature_is_400(self, client):
        response = client.post(WEBHOOK_URL, content="{}")
        assert response.status_code == 400

    def test_malformed_payload_is_400(self, client):
        event = build_event("customer.subscription.updated", {"id": "sub_1"})
        assert post_event(client, event).status_code == 400

    def test_unhandled_type_is_ignored(self, client, db):
        response = post_event(client, build_event("customer.created", {"id": "cus_1"}))
        assert response.status_code == 200
        assert response.json() == {"received": True, "status": "ignored"}
        assert db.query(WebhookEvent).count() == 0


class TestOutcomes:
    def test_processed_event_is_logged(self, client, db, user, gateway):
        payload = gateway.add_subscription(build_subscription(user_id=user.id))
        event = build_event("customer.subscription.created", payload, event_id="evt_created")

        response = post_event(client, event)

        assert response.status_code == 200
        assert response.json() == {"received": True, "status": "processed"}
        assert db.query(Subscription).count() == 1
        logged = db.query(WebhookEvent).filter_by(event_id="evt_created").one()
        assert (logged.status, logged.attempts, logged.stripe_subscription_id) == ("processed", 1, "sub_123")

    def test_redelivery_reuses_log_row(self, client, db, user, gateway):
        payload = gateway.add_subscription(build_subscription(user_id=user.id))
        event = build_event("customer.subscription.updated", payload, event_id="evt_again")

        for _ in range(3):
            assert post_event(client, event).status_code == 200

        assert db.query(WebhookEvent).one().attempts == 3
        assert db.query(Subscription).count() == 1

    def test_unknown_user_is_deferred_with_200(self, client, db, gateway):
        payload = gateway.add_subscription(build_subscription(metadata={}))
        response = post_event(client, build_event("customer.subscription.created", payload))

        assert response.status_code == 200
        assert response.json()["status"] == "deferred"
        assert db.query(WebhookEvent).one().status == "deferred"

    def test_timeout_is_pending_with_200(self, client, db, user, gateway):
        payload = gateway.add_subscription(build_subscription(user_id=user.id))
        gateway.fail_with = ProviderTimeout("read timed out")

        response = post_event(client, build_event("customer.subscription.updated", payload))

        assert response.status_code == 200
        assert response.json()["status"] == "pending"
        assert db.query(WebhookEvent).one().status == "pending"

    def test_stripe_failure_is_500_and_alerts_once(self, client, db, user, gateway, notifier):
        payload = gateway.add_subscription(build_subscription(user_id=user.id))
        gateway.fail_with = ProviderFetchFailed("No such subscription")
        event = build_event("customer.subscription.updated", payload, event_id="evt_fail")

        assert post_event(client, event).status_code == 500
        assert post_event(client, event).status_code == 500

        logged = db.query(WebhookEvent).one()
        assert logged.status == "failed"
        assert "No such subscription" in logged.last_error
        notifier.send_admin_alert_email.assert_called_once()
        issue_id = notifier.send_admin_alert_email.call_args.args[0]
        assert issue_id == "stripe-webhook:customer.subscription.updated:ProviderFetchFailed"
        assert db.query(AlertRecord).count() == 1

    def test_unexpected_error_is_500_and_critical(self, client, db, user, gateway, notifier):
        payload = gateway.add_subscription(build_subscription(user_id=user.id))
        gateway.fail_with = RuntimeError("bug")

        response = post_event(client, build_event("customer.subscription.updated", payload))

        assert response.status_code == 500
        issue_id, severity, _ = notifier.send_admin_alert_email.call_args.args
        assert issue_id == "stripe-webhook:customer.subscription.updated:unexpected"
        assert severity == "critical"

    def test_invoice_paid_end_to_end(self, client, db, user, notifier, active_subscription):
        event = build_event("invoice.paid", build_invoice(user_id=user.id))

        assert post_event(client, event).json()["status"] == "processed"
        assert post_event(client, event).json()["status"] == "processed"

        notifier.send_payment_receipt_email.assert_called_once()


class TestBlockingWork:
    def test_handler_runs_off_the_event_loop(self, client, user, gateway, monkeypatch):
        seen = []
        original = StripeWebhookHandler.handle

        def recording_handle(self, event):
            try:
                asyncio.get_running_loop()
                seen.append("event loop")
            except RuntimeError:
                seen.append("worker thread")
            return original(self, event)

        monkeypatch.setattr(StripeWebhookHandler, "handle", recording_handle)
        payload = gateway.add_subscription(build_subscription(user_id=user.id))

        assert post_event(client, build_event("customer.subscription.created", payload)).status_code == 200
        assert seen == ["worker thread"]

    def test_process_stripe_event_rejects_bad_signature(self, db, gateway, notifier, monkeypatch):
        monkeypatch.setattr(settings, "stripe_webhook_secret", WEBHOOK_SECRET)
        payload = json.dumps(build_event("invoice.paid", build_invoice()))

        with pytest.raises(HTTPException) as exc_info:
            process_stripe_event(
                payload.encode(), sign_payload(payload, secret="whsec_other"), db, gateway, notifier
            )
        assert exc_info.value.status_code == 400
