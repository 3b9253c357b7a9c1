"""
Unit tests for the reconciliation service.
"""
from datetime import datetime

import pytest

from app.core.errors import ProviderFetchFailed, ProviderTimeout, UnresolvedUser
from app.models import Subscription, WebhookEvent
from app.services.reconciliation import ReconciliationService, SyncResult
from app.services.webhook_events import PENDING, WebhookEventLog

from conftest import PROFESSIONAL_MONTHLY, build_subscription


class TestReconcile:
    def test_writes_row_from_stripe_state(self, db, user, gateway):
        gateway.add_subscription(build_subscription(
            user_id=user.id, price_id=PROFESSIONAL_MONTHLY, amount=1900, status="trialing", trial_days=7,
        ))

        result = ReconciliationService(db, gateway).reconcile("sub_123")

        assert isinstance(result, SyncResult)
        row = result.subscription
        assert row.user_id == user.id
        assert row.plan_id == "professional"
        assert row.status == "trialing"
        assert row.billing_cycle == "monthly"
        assert row.stripe_customer_id == "cus_123"
        assert row.current_period_start == datetime(2026, 10, 1)
        assert row.trial_end == datetime(2026, 10, 8)
        assert result.identity.source == "metadata"

    def test_reconcile_is_repeatable(self, db, user, gateway):
        gateway.add_subscription(build_subscription(user_id=user.id))
        service = ReconciliationService(db, gateway)
        for _ in range(3):
            service.reconcile("sub_123")
        assert db.query(Subscription).count() == 1

    def test_unknown_price_still_writes_row(self, db, user, gateway):
        """Fail-soft: an unresolvable price is tagged with the default plan, never dropped."""
        gateway.add_subscription(build_subscription(
            user_id=user.id, price_id="price_mystery", amount=4242, interval="month",
        ))
        row = ReconciliationService(db, gateway).reconcile("sub_123").subscription
        assert row.plan_id == "starter"
        assert row.stripe_price_id == "price_mystery"

    def test_subscription_without_items_still_writes_row(self, db, user, gateway):
        gateway.add_subscription(build_subscription(user_id=user.id, items=False))
        row = ReconciliationService(db, gateway).reconcile("sub_123").subscription
        assert row.plan_id == "starter"
        assert row.stripe_price_id is None

    def test_unresolved_user_writes_nothing(self, db, gateway):
        gateway.add_subscription(build_subscription(metadata={"user_id": "pending"}))
        result = ReconciliationService(db, gateway).reconcile("sub_123")
        assert isinstance(result, UnresolvedUser)
        assert db.query(Subscription).count() == 0

    def test_provider_failure_propagates(self, db, user, gateway):
        gateway.fail_with = ProviderTimeout("read timed out")
        with pytest.raises(ProviderTimeout):
            ReconciliationService(db, gateway).reconcile("sub_123")

    def test_second_subscription_supersedes(self, db, user, gateway, active_subscription):
        gateway.add_subscription(build_subscription(
            sub_id="sub_456", user_id=user.id, price_id=PROFESSIONAL_MONTHLY, amount=1900,
        ))
        new_row = ReconciliationService(db, gateway).reconcile("sub_456").subscription

        db.refresh(active_subscription)
        active = db.query(Subscription).filter(Subscription.is_active.is_(True)).all()
        assert [r.id for r in active] == [new_row.id]
        assert active_subscription.replaced_by == "sub_456"


class TestResync:
    def test_resync_user(self, db, user, gateway, active_subscription):
        gateway.subscriptions["sub_123"]["status"] = "past_due"
        result = ReconciliationService(db, gateway).resync_user(user.id)
        assert result.subscription.status == "past_due"

    def test_resync_without_subscription(self, db, user, gateway):
        assert ReconciliationService(db, gateway).resync_user(user.id) is None
        assert gateway.calls == []


class TestReconcilePending:
    def _pending(self, db, event_id, sub_id):
        log = WebhookEventLog(db)
        row = log.start(event_id, "customer.subscription.updated", sub_id)
        log.finish(row, PENDING)
        return row

    def test_sweep_reconciles_pending_events(self, db, user, gateway):
        gateway.add_subscription(build_subscription(user_id=user.id))
        self._pending(db, "evt_1", "sub_123")
        self._pending(db, "evt_2", None)

        summary = ReconciliationService(db, gateway).reconcile_pending()

        assert summary == {"processed": 1, "deferred": 0, "failed": 0, "skipped": 1}
        assert db.query(WebhookEvent).filter_by(event_id="evt_1").one().status == "processed"
        assert db.query(Subscription).count() == 1

    def test_failed_sweep_leaves_event_pending(self, db, user, gateway):
        self._pending(db, "evt_1", "sub_missing")

        summary = ReconciliationService(db, gateway).reconcile_pending()

        assert summary["failed"] == 1
        event = db.query(WebhookEvent).filter_by(event_id="evt_1").one()
        assert event.status == PENDING
        assert "No such subscription" in event.last_error

    def test_unresolved_marks_deferred(self, db, gateway):
        gateway.add_subscription(build_subscription(metadata={}))
        self._pending(db, "evt_1", "sub_123")

        summary = ReconciliationService(db, gateway).reconcile_pending()

        assert summary["deferred"] == 1
        assert db.query(WebhookEvent).filter_by(event_id="evt_1").one().status == "deferred"


def test_provider_fetch_failed_is_base_of_timeout():
    assert issubclass(ProviderTimeout, ProviderFetchFailed)
