"""
Plan change initiator.

A user-requested change is written to plan_change_log first and then handed
to Stripe; if Stripe refuses, the entry is discarded again. Plan and status
on the subscription row are never written here. Stripe reports the result
back through webhooks, and the webhook handler uses the log entry to pick
the right email. Only the pending-downgrade columns are kept here, so the
schedule can be shown and called off later.

Upgrades take effect immediately with a prorated invoice. Downgrades are
scheduled for period end, and Stripe sends nothing until then, so the
downgrade confirmation is emailed right away.
"""
import logging
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from app.core.errors import ProviderFetchFailed, StoreWriteFailed
from app.core.plans import FREE_PLAN_ID, get_plan
from app.models import PlanChangeLogEntry, User
from app.services.email import EmailNotifier
from app.services.notification_gate import (
    PLAN_DOWNGRADED,
    DatabaseNotificationLedger,
    NotificationGate,
)
from app.services.payments import PaymentLedger
from app.services.stripe_gateway import StripeGateway
from app.services.subscription_store import SubscriptionStore

logger = logging.getLogger(__name__)

UPGRADE = "upgrade"
DOWNGRADE = "downgrade"


class PlanChangeLog:
    def __init__(self, db: Session):
        self.db = db

    def record(
        self,
        user_id: uuid.UUID,
        change_type: str,
        old_plan_id: str,
        new_plan_id: str,
        billing_cycle: Optional[str] = None,
    ) -> PlanChangeLogEntry:
        entry = PlanChangeLogEntry(
            user_id=user_id,
            change_type=change_type,
            old_plan_id=old_plan_id,
            new_plan_id=new_plan_id,
            billing_cycle=billing_cycle,
        )
        try:
            self.db.add(entry)
            self.db.commit()
        except SQLAlchemyError as e:
            self.db.rollback()
            raise StoreWriteFailed(str(e)) from e
        self.db.refresh(entry)
        return entry

    def discard(self, entry: PlanChangeLogEntry) -> None:
        """Drop an entry whose change Stripe never accepted."""
        try:
            self.db.delete(entry)
            self.db.commit()
        except SQLAlchemyError as e:
            self.db.rollback()
            raise StoreWriteFailed(str(e)) from e

    def find_recent(self, user_id: uuid.UUID, within_seconds: int) -> Optional[PlanChangeLogEntry]:
        """Newest entry for the user created in the last `within_seconds`."""
        cutoff = datetime.utcnow() - timedelta(seconds=within_seconds)
        return (
            self.db.query(PlanChangeLogEntry)
            .filter(
                PlanChangeLogEntry.user_id == user_id,
                PlanChangeLogEntry.created_at >= cutoff,
            )
            .order_by(PlanChangeLogEntry.created_at.desc())
            .first()
        )


@dataclass
class PlanChangeResult:
    change_type: str
    old_plan_id: str
    new_plan_id: str
    billing_cycle: str
    change_log_id: uuid.UUID
    effective_date: Optional[datetime] = None


@dataclass
class ScheduledChangeCanceled:
    plan_id: str
    billing_cycle: str
    canceled_plan_id: str
    canceled_billing_cycle: Optional[str]


@dataclass
class UpgradePreview:
    """What an upgrade would charge today. Amounts in cents."""

    current_plan: str
    new_plan: str
    billing_cycle: str
    full_price: int
    amount_due: int
    credit: int = 0
    currency: str = "usd"
    has_existing_subscription: bool = False
    current_period_end: Optional[datetime] = None
    days_remaining: Optional[int] = None
    description: str = ""
    error: Optional[str] = None


def classify_change(old_plan_id: str, old_cycle: str, new_plan_id: str, new_cycle: str) -> str:
    """Compare monthly list prices; a cycle-only change to yearly counts as an upgrade."""
    old_price = get_plan(old_plan_id).monthly_price
    new_price = get_plan(new_plan_id).monthly_price
    if new_price != old_price:
        return UPGRADE if new_price > old_price else DOWNGRADE
    return UPGRADE if new_cycle == "yearly" and old_cycle != "yearly" else DOWNGRADE


class PlanChangeService:
    def __init__(
        self,
        db: Session,
        gateway: StripeGateway,
        notifier: EmailNotifier,
    ):
        self.db = db
        self.gateway = gateway
        self.notifier = notifier
        self.store = SubscriptionStore(db)
        self.change_log = PlanChangeLog(db)
        self.payments = PaymentLedger(db)
        self.gate = NotificationGate(DatabaseNotificationLedger(db), send_on_ledger_error=False)

    def request_change(self, user: User, new_plan_id: str, billing_cycle: str) -> PlanChangeResult:
        """
        Ask Stripe to move the user's active subscription to another plan.

        A downgrade already pending is released first, so at most one
        schedule is attached to the subscription.

        Raises:
            ValueError: If the user has no paid subscription or the target is invalid
            ProviderFetchFailed: If Stripe rejects or cannot be reached
        """
        current = self.store.get_active_for_user(user.id)
        if current is None or not current.stripe_subscription_id:
            raise ValueError("No active paid subscription to change")

        new_plan = get_plan(new_plan_id)
        if not new_plan.is_paid:
            raise ValueError("Downgrading to free is done by cancelling the subscription")
        if current.plan_id == new_plan_id and current.billing_cycle == billing_cycle:
            raise ValueError(f"Already subscribed to {new_plan.name} ({billing_cycle})")

        price_id = new_plan.price_id_for(billing_cycle)
        if not price_id:
            raise ValueError(f"Stripe price ID not configured for {new_plan_id} {billing_cycle}")

        change_type = classify_change(current.plan_id, current.billing_cycle, new_plan_id, billing_cycle)
        provider_sub = self.gateway.retrieve_subscription(current.stripe_subscription_id)

        entry = self.change_log.record(
            user_id=user.id,
            change_type=change_type,
            old_plan_id=current.plan_id,
            new_plan_id=new_plan_id,
            billing_cycle=billing_cycle,
        )
        logger.info(
            f"User {user.id} requested {change_type} {current.plan_id} -> {new_plan_id} "
            f"({billing_cycle}), change log {entry.id}"
        )

        schedule_released = False
        schedule_id = None
        try:
            if current.stripe_schedule_id:
                self.gateway.release_schedule(current.stripe_schedule_id)
                schedule_released = True

            if change_type == UPGRADE:
                self.gateway.change_subscription_price(
                    provider_sub,
                    price_id,
                    metadata={
                        "user_id": str(user.id),
                        "plan_id": new_plan_id,
                        "billing_cycle": billing_cycle,
                    },
                )
            else:
                schedule_id = self.gateway.schedule_price_change(provider_sub, price_id)
        except ProviderFetchFailed as e:
            logger.error(f"Stripe refused {change_type} for user {user.id}, discarding change log {entry.id}: {e}")
            self.change_log.discard(entry)
            if schedule_released:
                self.store.clear_scheduled_change(current)
            raise

        if change_type == UPGRADE:
            if current.scheduled_plan_id:
                self.store.clear_scheduled_change(current)
            return PlanChangeResult(
                change_type=UPGRADE,
                old_plan_id=entry.old_plan_id,
                new_plan_id=new_plan_id,
                billing_cycle=billing_cycle,
                change_log_id=entry.id,
                effective_date=datetime.utcnow(),
            )

        effective_date = provider_sub.period_end or current.current_period_end
        self.store.record_scheduled_change(current, new_plan_id, billing_cycle, effective_date, schedule_id)
        old_name = get_plan(entry.old_plan_id).name

        self.gate.send_once(
            PLAN_DOWNGRADED,
            str(entry.id),
            lambda: self.notifier.send_plan_downgraded_email(
                user.email,
                user.display_name,
                old_name,
                new_plan.name,
                effective_date,
            ),
            user_id=user.id,
        )

        return PlanChangeResult(
            change_type=DOWNGRADE,
            old_plan_id=entry.old_plan_id,
            new_plan_id=new_plan_id,
            billing_cycle=billing_cycle,
            change_log_id=entry.id,
            effective_date=effective_date,
        )

    def cancel_scheduled_change(self, user: User) -> ScheduledChangeCanceled:
        """
        Call off a pending downgrade; the subscription renews on its current plan.

        Raises:
            ValueError: If no downgrade is pending
            ProviderFetchFailed: If Stripe cannot release the schedule
        """
        current = self.store.get_active_for_user(user.id)
        if current is None or not current.scheduled_plan_id:
            raise ValueError("No scheduled plan change to cancel")

        canceled_plan_id = current.scheduled_plan_id
        canceled_cycle = current.scheduled_billing_cycle

        if current.stripe_schedule_id:
            self.gateway.release_schedule(current.stripe_schedule_id)

        self.payments.record_scheduled_change_canceled(
            user.id, canceled_plan_id, canceled_cycle, subscription_id=current.id
        )
        self.store.clear_scheduled_change(current)
        logger.info(f"User {user.id} canceled scheduled change to {canceled_plan_id} ({canceled_cycle})")

        return ScheduledChangeCanceled(
            plan_id=current.plan_id,
            billing_cycle=current.billing_cycle,
            canceled_plan_id=canceled_plan_id,
            canceled_billing_cycle=canceled_cycle,
        )

    def preview_upgrade(
        self,
        user: User,
        plan_id: str,
        billing_cycle: str,
        now: Optional[datetime] = None,
    ) -> UpgradePreview:
        """
        Estimate what an upgrade charges today.

        The credit is the unused share of the current period at the current
        price. Stripe computes the real proration when the change is made, so
        this is an estimate; if Stripe cannot be reached the full price is
        quoted with an error note.

        Raises:
            ValueError: If the target plan is invalid, free, or not an upgrade
        """
        new_plan = get_plan(plan_id)
        if not new_plan.is_paid:
            raise ValueError("Cannot preview an upgrade to the free plan")
        if billing_cycle not in ("monthly", "yearly"):
            raise ValueError(f"Invalid billing cycle: {billing_cycle}")

        full_price = new_plan.price_for(billing_cycle)
        current = self.store.get_active_for_user(user.id)
        current_plan_id = current.plan_id if current is not None else FREE_PLAN_ID

        preview = UpgradePreview(
            current_plan=current_plan_id,
            new_plan=plan_id,
            billing_cycle=billing_cycle,
            full_price=full_price,
            amount_due=full_price,
            description=f"{new_plan.name} ({billing_cycle}) at full price",
        )

        if current is None or not current.stripe_subscription_id or not get_plan(current.plan_id).is_paid:
            return preview

        if current.plan_id == plan_id and current.billing_cycle == billing_cycle:
            raise ValueError(f"Already subscribed to {new_plan.name} ({billing_cycle})")
        if classify_change(current.plan_id, current.billing_cycle, plan_id, billing_cycle) != UPGRADE:
            raise ValueError("Downgrades take effect at period end and are not charged")

        preview.has_existing_subscription = True
        preview.current_period_end = current.current_period_end

        try:
            provider_sub = self.gateway.retrieve_subscription(current.stripe_subscription_id)
        except ProviderFetchFailed as e:
            logger.warning(f"Upgrade preview for user {user.id} fell back to full price: {e}")
            preview.error = "Could not calculate exact proration"
            return preview

        item = provider_sub.primary_item
        current_amount = item.price.unit_amount if item is not None and item.price else None
        if current_amount is None:
            current_amount = get_plan(current.plan_id).price_for(current.billing_cycle)

        start = provider_sub.period_start or current.current_period_start
        end = provider_sub.period_end or current.current_period_end
        if start is None or end is None or end <= start:
            preview.error = "Could not calculate exact proration"
            return preview

        now = now or datetime.utcnow()
        remaining = max(timedelta(0), end - min(max(now, start), end))
        unused_ratio = remaining.total_seconds() / (end - start).total_seconds()

        preview.credit = int(round(current_amount * unused_ratio))
        preview.amount_due = max(0, full_price - preview.credit)
        preview.current_period_end = end
        preview.days_remaining = remaining.days
        preview.description = (
            f"{new_plan.name} ({billing_cycle}) less {preview.days_remaining} unused days "
            f"of {get_plan(current.plan_id).name}"
        )
        return preview
