"""
Subscription store - the table of record for "current subscription per user".

All writes are keyed by the Stripe subscription id, so replaying an event
re-applies the same state instead of creating a second row. A subscription
the store has not seen before supersedes the user's current active row in the
same transaction; the old row is kept with replaced_by pointing at the new
external id.
"""
import logging
import uuid
from dataclasses import dataclass
from datetime import datetime
from typing import List, Optional

from sqlalchemy import or_
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from app.core.errors import StoreWriteFailed
from app.core.plans import FREE_PLAN_ID
from app.models import Subscription

logger = logging.getLogger(__name__)

# Stripe statuses folded onto the four local ones
_STATUS_MAP = {
    "trialing": "trialing",
    "active": "active",
    "past_due": "past_due",
    "unpaid": "past_due",
    "incomplete": "past_due",
    "paused": "past_due",
    "canceled": "canceled",
    "incomplete_expired": "canceled",
}


def normalize_status(stripe_status: str) -> str:
    status = _STATUS_MAP.get(stripe_status)
    if status is None:
        logger.warning(f"Unknown Stripe subscription status '{stripe_status}', storing as past_due")
        return "past_due"
    return status


@dataclass
class SubscriptionState:
    """Full desired state of one subscription row, re-derived from Stripe."""

    user_id: uuid.UUID
    plan_id: str
    status: str
    billing_cycle: str
    stripe_subscription_id: str
    stripe_customer_id: Optional[str] = None
    stripe_price_id: Optional[str] = None
    current_period_start: Optional[datetime] = None
    current_period_end: Optional[datetime] = None
    trial_end: Optional[datetime] = None
    cancel_at: Optional[datetime] = None
    cancel_at_period_end: bool = False

    @property
    def cancellation_in_effect(self) -> bool:
        return self.cancel_at_period_end or self.cancel_at is not None or self.status == "canceled"


class SubscriptionStore:
    def __init__(self, db: Session):
        self.db = db

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def get_by_external_id(self, stripe_subscription_id: str) -> Optional[Subscription]:
        """Row carrying the Stripe subscription, or the free row it was downgraded to."""
        return (
            self.db.query(Subscription)
            .filter(
                or_(
                    Subscription.stripe_subscription_id == stripe_subscription_id,
                    Subscription.ended_subscription_id == stripe_subscription_id,
                )
            )
            .first()
        )

    def get(self, subscription_id: uuid.UUID) -> Optional[Subscription]:
        return self.db.query(Subscription).filter(Subscription.id == subscription_id).first()

    def get_active_for_user(self, user_id: uuid.UUID) -> Optional[Subscription]:
        return (
            self.db.query(Subscription)
            .filter(Subscription.user_id == user_id, Subscription.is_active.is_(True))
            .first()
        )

    def list_for_user(self, user_id: uuid.UUID) -> List[Subscription]:
        return (
            self.db.query(Subscription)
            .filter(Subscription.user_id == user_id)
            .order_by(Subscription.created_at.desc())
            .all()
        )

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    def upsert(self, state: SubscriptionState) -> Subscription:
        """
        Write `state` keyed by its Stripe subscription id.

        A first-seen subscription deactivates the user's other active row
        before the new row is inserted, all in one commit. Re-applying an
        already-stored subscription only overwrites its fields.
        A subscription whose deletion was already applied is never written
        again; the free row it left behind is returned unchanged.

        Raises:
            StoreWriteFailed: If the transaction cannot be committed
        """
        try:
            row = self.get_by_external_id(state.stripe_subscription_id)
            if row is not None and row.stripe_subscription_id != state.stripe_subscription_id:
                logger.info(
                    f"Ignoring state for {state.stripe_subscription_id}: its deletion was already "
                    f"applied to subscription {row.id}"
                )
                return row

            if row is None:
                self._supersede_active(state.user_id, state.stripe_subscription_id)
                row = Subscription(
                    user_id=state.user_id,
                    stripe_subscription_id=state.stripe_subscription_id,
                    is_active=True,
                )
                self.db.add(row)
                logger.info(
                    f"Creating subscription row for {state.stripe_subscription_id} (user {state.user_id})"
                )
            elif row.user_id != state.user_id:
                logger.warning(
                    f"Subscription {state.stripe_subscription_id} moved from user {row.user_id} "
                    f"to {state.user_id}"
                )
                row.user_id = state.user_id

            self._apply_state(row, state)
            self.db.commit()
        except SQLAlchemyError as e:
            self.db.rollback()
            logger.error(f"Failed to upsert subscription {state.stripe_subscription_id}: {e}")
            raise StoreWriteFailed(str(e)) from e

        self.db.refresh(row)
        return row

    def _supersede_active(self, user_id: uuid.UUID, new_external_id: str) -> None:
        superseded = (
            self.db.query(Subscription)
            .filter(
                Subscription.user_id == user_id,
                Subscription.is_active.is_(True),
                or_(
                    Subscription.stripe_subscription_id.is_(None),
                    Subscription.stripe_subscription_id != new_external_id,
                ),
            )
            .all()
        )
        for old in superseded:
            old.is_active = False
            old.replaced_by = new_external_id
            logger.info(f"Subscription {old.id} for user {user_id} superseded by {new_external_id}")

        # Deactivation must reach the database before the new active row
        if superseded:
            self.db.flush()

    @staticmethod
    def _apply_state(row: Subscription, state: SubscriptionState) -> None:
        row.plan_id = state.plan_id
        row.status = state.status
        row.billing_cycle = state.billing_cycle
        row.stripe_customer_id = state.stripe_customer_id
        row.stripe_price_id = state.stripe_price_id
        row.current_period_start = state.current_period_start
        row.current_period_end = state.current_period_end
        row.trial_end = state.trial_end
        row.cancel_at = state.cancel_at
        row.cancel_at_period_end = state.cancel_at_period_end

        # canceled_at is the cancellation-notice flag; keep it while the
        # cancellation stands, clear it once Stripe reports it revoked
        if not state.cancellation_in_effect:
            row.canceled_at = None

        # A scheduled downgrade is done once Stripe reports the new price
        if row.scheduled_plan_id and (state.plan_id, state.billing_cycle) == (
            row.scheduled_plan_id,
            row.scheduled_billing_cycle,
        ):
            SubscriptionStore._clear_schedule(row)

    @staticmethod
    def _clear_schedule(row: Subscription) -> None:
        row.scheduled_plan_id = None
        row.scheduled_billing_cycle = None
        row.scheduled_change_date = None
        row.stripe_schedule_id = None

    def downgrade_to_free(self, row: Subscription) -> Subscription:
        """
        Apply a Stripe deletion to the user's active row.

        The row stays active on the free plan so the dashboard keeps working;
        the external id moves to ended_subscription_id so the next checkout
        starts a fresh row while late events for the deleted subscription
        still find this one.
        canceled_at is left to the cancellation ledger.
        """
        external_id = row.stripe_subscription_id
        try:
            row.plan_id = FREE_PLAN_ID
            row.status = "canceled"
            row.ended_subscription_id = external_id
            row.stripe_subscription_id = None
            row.stripe_price_id = None
            row.cancel_at_period_end = False
            self._clear_schedule(row)
            self.db.commit()
        except SQLAlchemyError as e:
            self.db.rollback()
            logger.error(f"Failed to downgrade subscription {external_id}: {e}")
            raise StoreWriteFailed(str(e)) from e

        logger.info(f"User {row.user_id} downgraded to free after deletion of {external_id}")
        return row

    def mark_canceled(self, row: Subscription) -> Subscription:
        """Record a deletion on a superseded row without touching the user's current plan."""
        try:
            row.status = "canceled"
            row.canceled_at = row.canceled_at or datetime.utcnow()
            self.db.commit()
        except SQLAlchemyError as e:
            self.db.rollback()
            logger.error(f"Failed to mark subscription {row.stripe_subscription_id} canceled: {e}")
            raise StoreWriteFailed(str(e)) from e
        return row

    def record_scheduled_change(
        self,
        row: Subscription,
        plan_id: str,
        billing_cycle: str,
        change_date: Optional[datetime],
        schedule_id: Optional[str],
    ) -> Subscription:
        """Track a downgrade Stripe will apply at period end. Plan and status stay as reported."""
        try:
            row.scheduled_plan_id = plan_id
            row.scheduled_billing_cycle = billing_cycle
            row.scheduled_change_date = change_date
            row.stripe_schedule_id = schedule_id
            self.db.commit()
        except SQLAlchemyError as e:
            self.db.rollback()
            logger.error(f"Failed to record scheduled change for subscription {row.id}: {e}")
            raise StoreWriteFailed(str(e)) from e
        return row

    def clear_scheduled_change(self, row: Subscription) -> Subscription:
        try:
            self._clear_schedule(row)
            self.db.commit()
        except SQLAlchemyError as e:
            self.db.rollback()
            logger.error(f"Failed to clear scheduled change for subscription {row.id}: {e}")
            raise StoreWriteFailed(str(e)) from e
        return row
