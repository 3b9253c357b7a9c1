"""
Subscription model - the local cache of Stripe subscription state.

One row per Stripe subscription. Exactly one row per user carries
is_active=True; superseded rows are kept with replaced_by pointing at the
external id of the subscription that replaced them.
"""
import uuid
from datetime import datetime
from sqlalchemy import Column, String, DateTime, Boolean, ForeignKey, Index, text
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import relationship

from app.db.base import Base


class Subscription(Base):
    """Subscription model - tracks subscription lifecycle and Stripe integration."""

    __tablename__ = "subscriptions"
    __table_args__ = (
        Index(
            "uq_subscriptions_active_user",
            "user_id",
            unique=True,
            postgresql_where=text("is_active"),
            sqlite_where=text("is_active = 1"),
        ),
    )

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    user_id = Column(UUID(as_uuid=True), ForeignKey("users.id"), nullable=False, index=True)

    # Plan
    plan_id = Column(String(50), nullable=False)  # free, starter, professional, enterprise
    status = Column(String(50), nullable=False)  # trialing, active, past_due, canceled
    billing_cycle = Column(String(20), nullable=False, default="monthly")  # monthly, yearly

    # Stripe integration (stripe_subscription_id is the upsert key; cleared on deletion)
    stripe_subscription_id = Column(String(255), unique=True, nullable=True, index=True)
    # Deleted Stripe subscription this row was downgraded from
    ended_subscription_id = Column(String(255), nullable=True, index=True)
    stripe_customer_id = Column(String(255), nullable=True, index=True)
    stripe_price_id = Column(String(255), nullable=True)

    # Billing period
    current_period_start = Column(DateTime, nullable=True)
    current_period_end = Column(DateTime, nullable=True)
    trial_end = Column(DateTime, nullable=True)
    cancel_at = Column(DateTime, nullable=True)
    cancel_at_period_end = Column(Boolean, default=False, nullable=False)
    canceled_at = Column(DateTime, nullable=True)  # doubles as the cancellation-notice flag

    # Pending downgrade scheduled for period end
    scheduled_plan_id = Column(String(50), nullable=True)
    scheduled_billing_cycle = Column(String(20), nullable=True)
    scheduled_change_date = Column(DateTime, nullable=True)
    stripe_schedule_id = Column(String(255), nullable=True)

    # Supersession
    is_active = Column(Boolean, default=True, nullable=False)
    replaced_by = Column(String(255), nullable=True)

    # Timestamps
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    updated_at = Column(
        DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False
    )

    # Relationships
    user = relationship("User", back_populates="subscriptions")

    def __repr__(self):
        return (
            f"<Subscription(id={self.id}, user_id={self.user_id}, plan={self.plan_id}, "
            f"status={self.status}, active={self.is_active})>"
        )
