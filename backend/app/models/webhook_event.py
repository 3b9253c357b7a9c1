"""
Webhook event log - audit trail and durable pending marker for Stripe events.
"""
import uuid
from datetime import datetime
from sqlalchemy import Column, String, DateTime, Integer, Text
from sqlalchemy.dialects.postgresql import UUID

from app.db.base import Base


class WebhookEvent(Base):
    """
    One row per Stripe event id.

    Status values: received, processed, deferred, pending, failed.
    Rows left in `pending` are picked up by the operator resync sweep.
    """

    __tablename__ = "webhook_events"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    event_id = Column(String(255), unique=True, nullable=False, index=True)
    event_type = Column(String(100), nullable=False)
    status = Column(String(20), nullable=False, default="received", index=True)
    stripe_subscription_id = Column(String(255), nullable=True)
    attempts = Column(Integer, default=0, nullable=False)
    last_error = Column(Text, nullable=True)

    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False)

    def __repr__(self):
        return f"<WebhookEvent(event_id={self.event_id}, type={self.event_type}, status={self.status})>"
