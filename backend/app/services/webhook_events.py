"""
Webhook event log.

One row per Stripe event id, used as an audit trail and as the durable
"pending" marker for events whose Stripe fetch timed out.
"""
import logging
from typing import List, Optional

from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from app.core.errors import StoreWriteFailed
from app.models import WebhookEvent

logger = logging.getLogger(__name__)

RECEIVED = "received"
PROCESSED = "processed"
DEFERRED = "deferred"
PENDING = "pending"
IGNORED = "ignored"
FAILED = "failed"


class WebhookEventLog:
    def __init__(self, db: Session):
        self.db = db

    def get(self, event_id: str) -> Optional[WebhookEvent]:
        return self.db.query(WebhookEvent).filter(WebhookEvent.event_id == event_id).first()

    def start(
        self,
        event_id: str,
        event_type: str,
        stripe_subscription_id: Optional[str] = None,
    ) -> WebhookEvent:
        """Register a delivery. Redeliveries reuse the row and bump attempts."""
        try:
            row = self.get(event_id)
            if row is None:
                row = WebhookEvent(event_id=event_id, event_type=event_type, attempts=0)
                self.db.add(row)
            row.status = RECEIVED
            row.attempts = (row.attempts or 0) + 1
            if stripe_subscription_id:
                row.stripe_subscription_id = stripe_subscription_id
            self.db.commit()
        except IntegrityError:
            # Concurrent delivery of the same event inserted first
            self.db.rollback()
            row = self.get(event_id)
            row.attempts = (row.attempts or 0) + 1
            self.db.commit()
        except SQLAlchemyError as e:
            self.db.rollback()
            raise StoreWriteFailed(str(e)) from e
        return row

    def finish(self, row: WebhookEvent, status: str, error: Optional[str] = None) -> None:
        """Record the outcome. Never raises; the response to Stripe is already decided."""
        try:
            row.status = status
            row.last_error = error[:2000] if error else None
            self.db.commit()
        except SQLAlchemyError as e:
            self.db.rollback()
            logger.error(f"Could not record outcome '{status}' for event {row.event_id}: {e}")

    def list_pending(self, limit: int = 100) -> List[WebhookEvent]:
        return (
            self.db.query(WebhookEvent)
            .filter(WebhookEvent.status == PENDING)
            .order_by(WebhookEvent.created_at.asc())
            .limit(limit)
            .all()
        )
