"""
Notification gate - exactly-once side effects over at-least-once events.

Every outbound email goes through NotificationGate.send_once, which asks a
NotificationLedger whether (category, subject_id) was already handled,
claims it, and only then sends.

Ledgers:
- DatabaseNotificationLedger: notification_records, time-boxed
- CancellationLedger: subscriptions.canceled_at, forever per subscription
- AlertLedger: alert_records, 24h window for admin alerts
"""
import logging
import uuid
from datetime import datetime, timedelta
from typing import Any, Callable, Optional, Protocol

from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from app.core.config import settings
from app.models import AlertRecord, NotificationRecord, Subscription

logger = logging.getLogger(__name__)

# Categories
PLAN_UPGRADED = "plan_upgraded"
PLAN_DOWNGRADED = "plan_downgraded"
PAYMENT_RECEIPT = "payment_receipt"
PAYMENT_FAILED = "payment_failed"
SUBSCRIPTION_CANCELLED = "subscription_cancelled"
ADMIN_ALERT = "admin_alert"


class NotificationLedger(Protocol):
    def should_send(self, category: str, subject_id: str) -> bool:
        ...

    def record(
        self, category: str, subject_id: str, user_id: Optional[uuid.UUID] = None, **details: Any
    ) -> bool:
        """Claim (category, subject_id). Returns False if another caller already holds it."""
        ...


class DatabaseNotificationLedger:
    """Time-boxed ledger over notification_records."""

    def __init__(self, db: Session, window_hours: Optional[int] = None):
        self.db = db
        self.window = timedelta(
            hours=window_hours if window_hours is not None else settings.notification_dedup_window_hours
        )

    def should_send(self, category: str, subject_id: str) -> bool:
        existing = (
            self.db.query(NotificationRecord)
            .filter(
                NotificationRecord.category == category,
                NotificationRecord.subject_id == subject_id,
                NotificationRecord.expires_at > datetime.utcnow(),
            )
            .first()
        )
        return existing is None

    def record(
        self, category: str, subject_id: str, user_id: Optional[uuid.UUID] = None, **details: Any
    ) -> bool:
        now = datetime.utcnow()
        try:
            # An expired claim frees the key for a new one
            self.db.query(NotificationRecord).filter(
                NotificationRecord.category == category,
                NotificationRecord.subject_id == subject_id,
                NotificationRecord.expires_at <= now,
            ).delete(synchronize_session=False)

            self.db.add(
                NotificationRecord(
                    category=category,
                    subject_id=subject_id,
                    user_id=user_id,
                    sent_at=now,
                    expires_at=now + self.window,
                )
            )
            self.db.commit()
            return True
        except IntegrityError:
            self.db.rollback()
            logger.info(f"Notification {category}:{subject_id} already claimed")
            return False


class CancellationLedger:
    """
    Uses the subscription row's own canceled_at as the dedup flag.

    subject_id is the subscription row id (not the Stripe id, which is
    cleared when the subscription is deleted).
    """

    def __init__(self, db: Session):
        self.db = db

    def should_send(self, category: str, subject_id: str) -> bool:
        row = self.db.query(Subscription).filter(Subscription.id == uuid.UUID(str(subject_id))).first()
        return row is not None and row.canceled_at is None

    def record(
        self, category: str, subject_id: str, user_id: Optional[uuid.UUID] = None, **details: Any
    ) -> bool:
        claimed = (
            self.db.query(Subscription)
            .filter(
                Subscription.id == uuid.UUID(str(subject_id)),
                Subscription.canceled_at.is_(None),
            )
            .update({Subscription.canceled_at: datetime.utcnow()}, synchronize_session=False)
        )
        self.db.commit()
        # Loaded rows must see the new flag
        self.db.expire_all()
        return claimed == 1


class AlertLedger:
    """24h suppression window per issue id for admin alerts."""

    def __init__(self, db: Session, window_hours: Optional[int] = None):
        self.db = db
        self.window = timedelta(
            hours=window_hours if window_hours is not None else settings.alert_dedup_window_hours
        )

    def should_send(self, category: str, subject_id: str) -> bool:
        recent = (
            self.db.query(AlertRecord)
            .filter(
                AlertRecord.issue_id == subject_id,
                AlertRecord.expires_at > datetime.utcnow(),
            )
            .first()
        )
        return recent is None

    def record(
        self,
        category: str,
        subject_id: str,
        user_id: Optional[uuid.UUID] = None,
        severity: str = "warning",
        message: Optional[str] = None,
    ) -> bool:
        now = datetime.utcnow()
        self.db.add(
            AlertRecord(
                issue_id=subject_id,
                severity=severity,
                message=message,
                alerted_at=now,
                expires_at=now + self.window,
            )
        )
        self.db.commit()
        return True


class NotificationGate:
    """
    Composes a ledger check, a claim and the send itself.

    send_on_ledger_error decides whether to send anyway when the ledger
    itself fails. Billing emails use False, admin alerts use True.
    """

    def __init__(self, ledger: NotificationLedger, send_on_ledger_error: bool = False):
        self.ledger = ledger
        self.send_on_ledger_error = send_on_ledger_error

    def send_once(
        self,
        category: str,
        subject_id: str,
        send: Callable[[], bool],
        user_id: Optional[uuid.UUID] = None,
        **record_details: Any,
    ) -> bool:
        """
        Send at most once per (category, subject_id).

        Returns:
            True if this call sent the notification
        """
        try:
            if not self.ledger.should_send(category, subject_id):
                logger.info(f"Skipping {category} for {subject_id}: already sent")
                return False
            if not self.ledger.record(category, subject_id, user_id=user_id, **record_details):
                return False
        except SQLAlchemyError as e:
            logger.error(f"Notification ledger unavailable for {category}:{subject_id}: {e}")
            self._rollback()
            if not self.send_on_ledger_error:
                return False

        sent = send()
        if not sent:
            logger.warning(f"{category} for {subject_id} was claimed but not delivered")
        return sent

    def _rollback(self) -> None:
        db = getattr(self.ledger, "db", None)
        if db is not None:
            db.rollback()
