"""
Database models package.

All SQLAlchemy models are exported from this module for easy imports.
"""
from app.models.user import User
from app.models.subscription import Subscription
from app.models.payment_record import PaymentRecord
from app.models.plan_change_log import PlanChangeLogEntry
from app.models.notification_record import NotificationRecord
from app.models.alert_record import AlertRecord
from app.models.webhook_event import WebhookEvent
from app.models.usage import UsageCounter

__all__ = [
    "User",
    "Subscription",
    "PaymentRecord",
    "PlanChangeLogEntry",
    "NotificationRecord",
    "AlertRecord",
    "WebhookEvent",
    "UsageCounter",
]
