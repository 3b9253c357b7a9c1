"""
Admin alerts for billing failures, deduplicated per issue over 24 hours.
"""
import logging

from sqlalchemy.orm import Session

from app.services.email import EmailNotifier
from app.services.notification_gate import ADMIN_ALERT, AlertLedger, NotificationGate

logger = logging.getLogger(__name__)


class AlertService:
    def __init__(self, db: Session, notifier: EmailNotifier):
        self.notifier = notifier
        self.gate = NotificationGate(AlertLedger(db), send_on_ledger_error=True)

    def raise_alert(self, issue_id: str, message: str, severity: str = "error") -> bool:
        """Email admins about `issue_id` unless it was already alerted in the window."""
        logger.warning(f"Billing alert [{severity}] {issue_id}: {message}")
        return self.gate.send_once(
            ADMIN_ALERT,
            issue_id,
            lambda: self.notifier.send_admin_alert_email(issue_id, severity, message),
            severity=severity,
            message=message,
        )
