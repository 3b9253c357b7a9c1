"""
Transactional billing emails via Resend.

Every send_* method renders a Jinja2 template from app/templates/email,
hands it to Resend and returns True on success. Delivery failures are
logged here and reported as False; they never propagate into webhook
processing.
"""
import logging
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

import resend
from jinja2 import Environment, FileSystemLoader, select_autoescape

from app.core.config import settings
from app.core.errors import NotificationSendFailed
from app.core.plans import format_price

logger = logging.getLogger(__name__)

template_dir = Path(__file__).parent.parent / "templates" / "email"
jinja_env = Environment(
    loader=FileSystemLoader(str(template_dir)),
    autoescape=select_autoescape(["html"]),
)


def _format_date(value: Optional[datetime]) -> str:
    return value.strftime("%B %d, %Y") if value else ""


jinja_env.filters["price"] = format_price
jinja_env.filters["date"] = _format_date


class EmailNotifier:
    """Fire-and-forget billing notifications."""

    def __init__(self, api_key: Optional[str] = None, from_email: Optional[str] = None):
        self.api_key = api_key if api_key is not None else settings.resend_api_key
        self.from_email = from_email or settings.email_from

    def _send(
        self,
        to: Union[str, List[str]],
        subject: str,
        template_name: str,
        context: Dict[str, Any],
    ) -> bool:
        if not self.api_key:
            logger.warning(f"RESEND_API_KEY not set, skipping email '{subject}' to {to}")
            return False

        try:
            html = jinja_env.get_template(template_name).render(
                app_name="SocialCal",
                app_url=settings.app_url,
                **context,
            )
            resend.api_key = self.api_key
            params: Dict[str, Any] = {
                "from": self.from_email,
                "to": to if isinstance(to, list) else [to],
                "subject": subject,
                "html": html,
            }
            if settings.email_reply_to:
                params["reply_to"] = settings.email_reply_to

            result = resend.Emails.send(params)
            if not result or not result.get("id"):
                raise NotificationSendFailed(f"Resend returned no message id: {result}")
        except Exception as e:
            logger.error(f"Failed to send email '{subject}' to {to}: {e}")
            return False

        logger.info(f"Email sent: to={to}, subject={subject[:40]}, id={result['id']}")
        return True

    def send_payment_receipt_email(
        self,
        to: str,
        user_name: str,
        plan_name: str,
        amount: int,
        currency: str = "usd",
        invoice_url: Optional[str] = None,
    ) -> bool:
        return self._send(
            to,
            "Payment Received - SocialCal",
            "payment_receipt.html",
            {
                "user_name": user_name,
                "plan_name": plan_name,
                "amount": amount,
                "currency": currency.upper(),
                "invoice_url": invoice_url,
            },
        )

    def send_subscription_cancelled_email(
        self,
        to: str,
        user_name: str,
        plan_name: str,
        end_date: Optional[datetime] = None,
    ) -> bool:
        return self._send(
            to,
            "Your subscription has been cancelled",
            "subscription_cancelled.html",
            {"user_name": user_name, "plan_name": plan_name, "end_date": end_date},
        )

    def send_plan_upgraded_email(
        self,
        to: str,
        user_name: str,
        old_plan: str,
        new_plan: str,
        prorated_amount: Optional[int] = None,
    ) -> bool:
        return self._send(
            to,
            f"Your plan has been upgraded to {new_plan}!",
            "plan_upgraded.html",
            {
                "user_name": user_name,
                "old_plan": old_plan,
                "new_plan": new_plan,
                "prorated_amount": prorated_amount,
            },
        )

    def send_plan_downgraded_email(
        self,
        to: str,
        user_name: str,
        old_plan: str,
        new_plan: str,
        effective_date: Optional[datetime] = None,
    ) -> bool:
        return self._send(
            to,
            "Your subscription plan has changed",
            "plan_downgraded.html",
            {
                "user_name": user_name,
                "old_plan": old_plan,
                "new_plan": new_plan,
                "effective_date": effective_date,
            },
        )

    def send_payment_failed_email(
        self,
        to: str,
        user_name: str,
        amount: int,
        update_payment_url: Optional[str] = None,
    ) -> bool:
        return self._send(
            to,
            "Payment Failed - Action Required",
            "payment_failed.html",
            {
                "user_name": user_name,
                "amount": amount,
                "update_payment_url": update_payment_url or f"{settings.app_url}/dashboard/billing",
            },
        )

    def send_admin_alert_email(self, issue_id: str, severity: str, message: str) -> bool:
        recipients = settings.admin_alert_emails
        if not recipients:
            logger.warning(f"No admin alert recipients configured, alert {issue_id} not emailed")
            return False
        return self._send(
            recipients,
            f"[{severity.upper()}] Billing alert: {issue_id}",
            "admin_alert.html",
            {"issue_id": issue_id, "severity": severity, "message": message},
        )


def get_email_notifier() -> EmailNotifier:
    """FastAPI dependency returning a notifier bound to the current settings."""
    return EmailNotifier()
