"""
Unit tests for Resend-backed billing emails.
"""
from datetime import datetime
from unittest.mock import patch

from app.core.config import settings
from app.services.email import EmailNotifier


class TestSend:
    def test_missing_api_key_skips(self):
        with patch("app.services.email.resend.Emails.send") as send:
            assert EmailNotifier(api_key="").send_payment_receipt_email("a@b.com", "A", "Starter", 900) is False
        send.assert_not_called()

    def test_receipt_renders_and_sends(self):
        with patch("app.services.email.resend.Emails.send", return_value={"id": "em_1"}) as send:
            sent = EmailNotifier(api_key="re_test").send_payment_receipt_email(
                "a@b.com", "Alex", "Professional", 1900, "usd", "https://invoice.stripe.test/in_1"
            )

        assert sent is True
        params = send.call_args.args[0]
        assert params["to"] == ["a@b.com"]
        assert params["subject"] == "Payment Received - SocialCal"
        assert "$19.00" in params["html"]
        assert "Professional" in params["html"]
        assert "https://invoice.stripe.test/in_1" in params["html"]

    def test_user_content_is_escaped(self):
        with patch("app.services.email.resend.Emails.send", return_value={"id": "em_1"}) as send:
            EmailNotifier(api_key="re_test").send_subscription_cancelled_email(
                "a@b.com", "<script>x</script>", "Starter", datetime(2026, 10, 31)
            )
        html = send.call_args.args[0]["html"]
        assert "<script>x</script>" not in html
        assert "October 31, 2026" in html

    def test_provider_error_returns_false(self):
        with patch("app.services.email.resend.Emails.send", side_effect=RuntimeError("rate limited")):
            assert EmailNotifier(api_key="re_test").send_plan_upgraded_email(
                "a@b.com", "A", "Starter", "Professional", 1000
            ) is False

    def test_missing_message_id_returns_false(self):
        with patch("app.services.email.resend.Emails.send", return_value={}):
            assert EmailNotifier(api_key="re_test").send_plan_downgraded_email(
                "a@b.com", "A", "Professional", "Starter", datetime(2026, 10, 31)
            ) is False


class TestAdminAlerts:
    def test_no_recipients(self, monkeypatch):
        monkeypatch.setattr(settings, "admin_alert_emails", [])
        with patch("app.services.email.resend.Emails.send") as send:
            assert EmailNotifier(api_key="re_test").send_admin_alert_email("issue", "error", "boom") is False
        send.assert_not_called()

    def test_sends_to_all_recipients(self, monkeypatch):
        monkeypatch.setattr(settings, "admin_alert_emails", ["ops@example.com", "cto@example.com"])
        with patch("app.services.email.resend.Emails.send", return_value={"id": "em_2"}) as send:
            assert EmailNotifier(api_key="re_test").send_admin_alert_email(
                "stripe-webhook:invoice.paid:StoreWriteFailed", "critical", "db down"
            ) is True

        params = send.call_args.args[0]
        assert params["to"] == ["ops@example.com", "cto@example.com"]
        assert params["subject"] == "[CRITICAL] Billing alert: stripe-webhook:invoice.paid:StoreWriteFailed"


def test_payment_failed_defaults_to_billing_page():
    with patch("app.services.email.resend.Emails.send", return_value={"id": "em_3"}) as send:
        EmailNotifier(api_key="re_test").send_payment_failed_email("a@b.com", "A", 900)
    assert f"{settings.app_url}/dashboard/billing" in send.call_args.args[0]["html"]
