"""
Stripe webhook handler.

Dispatches a verified, typed event to one branch per event type. Each branch
is idempotent on its own: subscription state is written through the
reconciliation service (an upsert keyed by the Stripe subscription id) and
every email goes through a NotificationGate, so redelivered or reordered
events converge to the same rows and the same single email.

Outcomes:
- processed: the event was fully applied
- deferred: the owning user does not exist yet; a later event completes it
- pending: Stripe could not be reached in time; the event is left for a
  redelivery or the pending sweep
- ignored: nothing to do for this event
"""
import logging
import uuid
from datetime import datetime
from enum import Enum
from typing import Optional

from sqlalchemy.orm import Session

from app.core.config import settings
from app.core.errors import ProviderTimeout, UnresolvedUser
from app.core.plans import PLAN_CATALOG, get_plan
from app.models import PlanChangeLogEntry, Subscription, User
from app.schemas.stripe_events import (
    CheckoutCompletedEvent,
    InvoicePaidEvent,
    InvoicePaymentFailedEvent,
    StripeEvent,
    StripeInvoice,
    StripeSubscription,
    SubscriptionCreatedEvent,
    SubscriptionDeletedEvent,
    SubscriptionUpdatedEvent,
)
from app.services.email import EmailNotifier
from app.services.identity import IdentityResolver, UserDirectory
from app.services.notification_gate import (
    PAYMENT_FAILED,
    PAYMENT_RECEIPT,
    PLAN_DOWNGRADED,
    PLAN_UPGRADED,
    SUBSCRIPTION_CANCELLED,
    CancellationLedger,
    DatabaseNotificationLedger,
    NotificationGate,
)
from app.services.payments import PaymentLedger
from app.services.plan_changes import DOWNGRADE, UPGRADE, PlanChangeLog
from app.services.reconciliation import ReconciliationService
from app.services.stripe_gateway import StripeGateway
from app.services.subscription_store import SubscriptionStore

logger = logging.getLogger(__name__)


class WebhookOutcome(str, Enum):
    PROCESSED = "processed"
    DEFERRED = "deferred"
    PENDING = "pending"
    IGNORED = "ignored"


def subscription_id_for(event: StripeEvent) -> Optional[str]:
    """The Stripe subscription an event concerns, if any."""
    obj = event.data.object
    if isinstance(obj, StripeSubscription):
        return obj.id
    if isinstance(obj, StripeInvoice):
        return obj.subscription
    return obj.subscription_id


def _plan_name(plan_id: Optional[str]) -> str:
    plan = PLAN_CATALOG.get(plan_id or "")
    return plan.name if plan else "subscription"


class StripeWebhookHandler:
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
        self.directory = UserDirectory(db)
        self.resolver = IdentityResolver(db, gateway, directory=self.directory, store=self.store)
        self.reconciler = ReconciliationService(db, gateway, resolver=self.resolver)
        self.payments = PaymentLedger(db)
        self.change_log = PlanChangeLog(db)

        self.billing_gate = NotificationGate(DatabaseNotificationLedger(db), send_on_ledger_error=False)
        self.cancellation_gate = NotificationGate(CancellationLedger(db), send_on_ledger_error=False)

    def handle(self, event: StripeEvent) -> WebhookOutcome:
        """
        Apply one event.

        Raises:
            ProviderFetchFailed: Stripe call failed (redelivery wanted)
            StoreWriteFailed: Datastore write failed (redelivery wanted)
        """
        logger.info(f"Handling Stripe event {event.id} ({event.type})")
        try:
            if isinstance(event, CheckoutCompletedEvent):
                return self.handle_checkout_completed(event)
            if isinstance(event, SubscriptionCreatedEvent):
                return self.handle_subscription_created(event)
            if isinstance(event, SubscriptionUpdatedEvent):
                return self.handle_subscription_updated(event)
            if isinstance(event, SubscriptionDeletedEvent):
                return self.handle_subscription_deleted(event)
            if isinstance(event, InvoicePaidEvent):
                return self.handle_invoice_paid(event)
            if isinstance(event, InvoicePaymentFailedEvent):
                return self.handle_invoice_payment_failed(event)
        except ProviderTimeout as e:
            logger.warning(f"Stripe timed out while handling {event.id} ({event.type}), leaving pending: {e}")
            return WebhookOutcome.PENDING

        logger.debug(f"No branch for Stripe event type {event.type}")
        return WebhookOutcome.IGNORED

    # ------------------------------------------------------------------
    # checkout.session.completed
    # ------------------------------------------------------------------

    def handle_checkout_completed(self, event: CheckoutCompletedEvent) -> WebhookOutcome:
        session = event.data.object

        identity = self.resolver.resolve_checkout(session)
        if isinstance(identity, UnresolvedUser):
            logger.info(f"Checkout {session.id} deferred: {identity.reason}")
            return WebhookOutcome.DEFERRED

        if not session.subscription_id:
            logger.info(f"Checkout {session.id} for user {identity.user_id} has no subscription attached")
            return WebhookOutcome.PROCESSED

        result = self.reconciler.reconcile(session.subscription_id, user_id=identity.user_id)
        if isinstance(result, UnresolvedUser):
            return WebhookOutcome.DEFERRED

        row = result.subscription
        if row.status == "trialing":
            self.payments.record_trial_start(
                user_id=row.user_id,
                plan_id=row.plan_id,
                trial_days=self._trial_days(row),
                subscription_id=row.id,
            )

        logger.info(f"Checkout {session.id} completed for user {row.user_id}: {row.plan_id} ({row.status})")
        return WebhookOutcome.PROCESSED

    @staticmethod
    def _trial_days(row: Subscription) -> int:
        if row.trial_end and row.current_period_start:
            days = (row.trial_end - row.current_period_start).days
            if days > 0:
                return days
        plan = PLAN_CATALOG.get(row.plan_id)
        return plan.trial_days if plan else 0

    # ------------------------------------------------------------------
    # customer.subscription.created / updated
    # ------------------------------------------------------------------

    def handle_subscription_created(self, event: SubscriptionCreatedEvent) -> WebhookOutcome:
        result = self.reconciler.reconcile(event.data.object.id)
        if isinstance(result, UnresolvedUser):
            return WebhookOutcome.DEFERRED
        return WebhookOutcome.PROCESSED

    def handle_subscription_updated(self, event: SubscriptionUpdatedEvent) -> WebhookOutcome:
        sub = event.data.object
        existing = self.store.get_by_external_id(sub.id)

        if (
            sub.cancel_at_period_end
            and existing is not None
            and existing.is_active
            and existing.stripe_subscription_id == sub.id
        ):
            self._send_cancellation_notice(existing, _plan_name(existing.plan_id), sub.period_end)

        result = self.reconciler.reconcile(sub.id)
        if isinstance(result, UnresolvedUser):
            return WebhookOutcome.DEFERRED

        row = result.subscription
        if sub.cancel_at_period_end and existing is None and row.is_active and row.status != "canceled":
            self._send_cancellation_notice(row, _plan_name(row.plan_id), sub.period_end)

        entry = self.change_log.find_recent(row.user_id, settings.plan_change_update_window_seconds)
        if entry is None:
            return WebhookOutcome.PROCESSED

        provider_sub = result.provider_subscription
        if entry.change_type == UPGRADE:
            if provider_sub.has_pending_invoice:
                logger.info(
                    f"Upgrade for user {row.user_id} has a pending invoice; "
                    f"invoice.paid will send the upgrade email"
                )
            else:
                invoice = provider_sub.latest_invoice
                amount = invoice.amount_paid if isinstance(invoice, StripeInvoice) else None
                self._send_upgrade_email(entry, amount)
        elif entry.change_type == DOWNGRADE:
            self._send_downgrade_email(entry, row.current_period_end)

        return WebhookOutcome.PROCESSED

    # ------------------------------------------------------------------
    # customer.subscription.deleted
    # ------------------------------------------------------------------

    def handle_subscription_deleted(self, event: SubscriptionDeletedEvent) -> WebhookOutcome:
        sub = event.data.object
        row = self.store.get_by_external_id(sub.id)

        if row is None or row.stripe_subscription_id != sub.id:
            logger.info(f"Deletion of {sub.id} already applied")
            return WebhookOutcome.PROCESSED

        if not row.is_active:
            self.store.mark_canceled(row)
            logger.info(f"Superseded subscription {sub.id} deleted; user {row.user_id} plan unchanged")
            return WebhookOutcome.PROCESSED

        plan_name = _plan_name(row.plan_id)
        self.store.downgrade_to_free(row)
        self._send_cancellation_notice(row, plan_name, sub.period_end or datetime.utcnow())
        return WebhookOutcome.PROCESSED

    # ------------------------------------------------------------------
    # invoice.paid / invoice.payment_succeeded
    # ------------------------------------------------------------------

    def handle_invoice_paid(self, event: InvoicePaidEvent) -> WebhookOutcome:
        invoice = event.data.object

        identity = self.resolver.resolve_invoice(invoice)
        if isinstance(identity, UnresolvedUser):
            logger.info(f"Invoice {invoice.id} deferred: {identity.reason}")
            return WebhookOutcome.DEFERRED

        user_id = identity.user_id
        row = self._subscription_for_invoice(invoice, user_id)
        entry = self.change_log.find_recent(user_id, settings.plan_change_invoice_window_seconds)

        plan_id = row.plan_id if row else None
        billing_cycle = row.billing_cycle if row else None
        if entry is not None and entry.change_type == UPGRADE:
            plan_id = entry.new_plan_id
            billing_cycle = entry.billing_cycle or billing_cycle

        self.payments.record_invoice_payment(
            user_id=user_id,
            invoice=invoice,
            plan_id=plan_id,
            billing_cycle=billing_cycle,
            subscription_id=row.id if row else None,
        )

        if entry is not None and entry.change_type == UPGRADE:
            self._send_upgrade_email(entry, invoice.amount_paid)
        elif entry is not None and entry.change_type == DOWNGRADE:
            logger.info(f"Invoice {invoice.id} follows a downgrade; confirmation already sent")
        elif invoice.is_trial_start:
            logger.info(f"Invoice {invoice.id} is a trial start, no receipt")
        else:
            self._send_receipt(invoice, user_id, plan_id)

        return WebhookOutcome.PROCESSED

    def _send_receipt(self, invoice: StripeInvoice, user_id: uuid.UUID, plan_id: Optional[str]) -> bool:
        user = self._user(user_id)
        if user is None:
            return False
        return self.billing_gate.send_once(
            PAYMENT_RECEIPT,
            invoice.id,
            lambda: self.notifier.send_payment_receipt_email(
                user.email,
                user.display_name,
                _plan_name(plan_id),
                invoice.amount_paid,
                invoice.currency,
                invoice.hosted_invoice_url,
            ),
            user_id=user_id,
        )

    # ------------------------------------------------------------------
    # invoice.payment_failed
    # ------------------------------------------------------------------

    def handle_invoice_payment_failed(self, event: InvoicePaymentFailedEvent) -> WebhookOutcome:
        invoice = event.data.object

        identity = self.resolver.resolve_invoice(invoice)
        if isinstance(identity, UnresolvedUser):
            logger.info(f"Failed invoice {invoice.id} deferred: {identity.reason}")
            return WebhookOutcome.DEFERRED

        user_id = identity.user_id
        row = self._subscription_for_invoice(invoice, user_id)
        self.payments.record_failed_payment(user_id, invoice, subscription_id=row.id if row else None)

        user = self._user(user_id)
        if user is not None:
            self.billing_gate.send_once(
                PAYMENT_FAILED,
                f"{invoice.id}:{invoice.attempt_count}",
                lambda: self.notifier.send_payment_failed_email(
                    user.email,
                    user.display_name,
                    invoice.amount_due,
                    invoice.hosted_invoice_url,
                ),
                user_id=user_id,
            )
        logger.warning(f"Payment failed for user {user_id}, invoice {invoice.id} (attempt {invoice.attempt_count})")
        return WebhookOutcome.PROCESSED

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _subscription_for_invoice(self, invoice: StripeInvoice, user_id: uuid.UUID) -> Optional[Subscription]:
        if invoice.subscription:
            row = self.store.get_by_external_id(invoice.subscription)
            if row is not None:
                return row
        return self.store.get_active_for_user(user_id)

    def _user(self, user_id: uuid.UUID) -> Optional[User]:
        user = self.directory.get_by_id(user_id)
        if user is None:
            logger.error(f"User {user_id} vanished from the directory, cannot email")
        return user

    def _send_cancellation_notice(
        self,
        row: Subscription,
        plan_name: str,
        end_date: Optional[datetime],
    ) -> bool:
        user = self._user(row.user_id)
        if user is None:
            return False
        return self.cancellation_gate.send_once(
            SUBSCRIPTION_CANCELLED,
            str(row.id),
            lambda: self.notifier.send_subscription_cancelled_email(
                user.email, user.display_name, plan_name, end_date
            ),
            user_id=row.user_id,
        )

    def _send_upgrade_email(self, entry: PlanChangeLogEntry, amount: Optional[int]) -> bool:
        user = self._user(entry.user_id)
        if user is None:
            return False
        return self.billing_gate.send_once(
            PLAN_UPGRADED,
            str(entry.id),
            lambda: self.notifier.send_plan_upgraded_email(
                user.email,
                user.display_name,
                get_plan(entry.old_plan_id).name,
                get_plan(entry.new_plan_id).name,
                amount,
            ),
            user_id=entry.user_id,
        )

    def _send_downgrade_email(self, entry: PlanChangeLogEntry, effective_date: Optional[datetime]) -> bool:
        user = self._user(entry.user_id)
        if user is None:
            return False
        return self.billing_gate.send_once(
            PLAN_DOWNGRADED,
            str(entry.id),
            lambda: self.notifier.send_plan_downgraded_email(
                user.email,
                user.display_name,
                get_plan(entry.old_plan_id).name,
                get_plan(entry.new_plan_id).name,
                effective_date,
            ),
            user_id=entry.user_id,
        )
