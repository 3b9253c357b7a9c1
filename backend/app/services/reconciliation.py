"""
Reconciliation service - the single writer of subscription truth.

reconcile() fetches the subscription from Stripe, resolves its owner and
plan, and upserts the local row keyed by the Stripe subscription id. It sends
no notifications, so it can be retried any number of times.
"""
import logging
import uuid
from dataclasses import dataclass
from typing import Dict, Optional, Union

from sqlalchemy.orm import Session

from app.core.errors import ProviderFetchFailed, UnresolvedUser
from app.models import Subscription
from app.schemas.stripe_events import StripeSubscription, from_timestamp
from app.services.identity import IdentityResolver, ResolvedIdentity
from app.services.price_resolver import PriceResolver, price_resolver as default_price_resolver
from app.services.stripe_gateway import StripeGateway
from app.services.subscription_store import (
    SubscriptionState,
    SubscriptionStore,
    normalize_status,
)
from app.services.webhook_events import DEFERRED, PROCESSED, WebhookEventLog

logger = logging.getLogger(__name__)


@dataclass
class SyncResult:
    subscription: Subscription
    provider_subscription: StripeSubscription
    identity: ResolvedIdentity


ReconcileResult = Union[SyncResult, UnresolvedUser]


class ReconciliationService:
    def __init__(
        self,
        db: Session,
        gateway: StripeGateway,
        resolver: Optional[IdentityResolver] = None,
        prices: Optional[PriceResolver] = None,
    ):
        self.db = db
        self.gateway = gateway
        self.store = SubscriptionStore(db)
        self.resolver = resolver or IdentityResolver(db, gateway, store=self.store)
        self.prices = prices or default_price_resolver

    def reconcile(
        self,
        external_subscription_id: str,
        user_id: Optional[uuid.UUID] = None,
    ) -> ReconcileResult:
        """
        Overwrite the local row for `external_subscription_id` with Stripe's state.

        Args:
            external_subscription_id: Stripe subscription id
            user_id: Owner, when the caller already knows it

        Returns:
            SyncResult, or UnresolvedUser when no local user can be found yet

        Raises:
            ProviderFetchFailed: Stripe fetch failed (ProviderTimeout on timeouts)
            StoreWriteFailed: The upsert could not be committed
        """
        provider_sub = self.gateway.retrieve_subscription(external_subscription_id)

        identity = self.resolver.resolve_subscription(provider_sub, user_id=user_id)
        if isinstance(identity, UnresolvedUser):
            logger.info(f"Deferring reconcile of {external_subscription_id}: {identity.reason}")
            return identity

        state = self.build_state(provider_sub, identity.user_id)
        row = self.store.upsert(state)

        logger.info(
            f"Reconciled {external_subscription_id} for user {identity.user_id} "
            f"(via {identity.source}): plan={row.plan_id}, status={row.status}"
        )
        return SyncResult(subscription=row, provider_subscription=provider_sub, identity=identity)

    def build_state(self, provider_sub: StripeSubscription, user_id: uuid.UUID) -> SubscriptionState:
        item = provider_sub.primary_item
        if item is None:
            logger.warning(f"Subscription {provider_sub.id} has no line items")
        resolved = self.prices.resolve_price(item.price if item else None)

        return SubscriptionState(
            user_id=user_id,
            plan_id=resolved.plan_id,
            status=normalize_status(provider_sub.status),
            billing_cycle=resolved.billing_cycle,
            stripe_subscription_id=provider_sub.id,
            stripe_customer_id=provider_sub.customer_id,
            stripe_price_id=item.price.id if item else None,
            current_period_start=provider_sub.period_start,
            current_period_end=provider_sub.period_end,
            trial_end=from_timestamp(provider_sub.trial_end),
            cancel_at=from_timestamp(provider_sub.cancel_at),
            cancel_at_period_end=provider_sub.cancel_at_period_end,
        )

    def resync_user(self, user_id: uuid.UUID) -> Optional[ReconcileResult]:
        """Reconcile the user's active subscription. None if it has no Stripe subscription."""
        row = self.store.get_active_for_user(user_id)
        if row is None or not row.stripe_subscription_id:
            logger.info(f"User {user_id} has no Stripe subscription to resync")
            return None
        return self.reconcile(row.stripe_subscription_id, user_id=user_id)

    def reconcile_pending(self, limit: int = 100) -> Dict[str, int]:
        """
        Sweep webhook events left pending by timeouts.

        Failures leave the event pending for the next sweep.
        """
        events = WebhookEventLog(self.db)
        summary = {"processed": 0, "deferred": 0, "failed": 0, "skipped": 0}

        for event in events.list_pending(limit=limit):
            if not event.stripe_subscription_id:
                summary["skipped"] += 1
                continue
            try:
                result = self.reconcile(event.stripe_subscription_id)
            except ProviderFetchFailed as e:
                events.finish(event, event.status, error=str(e))
                summary["failed"] += 1
                continue

            if isinstance(result, UnresolvedUser):
                events.finish(event, DEFERRED, error=result.reason)
                summary["deferred"] += 1
            else:
                events.finish(event, PROCESSED)
                summary["processed"] += 1

        logger.info(f"Pending sweep finished: {summary}")
        return summary
