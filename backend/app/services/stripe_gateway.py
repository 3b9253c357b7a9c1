"""
Stripe gateway.

The only module that talks to the `stripe` library. Everything it returns is
parsed into the typed models in app.schemas.stripe_events, and every Stripe
failure is translated into the billing error taxonomy:

- APIConnectionError (network failure, timeout) -> ProviderTimeout
- any other StripeError -> ProviderFetchFailed
- a response that does not parse into the typed models -> ProviderFetchFailed

There is no retry loop here. Retries belong to Stripe's webhook redelivery
or to an operator-triggered resync.
"""
import logging
from functools import wraps
from typing import Any, Dict, List, Optional, Union

import stripe
from pydantic import ValidationError

from app.core.config import settings
from app.core.errors import ProviderFetchFailed, ProviderTimeout, SignatureInvalid
from app.schemas.stripe_events import (
    StripeCustomer,
    StripeInvoice,
    StripeSubscription,
)

logger = logging.getLogger(__name__)

stripe.api_key = settings.stripe_api_key or None
stripe.max_network_retries = 0
stripe.default_http_client = stripe.RequestsClient(
    timeout=settings.stripe_request_timeout_seconds
)

SUBSCRIPTION_EXPAND = ["items.data.price", "customer", "latest_invoice"]


def _as_dict(obj: Any) -> Dict[str, Any]:
    """Plain nested dict of a StripeObject; StripeObject is not a dict subclass."""
    if isinstance(obj, dict):
        return obj
    return obj.to_dict()


def _translate_stripe_errors(func):
    """Map stripe exceptions onto ProviderTimeout / ProviderFetchFailed."""

    @wraps(func)
    def wrapper(*args, **kwargs):
        try:
            return func(*args, **kwargs)
        except stripe.APIConnectionError as e:
            logger.warning(f"Stripe connection failed in {func.__name__}: {e}")
            raise ProviderTimeout(str(e)) from e
        except stripe.StripeError as e:
            logger.error(f"Stripe call {func.__name__} failed: {e}")
            raise ProviderFetchFailed(str(e)) from e
        except ValidationError as e:
            logger.error(f"Unexpected Stripe response shape in {func.__name__}: {e}")
            raise ProviderFetchFailed(f"Unparseable Stripe response: {e}") from e

    return wrapper


class StripeGateway:
    """Typed facade over the stripe module."""

    # ---------------------------------------------------------------------
    # Webhook verification
    # ---------------------------------------------------------------------

    def verify_signature(
        self,
        payload: Union[bytes, str],
        sig_header: Optional[str],
        secrets: List[str],
        tolerance: Optional[int] = None,
    ) -> None:
        """
        Verify a webhook signature against each configured secret.

        Raises:
            SignatureInvalid: If the header is missing or no secret verifies it
        """
        if not sig_header:
            raise SignatureInvalid("Missing stripe-signature header")

        if isinstance(payload, bytes):
            payload = payload.decode("utf-8")

        tolerance = tolerance if tolerance is not None else settings.stripe_webhook_tolerance_seconds

        for secret in secrets:
            try:
                stripe.WebhookSignature.verify_header(payload, sig_header, secret, tolerance)
                return
            except stripe.SignatureVerificationError:
                continue

        raise SignatureInvalid("No configured webhook secret matches the signature")

    # ---------------------------------------------------------------------
    # Reads
    # ---------------------------------------------------------------------

    @_translate_stripe_errors
    def retrieve_subscription(self, subscription_id: str) -> StripeSubscription:
        obj = stripe.Subscription.retrieve(subscription_id, expand=SUBSCRIPTION_EXPAND)
        return StripeSubscription.model_validate(_as_dict(obj))

    @_translate_stripe_errors
    def retrieve_invoice(self, invoice_id: str) -> StripeInvoice:
        obj = stripe.Invoice.retrieve(invoice_id)
        return StripeInvoice.model_validate(_as_dict(obj))

    @_translate_stripe_errors
    def retrieve_customer(self, customer_id: str) -> StripeCustomer:
        obj = stripe.Customer.retrieve(customer_id)
        return StripeCustomer.model_validate(_as_dict(obj))

    # ---------------------------------------------------------------------
    # Writes (checkout and plan-change initiators only)
    # ---------------------------------------------------------------------

    @_translate_stripe_errors
    def create_customer(self, email: str, name: Optional[str], user_id: str) -> StripeCustomer:
        obj = stripe.Customer.create(
            email=email,
            name=name,
            metadata={"user_id": user_id},
        )
        return StripeCustomer.model_validate(_as_dict(obj))

    @_translate_stripe_errors
    def create_checkout_session(
        self,
        customer_id: str,
        price_id: str,
        success_url: str,
        cancel_url: str,
        metadata: Dict[str, str],
        trial_days: int = 0,
    ) -> Dict[str, Any]:
        subscription_data: Dict[str, Any] = {"metadata": metadata}
        if trial_days:
            subscription_data["trial_period_days"] = trial_days

        session = stripe.checkout.Session.create(
            customer=customer_id,
            line_items=[{"price": price_id, "quantity": 1}],
            mode="subscription",
            success_url=success_url,
            cancel_url=cancel_url,
            metadata=metadata,
            subscription_data=subscription_data,
        )
        return {"checkout_url": session.url, "session_id": session.id}

    @_translate_stripe_errors
    def create_portal_session(self, customer_id: str, return_url: str) -> str:
        session = stripe.billing_portal.Session.create(
            customer=customer_id,
            return_url=return_url,
        )
        return session.url

    @_translate_stripe_errors
    def change_subscription_price(
        self,
        subscription: StripeSubscription,
        price_id: str,
        metadata: Optional[Dict[str, str]] = None,
    ) -> StripeSubscription:
        """Swap the price immediately and invoice the proration right away."""
        item = subscription.primary_item
        if item is None or item.id is None:
            raise ProviderFetchFailed(f"Subscription {subscription.id} has no line item to change")

        obj = stripe.Subscription.modify(
            subscription.id,
            items=[{"id": item.id, "price": price_id}],
            proration_behavior="always_invoice",
            metadata=metadata or {},
            expand=SUBSCRIPTION_EXPAND,
        )
        return StripeSubscription.model_validate(_as_dict(obj))

    @_translate_stripe_errors
    def schedule_price_change(self, subscription: StripeSubscription, price_id: str) -> str:
        """
        Move the subscription to `price_id` at the end of the current period.

        Returns:
            The subscription schedule id
        """
        item = subscription.primary_item
        if item is None:
            raise ProviderFetchFailed(f"Subscription {subscription.id} has no line item to change")

        schedule = stripe.SubscriptionSchedule.create(from_subscription=subscription.id)
        current_phase = schedule.phases[0]

        stripe.SubscriptionSchedule.modify(
            schedule.id,
            end_behavior="release",
            phases=[
                {
                    "items": [{"price": item.price.id, "quantity": item.quantity or 1}],
                    "start_date": current_phase.start_date,
                    "end_date": current_phase.end_date,
                },
                {
                    "items": [{"price": price_id, "quantity": item.quantity or 1}],
                    "iterations": 1,
                },
            ],
        )
        return schedule.id

    @_translate_stripe_errors
    def release_schedule(self, schedule_id: str) -> bool:
        """
        Release a subscription schedule so the subscription keeps its current price.

        Returns:
            False if the schedule no longer exists or was already released
        """
        try:
            stripe.SubscriptionSchedule.release(schedule_id)
        except stripe.InvalidRequestError as e:
            if e.code == "resource_missing":
                logger.info(f"Subscription schedule {schedule_id} already gone")
                return False
            raise
        return True


# Global gateway instance
stripe_gateway = StripeGateway()


def get_stripe_gateway() -> StripeGateway:
    """FastAPI dependency returning the shared gateway."""
    return stripe_gateway
