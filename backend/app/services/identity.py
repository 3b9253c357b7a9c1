"""
Identity resolution for Stripe objects.

Metadata is not always populated when Stripe creates a subscription (new
signups check out before their account exists), so the local user is found
through a fallback chain:

1. metadata user_id on the session / subscription / invoice
2. Subscription store lookup by Stripe subscription id
3. Stripe customer metadata (supabase_user_id or user_id), then the user
   directory's stored Stripe customer id
4. User directory lookup by email

Each caller uses the tiers that make sense for its object. When nothing
matches the result is UnresolvedUser, which callers treat as "defer".
"""
import logging
import uuid
from dataclasses import dataclass
from typing import Iterable, Optional, Union

from sqlalchemy import func
from sqlalchemy.orm import Session

from app.core.errors import UnresolvedUser
from app.models import User
from app.schemas.stripe_events import (
    PENDING_USER_SENTINELS,
    StripeCheckoutSession,
    StripeCustomer,
    StripeInvoice,
    StripeSubscription,
)
from app.services.stripe_gateway import StripeGateway
from app.services.subscription_store import SubscriptionStore

logger = logging.getLogger(__name__)

CUSTOMER_METADATA_KEYS = ("supabase_user_id", "user_id")


@dataclass(frozen=True)
class ResolvedIdentity:
    user_id: uuid.UUID
    source: str  # explicit, metadata, store, customer, email


ResolutionResult = Union[ResolvedIdentity, UnresolvedUser]


class UserDirectory:
    """Read-only lookups over the users table."""

    def __init__(self, db: Session):
        self.db = db

    def get_by_id(self, user_id: Union[str, uuid.UUID, None]) -> Optional[User]:
        if not user_id:
            return None
        if not isinstance(user_id, uuid.UUID):
            try:
                user_id = uuid.UUID(str(user_id))
            except ValueError:
                return None
        return self.db.query(User).filter(User.id == user_id).first()

    def get_by_email(self, email: Optional[str]) -> Optional[User]:
        if not email:
            return None
        return (
            self.db.query(User)
            .filter(func.lower(User.email) == email.strip().lower())
            .first()
        )

    def get_by_stripe_customer_id(self, customer_id: Optional[str]) -> Optional[User]:
        if not customer_id:
            return None
        return self.db.query(User).filter(User.stripe_customer_id == customer_id).first()


class IdentityResolver:
    def __init__(
        self,
        db: Session,
        gateway: StripeGateway,
        directory: Optional[UserDirectory] = None,
        store: Optional[SubscriptionStore] = None,
    ):
        self.gateway = gateway
        self.directory = directory or UserDirectory(db)
        self.store = store or SubscriptionStore(db)

    # ------------------------------------------------------------------
    # Entry points
    # ------------------------------------------------------------------

    def resolve_checkout(self, session: StripeCheckoutSession) -> ResolutionResult:
        """Checkout sessions: metadata, customer, email."""
        resolved = self._from_metadata(session.metadata.get("user_id"))
        if resolved:
            return resolved

        customer = self._load_customer(session.customer)
        resolved = self._from_customer(customer, session.customer_id)
        if resolved:
            return resolved

        emails = [session.email, customer.email if customer else None]
        resolved = self._from_email(emails)
        if resolved:
            return resolved

        return UnresolvedUser(
            reason=f"No user for checkout session {session.id}",
            external_subscription_id=session.subscription_id,
        )

    def resolve_subscription(
        self,
        subscription: StripeSubscription,
        user_id: Optional[uuid.UUID] = None,
    ) -> ResolutionResult:
        """Subscriptions: caller-supplied id, metadata, store, customer."""
        if user_id is not None:
            if self.directory.get_by_id(user_id):
                return ResolvedIdentity(user_id=user_id, source="explicit")
            logger.warning(f"Explicit user {user_id} for {subscription.id} is not in the directory")

        resolved = (
            self._from_metadata(subscription.metadata.get("user_id"))
            or self._from_store(subscription.id)
        )
        if resolved:
            return resolved

        customer = self._load_customer(subscription.customer)
        resolved = self._from_customer(customer, subscription.customer_id)
        if resolved:
            return resolved

        return UnresolvedUser(
            reason=f"No user for subscription {subscription.id}",
            external_subscription_id=subscription.id,
        )

    def resolve_invoice(self, invoice: StripeInvoice) -> ResolutionResult:
        """Invoices: metadata, store, customer, email."""
        resolved = self._from_metadata(invoice.metadata_user_id)
        if resolved:
            return resolved

        if invoice.subscription:
            resolved = self._from_store(invoice.subscription)
            if resolved:
                return resolved

        customer = self._load_customer(invoice.customer)
        resolved = self._from_customer(customer, invoice.customer_id)
        if resolved:
            return resolved

        resolved = self._from_email([invoice.customer_email, customer.email if customer else None])
        if resolved:
            return resolved

        return UnresolvedUser(
            reason=f"No user for invoice {invoice.id}",
            external_subscription_id=invoice.subscription,
        )

    # ------------------------------------------------------------------
    # Tiers
    # ------------------------------------------------------------------

    def _from_metadata(self, raw_user_id: Optional[str]) -> Optional[ResolvedIdentity]:
        if raw_user_id is None or raw_user_id.strip().lower() in PENDING_USER_SENTINELS:
            return None
        user = self.directory.get_by_id(raw_user_id)
        if user is None:
            logger.info(f"Metadata user_id {raw_user_id} does not match a user yet")
            return None
        return ResolvedIdentity(user_id=user.id, source="metadata")

    def _from_store(self, stripe_subscription_id: str) -> Optional[ResolvedIdentity]:
        row = self.store.get_by_external_id(stripe_subscription_id)
        if row is None:
            return None
        return ResolvedIdentity(user_id=row.user_id, source="store")

    def _load_customer(
        self, customer: Union[str, StripeCustomer, None]
    ) -> Optional[StripeCustomer]:
        if customer is None:
            return None
        if isinstance(customer, StripeCustomer):
            return customer
        return self.gateway.retrieve_customer(customer)

    def _from_customer(
        self, customer: Optional[StripeCustomer], customer_id: Optional[str]
    ) -> Optional[ResolvedIdentity]:
        if customer is not None and not customer.deleted:
            for key in CUSTOMER_METADATA_KEYS:
                user = self.directory.get_by_id(customer.metadata.get(key))
                if user is not None:
                    return ResolvedIdentity(user_id=user.id, source="customer")

        user = self.directory.get_by_stripe_customer_id(customer_id)
        if user is not None:
            return ResolvedIdentity(user_id=user.id, source="customer")
        return None

    def _from_email(self, emails: Iterable[Optional[str]]) -> Optional[ResolvedIdentity]:
        for email in emails:
            user = self.directory.get_by_email(email)
            if user is not None:
                logger.info(f"Resolved user {user.id} by email fallback")
                return ResolvedIdentity(user_id=user.id, source="email")
        return None
