"""
Typed views of Stripe objects and webhook events.

Every payload is parsed here, at the boundary, so handlers never reach into
untyped nested dicts. Fields Stripe may omit are explicit Optionals; unknown
fields are ignored so new API versions do not break parsing.
"""
from datetime import datetime
from typing import Annotated, Any, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter

# Metadata values that mean "the account does not exist yet"
PENDING_USER_SENTINELS = frozenset({"pending", "new_signup", ""})

PENDING_INVOICE_STATUSES = frozenset({"draft", "open"})


def from_timestamp(value: Optional[int]) -> Optional[datetime]:
    """Convert a Stripe unix timestamp to a naive UTC datetime."""
    if value is None:
        return None
    return datetime.utcfromtimestamp(value)


class StripeModel(BaseModel):
    model_config = ConfigDict(extra="ignore")


class StripeRecurring(StripeModel):
    interval: Optional[str] = None  # month, year
    interval_count: Optional[int] = None


class StripePrice(StripeModel):
    id: str
    unit_amount: Optional[int] = None
    currency: Optional[str] = None
    recurring: Optional[StripeRecurring] = None
    product: Optional[Union[str, Dict[str, Any]]] = None


class StripeSubscriptionItem(StripeModel):
    id: Optional[str] = None
    price: StripePrice
    quantity: Optional[int] = None
    current_period_start: Optional[int] = None
    current_period_end: Optional[int] = None


class StripeList(StripeModel):
    data: List[StripeSubscriptionItem] = Field(default_factory=list)


class StripeCustomer(StripeModel):
    id: str
    email: Optional[str] = None
    name: Optional[str] = None
    metadata: Dict[str, str] = Field(default_factory=dict)
    deleted: Optional[bool] = None


class InvoiceSubscriptionDetails(StripeModel):
    metadata: Dict[str, str] = Field(default_factory=dict)


class StripeInvoice(StripeModel):
    id: str
    customer: Optional[Union[str, StripeCustomer]] = None
    customer_email: Optional[str] = None
    subscription: Optional[str] = None
    subscription_details: Optional[InvoiceSubscriptionDetails] = None
    status: Optional[str] = None
    amount_paid: int = 0
    amount_due: int = 0
    total: Optional[int] = None
    currency: str = "usd"
    starting_balance: int = 0
    billing_reason: Optional[str] = None
    number: Optional[str] = None
    hosted_invoice_url: Optional[str] = None
    attempt_count: int = 0
    payment_intent: Optional[Union[str, Dict[str, Any]]] = None

    @property
    def customer_id(self) -> Optional[str]:
        if isinstance(self.customer, StripeCustomer):
            return self.customer.id
        return self.customer

    @property
    def metadata_user_id(self) -> Optional[str]:
        if self.subscription_details is None:
            return None
        return self.subscription_details.metadata.get("user_id")

    @property
    def credit_applied(self) -> int:
        """Proration credit in cents; a negative starting balance is customer credit."""
        return -self.starting_balance if self.starting_balance < 0 else 0

    @property
    def is_trial_start(self) -> bool:
        return self.amount_paid == 0 and self.billing_reason == "subscription_create"


class StripeSubscription(StripeModel):
    id: str
    customer: Union[str, StripeCustomer]
    status: str
    metadata: Dict[str, str] = Field(default_factory=dict)
    items: StripeList = Field(default_factory=StripeList)
    current_period_start: Optional[int] = None
    current_period_end: Optional[int] = None
    trial_end: Optional[int] = None
    cancel_at: Optional[int] = None
    cancel_at_period_end: bool = False
    canceled_at: Optional[int] = None
    latest_invoice: Optional[Union[str, StripeInvoice]] = None

    @property
    def customer_id(self) -> str:
        if isinstance(self.customer, StripeCustomer):
            return self.customer.id
        return self.customer

    @property
    def primary_item(self) -> Optional[StripeSubscriptionItem]:
        return self.items.data[0] if self.items.data else None

    @property
    def period_start(self) -> Optional[datetime]:
        # Newer API versions only report billing periods on items
        value = self.current_period_start
        if value is None and self.primary_item is not None:
            value = self.primary_item.current_period_start
        return from_timestamp(value)

    @property
    def period_end(self) -> Optional[datetime]:
        value = self.current_period_end
        if value is None and self.primary_item is not None:
            value = self.primary_item.current_period_end
        return from_timestamp(value)

    @property
    def has_pending_invoice(self) -> bool:
        """An unpaid proration invoice is attached; its invoice.paid event is still to come."""
        invoice = self.latest_invoice
        if not isinstance(invoice, StripeInvoice):
            return False
        return invoice.status in PENDING_INVOICE_STATUSES and invoice.amount_due > 0


class CustomerDetails(StripeModel):
    email: Optional[str] = None
    name: Optional[str] = None


class StripeCheckoutSession(StripeModel):
    id: str
    customer: Optional[Union[str, StripeCustomer]] = None
    customer_email: Optional[str] = None
    customer_details: Optional[CustomerDetails] = None
    subscription: Optional[Union[str, StripeSubscription]] = None
    metadata: Dict[str, str] = Field(default_factory=dict)
    mode: Optional[str] = None

    @property
    def customer_id(self) -> Optional[str]:
        if isinstance(self.customer, StripeCustomer):
            return self.customer.id
        return self.customer

    @property
    def subscription_id(self) -> Optional[str]:
        if isinstance(self.subscription, StripeSubscription):
            return self.subscription.id
        return self.subscription

    @property
    def email(self) -> Optional[str]:
        if self.customer_details and self.customer_details.email:
            return self.customer_details.email
        return self.customer_email


# =============================================================================
# Event envelopes
# =============================================================================


class CheckoutSessionData(StripeModel):
    object: StripeCheckoutSession


class SubscriptionData(StripeModel):
    object: StripeSubscription
    previous_attributes: Optional[Dict[str, Any]] = None


class InvoiceData(StripeModel):
    object: StripeInvoice


class StripeEventBase(StripeModel):
    id: str
    created: Optional[int] = None
    livemode: bool = False


class CheckoutCompletedEvent(StripeEventBase):
    type: Literal["checkout.session.completed"]
    data: CheckoutSessionData


class SubscriptionCreatedEvent(StripeEventBase):
    type: Literal["customer.subscription.created"]
    data: SubscriptionData


class SubscriptionUpdatedEvent(StripeEventBase):
    type: Literal["customer.subscription.updated"]
    data: SubscriptionData


class SubscriptionDeletedEvent(StripeEventBase):
    type: Literal["customer.subscription.deleted"]
    data: SubscriptionData


class InvoicePaidEvent(StripeEventBase):
    type: Literal["invoice.paid", "invoice.payment_succeeded"]
    data: InvoiceData


class InvoicePaymentFailedEvent(StripeEventBase):
    type: Literal["invoice.payment_failed"]
    data: InvoiceData


StripeEvent = Annotated[
    Union[
        CheckoutCompletedEvent,
        SubscriptionCreatedEvent,
        SubscriptionUpdatedEvent,
        SubscriptionDeletedEvent,
        InvoicePaidEvent,
        InvoicePaymentFailedEvent,
    ],
    Field(discriminator="type"),
]

HANDLED_EVENT_TYPES = frozenset({
    "checkout.session.completed",
    "customer.subscription.created",
    "customer.subscription.updated",
    "customer.subscription.deleted",
    "invoice.paid",
    "invoice.payment_succeeded",
    "invoice.payment_failed",
})

_event_adapter = TypeAdapter(StripeEvent)


def parse_event(payload: Dict[str, Any]) -> Optional[StripeEvent]:
    """
    Parse a verified webhook payload into a typed event.

    Returns None for event types this engine does not handle.

    Raises:
        pydantic.ValidationError: If a handled event is malformed
    """
    if payload.get("type") not in HANDLED_EVENT_TYPES:
        return None
    return _event_adapter.validate_python(payload)
