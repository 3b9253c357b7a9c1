"""
Error taxonomy for the billing reconciliation engine.

Each exception maps to one webhook response policy:
- SignatureInvalid: reject with 400, no side effects, no retry
- WebhookNotConfigured: 500 without attempting to process
- ProviderFetchFailed / StoreWriteFailed: 5xx so Stripe redelivers
- ProviderTimeout: persist a pending marker and acknowledge
- NotificationSendFailed: logged inside the notifier, never escapes it

UnresolvedUser is a result value, not an exception: the event cannot be
completed yet and a later event will finish the job.
"""
from dataclasses import dataclass
from typing import Optional


class BillingError(Exception):
    """Base class for billing engine failures."""


class SignatureInvalid(BillingError):
    """Webhook signature header missing or not verifiable."""


class WebhookNotConfigured(BillingError):
    """No webhook signing secret is configured."""


class ProviderFetchFailed(BillingError):
    """A call to Stripe failed; retrying the event may succeed."""


class ProviderTimeout(ProviderFetchFailed):
    """A call to Stripe could not complete within the handler deadline."""


class StoreWriteFailed(BillingError):
    """A datastore write failed."""


class NotificationSendFailed(BillingError):
    """An outbound email could not be delivered."""


@dataclass(frozen=True)
class UnresolvedUser:
    """No local user could be determined for a provider object."""

    reason: str
    external_subscription_id: Optional[str] = None
