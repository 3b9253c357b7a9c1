"""
Rate limits for the billing API.

Authenticated calls are keyed by a hash of the session token, so users behind
one NAT do not share a checkout budget. Anonymous calls and Stripe webhook
deliveries are keyed by client address.

Lives outside app.main so routers can import the limiter without a cycle.
"""
import hashlib

from fastapi import Request
from slowapi import Limiter, _rate_limit_exceeded_handler
from slowapi.errors import RateLimitExceeded
from slowapi.util import get_remote_address

PLANS_LIMIT = "100/hour"
READ_LIMIT = "30/minute"
USAGE_LIMIT = "60/minute"
# Each call creates a Stripe session or subscription change
STRIPE_WRITE_LIMIT = "5/minute"
SYNC_LIMIT = "10/minute"
WEBHOOK_LIMIT = "200/minute"


def billing_rate_limit_key(request: Request) -> str:
    scheme, _, token = request.headers.get("authorization", "").partition(" ")
    if scheme.lower() == "bearer" and token.strip():
        digest = hashlib.sha256(token.strip().encode("utf-8")).hexdigest()[:32]
        return f"session:{digest}"
    return f"ip:{get_remote_address(request)}"


limiter = Limiter(key_func=billing_rate_limit_key, default_limits=["1000/hour"])

# Re-export handler and exception for app wiring
rate_limit_handler = _rate_limit_exceeded_handler
rate_limit_exception = RateLimitExceeded
