"""
Webhook endpoints.

Currently supports Stripe subscription webhooks.
"""
import json
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, HTTPException, Request, status
from fastapi.concurrency import run_in_threadpool
from pydantic import ValidationError
from sqlalchemy.orm import Session

from app.core.config import settings
from app.core.errors import (
    ProviderFetchFailed,
    SignatureInvalid,
    StoreWriteFailed,
    WebhookNotConfigured,
)
from app.core.rate_limit import WEBHOOK_LIMIT, limiter
from app.db.base import get_db
from app.schemas.stripe_events import parse_event
from app.services.alerts import AlertService
from app.services.email import EmailNotifier, get_email_notifier
from app.services.stripe_gateway import StripeGateway, get_stripe_gateway
from app.services.webhook_events import FAILED, WebhookEventLog
from app.services.webhook_handler import StripeWebhookHandler, subscription_id_for
import logging

logger = logging.getLogger(__name__)

router = APIRouter()


def require_webhook_secrets() -> List[str]:
    secrets = settings.stripe_webhook_secrets
    if not secrets:
        raise WebhookNotConfigured("STRIPE_WEBHOOK_SECRET is not set")
    return secrets


@router.post("/stripe")
@limiter.limit(WEBHOOK_LIMIT)
async def stripe_webhook(
    request: Request,
    db: Session = Depends(get_db),
    gateway: StripeGateway = Depends(get_stripe_gateway),
    notifier: EmailNotifier = Depends(get_email_notifier),
):
    """
    Handle Stripe webhooks for subscription lifecycle events.

    Processes events:
    - checkout.session.completed: User completed payment
    - customer.subscription.created: Subscription created
    - customer.subscription.updated: Subscription updated (status, plan, cancellation)
    - customer.subscription.deleted: Subscription ended, user moves to free
    - invoice.paid / invoice.payment_succeeded: Payment successful
    - invoice.payment_failed: Payment failed

    Responds 200 for processed, deferred, pending and ignored events, 400 for
    bad signatures or malformed payloads, and 500 when Stripe should redeliver.
    Only the body is read on the event loop; verification and processing
    make blocking Stripe and database calls and run in the threadpool.
    """
    payload = await request.body()
    sig_header = request.headers.get("stripe-signature")
    return await run_in_threadpool(process_stripe_event, payload, sig_header, db, gateway, notifier)


def process_stripe_event(
    payload: bytes,
    sig_header: Optional[str],
    db: Session,
    gateway: StripeGateway,
    notifier: EmailNotifier,
) -> Dict[str, Any]:
    """Verify, parse and handle one delivery. Raises HTTPException with the status Stripe should see."""
    try:
        secrets = require_webhook_secrets()
    except WebhookNotConfigured as e:
        logger.error(f"Rejecting Stripe webhook: {e}")
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Stripe webhook secret not configured",
        ) from e

    try:
        gateway.verify_signature(payload, sig_header, secrets)
    except SignatureInvalid as e:
        logger.error(f"Invalid Stripe webhook signature: {e}")
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Invalid signature",
        ) from e

    try:
        raw_event = json.loads(payload)
        event = parse_event(raw_event)
    except (ValueError, ValidationError) as e:
        logger.error(f"Invalid Stripe webhook payload: {e}")
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Invalid payload",
        ) from e

    if event is None:
        logger.debug(f"Unhandled Stripe event type: {raw_event.get('type')}")
        return {"received": True, "status": "ignored"}

    logger.info(f"Received Stripe webhook: {event.type} ({event.id})")

    events = WebhookEventLog(db)
    try:
        event_row = events.start(event.id, event.type, subscription_id_for(event))
    except StoreWriteFailed as e:
        logger.error(f"Could not register Stripe event {event.id}: {e}")
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Event could not be recorded",
        ) from e

    handler = StripeWebhookHandler(db, gateway, notifier)
    try:
        outcome = handler.handle(event)
    except (ProviderFetchFailed, StoreWriteFailed) as e:
        db.rollback()
        logger.error(f"Stripe event {event.id} ({event.type}) failed, asking for redelivery: {e}")
        events.finish(event_row, FAILED, error=str(e))
        AlertService(db, notifier).raise_alert(
            f"stripe-webhook:{event.type}:{type(e).__name__}",
            f"Event {event.id} failed: {e}",
        )
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Event processing failed",
        ) from e
    except Exception as e:
        db.rollback()
        logger.error(f"Error processing Stripe webhook {event.type}: {str(e)}", exc_info=True)
        events.finish(event_row, FAILED, error=str(e))
        AlertService(db, notifier).raise_alert(
            f"stripe-webhook:{event.type}:unexpected",
            f"Event {event.id} raised {type(e).__name__}: {e}",
            severity="critical",
        )
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Event processing failed",
        ) from e

    events.finish(event_row, outcome.value)
    return {"received": True, "status": outcome.value}
