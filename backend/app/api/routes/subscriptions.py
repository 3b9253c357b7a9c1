"""
API endpoints for subscription management.

Endpoints:
- GET /subscriptions/plans - Available plans with prices and limits
- GET /subscriptions/current - Current plan and subscription row
- GET /subscriptions/payments - Payment history
- POST /subscriptions/checkout - Create Stripe checkout session
- POST /subscriptions/portal - Create Stripe customer portal session
- POST /subscriptions/change-plan - Upgrade or downgrade the active subscription
- POST /subscriptions/cancel-scheduled - Call off a pending downgrade
- POST /subscriptions/preview-upgrade - Estimate the prorated charge of an upgrade
- POST /subscriptions/sync - Re-read the active subscription from Stripe
"""
from typing import List
from fastapi import APIRouter, Depends, HTTPException, Query, Request
from sqlalchemy.orm import Session

from app.core.errors import ProviderFetchFailed, StoreWriteFailed, UnresolvedUser
from app.core.nextauth import get_current_user
from app.core.rate_limit import (
    PLANS_LIMIT,
    READ_LIMIT,
    STRIPE_WRITE_LIMIT,
    SYNC_LIMIT,
    limiter,
)
from app.db.base import get_db
from app.models import User
from app.schemas import (
    CancelScheduledChangeResponse,
    CheckoutSessionRequest,
    CheckoutSessionResponse,
    CurrentSubscriptionResponse,
    CustomerPortalRequest,
    CustomerPortalResponse,
    PaymentHistoryResponse,
    PaymentRecordDetail,
    PlanChangeRequest,
    PlanChangeResponse,
    PlanDetail,
    SubscriptionDetail,
    SyncResponse,
    UpgradePreviewRequest,
    UpgradePreviewResponse,
)
from app.services.email import EmailNotifier, get_email_notifier
from app.services.payments import PaymentLedger
from app.services.plan_changes import PlanChangeService
from app.services.reconciliation import ReconciliationService
from app.services.stripe_gateway import StripeGateway, get_stripe_gateway
from app.services.subscription import SubscriptionService
import logging

logger = logging.getLogger(__name__)

router = APIRouter()


@router.get("/plans", response_model=List[PlanDetail])
@limiter.limit(PLANS_LIMIT)
async def get_plans(
    request: Request,
    gateway: StripeGateway = Depends(get_stripe_gateway),
):
    """
    Get all available plans with their prices, features and limits.

    Public endpoint - does not require authentication.
    """
    return SubscriptionService(gateway).get_pricing_plans()


@router.get("/current", response_model=CurrentSubscriptionResponse)
@limiter.limit(READ_LIMIT)
async def get_current_subscription(
    request: Request,
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
    gateway: StripeGateway = Depends(get_stripe_gateway),
):
    """
    Get the current plan for the authenticated user.

    Users without a subscription row are reported on the free plan.
    """
    return SubscriptionService(gateway).get_current_subscription(current_user.id, db)


@router.get("/payments", response_model=PaymentHistoryResponse)
@limiter.limit(READ_LIMIT)
async def get_payment_history(
    request: Request,
    limit: int = Query(50, ge=1, le=200),
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    """Payment ledger for the authenticated user, newest first."""
    records = PaymentLedger(db).list_for_user(current_user.id, limit=limit)
    payments = [PaymentRecordDetail.model_validate(record) for record in records]
    return PaymentHistoryResponse(payments=payments, total=len(payments))


@router.post("/checkout", response_model=CheckoutSessionResponse)
@limiter.limit(STRIPE_WRITE_LIMIT)
def create_checkout_session(
    request: Request,
    body: CheckoutSessionRequest,
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
    gateway: StripeGateway = Depends(get_stripe_gateway),
):
    """
    Create a Stripe checkout session for subscription purchase.

    The subscription itself is written when Stripe reports it through webhooks.
    """
    try:
        result = SubscriptionService(gateway).create_checkout_session(
            user=current_user,
            plan_id=body.plan_id,
            billing_cycle=body.billing_cycle,
            success_url=body.success_url,
            cancel_url=body.cancel_url,
            db=db,
        )
    except ValueError as e:
        logger.error(f"Error creating checkout session: {str(e)}")
        raise HTTPException(status_code=400, detail=str(e))
    except ProviderFetchFailed as e:
        logger.error(f"Stripe error creating checkout session for user {current_user.id}: {e}")
        raise HTTPException(status_code=502, detail="Failed to create checkout session")

    return CheckoutSessionResponse(
        checkout_url=result["checkout_url"],
        session_id=result["session_id"],
    )


@router.post("/portal", response_model=CustomerPortalResponse)
@limiter.limit(STRIPE_WRITE_LIMIT)
def create_customer_portal_session(
    request: Request,
    body: CustomerPortalRequest,
    current_user: User = Depends(get_current_user),
    gateway: StripeGateway = Depends(get_stripe_gateway),
):
    """
    Create a Stripe customer portal session for subscription management.

    Allows users to:
    - View billing history
    - Update payment method
    - Cancel subscription
    """
    if not current_user.stripe_customer_id:
        raise HTTPException(
            status_code=400,
            detail="No active subscription found. Please subscribe first."
        )

    try:
        result = SubscriptionService(gateway).create_customer_portal_session(
            user=current_user,
            return_url=body.return_url,
        )
    except ProviderFetchFailed as e:
        logger.error(f"Stripe error creating portal session for user {current_user.id}: {e}")
        raise HTTPException(status_code=502, detail="Failed to create customer portal session")

    return CustomerPortalResponse(portal_url=result["portal_url"])


@router.post("/change-plan", response_model=PlanChangeResponse)
@limiter.limit(STRIPE_WRITE_LIMIT)
def change_plan(
    request: Request,
    body: PlanChangeRequest,
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
    gateway: StripeGateway = Depends(get_stripe_gateway),
    notifier: EmailNotifier = Depends(get_email_notifier),
):
    """
    Request a plan change.

    Upgrades apply immediately with a prorated invoice. Downgrades take effect
    at the end of the current billing period.
    """
    try:
        result = PlanChangeService(db, gateway, notifier).request_change(
            current_user, body.plan_id, body.billing_cycle
        )
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    except (ProviderFetchFailed, StoreWriteFailed) as e:
        logger.error(f"Plan change failed for user {current_user.id}: {e}")
        raise HTTPException(status_code=502, detail="Failed to change plan")

    if result.change_type == "upgrade":
        message = "Your plan has been upgraded. A prorated invoice is being charged now."
    else:
        message = "Your plan will change at the end of the current billing period."

    return PlanChangeResponse(
        change_type=result.change_type,
        old_plan_id=result.old_plan_id,
        new_plan_id=result.new_plan_id,
        billing_cycle=result.billing_cycle,
        effective_date=result.effective_date,
        message=message,
    )


@router.post("/cancel-scheduled", response_model=CancelScheduledChangeResponse)
@limiter.limit(STRIPE_WRITE_LIMIT)
def cancel_scheduled_change(
    request: Request,
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
    gateway: StripeGateway = Depends(get_stripe_gateway),
    notifier: EmailNotifier = Depends(get_email_notifier),
):
    """Call off a pending downgrade; the subscription renews on its current plan."""
    try:
        result = PlanChangeService(db, gateway, notifier).cancel_scheduled_change(current_user)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    except (ProviderFetchFailed, StoreWriteFailed) as e:
        logger.error(f"Canceling scheduled change failed for user {current_user.id}: {e}")
        raise HTTPException(status_code=502, detail="Failed to cancel scheduled plan change")

    return CancelScheduledChangeResponse(
        plan_id=result.plan_id,
        billing_cycle=result.billing_cycle,
        canceled_plan_id=result.canceled_plan_id,
        canceled_billing_cycle=result.canceled_billing_cycle,
        message="Your scheduled plan change has been canceled. You will stay on your current plan.",
    )


@router.post("/preview-upgrade", response_model=UpgradePreviewResponse)
@limiter.limit(READ_LIMIT)
def preview_upgrade(
    request: Request,
    body: UpgradePreviewRequest,
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
    gateway: StripeGateway = Depends(get_stripe_gateway),
    notifier: EmailNotifier = Depends(get_email_notifier),
):
    """
    Estimate what upgrading charges today.

    The unused part of the current period is credited at the current price.
    If Stripe cannot be reached the full price is returned with `error` set.
    """
    try:
        preview = PlanChangeService(db, gateway, notifier).preview_upgrade(
            current_user, body.plan_id, body.billing_cycle
        )
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))

    return UpgradePreviewResponse.model_validate(preview)


@router.post("/sync", response_model=SyncResponse)
@limiter.limit(SYNC_LIMIT)
def sync_subscription(
    request: Request,
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
    gateway: StripeGateway = Depends(get_stripe_gateway),
):
    """Re-read the user's subscription from Stripe, e.g. after returning from checkout."""
    try:
        result = ReconciliationService(db, gateway).resync_user(current_user.id)
    except (ProviderFetchFailed, StoreWriteFailed) as e:
        logger.error(f"Subscription sync failed for user {current_user.id}: {e}")
        raise HTTPException(status_code=502, detail="Failed to sync subscription")

    if result is None:
        return SyncResponse(status="no_subscription")
    if isinstance(result, UnresolvedUser):
        return SyncResponse(status="deferred")
    return SyncResponse(
        status="synced",
        subscription=SubscriptionDetail.model_validate(result.subscription),
    )
