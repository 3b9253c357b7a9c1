"""
Admin API endpoints for billing operations.

All routes require a billing admin (superuser or ADMIN_EMAILS).
"""
from fastapi import APIRouter, Depends, HTTPException, Query, status
from sqlalchemy.orm import Session

from app.core.admin_auth import get_billing_admin
from app.core.errors import ProviderFetchFailed, StoreWriteFailed, UnresolvedUser
from app.db.base import get_db
from app.models import User
from app.schemas import ResyncPendingResponse, SubscriptionDetail, SyncResponse
from app.services.reconciliation import ReconciliationService
from app.services.stripe_gateway import StripeGateway, get_stripe_gateway
import logging

logger = logging.getLogger(__name__)

router = APIRouter()


@router.post("/subscriptions/{external_id}/resync", response_model=SyncResponse)
def resync_subscription(
    external_id: str,
    db: Session = Depends(get_db),
    admin_user: User = Depends(get_billing_admin),
    gateway: StripeGateway = Depends(get_stripe_gateway),
):
    """
    Overwrite the local row for a Stripe subscription with Stripe's current state.
    """
    logger.info(f"Admin {admin_user.id} requested resync of {external_id}")
    try:
        result = ReconciliationService(db, gateway).reconcile(external_id)
    except (ProviderFetchFailed, StoreWriteFailed) as e:
        raise HTTPException(
            status_code=status.HTTP_502_BAD_GATEWAY,
            detail=f"Resync failed: {e}",
        ) from e

    if isinstance(result, UnresolvedUser):
        return SyncResponse(status="deferred")
    return SyncResponse(
        status="synced",
        subscription=SubscriptionDetail.model_validate(result.subscription),
    )


@router.post("/subscriptions/resync-pending", response_model=ResyncPendingResponse)
def resync_pending_events(
    limit: int = Query(100, ge=1, le=1000),
    db: Session = Depends(get_db),
    admin_user: User = Depends(get_billing_admin),
    gateway: StripeGateway = Depends(get_stripe_gateway),
):
    """
    Reconcile webhook events left pending after Stripe timeouts.
    """
    logger.info(f"Admin {admin_user.id} started pending webhook sweep (limit={limit})")
    summary = ReconciliationService(db, gateway).reconcile_pending(limit=limit)
    return ResyncPendingResponse(**summary)
