"""
Subscription service for the user-facing billing endpoints.

Handles:
- Plan listing for the pricing page
- Current plan lookup
- Stripe checkout session creation
- Stripe customer portal access

Subscription rows are never written here. Checkout only starts a purchase;
the resulting state arrives through webhooks and reconciliation.
"""
import uuid
from typing import Dict, List

from sqlalchemy.orm import Session

from app.core.plans import FREE_PLAN_ID, calculate_annual_savings, get_plan, list_plans
from app.models import User
from app.schemas import (
    CurrentSubscriptionResponse,
    PlanDetail,
    PlanLimitsDetail,
    SubscriptionDetail,
)
from app.services.stripe_gateway import StripeGateway
from app.services.subscription_store import SubscriptionStore
import logging

logger = logging.getLogger(__name__)


class SubscriptionService:
    """Service for checkout, portal and plan lookups."""

    def __init__(self, gateway: StripeGateway):
        self.gateway = gateway

    def get_pricing_plans(self) -> List[PlanDetail]:
        """
        All plans, cheapest first, in display form.

        Returns:
            List of PlanDetail
        """
        plans = []
        for plan in list_plans():
            plans.append(
                PlanDetail(
                    id=plan.id,
                    name=plan.name,
                    description=plan.description,
                    monthly_price=plan.monthly_price,
                    yearly_price=plan.yearly_price,
                    annual_savings=calculate_annual_savings(plan),
                    trial_days=plan.trial_days,
                    stripe_price_id_monthly=plan.stripe_price_id_monthly,
                    stripe_price_id_yearly=plan.stripe_price_id_yearly,
                    feature_flags=dict(plan.feature_flags),
                    limits=PlanLimitsDetail(
                        posts_per_month=plan.limits.posts_per_month,
                        connected_accounts=plan.limits.connected_accounts,
                        ai_suggestions_per_month=plan.limits.ai_suggestions_per_month,
                        storage_mb=plan.limits.storage_mb,
                    ),
                )
            )
        return plans

    def get_current_subscription(self, user_id: uuid.UUID, db: Session) -> CurrentSubscriptionResponse:
        """
        The user's current plan. Users without an active paid row are on free.

        Args:
            user_id: User ID
            db: Database session
        """
        row = SubscriptionStore(db).get_active_for_user(user_id)
        if row is None:
            plan = get_plan(FREE_PLAN_ID)
            return CurrentSubscriptionResponse(plan_id=plan.id, plan_name=plan.name)

        plan_id = FREE_PLAN_ID if row.status == "canceled" else row.plan_id
        return CurrentSubscriptionResponse(
            plan_id=plan_id,
            plan_name=get_plan(plan_id).name,
            status=row.status,
            subscription=SubscriptionDetail.model_validate(row),
        )

    def create_checkout_session(
        self,
        user: User,
        plan_id: str,
        billing_cycle: str,
        success_url: str,
        cancel_url: str,
        db: Session,
    ) -> Dict[str, str]:
        """
        Create a Stripe checkout session for subscription purchase.

        Args:
            user: User object
            plan_id: Paid plan (starter, professional, enterprise)
            billing_cycle: "monthly" or "yearly"
            success_url: URL to redirect after successful payment
            cancel_url: URL to redirect if payment is canceled
            db: Database session

        Returns:
            Dictionary with checkout_url and session_id

        Raises:
            ValueError: If the plan is not purchasable or has no price configured
            ProviderFetchFailed: If Stripe rejects or cannot be reached
        """
        plan = get_plan(plan_id)
        if not plan.is_paid:
            raise ValueError(f"Plan {plan_id} cannot be purchased")

        if billing_cycle not in ("monthly", "yearly"):
            raise ValueError(f"Invalid billing cycle: {billing_cycle}")

        price_id = plan.price_id_for(billing_cycle)
        if not price_id:
            raise ValueError(f"Stripe price ID not configured for {plan_id} {billing_cycle}")

        # Create or get Stripe customer
        if user.stripe_customer_id:
            customer_id = user.stripe_customer_id
        else:
            customer = self.gateway.create_customer(
                email=user.email,
                name=user.full_name,
                user_id=str(user.id),
            )
            customer_id = customer.id
            user.stripe_customer_id = customer_id
            db.commit()

        # Trials are for first purchases only
        has_history = bool(SubscriptionStore(db).list_for_user(user.id))
        trial_days = 0 if has_history else plan.trial_days

        session = self.gateway.create_checkout_session(
            customer_id=customer_id,
            price_id=price_id,
            success_url=success_url,
            cancel_url=cancel_url,
            metadata={
                "user_id": str(user.id),
                "plan_id": plan_id,
                "billing_cycle": billing_cycle,
            },
            trial_days=trial_days,
        )

        logger.info(f"Created Stripe checkout session for user {user.id}: {session['session_id']}")
        return session

    def create_customer_portal_session(self, user: User, return_url: str) -> Dict[str, str]:
        """
        Create a Stripe customer portal session for subscription management.

        Args:
            user: User object
            return_url: URL to return to after managing subscription

        Returns:
            Dictionary with portal_url
        """
        if not user.stripe_customer_id:
            raise ValueError("User does not have a Stripe customer ID")

        portal_url = self.gateway.create_portal_session(user.stripe_customer_id, return_url)

        logger.info(f"Created Stripe customer portal session for user {user.id}")

        return {"portal_url": portal_url}
