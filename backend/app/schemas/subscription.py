"""
Pydantic schemas for subscription operations.
"""
import uuid
from datetime import datetime
from typing import Any, Dict, List, Literal, Optional
from pydantic import BaseModel, ConfigDict, Field


PlanId = Literal["free", "starter", "professional", "enterprise"]
PaidPlanId = Literal["starter", "professional", "enterprise"]
BillingCycle = Literal["monthly", "yearly"]
SubscriptionStatus = Literal["trialing", "active", "past_due", "canceled"]


class SubscriptionDetail(BaseModel):
    """The subscription row as the dashboard reads it."""
    model_config = ConfigDict(from_attributes=True)

    id: uuid.UUID
    user_id: uuid.UUID
    plan_id: PlanId
    status: SubscriptionStatus
    billing_cycle: BillingCycle
    stripe_subscription_id: Optional[str] = None
    stripe_customer_id: Optional[str] = None
    stripe_price_id: Optional[str] = None
    current_period_start: Optional[datetime] = None
    current_period_end: Optional[datetime] = None
    trial_end: Optional[datetime] = None
    cancel_at: Optional[datetime] = None
    cancel_at_period_end: bool = False
    canceled_at: Optional[datetime] = None
    scheduled_plan_id: Optional[PlanId] = None
    scheduled_billing_cycle: Optional[BillingCycle] = None
    scheduled_change_date: Optional[datetime] = None
    is_active: bool
    replaced_by: Optional[str] = None
    created_at: datetime
    updated_at: datetime


class CurrentSubscriptionResponse(BaseModel):
    """Current plan for the user; plan_id is free when there is no subscription."""
    plan_id: PlanId
    plan_name: str
    status: Optional[SubscriptionStatus] = None
    subscription: Optional[SubscriptionDetail] = None


class PaymentRecordDetail(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: uuid.UUID
    amount: int  # cents
    currency: str
    status: str
    stripe_invoice_id: Optional[str] = None
    description: Optional[str] = None
    metadata: Dict[str, Any] = Field(default_factory=dict, validation_alias="payment_metadata")
    created_at: datetime


class PaymentHistoryResponse(BaseModel):
    payments: List[PaymentRecordDetail]
    total: int


# Stripe checkout schemas
class CheckoutSessionRequest(BaseModel):
    """Request to create a Stripe checkout session."""
    plan_id: PaidPlanId = Field(..., description="Plan to purchase")
    billing_cycle: BillingCycle = Field("monthly", description="monthly or yearly billing")
    success_url: str = Field(..., description="URL to redirect after successful payment")
    cancel_url: str = Field(..., description="URL to redirect if payment is canceled")


class CheckoutSessionResponse(BaseModel):
    """Response containing Stripe checkout session details."""
    checkout_url: str = Field(..., description="URL to redirect user to Stripe checkout")
    session_id: str = Field(..., description="Stripe checkout session ID")


# Customer portal schema
class CustomerPortalRequest(BaseModel):
    """Request to create a Stripe customer portal session."""
    return_url: str = Field(..., description="URL to return to after managing subscription")


class CustomerPortalResponse(BaseModel):
    """Response containing Stripe customer portal details."""
    portal_url: str = Field(..., description="URL to redirect user to Stripe customer portal")


# Plan changes
class PlanChangeRequest(BaseModel):
    plan_id: PaidPlanId
    billing_cycle: BillingCycle = "monthly"


class PlanChangeResponse(BaseModel):
    change_type: Literal["upgrade", "downgrade"]
    old_plan_id: PlanId
    new_plan_id: PlanId
    billing_cycle: BillingCycle
    effective_date: Optional[datetime] = None
    message: str


class CancelScheduledChangeResponse(BaseModel):
    plan_id: PlanId
    billing_cycle: BillingCycle
    canceled_plan_id: PlanId
    canceled_billing_cycle: Optional[BillingCycle] = None
    message: str


class UpgradePreviewRequest(BaseModel):
    plan_id: PaidPlanId
    billing_cycle: BillingCycle = "monthly"


class UpgradePreviewResponse(BaseModel):
    """Estimated charge for an upgrade. Amounts in cents."""
    model_config = ConfigDict(from_attributes=True)

    current_plan: PlanId
    new_plan: PlanId
    billing_cycle: BillingCycle
    full_price: int
    credit: int
    amount_due: int
    currency: str
    has_existing_subscription: bool
    current_period_end: Optional[datetime] = None
    days_remaining: Optional[int] = None
    description: str
    error: Optional[str] = None


class SyncResponse(BaseModel):
    status: Literal["synced", "deferred", "no_subscription"]
    subscription: Optional[SubscriptionDetail] = None


# Plan catalog
class PlanLimitsDetail(BaseModel):
    posts_per_month: int
    connected_accounts: int
    ai_suggestions_per_month: int
    storage_mb: int


class PlanDetail(BaseModel):
    """Plan details for display. Prices in cents, -1 limits mean unlimited."""
    id: PlanId
    name: str
    description: str
    monthly_price: int
    yearly_price: int
    annual_savings: int
    trial_days: int
    stripe_price_id_monthly: Optional[str] = None
    stripe_price_id_yearly: Optional[str] = None
    feature_flags: Dict[str, Any]
    limits: PlanLimitsDetail


# Admin
class ResyncPendingResponse(BaseModel):
    processed: int
    deferred: int
    failed: int
    skipped: int
