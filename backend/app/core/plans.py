"""
Plan catalog for SocialCal subscriptions.

Static, compiled-in mapping of plan identifiers to prices, feature flags and
usage limits. Nothing here performs I/O; Stripe price IDs are read from
settings once at import time so each environment can point at its own
Stripe products.

Prices are stored in cents. Limits use UNLIMITED (-1) as the sentinel for
"no cap".
"""
from dataclasses import dataclass
from datetime import datetime, timedelta
from types import MappingProxyType
from typing import Any, List, Literal, Mapping, Optional

from app.core.config import settings

PlanId = Literal["free", "starter", "professional", "enterprise"]
BillingCycle = Literal["monthly", "yearly"]

UNLIMITED = -1
FREE_PLAN_ID = "free"


@dataclass(frozen=True)
class PlanLimits:
    posts_per_month: int
    connected_accounts: int
    ai_suggestions_per_month: int
    storage_mb: int


@dataclass(frozen=True)
class Plan:
    """A purchasable plan. Immutable at runtime."""

    id: str
    name: str
    description: str
    monthly_price: int  # cents
    yearly_price: int  # cents
    feature_flags: Mapping[str, Any]
    limits: PlanLimits
    trial_days: int = 0
    stripe_price_id_monthly: Optional[str] = None
    stripe_price_id_yearly: Optional[str] = None

    def price_for(self, billing_cycle: str) -> int:
        return self.yearly_price if billing_cycle == "yearly" else self.monthly_price

    def price_id_for(self, billing_cycle: str) -> Optional[str]:
        if billing_cycle == "yearly":
            return self.stripe_price_id_yearly
        return self.stripe_price_id_monthly

    @property
    def is_paid(self) -> bool:
        return self.monthly_price > 0


# =============================================================================
# Plan Catalog
# =============================================================================

PLAN_CATALOG: Mapping[str, Plan] = MappingProxyType({
    "free": Plan(
        id="free",
        name="Free",
        description="Get started with basic features",
        monthly_price=0,
        yearly_price=0,
        feature_flags=MappingProxyType({
            "posts_per_month": 0,
            "platforms": 0,
            "analytics": False,
            "ai_suggestions": False,
        }),
        limits=PlanLimits(
            posts_per_month=0,
            connected_accounts=0,
            ai_suggestions_per_month=0,
            storage_mb=0,
        ),
    ),
    "starter": Plan(
        id="starter",
        name="Starter",
        description="Perfect for individuals and small businesses",
        monthly_price=900,  # $9.00
        yearly_price=9000,  # $90.00 (save $18)
        feature_flags=MappingProxyType({
            "posts_per_month": "unlimited",
            "platforms": "all",
            "analytics": "basic",
            "ai_suggestions": True,
        }),
        limits=PlanLimits(
            posts_per_month=UNLIMITED,
            connected_accounts=5,
            ai_suggestions_per_month=50,
            storage_mb=0,
        ),
        trial_days=7,
        stripe_price_id_monthly=settings.stripe_starter_monthly_price_id,
        stripe_price_id_yearly=settings.stripe_starter_yearly_price_id,
    ),
    "professional": Plan(
        id="professional",
        name="Professional",
        description="Advanced features for growing businesses",
        monthly_price=1900,  # $19.00
        yearly_price=19000,  # $190.00 (save $38)
        feature_flags=MappingProxyType({
            "posts_per_month": "unlimited",
            "platforms": "all",
            "analytics": "advanced",
            "ai_suggestions": True,
        }),
        limits=PlanLimits(
            posts_per_month=UNLIMITED,
            connected_accounts=15,
            ai_suggestions_per_month=150,
            storage_mb=250,
        ),
        trial_days=7,
        stripe_price_id_monthly=settings.stripe_professional_monthly_price_id,
        stripe_price_id_yearly=settings.stripe_professional_yearly_price_id,
    ),
    "enterprise": Plan(
        id="enterprise",
        name="Enterprise",
        description="Everything you need for large teams",
        monthly_price=2900,  # $29.00
        yearly_price=29000,  # $290.00 (save $58)
        feature_flags=MappingProxyType({
            "posts_per_month": "unlimited",
            "platforms": "all",
            "analytics": "advanced",
            "ai_suggestions": True,
            "team_features": True,
            "priority_support": True,
            "white_label": True,
        }),
        limits=PlanLimits(
            posts_per_month=UNLIMITED,
            connected_accounts=UNLIMITED,
            ai_suggestions_per_month=300,
            storage_mb=500,
        ),
        trial_days=7,
        stripe_price_id_monthly=settings.stripe_enterprise_monthly_price_id,
        stripe_price_id_yearly=settings.stripe_enterprise_yearly_price_id,
    ),
})

# Upgrade path used in limit messages
_UPGRADE_PATH = {
    "free": "Starter",
    "starter": "Professional",
    "professional": "Enterprise",
}


def get_plan(plan_id: str) -> Plan:
    """
    Get a plan from the catalog.

    Args:
        plan_id: Plan identifier (free, starter, professional, enterprise)

    Returns:
        The matching Plan

    Raises:
        ValueError: If plan_id is not in the catalog
    """
    if plan_id not in PLAN_CATALOG:
        raise ValueError(f"Invalid plan: {plan_id}. Must be one of {list(PLAN_CATALOG.keys())}")

    return PLAN_CATALOG[plan_id]


def get_plan_limits(plan_id: str) -> PlanLimits:
    """Get usage limits for a plan."""
    return get_plan(plan_id).limits


def list_plans() -> List[Plan]:
    """All plans, cheapest first."""
    return sorted(PLAN_CATALOG.values(), key=lambda p: p.monthly_price)


def is_unlimited(limit: int) -> bool:
    """Check whether a limit value means unlimited."""
    return limit == UNLIMITED


def check_limit_exceeded(current: int, limit: int, increment: int = 1) -> bool:
    """
    Check whether adding `increment` to `current` would exceed `limit`.

    Unlimited limits are never exceeded.
    """
    if is_unlimited(limit):
        return False
    return current + increment > limit


def get_usage_percentage(current: int, limit: int) -> int:
    """Usage as a whole percentage, capped at 100. Unlimited and zero limits report 0."""
    if is_unlimited(limit) or limit == 0:
        return 0
    return min(100, round(current / limit * 100))


def calculate_annual_savings(plan: Plan) -> int:
    """Savings in cents from paying yearly instead of monthly."""
    return plan.monthly_price * 12 - plan.yearly_price


def format_price(cents: int) -> str:
    return f"${cents / 100:.2f}"


def get_trial_end_date(plan_id: str, start: Optional[datetime] = None) -> Optional[datetime]:
    """Trial end for a plan started at `start` (defaults to now), or None without a trial."""
    plan = get_plan(plan_id)
    if not plan.trial_days:
        return None
    return (start or datetime.utcnow()) + timedelta(days=plan.trial_days)


def is_upgrade(old_plan_id: str, new_plan_id: str) -> bool:
    """A change is an upgrade when the new plan's monthly price is higher."""
    return get_plan(new_plan_id).monthly_price > get_plan(old_plan_id).monthly_price


def get_upgrade_plan_name(current_plan_id: str) -> str:
    return _UPGRADE_PATH.get(current_plan_id, "a paid plan")
