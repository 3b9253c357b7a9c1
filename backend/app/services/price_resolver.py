"""
Price resolver - maps a Stripe price to a catalog plan and billing cycle.

Resolution order:
1. Exact match of the price id against each plan's monthly/yearly price ids
2. Amount (major units) + recurring interval against each plan's list price
3. settings.default_plan_id, with a warning

An unresolvable price never aborts a subscription write.
"""
import logging
from dataclasses import dataclass
from typing import Mapping, Optional

from app.core.config import settings
from app.core.plans import PLAN_CATALOG, Plan
from app.schemas.stripe_events import StripePrice

logger = logging.getLogger(__name__)

_INTERVAL_TO_CYCLE = {
    "month": "monthly",
    "year": "yearly",
}


@dataclass(frozen=True)
class ResolvedPrice:
    plan_id: str
    billing_cycle: str
    matched_by: str  # price_id, amount, default


class PriceResolver:
    def __init__(self, catalog: Optional[Mapping[str, Plan]] = None, default_plan_id: Optional[str] = None):
        self.catalog = catalog if catalog is not None else PLAN_CATALOG
        self.default_plan_id = default_plan_id or settings.default_plan_id

    def resolve(
        self,
        price_id: Optional[str],
        amount: Optional[int] = None,
        interval: Optional[str] = None,
    ) -> ResolvedPrice:
        """
        Resolve a price to (plan_id, billing_cycle).

        Args:
            price_id: Stripe price id
            amount: Unit amount in cents
            interval: Stripe recurring interval ("month" or "year")

        Returns:
            ResolvedPrice. Never raises for unknown prices.
        """
        if price_id:
            for plan in self.catalog.values():
                if price_id == plan.stripe_price_id_monthly:
                    return ResolvedPrice(plan.id, "monthly", "price_id")
                if price_id == plan.stripe_price_id_yearly:
                    return ResolvedPrice(plan.id, "yearly", "price_id")

        cycle = _INTERVAL_TO_CYCLE.get(interval or "")

        if amount and cycle:
            dollars = amount / 100
            for plan in self.catalog.values():
                listed = plan.price_for(cycle) / 100
                if plan.is_paid and dollars == listed:
                    return ResolvedPrice(plan.id, cycle, "amount")

        logger.warning(
            f"Could not resolve Stripe price {price_id} (amount={amount}, interval={interval}); "
            f"defaulting to plan '{self.default_plan_id}'"
        )
        return ResolvedPrice(self.default_plan_id, cycle or "monthly", "default")

    def resolve_price(self, price: Optional[StripePrice]) -> ResolvedPrice:
        """Resolve a typed Stripe price, or the default plan when there is none."""
        if price is None:
            return self.resolve(None)
        interval = price.recurring.interval if price.recurring else None
        return self.resolve(price.id, price.unit_amount, interval)


# Global resolver instance
price_resolver = PriceResolver()
