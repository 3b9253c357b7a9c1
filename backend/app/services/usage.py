"""
Usage and plan limit service.

Reads the user's plan from the active subscription row (never writes it) and
tracks per-month usage counters for quota enforcement.

Resources:
- posts, ai_suggestions: monthly counters, incremented on use
- connected_accounts: a gauge owned by the account connection flow, only
  checked here
"""
import logging
from calendar import monthrange
from datetime import datetime
from typing import Optional, Tuple
from uuid import UUID

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from app.core.plans import (
    FREE_PLAN_ID,
    check_limit_exceeded,
    get_plan,
    get_upgrade_plan_name,
    get_usage_percentage,
    is_unlimited,
)
from app.models import UsageCounter
from app.schemas.usage import UsageCheck, UsageSummary
from app.services.subscription_store import SubscriptionStore

logger = logging.getLogger(__name__)

_RESOURCE_NAMES = {
    "posts": "posts",
    "ai_suggestions": "AI suggestions",
    "connected_accounts": "connected accounts",
}


def current_period(now: Optional[datetime] = None) -> Tuple[datetime, datetime]:
    """Calendar month containing `now`, as (start, end)."""
    now = now or datetime.utcnow()
    start = datetime(now.year, now.month, 1)
    last_day = monthrange(now.year, now.month)[1]
    end = datetime(now.year, now.month, last_day, 23, 59, 59)
    return start, end


class UsageService:
    """
    Service for plan-aware usage checks.

    Provides methods to:
    - Summarize usage against the user's plan limits
    - Check a resource without consuming it
    - Check and consume in one step
    """

    def __init__(self, db: Session):
        """
        Initialize usage service.

        Args:
            db: Database session
        """
        self.db = db
        self.store = SubscriptionStore(db)

    def _effective_plan(self, user_id: UUID) -> Tuple[str, Optional[str]]:
        """(plan_id, status) from the active row; canceled or missing rows are free."""
        row = self.store.get_active_for_user(user_id)
        if row is None:
            return FREE_PLAN_ID, None
        if row.status == "canceled":
            return FREE_PLAN_ID, row.status
        return row.plan_id, row.status

    def _get_or_create_counter(self, user_id: UUID) -> UsageCounter:
        period_start, _ = current_period()
        counter = (
            self.db.query(UsageCounter)
            .filter(UsageCounter.user_id == user_id, UsageCounter.period_start == period_start)
            .first()
        )
        if counter:
            return counter

        counter = UsageCounter(
            user_id=user_id,
            period_start=period_start,
            posts_used=0,
            ai_suggestions_used=0,
            connected_accounts=self._carry_connected_accounts(user_id),
        )
        try:
            self.db.add(counter)
            self.db.commit()
        except IntegrityError:
            # Created concurrently for the same period
            self.db.rollback()
            counter = (
                self.db.query(UsageCounter)
                .filter(UsageCounter.user_id == user_id, UsageCounter.period_start == period_start)
                .one()
            )
        return counter

    def _carry_connected_accounts(self, user_id: UUID) -> int:
        """Connected accounts persist across periods; start from the latest known value."""
        latest = (
            self.db.query(UsageCounter)
            .filter(UsageCounter.user_id == user_id)
            .order_by(UsageCounter.period_start.desc())
            .first()
        )
        return latest.connected_accounts if latest else 0

    def get_usage_summary(self, user_id: UUID) -> UsageSummary:
        """
        Usage for the current period against the user's plan limits.

        Args:
            user_id: User ID

        Returns:
            UsageSummary
        """
        plan_id, status = self._effective_plan(user_id)
        plan = get_plan(plan_id)
        counter = self._get_or_create_counter(user_id)
        period_start, period_end = current_period()

        return UsageSummary(
            plan_id=plan.id,
            plan_name=plan.name,
            status=status,
            period_start=period_start,
            period_end=period_end,
            posts_used=counter.posts_used,
            posts_limit=plan.limits.posts_per_month,
            ai_suggestions_used=counter.ai_suggestions_used,
            ai_suggestions_limit=plan.limits.ai_suggestions_per_month,
            connected_accounts_used=counter.connected_accounts,
            connected_accounts_limit=plan.limits.connected_accounts,
            storage_limit_mb=plan.limits.storage_mb,
        )

    def _usage_and_limit(self, summary: UsageSummary, resource: str) -> Tuple[int, int]:
        if resource == "posts":
            return summary.posts_used, summary.posts_limit
        if resource == "ai_suggestions":
            return summary.ai_suggestions_used, summary.ai_suggestions_limit
        if resource == "connected_accounts":
            return summary.connected_accounts_used, summary.connected_accounts_limit
        raise ValueError(f"Unknown resource: {resource}")

    def check_usage(self, user_id: UUID, resource: str) -> UsageCheck:
        """
        Check whether one more unit of `resource` is allowed, without consuming it.

        Args:
            user_id: User ID
            resource: posts, ai_suggestions or connected_accounts

        Returns:
            UsageCheck
        """
        summary = self.get_usage_summary(user_id)
        used, limit = self._usage_and_limit(summary, resource)
        allowed = not check_limit_exceeded(used, limit)

        return UsageCheck(
            resource=resource,
            allowed=allowed,
            current_usage=used,
            limit=limit,
            percentage=get_usage_percentage(used, limit),
            message=None if allowed else self._limit_message(summary.plan_id, resource, used, limit),
        )

    def check_and_increment(self, user_id: UUID, resource: str, increment: int = 1) -> UsageCheck:
        """
        Consume `increment` units of `resource` if the plan allows it.

        connected_accounts is checked but never incremented here.

        Args:
            user_id: User ID
            resource: posts, ai_suggestions or connected_accounts
            increment: Units to consume

        Returns:
            UsageCheck with the usage after the increment
        """
        summary = self.get_usage_summary(user_id)
        used, limit = self._usage_and_limit(summary, resource)

        if check_limit_exceeded(used, limit, increment):
            logger.info(f"User {user_id} hit {resource} limit: {used}/{limit} (+{increment})")
            return UsageCheck(
                resource=resource,
                allowed=False,
                current_usage=used,
                limit=limit,
                percentage=get_usage_percentage(used, limit),
                message=self._limit_message(summary.plan_id, resource, used, limit),
            )

        if resource != "connected_accounts":
            counter = self._get_or_create_counter(user_id)
            column = UsageCounter.posts_used if resource == "posts" else UsageCounter.ai_suggestions_used
            self.db.query(UsageCounter).filter(UsageCounter.id == counter.id).update(
                {column: column + increment}, synchronize_session=False
            )
            self.db.commit()
            used += increment

        return UsageCheck(
            resource=resource,
            allowed=True,
            current_usage=used,
            limit=limit,
            percentage=get_usage_percentage(used, limit),
        )

    @staticmethod
    def _limit_message(plan_id: str, resource: str, used: int, limit: int) -> str:
        shown_limit = "unlimited" if is_unlimited(limit) else limit
        return (
            f"You've reached your {_RESOURCE_NAMES[resource]} limit ({used}/{shown_limit}). "
            f"Upgrade to {get_upgrade_plan_name(plan_id)} to continue."
        )
