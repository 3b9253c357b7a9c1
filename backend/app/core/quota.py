"""
Quota enforcement utilities.

Provides functions to check and enforce plan limits before allowing actions.
"""
from fastapi import HTTPException, status
from sqlalchemy.orm import Session

from app.models import User
from app.schemas.usage import UsageCheck
from app.services.usage import UsageService
import logging

logger = logging.getLogger(__name__)


class QuotaExceededException(HTTPException):
    """Exception raised when a plan limit is reached."""

    def __init__(self, check: UsageCheck):
        """
        Initialize quota exceeded exception.

        Args:
            check: The failed usage check
        """
        super().__init__(
            status_code=status.HTTP_403_FORBIDDEN,
            detail={
                "error": "quota_exceeded",
                "quota_type": check.resource,
                "message": check.message,
                "quota": check.model_dump(),
                "upgrade_url": "/pricing",
            },
        )


async def check_post_quota(user: User, db: Session, count: int = 1) -> None:
    """
    Consume `count` posts from the user's monthly allowance.

    Args:
        user: User object
        db: Database session
        count: Number of posts being created

    Raises:
        QuotaExceededException: If the post limit is reached
    """
    # Admin users bypass all quotas
    if user.is_superuser:
        logger.info(f"Admin user {user.id} bypassing post quota check")
        return

    check = UsageService(db).check_and_increment(user.id, "posts", count)
    if not check.allowed:
        logger.warning(f"Post quota exceeded for user {user.id}: {check.current_usage}/{check.limit}")
        raise QuotaExceededException(check)


async def check_ai_suggestion_quota(user: User, db: Session) -> None:
    """
    Consume one AI suggestion from the user's monthly allowance.

    Raises:
        QuotaExceededException: If the AI suggestion limit is reached
    """
    if user.is_superuser:
        logger.info(f"Admin user {user.id} bypassing AI suggestion quota check")
        return

    check = UsageService(db).check_and_increment(user.id, "ai_suggestions")
    if not check.allowed:
        logger.warning(
            f"AI suggestion quota exceeded for user {user.id}: {check.current_usage}/{check.limit}"
        )
        raise QuotaExceededException(check)


async def check_connected_account_quota(user: User, db: Session) -> None:
    """
    Check that the user may connect one more social account.

    The counter itself is maintained by the connection flow.

    Raises:
        QuotaExceededException: If the connected account limit is reached
    """
    if user.is_superuser:
        logger.info(f"Admin user {user.id} bypassing connected account quota check")
        return

    check = UsageService(db).check_usage(user.id, "connected_accounts")
    if not check.allowed:
        logger.warning(
            f"Connected account quota exceeded for user {user.id}: {check.current_usage}/{check.limit}"
        )
        raise QuotaExceededException(check)
