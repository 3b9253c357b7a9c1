"""
Billing admin authorization.

Resync and pending-event sweeps overwrite subscription rows with Stripe's
state, so they are limited to billing admins: superusers, and any address
listed in ADMIN_EMAILS even before the login that promotes it.
"""
import logging

from fastapi import Depends, HTTPException, status

from app.core.config import settings
from app.core.nextauth import get_current_user
from app.models import User

logger = logging.getLogger(__name__)


def is_billing_admin(user: User) -> bool:
    if user.is_superuser:
        return True
    email = (user.email or "").strip().lower()
    return bool(email) and email in {e.strip().lower() for e in settings.admin_emails}


def get_billing_admin(
    current_user: User = Depends(get_current_user),
) -> User:
    """
    Dependency for billing admin routes.

    Raises:
        HTTPException: 403 if the user is neither a superuser nor in ADMIN_EMAILS
    """
    if not is_billing_admin(current_user):
        logger.warning(f"User {current_user.id} denied access to billing admin routes")
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Admin access required for billing operations",
        )

    return current_user
