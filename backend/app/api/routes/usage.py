"""
API endpoints for plan usage.

Provides the usage summary the billing dashboard renders.
"""
from fastapi import APIRouter, Depends, Request
from sqlalchemy.orm import Session

from app.core.nextauth import get_current_user
from app.core.rate_limit import USAGE_LIMIT, limiter
from app.db.base import get_db
from app.models import User
from app.schemas import UsageSummary
from app.services.usage import UsageService

router = APIRouter()


@router.get("/summary", response_model=UsageSummary)
@limiter.limit(USAGE_LIMIT)
async def get_usage_summary(
    request: Request,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
):
    """
    Get usage for the current month against the user's plan limits.
    """
    return UsageService(db).get_usage_summary(current_user.id)
