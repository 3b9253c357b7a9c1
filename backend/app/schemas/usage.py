"""
Pydantic schemas for plan usage and limits.
"""
from datetime import datetime
from typing import Literal, Optional
from pydantic import BaseModel, Field


ResourceType = Literal["posts", "ai_suggestions", "connected_accounts"]


class UsageSummary(BaseModel):
    """Usage for the current monthly period. Limits of -1 mean unlimited."""
    plan_id: str
    plan_name: str
    status: Optional[str] = None
    period_start: datetime
    period_end: datetime

    posts_used: int
    posts_limit: int
    ai_suggestions_used: int
    ai_suggestions_limit: int
    connected_accounts_used: int
    connected_accounts_limit: int
    storage_limit_mb: int


class UsageCheck(BaseModel):
    resource: ResourceType
    allowed: bool
    current_usage: int
    limit: int
    percentage: int = Field(0, description="Usage as a percentage of the limit, 0 when unlimited")
    message: Optional[str] = None
