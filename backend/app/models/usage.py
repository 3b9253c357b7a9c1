"""
Usage counters for per-plan quota enforcement.
"""
import uuid
from datetime import datetime
from sqlalchemy import Column, DateTime, ForeignKey, Integer, UniqueConstraint
from sqlalchemy.dialects.postgresql import UUID

from app.db.base import Base


class UsageCounter(Base):
    """
    Usage for one user in one monthly period.

    posts_used and ai_suggestions_used reset with each period;
    connected_accounts is a gauge maintained by the social connection flow.
    """

    __tablename__ = "usage_counters"
    __table_args__ = (
        UniqueConstraint("user_id", "period_start", name="uq_usage_counters_user_period"),
    )

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    user_id = Column(
        UUID(as_uuid=True),
        ForeignKey("users.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )

    # Quota period (first day of the calendar month)
    period_start = Column(DateTime, nullable=False)

    posts_used = Column(Integer, default=0, nullable=False)
    ai_suggestions_used = Column(Integer, default=0, nullable=False)
    connected_accounts = Column(Integer, default=0, nullable=False)

    # Timestamps
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    updated_at = Column(
        DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False
    )

    def __repr__(self):
        return f"<UsageCounter(user_id={self.user_id}, period={self.period_start}, posts={self.posts_used})>"
