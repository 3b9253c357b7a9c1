"""
Plan change log - written when a user requests an upgrade or downgrade.

Webhook branches read recent entries to decide which email a delayed
confirmation event should produce.
"""
import uuid
from datetime import datetime
from sqlalchemy import Column, String, DateTime, ForeignKey
from sqlalchemy.dialects.postgresql import UUID

from app.db.base import Base


class PlanChangeLogEntry(Base):
    __tablename__ = "plan_change_log"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    user_id = Column(UUID(as_uuid=True), ForeignKey("users.id"), nullable=False, index=True)
    change_type = Column(String(20), nullable=False)  # upgrade, downgrade
    old_plan_id = Column(String(50), nullable=False)
    new_plan_id = Column(String(50), nullable=False)
    billing_cycle = Column(String(20), nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False, index=True)

    def __repr__(self):
        return f"<PlanChangeLogEntry(user_id={self.user_id}, {self.change_type}: {self.old_plan_id}->{self.new_plan_id})>"
