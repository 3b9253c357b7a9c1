"""
Notification dedup ledger - one row per customer-facing email already sent.
"""
import uuid
from datetime import datetime
from sqlalchemy import Column, String, DateTime, UniqueConstraint
from sqlalchemy.dialects.postgresql import UUID

from app.db.base import Base


class NotificationRecord(Base):
    __tablename__ = "notification_records"
    __table_args__ = (
        UniqueConstraint("category", "subject_id", name="uq_notification_records_category_subject"),
    )

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    category = Column(String(50), nullable=False)  # plan_upgraded, payment_receipt, ...
    subject_id = Column(String(255), nullable=False)  # invoice id, change log id, ...
    user_id = Column(UUID(as_uuid=True), nullable=True, index=True)
    sent_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    expires_at = Column(DateTime, nullable=False, index=True)

    def __repr__(self):
        return f"<NotificationRecord(category={self.category}, subject_id={self.subject_id})>"
