"""
Admin alert ledger - suppresses repeat alerts for the same issue.
"""
import uuid
from datetime import datetime
from sqlalchemy import Column, String, DateTime, Text
from sqlalchemy.dialects.postgresql import UUID

from app.db.base import Base


class AlertRecord(Base):
    __tablename__ = "alert_records"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    issue_id = Column(String(255), nullable=False, index=True)
    severity = Column(String(20), nullable=False, default="warning")
    message = Column(Text, nullable=True)
    alerted_at = Column(DateTime, default=datetime.utcnow, nullable=False, index=True)
    expires_at = Column(DateTime, nullable=False)

    def __repr__(self):
        return f"<AlertRecord(issue_id={self.issue_id}, alerted_at={self.alerted_at})>"
