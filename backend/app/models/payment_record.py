"""
Payment ledger - append-only record of charges, trials and failures.
"""
import uuid
from datetime import datetime
from sqlalchemy import Column, String, DateTime, Integer, ForeignKey, UniqueConstraint
from sqlalchemy.dialects.postgresql import UUID, JSONB
from sqlalchemy.orm import relationship

from app.db.base import Base


class PaymentRecord(Base):
    """
    A single payment event. Never mutated after insert.

    Invoice-backed rows are unique per (stripe_invoice_id, status) so a
    failed attempt and the eventual success on the same invoice both survive.
    """

    __tablename__ = "payment_records"
    __table_args__ = (
        UniqueConstraint("stripe_invoice_id", "status", name="uq_payment_records_invoice_status"),
    )

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    user_id = Column(UUID(as_uuid=True), ForeignKey("users.id"), nullable=False, index=True)
    subscription_id = Column(UUID(as_uuid=True), ForeignKey("subscriptions.id"), nullable=True)

    amount = Column(Integer, nullable=False)  # cents
    currency = Column(String(10), nullable=False, default="usd")
    status = Column(String(20), nullable=False)  # succeeded, failed, canceled
    stripe_invoice_id = Column(String(255), nullable=True, index=True)
    description = Column(String(500), nullable=True)
    payment_metadata = Column("metadata", JSONB, nullable=False, default=dict)

    created_at = Column(DateTime, default=datetime.utcnow, nullable=False, index=True)

    # Relationships
    user = relationship("User", back_populates="payment_records")

    def __repr__(self):
        return f"<PaymentRecord(id={self.id}, user_id={self.user_id}, amount={self.amount}, status={self.status})>"
