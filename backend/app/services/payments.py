"""
Payment ledger - append-only history shown on the billing page.
"""
import logging
import uuid
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from app.core.config import settings
from app.core.errors import StoreWriteFailed
from app.core.plans import PLAN_CATALOG
from app.models import PaymentRecord
from app.schemas.stripe_events import StripeInvoice

logger = logging.getLogger(__name__)


def _plan_name(plan_id: Optional[str]) -> str:
    plan = PLAN_CATALOG.get(plan_id or "")
    return plan.name if plan else "subscription"


class PaymentLedger:
    def __init__(self, db: Session):
        self.db = db

    def record_invoice_payment(
        self,
        user_id: uuid.UUID,
        invoice: StripeInvoice,
        plan_id: Optional[str] = None,
        billing_cycle: Optional[str] = None,
        subscription_id: Optional[uuid.UUID] = None,
    ) -> Optional[PaymentRecord]:
        """
        Append a succeeded payment for a paid invoice.

        Proration credit (a negative starting balance) is embedded in the
        metadata. Returns None when the invoice was already recorded.
        """
        credit = invoice.credit_applied
        metadata: Dict[str, Any] = {
            "invoice_number": invoice.number,
            "billing_reason": invoice.billing_reason,
            "plan_id": plan_id,
            "billing_cycle": billing_cycle,
        }
        if credit:
            metadata["credit_applied"] = credit
            metadata["total_before_credit"] = invoice.amount_paid + credit
        if isinstance(invoice.payment_intent, str):
            metadata["payment_intent"] = invoice.payment_intent

        description = f"Payment for {_plan_name(plan_id)} plan ({billing_cycle or 'recurring'})"
        return self._append(
            PaymentRecord(
                user_id=user_id,
                subscription_id=subscription_id,
                amount=invoice.amount_paid,
                currency=invoice.currency,
                status="succeeded",
                stripe_invoice_id=invoice.id,
                description=description,
                payment_metadata=metadata,
            )
        )

    def record_failed_payment(
        self,
        user_id: uuid.UUID,
        invoice: StripeInvoice,
        subscription_id: Optional[uuid.UUID] = None,
    ) -> Optional[PaymentRecord]:
        return self._append(
            PaymentRecord(
                user_id=user_id,
                subscription_id=subscription_id,
                amount=invoice.amount_due,
                currency=invoice.currency,
                status="failed",
                stripe_invoice_id=invoice.id,
                description="Payment failed",
                payment_metadata={
                    "invoice_number": invoice.number,
                    "billing_reason": invoice.billing_reason,
                    "attempt_count": invoice.attempt_count,
                },
            )
        )

    def record_trial_start(
        self,
        user_id: uuid.UUID,
        plan_id: str,
        trial_days: int,
        subscription_id: Optional[uuid.UUID] = None,
    ) -> Optional[PaymentRecord]:
        """
        Append a zero-amount trial entry.

        Trial entries carry no invoice id, so duplicates are detected by a
        lookup over the last trial_record_window_hours.
        """
        cutoff = datetime.utcnow() - timedelta(hours=settings.trial_record_window_hours)
        recent = (
            self.db.query(PaymentRecord)
            .filter(
                PaymentRecord.user_id == user_id,
                PaymentRecord.amount == 0,
                PaymentRecord.stripe_invoice_id.is_(None),
                PaymentRecord.created_at >= cutoff,
            )
            .all()
        )
        if any((r.payment_metadata or {}).get("type") == "trial_started" for r in recent):
            logger.info(f"Trial start already recorded for user {user_id}")
            return None

        return self._append(
            PaymentRecord(
                user_id=user_id,
                subscription_id=subscription_id,
                amount=0,
                currency="usd",
                status="succeeded",
                description=f"Started {trial_days}-day free trial for {_plan_name(plan_id)} plan",
                payment_metadata={"type": "trial_started", "plan_id": plan_id},
            )
        )

    def record_scheduled_change_canceled(
        self,
        user_id: uuid.UUID,
        plan_id: str,
        billing_cycle: Optional[str],
        subscription_id: Optional[uuid.UUID] = None,
    ) -> Optional[PaymentRecord]:
        """Zero-amount entry noting that a pending downgrade was called off."""
        return self._append(
            PaymentRecord(
                user_id=user_id,
                subscription_id=subscription_id,
                amount=0,
                currency="usd",
                status="canceled",
                description=f"Canceled scheduled downgrade to {_plan_name(plan_id)}",
                payment_metadata={
                    "type": "scheduled_change_canceled",
                    "canceled_plan": plan_id,
                    "canceled_cycle": billing_cycle,
                },
            )
        )

    def list_for_user(self, user_id: uuid.UUID, limit: int = 50) -> List[PaymentRecord]:
        return (
            self.db.query(PaymentRecord)
            .filter(PaymentRecord.user_id == user_id)
            .order_by(PaymentRecord.created_at.desc())
            .limit(limit)
            .all()
        )

    def _append(self, record: PaymentRecord) -> Optional[PaymentRecord]:
        if record.stripe_invoice_id:
            existing = (
                self.db.query(PaymentRecord)
                .filter(
                    PaymentRecord.stripe_invoice_id == record.stripe_invoice_id,
                    PaymentRecord.status == record.status,
                )
                .first()
            )
            if existing:
                logger.info(f"Payment for invoice {record.stripe_invoice_id} ({record.status}) already recorded")
                return None

        try:
            self.db.add(record)
            self.db.commit()
        except IntegrityError:
            self.db.rollback()
            logger.info(f"Payment for invoice {record.stripe_invoice_id} recorded concurrently")
            return None
        except SQLAlchemyError as e:
            self.db.rollback()
            logger.error(f"Failed to record payment for user {record.user_id}: {e}")
            raise StoreWriteFailed(str(e)) from e

        self.db.refresh(record)
        return record
