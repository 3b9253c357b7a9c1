"""
Pydantic schemas for API request/response validation.
"""
from app.schemas.subscription import (
    SubscriptionDetail,
    CurrentSubscriptionResponse,
    PaymentRecordDetail,
    PaymentHistoryResponse,
    CheckoutSessionRequest,
    CheckoutSessionResponse,
    CustomerPortalRequest,
    CustomerPortalResponse,
    PlanChangeRequest,
    PlanChangeResponse,
    CancelScheduledChangeResponse,
    UpgradePreviewRequest,
    UpgradePreviewResponse,
    SyncResponse,
    PlanLimitsDetail,
    PlanDetail,
    ResyncPendingResponse,
)
from app.schemas.usage import (
    ResourceType,
    UsageSummary,
    UsageCheck,
)

__all__ = [
    # Subscription
    "SubscriptionDetail",
    "CurrentSubscriptionResponse",
    "PaymentRecordDetail",
    "PaymentHistoryResponse",
    "CheckoutSessionRequest",
    "CheckoutSessionResponse",
    "CustomerPortalRequest",
    "CustomerPortalResponse",
    "PlanChangeRequest",
    "PlanChangeResponse",
    "CancelScheduledChangeResponse",
    "UpgradePreviewRequest",
    "UpgradePreviewResponse",
    "SyncResponse",
    "PlanLimitsDetail",
    "PlanDetail",
    "ResyncPendingResponse",
    # Usage
    "ResourceType",
    "UsageSummary",
    "UsageCheck",
]
