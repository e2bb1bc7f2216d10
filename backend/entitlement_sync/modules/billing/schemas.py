"""Pydantic schemas for the billing endpoints."""

from datetime import datetime
from typing import Optional

from pydantic import BaseModel, Field

from entitlement_sync.modules.billing.models import PlanTier


class WebhookAck(BaseModel):
    """Acknowledgement returned to the provider."""
    received: bool = True
    outcome: str = Field(..., description="applied, ignored-duplicate, ignored-stale, ignored, ...")
    event_id: Optional[str] = Field(None, alias="eventId")

    model_config = {"populate_by_name": True}


class EntitlementResponse(BaseModel):
    """Entitlement of the signed-in account, evaluated at read time."""
    plan_tier: PlanTier = Field(..., alias="planTier")
    status: str = Field(..., description="Stored status: none, active or canceled")
    effective_status: str = Field(
        ..., alias="effectiveStatus", description="Status as read now; a lapsed period reads as expired"
    )
    has_access: bool = Field(..., alias="hasAccess")
    period_start: Optional[datetime] = Field(None, alias="periodStart")
    period_end: Optional[datetime] = Field(None, alias="periodEnd")
    last_payment_at: Optional[datetime] = Field(None, alias="lastPaymentAt")
    payment_failed: bool = Field(False, alias="paymentFailed")

    model_config = {"populate_by_name": True}


class CheckoutRequest(BaseModel):
    """Request to open a hosted checkout for a plan tier."""
    plan_tier: PlanTier = Field(..., alias="planTier", description="monthly, yearly or lifetime")
    success_url: Optional[str] = Field(None, alias="successUrl", description="URL to redirect on success")
    cancel_url: Optional[str] = Field(None, alias="cancelUrl", description="URL to redirect on cancel")

    model_config = {"populate_by_name": True}


class CheckoutResponse(BaseModel):
    """Response with checkout session details."""
    session_id: str = Field(..., alias="sessionId")
    url: str

    model_config = {"populate_by_name": True}
