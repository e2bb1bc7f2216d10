"""API Router for billing.

The webhook endpoint reads the raw body and hands it to the pipeline
untouched; it is never parsed before the signature is checked.
"""

from fastapi import APIRouter, Depends, HTTPException, Request, status
from fastapi.responses import JSONResponse
from sqlalchemy.ext.asyncio import AsyncSession

from entitlement_sync.core.database import get_db
from entitlement_sync.core.errors import ProviderUnavailableError
from entitlement_sync.modules.auth.gate import get_current_user
from entitlement_sync.modules.auth.models import User
from entitlement_sync.modules.billing.schemas import (
    CheckoutRequest,
    CheckoutResponse,
    EntitlementResponse,
    WebhookAck,
)
from entitlement_sync.modules.billing.service import BillingService, WebhookService

router = APIRouter(prefix="/billing", tags=["billing"])


def get_webhook_service(request: Request) -> WebhookService:
    return request.app.state.webhook_service


def get_billing_service(
    request: Request,
    db: AsyncSession = Depends(get_db),
) -> BillingService:
    return BillingService(db, request.app.state.billing_config, request.app.state.stripe_gateway)


@router.post("/webhook", response_model=WebhookAck)
async def handle_stripe_webhook(
    request: Request,
    service: WebhookService = Depends(get_webhook_service),
):
    """Handle Stripe webhook events."""
    payload = await request.body()
    sig_header = request.headers.get("stripe-signature")

    result = await service.handle(payload, sig_header)
    if result.status_code >= 400:
        return JSONResponse(
            status_code=result.status_code,
            content={"detail": result.detail, "outcome": result.outcome},
        )
    return WebhookAck(outcome=result.outcome, event_id=result.event_id)


@router.get("/entitlement", response_model=EntitlementResponse)
async def get_entitlement(
    current_user: User = Depends(get_current_user),
    service: BillingService = Depends(get_billing_service),
):
    """Current account's entitlement, evaluated now."""
    return await service.get_entitlement(current_user.id)


@router.post("/checkout", response_model=CheckoutResponse)
async def create_checkout_session(
    data: CheckoutRequest,
    current_user: User = Depends(get_current_user),
    service: BillingService = Depends(get_billing_service),
):
    """Create a Stripe checkout session for a plan tier."""
    try:
        return await service.create_checkout(
            current_user,
            data.plan_tier,
            success_url=data.success_url,
            cancel_url=data.cancel_url,
        )
    except ValueError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))
    except ProviderUnavailableError:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Payment provider unavailable",
        )
