"""Billing services.

``WebhookService`` runs one delivery through verify, normalize and reconcile
and decides the HTTP answer. ``BillingService`` serves the signed-in
account: its entitlement view and checkout.
"""

import logging
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Optional

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from entitlement_sync.core.config import BillingConfig
from entitlement_sync.core.errors import Failure, FailureKind
from entitlement_sync.core.logging import log_info, log_warning
from entitlement_sync.core.metrics import record_webhook_outcome
from entitlement_sync.modules.auth.gate import has_access
from entitlement_sync.modules.auth.models import User
from entitlement_sync.modules.billing.events import IgnoredEvent
from entitlement_sync.modules.billing.models import EntitlementState, PlanTier
from entitlement_sync.modules.billing.normalizer import EventNormalizer
from entitlement_sync.modules.billing.reconciliation import (
    PaymentFailedNotifier,
    ReconciliationEngine,
)
from entitlement_sync.modules.billing.repository import EntitlementRepository, EntitlementStore
from entitlement_sync.modules.billing.schemas import CheckoutResponse, EntitlementResponse
from entitlement_sync.modules.billing.stripe_client import StripeGateway
from entitlement_sync.modules.billing.verifier import WebhookVerifier

logger = logging.getLogger(__name__)

INVALID_SIGNATURE = "Invalid webhook signature"


@dataclass(frozen=True)
class WebhookResponse:
    """HTTP answer for one webhook delivery."""

    status_code: int
    outcome: str
    event_id: Optional[str] = None
    detail: Optional[str] = None


class WebhookService:
    """Verify, normalize and reconcile one provider delivery."""

    def __init__(
        self,
        verifier: WebhookVerifier,
        normalizer: EventNormalizer,
        engine: ReconciliationEngine,
    ):
        self.verifier = verifier
        self.normalizer = normalizer
        self.engine = engine

    @classmethod
    def build(
        cls,
        config: BillingConfig,
        session_maker: async_sessionmaker,
        notifier: Optional[PaymentFailedNotifier] = None,
    ) -> "WebhookService":
        store = EntitlementStore(session_maker, config.store_timeout_seconds)
        return cls(
            WebhookVerifier(config),
            EventNormalizer(config.price_tiers),
            ReconciliationEngine(store, config, notifier=notifier),
        )

    async def handle(
        self,
        raw_body: bytes,
        signature_header: Optional[str],
        now: Optional[float] = None,
    ) -> WebhookResponse:
        """Process one delivery.

        2xx tells the provider to stop; anything else makes it redeliver, so
        only transient failures answer 5xx.
        """
        verified = self.verifier.verify(raw_body, signature_header, now=now)
        if isinstance(verified, Failure):
            return self._reject(verified)

        normalized = self.normalizer.normalize(verified.payload)
        if isinstance(normalized, Failure):
            return self._reject(normalized, verified.event_id)
        if isinstance(normalized, IgnoredEvent):
            record_webhook_outcome("ignored")
            return WebhookResponse(200, "ignored", normalized.event_id, normalized.reason)

        result = await self.engine.apply(normalized)
        record_webhook_outcome(result.label)
        if result.retryable:
            return WebhookResponse(503, result.label, result.event_id, "Temporarily unavailable")
        return WebhookResponse(200, result.label, result.event_id)

    def _reject(self, failure: Failure, event_id: Optional[str] = None) -> WebhookResponse:
        record_webhook_outcome(failure.kind.value)
        if failure.kind == FailureKind.UNAUTHENTICATED:
            log_warning(logger, "Webhook signature rejected")
            return WebhookResponse(400, failure.kind.value, None, INVALID_SIGNATURE)
        log_warning(logger, "Malformed webhook event", event_id=event_id, detail=failure.detail)
        return WebhookResponse(400, failure.kind.value, event_id, "Malformed event")


class BillingService:
    """Entitlement view and checkout for the signed-in account."""

    def __init__(self, session: AsyncSession, config: BillingConfig, gateway: StripeGateway):
        self.session = session
        self.config = config
        self.gateway = gateway
        self.entitlement_repo = EntitlementRepository(session)

    async def get_entitlement(
        self,
        user_id: uuid.UUID,
        now: Optional[datetime] = None,
    ) -> EntitlementResponse:
        """Entitlement view, derived from the stored row at ``now``."""
        now = now or datetime.now(timezone.utc)
        row = await self.entitlement_repo.get_by_user_id(user_id)
        state = EntitlementState.from_row(row) if row else EntitlementState(user_id=user_id, version=0)
        return EntitlementResponse(
            plan_tier=state.plan_tier,
            status=state.status.value,
            effective_status=state.effective_status(now),
            has_access=has_access(
                state,
                PlanTier.MONTHLY,
                now,
                canceled_grace_access=self.config.canceled_grace_access,
            ),
            period_start=state.period_start,
            period_end=state.period_end,
            last_payment_at=state.last_payment_at,
            payment_failed=state.payment_failed_at is not None,
        )

    async def create_checkout(
        self,
        user: User,
        tier: PlanTier,
        success_url: Optional[str] = None,
        cancel_url: Optional[str] = None,
    ) -> CheckoutResponse:
        """Open a hosted checkout, creating the Stripe customer on first use.

        Raises:
            ValueError: Tier ``none`` or a tier without a configured price
            ProviderUnavailableError: Stripe failed or timed out
        """
        if tier == PlanTier.NONE:
            raise ValueError("Cannot check out the none tier")
        if self.config.price_for_tier(tier) is None:
            raise ValueError(f"No price configured for tier {tier.value}")

        row = await self.entitlement_repo.get_by_user_id(user.id)
        if row is None:
            row = await self.entitlement_repo.create_for_user(user.id)
        customer_id = row.stripe_customer_id
        if customer_id is None:
            customer = await self.gateway.create_customer(user.email, str(user.id))
            customer_id = customer.id
            if await self.entitlement_repo.link_customer(user.id, customer_id) != 1:
                # Linked concurrently; keep the stored reference
                await self.session.refresh(row)
                customer_id = row.stripe_customer_id or customer_id
            log_info(logger, "Stripe customer linked", user_id=str(user.id), customer_ref=customer_id)

        session = await self.gateway.create_checkout_session(
            customer_id,
            str(user.id),
            tier,
            success_url=success_url,
            cancel_url=cancel_url,
        )
        return CheckoutResponse(session_id=session.id, url=session.url)
