"""Stripe client for outbound provider calls.

Only two calls leave the system: creating a customer and opening a hosted
checkout session. Everything else arrives through the webhook.
"""

import asyncio
import logging
from dataclasses import dataclass
from typing import Callable, Optional, TypeVar

import stripe

from entitlement_sync.core.config import BillingConfig
from entitlement_sync.core.errors import ProviderUnavailableError
from entitlement_sync.modules.billing.models import PlanTier

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass
class StripeCustomerData:
    """Data for a Stripe customer."""
    id: str
    email: str


@dataclass
class CheckoutSessionData:
    """Data for a hosted checkout session."""
    id: str
    url: str


class StripeGateway:
    """Client for Stripe API operations.

    The API key is passed on every request instead of being set on the
    ``stripe`` module, so several gateways with different keys can coexist.
    """

    def __init__(self, config: BillingConfig):
        self.config = config
        self.api_key = config.stripe_api_key
        self.timeout = config.provider_timeout_seconds

    async def _call(self, fn: Callable[..., T], *args, **kwargs) -> T:
        if not self.api_key:
            raise ProviderUnavailableError("STRIPE_SECRET_KEY is not configured")
        try:
            return await asyncio.wait_for(
                asyncio.to_thread(fn, *args, api_key=self.api_key, **kwargs),
                timeout=self.timeout,
            )
        except asyncio.TimeoutError as e:
            raise ProviderUnavailableError("Stripe request timed out") from e
        except stripe.StripeError as e:
            logger.error(f"Stripe request failed: {e}")
            raise ProviderUnavailableError("Stripe request failed") from e

    # ==================== Customer Management ====================

    async def create_customer(self, email: str, user_id: str) -> StripeCustomerData:
        """Create a new Stripe customer.

        Args:
            email: Customer email
            user_id: Account id stored in the customer metadata

        Returns:
            StripeCustomerData with customer details
        """
        customer = await self._call(
            stripe.Customer.create,
            email=email,
            metadata={"user_id": user_id},
        )
        return StripeCustomerData(id=customer.id, email=customer.email)

    # ==================== Checkout Session ====================

    async def create_checkout_session(
        self,
        customer_id: str,
        user_id: str,
        tier: PlanTier,
        success_url: Optional[str] = None,
        cancel_url: Optional[str] = None,
    ) -> CheckoutSessionData:
        """Create a Stripe Checkout session for a plan tier.

        Lifetime is a one-off payment; the other tiers are subscriptions.

        Raises:
            ValueError: No price is configured for the tier
            ProviderUnavailableError: Stripe failed or timed out
        """
        price_id = self.config.price_for_tier(tier)
        if price_id is None:
            raise ValueError(f"No price configured for tier {tier.value}")

        frontend = self.config.frontend_url.rstrip("/")
        session = await self._call(
            stripe.checkout.Session.create,
            customer=customer_id,
            client_reference_id=user_id,
            line_items=[{"price": price_id, "quantity": 1}],
            mode="payment" if tier == PlanTier.LIFETIME else "subscription",
            success_url=success_url or f"{frontend}/billing/success",
            cancel_url=cancel_url or f"{frontend}/billing/cancel",
            metadata={"user_id": user_id, "price_id": price_id},
        )
        return CheckoutSessionData(id=session.id, url=session.url)
