"""Maps verified Stripe events onto the internal billing event vocabulary."""

import logging
import uuid
from datetime import datetime, timezone
from typing import Any, Callable, Optional, Union

from entitlement_sync.core.errors import Failure, FailureKind
from entitlement_sync.core.logging import log_info, log_warning
from entitlement_sync.modules.billing.events import (
    IgnoredEvent,
    NormalizedEvent,
    PaymentFailed,
    PaymentSucceeded,
    SubscriptionActivated,
    SubscriptionCanceled,
    SubscriptionChanged,
)
from entitlement_sync.modules.billing.models import PlanTier

logger = logging.getLogger(__name__)

NormalizationResult = Union[NormalizedEvent, IgnoredEvent, Failure]

# Subscription statuses that mean the provider has ended the subscription
TERMINAL_SUBSCRIPTION_STATUSES = frozenset({"canceled", "unpaid", "incomplete_expired"})
LIVE_SUBSCRIPTION_STATUSES = frozenset({"active", "trialing"})


class MalformedEvent(Exception):
    """Internal signal: a handled event type is missing required fields."""

    pass


def _timestamp(value: Any) -> Optional[datetime]:
    if value is None:
        return None
    try:
        return datetime.fromtimestamp(int(value), tz=timezone.utc)
    except (TypeError, ValueError, OverflowError, OSError):
        raise MalformedEvent(f"invalid timestamp {value!r}")


def _ref(value: Any) -> Optional[str]:
    """Stripe fields may hold an id string or an expanded object."""
    if isinstance(value, dict):
        value = value.get("id")
    return value if isinstance(value, str) and value else None


def _first(items: Any) -> dict:
    if isinstance(items, dict):
        data = items.get("data") or []
        if data and isinstance(data[0], dict):
            return data[0]
    return {}


def _uuid_or_none(value: Any) -> Optional[uuid.UUID]:
    try:
        return uuid.UUID(str(value)) if value else None
    except ValueError:
        return None


class EventNormalizer:
    """Turns provider payloads into normalized billing events.

    Price references resolve to tiers only through ``price_tiers``; an
    unknown price leaves the tier unresolved rather than guessing.
    """

    def __init__(self, price_tiers: dict[str, PlanTier]):
        self.price_tiers = dict(price_tiers)
        self._handlers: dict[str, Callable[[str, datetime, dict], NormalizationResult]] = {
            "checkout.session.completed": self._checkout_completed,
            "customer.subscription.created": self._subscription_created,
            "customer.subscription.updated": self._subscription_updated,
            "customer.subscription.deleted": self._subscription_deleted,
            "invoice.payment_succeeded": self._invoice_paid,
            "invoice.paid": self._invoice_paid,
            "invoice.payment_failed": self._invoice_payment_failed,
        }

    def resolve_tier(self, price_ref: Optional[str]) -> Optional[PlanTier]:
        if price_ref is None:
            return None
        tier = self.price_tiers.get(price_ref)
        if tier is None:
            log_warning(
                logger,
                "Unmapped price reference",
                price_ref=price_ref,
                failure_kind=FailureKind.UNRESOLVABLE.value,
            )
        return tier

    def normalize(self, payload: dict[str, Any]) -> NormalizationResult:
        """Normalize one verified provider event.

        Returns:
            A normalized event, an IgnoredEvent for types the system does not
            act on, or Failure(MALFORMED)
        """
        event_id = payload.get("id")
        event_type = payload.get("type")
        if not isinstance(event_id, str) or not event_id or not isinstance(event_type, str):
            return Failure(FailureKind.MALFORMED, "missing event id or type")

        handler = self._handlers.get(event_type)
        if handler is None:
            log_info(logger, "Ignoring unhandled event type", event_id=event_id, event_type=event_type)
            return IgnoredEvent(event_id=event_id, provider_type=event_type)

        data = payload.get("data")
        obj = data.get("object") if isinstance(data, dict) else None
        if not isinstance(obj, dict):
            return Failure(FailureKind.MALFORMED, f"{event_type} {event_id} has no data.object")

        try:
            created = _timestamp(payload.get("created"))
            if created is None:
                raise MalformedEvent("missing created timestamp")
            return handler(event_id, created, obj)
        except MalformedEvent as e:
            return Failure(FailureKind.MALFORMED, f"{event_type} {event_id}: {e}")

    # ==================== Handlers ====================

    def _customer(self, obj: dict) -> str:
        customer_ref = _ref(obj.get("customer"))
        if customer_ref is None:
            raise MalformedEvent("missing customer reference")
        return customer_ref

    def _subscription_fields(self, obj: dict) -> dict:
        item = _first(obj.get("items"))
        price_ref = _ref(item.get("price"))
        period_end = obj.get("current_period_end", item.get("current_period_end"))
        return {
            "subscription_ref": _ref(obj.get("id")),
            "price_ref": price_ref,
            "tier": self.resolve_tier(price_ref),
            "period_end": _timestamp(period_end),
        }

    def _checkout_completed(self, event_id: str, created: datetime, obj: dict) -> NormalizationResult:
        if obj.get("status") not in (None, "complete") or obj.get("payment_status") not in (
            "paid",
            "no_payment_required",
        ):
            return IgnoredEvent(event_id, "checkout.session.completed", "checkout not paid")
        metadata = obj.get("metadata") or {}
        price_ref = metadata.get("price_id")
        return SubscriptionActivated(
            event_id=event_id,
            customer_ref=self._customer(obj),
            effective_at=created,
            subscription_ref=_ref(obj.get("subscription")),
            price_ref=price_ref,
            tier=self.resolve_tier(price_ref),
            account_hint=_uuid_or_none(obj.get("client_reference_id") or metadata.get("user_id")),
        )

    def _subscription_created(self, event_id: str, created: datetime, obj: dict) -> NormalizationResult:
        if obj.get("status") not in LIVE_SUBSCRIPTION_STATUSES:
            return IgnoredEvent(
                event_id, "customer.subscription.created", f"status {obj.get('status')}"
            )
        return SubscriptionActivated(
            event_id=event_id,
            customer_ref=self._customer(obj),
            effective_at=created,
            **self._subscription_fields(obj),
        )

    def _subscription_updated(self, event_id: str, created: datetime, obj: dict) -> NormalizationResult:
        status = obj.get("status")
        fields = {
            "event_id": event_id,
            "customer_ref": self._customer(obj),
            "effective_at": created,
            **self._subscription_fields(obj),
        }
        if status in TERMINAL_SUBSCRIPTION_STATUSES:
            return SubscriptionCanceled(**fields)
        return SubscriptionChanged(live=status in LIVE_SUBSCRIPTION_STATUSES, **fields)

    def _subscription_deleted(self, event_id: str, created: datetime, obj: dict) -> NormalizationResult:
        return SubscriptionCanceled(
            event_id=event_id,
            customer_ref=self._customer(obj),
            effective_at=created,
            **self._subscription_fields(obj),
        )

    def _invoice_fields(self, obj: dict) -> dict:
        line = _first(obj.get("lines"))
        period = line.get("period") or {}
        price_ref = _ref(line.get("price"))
        subscription_ref = _ref(obj.get("subscription")) or _ref(line.get("subscription"))
        return {
            "subscription_ref": subscription_ref,
            "price_ref": price_ref,
            "tier": self.resolve_tier(price_ref) if price_ref else None,
            "period_end": _timestamp(period.get("end", obj.get("period_end"))),
        }

    def _invoice_paid(self, event_id: str, created: datetime, obj: dict) -> NormalizationResult:
        return PaymentSucceeded(
            event_id=event_id,
            customer_ref=self._customer(obj),
            effective_at=created,
            **self._invoice_fields(obj),
        )

    def _invoice_payment_failed(self, event_id: str, created: datetime, obj: dict) -> NormalizationResult:
        return PaymentFailed(
            event_id=event_id,
            customer_ref=self._customer(obj),
            effective_at=created,
            **self._invoice_fields(obj),
        )
