"""Normalized billing events.

Provider payloads are turned into one of the frozen dataclasses below. Each
kind is its own class so the reconciliation engine dispatches on type, and
anything the system does not act on becomes an ``IgnoredEvent``.
"""

import uuid
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import ClassVar, Optional, Union

from entitlement_sync.modules.billing.models import PlanTier


class EventKind(str, Enum):
    """Internal billing event vocabulary."""
    SUBSCRIPTION_ACTIVATED = "subscription_activated"
    SUBSCRIPTION_CHANGED = "subscription_changed"
    SUBSCRIPTION_CANCELED = "subscription_canceled"
    PAYMENT_SUCCEEDED = "payment_succeeded"
    PAYMENT_FAILED = "payment_failed"


@dataclass(frozen=True)
class BillingEvent:
    """Fields shared by every normalized event.

    ``tier`` is ``None`` when the price reference is missing or not in the
    configured mapping; the engine treats that as "no tier change".
    """

    kind: ClassVar[EventKind]

    event_id: str
    customer_ref: str
    effective_at: datetime
    subscription_ref: Optional[str] = None
    price_ref: Optional[str] = None
    tier: Optional[PlanTier] = None
    period_end: Optional[datetime] = None
    account_hint: Optional[uuid.UUID] = None

    @property
    def tier_resolved(self) -> bool:
        return self.tier is not None


@dataclass(frozen=True)
class SubscriptionActivated(BillingEvent):
    kind: ClassVar[EventKind] = EventKind.SUBSCRIPTION_ACTIVATED


@dataclass(frozen=True)
class SubscriptionChanged(BillingEvent):
    kind: ClassVar[EventKind] = EventKind.SUBSCRIPTION_CHANGED

    # False for provider statuses other than active or trialing
    live: bool = True


@dataclass(frozen=True)
class SubscriptionCanceled(BillingEvent):
    kind: ClassVar[EventKind] = EventKind.SUBSCRIPTION_CANCELED


@dataclass(frozen=True)
class PaymentSucceeded(BillingEvent):
    kind: ClassVar[EventKind] = EventKind.PAYMENT_SUCCEEDED


@dataclass(frozen=True)
class PaymentFailed(BillingEvent):
    kind: ClassVar[EventKind] = EventKind.PAYMENT_FAILED


@dataclass(frozen=True)
class IgnoredEvent:
    """A verified provider event the system deliberately does not act on."""

    event_id: str
    provider_type: str
    reason: str = "unhandled event type"


NormalizedEvent = Union[
    SubscriptionActivated,
    SubscriptionChanged,
    SubscriptionCanceled,
    PaymentSucceeded,
    PaymentFailed,
]

EVENT_CLASSES: dict[EventKind, type[BillingEvent]] = {
    cls.kind: cls
    for cls in (
        SubscriptionActivated,
        SubscriptionChanged,
        SubscriptionCanceled,
        PaymentSucceeded,
        PaymentFailed,
    )
}
