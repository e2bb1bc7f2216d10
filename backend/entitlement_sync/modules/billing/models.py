"""Billing models for entitlement state and the processed-event ledger.

``Entitlement`` is the billing sub-record of an account: provider linkage,
plan tier/status, billing period and the per-subscription event clock used
for ordering. ``ProcessedEvent`` is the append-only idempotency ledger.
"""

import uuid
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from enum import Enum
from typing import Optional

from sqlalchemy import JSON, DateTime, ForeignKey, Integer, String, Uuid
from sqlalchemy.orm import Mapped, mapped_column
from sqlalchemy.sql import func

from entitlement_sync.core.database import Base


class PlanTier(str, Enum):
    """Entitlement level granted by a subscription."""
    NONE = "none"
    MONTHLY = "monthly"
    YEARLY = "yearly"
    LIFETIME = "lifetime"


# Higher rank satisfies any lower requirement
TIER_RANK = {
    PlanTier.NONE: 0,
    PlanTier.MONTHLY: 1,
    PlanTier.YEARLY: 2,
    PlanTier.LIFETIME: 3,
}


class EntitlementStatus(str, Enum):
    """Stored entitlement status values."""
    NONE = "none"
    ACTIVE = "active"
    CANCELED = "canceled"


class LedgerOutcome(str, Enum):
    """Outcome recorded for each delivery of a provider event."""
    APPLIED = "applied"
    IGNORED_DUPLICATE = "ignored-duplicate"
    IGNORED_STALE = "ignored-stale"
    PENDING_RETRY = "pending-retry"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def ensure_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Treat naive datetimes (e.g. from SQLite) as UTC."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


class Entitlement(Base):
    """Per-account billing record, one row per user."""

    __tablename__ = "entitlements"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    user_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("users.id"), nullable=False, unique=True, index=True
    )

    # Provider linkage
    stripe_customer_id: Mapped[Optional[str]] = mapped_column(
        String(255), nullable=True, unique=True, index=True
    )
    stripe_subscription_id: Mapped[Optional[str]] = mapped_column(
        String(255), nullable=True, index=True
    )
    stripe_price_id: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)

    # Entitlement
    plan_tier: Mapped[str] = mapped_column(
        String(20), default=PlanTier.NONE.value, nullable=False, index=True
    )
    status: Mapped[str] = mapped_column(
        String(20), default=EntitlementStatus.NONE.value, nullable=False, index=True
    )
    period_start: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    period_end: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    last_payment_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    payment_failed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    # subscription ref ("" for ref-less events) -> ISO timestamp of last applied event
    event_clock: Mapped[dict] = mapped_column(JSON, default=dict, nullable=False)

    # Optimistic concurrency token for compare-and-write
    version: Mapped[int] = mapped_column(Integer, default=1, nullable=False)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )

    def __repr__(self) -> str:
        return f"<Entitlement(user={self.user_id}, tier={self.plan_tier}, status={self.status})>"


class ProcessedEvent(Base):
    """Ledger row for one delivery of a provider event."""

    __tablename__ = "processed_events"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    event_id: Mapped[str] = mapped_column(String(255), nullable=False, index=True)
    # Only set for ``applied`` rows; the unique constraint allows one per event id
    applied_event_id: Mapped[Optional[str]] = mapped_column(
        String(255), nullable=True, unique=True
    )
    event_kind: Mapped[str] = mapped_column(String(50), nullable=False)
    outcome: Mapped[str] = mapped_column(String(32), nullable=False, index=True)
    user_id: Mapped[Optional[uuid.UUID]] = mapped_column(Uuid, nullable=True, index=True)
    effective_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    recorded_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, server_default=func.now(), index=True
    )

    def __repr__(self) -> str:
        return f"<ProcessedEvent(event={self.event_id}, outcome={self.outcome})>"


@dataclass(frozen=True)
class EntitlementState:
    """Immutable snapshot of an entitlement row.

    The reconciliation engine computes a new snapshot from an old one; the
    store persists it with a single compare-and-write keyed on ``version``.
    """

    user_id: uuid.UUID
    version: int
    plan_tier: PlanTier = PlanTier.NONE
    status: EntitlementStatus = EntitlementStatus.NONE
    stripe_customer_id: Optional[str] = None
    stripe_subscription_id: Optional[str] = None
    stripe_price_id: Optional[str] = None
    period_start: Optional[datetime] = None
    period_end: Optional[datetime] = None
    last_payment_at: Optional[datetime] = None
    payment_failed_at: Optional[datetime] = None
    event_clock: dict[str, str] = field(default_factory=dict)

    @classmethod
    def from_row(cls, row: Entitlement) -> "EntitlementState":
        return cls(
            user_id=row.user_id,
            version=row.version,
            plan_tier=PlanTier(row.plan_tier),
            status=EntitlementStatus(row.status),
            stripe_customer_id=row.stripe_customer_id,
            stripe_subscription_id=row.stripe_subscription_id,
            stripe_price_id=row.stripe_price_id,
            period_start=ensure_utc(row.period_start),
            period_end=ensure_utc(row.period_end),
            last_payment_at=ensure_utc(row.last_payment_at),
            payment_failed_at=ensure_utc(row.payment_failed_at),
            event_clock=dict(row.event_clock or {}),
        )

    def last_applied_at(self, subscription_ref: Optional[str]) -> Optional[datetime]:
        """Timestamp of the last event applied for a subscription reference."""
        raw = self.event_clock.get(subscription_ref or "")
        return ensure_utc(datetime.fromisoformat(raw)) if raw else None

    def with_clock(self, subscription_ref: Optional[str], at: datetime) -> "EntitlementState":
        """Return a copy whose clock for ``subscription_ref`` is at least ``at``."""
        current = self.last_applied_at(subscription_ref)
        if current is not None and current >= at:
            return self
        clock = dict(self.event_clock)
        clock[subscription_ref or ""] = ensure_utc(at).isoformat()
        return replace(self, event_clock=clock)

    def is_expired(self, now: datetime) -> bool:
        """Period end has passed (lifetime never expires)."""
        if self.plan_tier == PlanTier.LIFETIME or self.period_end is None:
            return False
        return self.period_end <= now

    def effective_status(self, now: datetime) -> str:
        """Status as read at ``now``; a lapsed active period reads as expired."""
        if self.status == EntitlementStatus.ACTIVE and self.is_expired(now):
            return "expired"
        return self.status.value

    def column_values(self) -> dict:
        """Column values for the compare-and-write update."""
        return {
            "plan_tier": self.plan_tier.value,
            "status": self.status.value,
            "stripe_customer_id": self.stripe_customer_id,
            "stripe_subscription_id": self.stripe_subscription_id,
            "stripe_price_id": self.stripe_price_id,
            "period_start": self.period_start,
            "period_end": self.period_end,
            "last_payment_at": self.last_payment_at,
            "payment_failed_at": self.payment_failed_at,
            "event_clock": dict(self.event_clock),
        }
