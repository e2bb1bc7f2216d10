"""Billing module.

Receives Stripe webhooks and reconciles them into per-account entitlements:
verification, normalization, reconciliation and the entitlement store.
Routers and services are imported from their own modules so that the models
stay importable from the configuration layer.
"""

from entitlement_sync.modules.billing.models import (
    TIER_RANK,
    Entitlement,
    EntitlementState,
    EntitlementStatus,
    LedgerOutcome,
    PlanTier,
    ProcessedEvent,
)

__all__ = [
    "TIER_RANK",
    "Entitlement",
    "EntitlementState",
    "EntitlementStatus",
    "LedgerOutcome",
    "PlanTier",
    "ProcessedEvent",
]
