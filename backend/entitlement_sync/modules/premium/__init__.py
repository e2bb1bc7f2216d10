"""Premium module: account features gated on an active entitlement."""

from entitlement_sync.modules.premium.router import router

__all__ = ["router"]
