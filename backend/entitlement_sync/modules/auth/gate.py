"""Identity gate: bearer credential resolution and entitlement checks.

``has_access`` is evaluated on every read against the current time, so an
entitlement lapses at its period end without any event being written.
"""

import uuid
from datetime import datetime, timezone
from typing import Optional

from fastapi import Depends, HTTPException, Request, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from sqlalchemy.ext.asyncio import AsyncSession

from entitlement_sync.core.database import get_db
from entitlement_sync.core.errors import UnauthenticatedError
from entitlement_sync.modules.auth.jwt import TokenManager
from entitlement_sync.modules.auth.models import User
from entitlement_sync.modules.auth.repository import UserRepository
from entitlement_sync.modules.billing.models import (
    TIER_RANK,
    EntitlementState,
    EntitlementStatus,
    PlanTier,
)
from entitlement_sync.modules.billing.repository import EntitlementRepository

security = HTTPBearer(auto_error=False)


def has_access(
    entitlement: Optional[EntitlementState],
    required_tier: PlanTier,
    now: Optional[datetime] = None,
    canceled_grace_access: bool = False,
) -> bool:
    """Whether an entitlement grants at least ``required_tier`` right now.

    Args:
        entitlement: Current entitlement snapshot (None means no record)
        required_tier: Minimum tier the caller needs
        now: Evaluation time (defaults to the current UTC time)
        canceled_grace_access: Let canceled subscriptions keep access until
            their period end

    Returns:
        bool: True iff the status is active (or canceled within grace), the
        tier ranks at or above the requirement, and the period has not ended
    """
    if entitlement is None:
        return False
    now = now or datetime.now(timezone.utc)

    if TIER_RANK[entitlement.plan_tier] < TIER_RANK[required_tier]:
        return False

    if entitlement.status == EntitlementStatus.ACTIVE:
        return not entitlement.is_expired(now)
    if entitlement.status == EntitlementStatus.CANCELED and canceled_grace_access:
        return (
            entitlement.plan_tier != PlanTier.LIFETIME
            and entitlement.period_end is not None
            and entitlement.period_end > now
        )
    return False


class IdentityGate:
    """Resolves bearer credentials to accounts."""

    def __init__(self, tokens: TokenManager, session: AsyncSession):
        self.tokens = tokens
        self.users = UserRepository(session)
        self.entitlements = EntitlementRepository(session)

    async def resolve(self, token: Optional[str]) -> User:
        """Resolve an access token to an active user.

        Raises:
            UnauthenticatedError: For any missing, invalid, expired or revoked
                credential, or an unknown/inactive account
        """
        if not token:
            raise UnauthenticatedError()
        user_id = self.tokens.get_user_id_from_token(token)
        if user_id is None:
            raise UnauthenticatedError()
        user = await self.users.get_by_id(user_id)
        if user is None or not user.is_active:
            raise UnauthenticatedError()
        return user

    async def entitlement_for(self, user_id: uuid.UUID) -> Optional[EntitlementState]:
        row = await self.entitlements.get_by_user_id(user_id)
        return EntitlementState.from_row(row) if row else None


# FastAPI dependencies

def get_token_manager(request: Request) -> TokenManager:
    return request.app.state.token_manager


async def get_identity_gate(
    request: Request,
    db: AsyncSession = Depends(get_db),
) -> IdentityGate:
    return IdentityGate(get_token_manager(request), db)


async def get_current_user(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(security),
    gate: IdentityGate = Depends(get_identity_gate),
) -> User:
    """Get current authenticated user from JWT token.

    Raises:
        HTTPException: 401 with a generic message for any credential failure
    """
    try:
        return await gate.resolve(credentials.credentials if credentials else None)
    except UnauthenticatedError as e:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail=str(e),
            headers={"WWW-Authenticate": "Bearer"},
        )


def require_entitlement(required_tier: PlanTier):
    """Dependency factory: the current user must hold ``required_tier`` or better.

    Returns the user; answers 403 when the entitlement is missing or lapsed.
    """

    async def dependency(
        request: Request,
        user: User = Depends(get_current_user),
        gate: IdentityGate = Depends(get_identity_gate),
    ) -> User:
        entitlement = await gate.entitlement_for(user.id)
        grace = request.app.state.billing_config.canceled_grace_access
        if not has_access(entitlement, required_tier, canceled_grace_access=grace):
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail="An active subscription is required",
            )
        return user

    return dependency
