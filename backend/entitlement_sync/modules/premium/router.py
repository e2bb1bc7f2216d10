"""Premium endpoints.

Every route here requires at least the monthly tier; access is re-derived on
each request so a lapsed period is refused without any write.
"""

from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from entitlement_sync.core.database import get_db
from entitlement_sync.modules.auth.gate import require_entitlement
from entitlement_sync.modules.auth.models import User
from entitlement_sync.modules.auth.repository import UserRepository
from entitlement_sync.modules.billing.models import PlanTier
from entitlement_sync.modules.premium.schemas import SavedChannelsResponse, SavedChannelsUpdate

router = APIRouter(prefix="/premium", tags=["premium"])

require_premium = require_entitlement(PlanTier.MONTHLY)


@router.get("/saved-channels", response_model=SavedChannelsResponse)
async def get_saved_channels(
    current_user: User = Depends(require_premium),
):
    """Saved channels of the signed-in account."""
    return SavedChannelsResponse(channels=list(current_user.saved_channels or []))


@router.put("/saved-channels", response_model=SavedChannelsResponse)
async def replace_saved_channels(
    data: SavedChannelsUpdate,
    current_user: User = Depends(require_premium),
    db: AsyncSession = Depends(get_db),
):
    """Replace the saved channel list."""
    user = await UserRepository(db).update_saved_channels(current_user, data.channels)
    return SavedChannelsResponse(channels=list(user.saved_channels))
