"""Billing notification service.

Builds and delivers account notices for billing events. Delivery is a
structured log record; the outbound transport (email, push) consumes those
records and is not part of this service.
"""

import logging
import uuid
from dataclasses import dataclass
from datetime import datetime
from typing import Optional

from sqlalchemy.ext.asyncio import AsyncSession

from entitlement_sync.core.logging import log_info, log_warning
from entitlement_sync.modules.auth.models import User

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class BillingNotice:
    """A rendered notice addressed to one account."""

    user_id: uuid.UUID
    email: str
    event_type: str
    title: str
    message: str


class BillingNotificationService:
    """Service for sending billing-related notifications."""

    def __init__(self, session: AsyncSession):
        self.session = session

    async def notify_payment_failed(
        self,
        user_id: uuid.UUID,
        failed_at: datetime,
        event_id: str,
    ) -> Optional[BillingNotice]:
        """Send notification for a failed renewal payment.

        Args:
            user_id: Account whose payment failed
            failed_at: When the provider reported the failure
            event_id: Provider event that triggered the notice

        Returns:
            The delivered notice, or None if the account no longer exists
        """
        user = await self.session.get(User, user_id)
        if user is None:
            log_warning(logger, "Payment-failed notice for unknown account", user_id=str(user_id))
            return None

        notice = BillingNotice(
            user_id=user.id,
            email=user.email,
            event_type="payment.failed",
            title="Payment Failed",
            message=(
                f"Hi {user.username}, your subscription payment on "
                f"{failed_at:%Y-%m-%d} could not be processed. "
                "Please update your payment method to keep premium access."
            ),
        )
        log_info(
            logger,
            "Billing notice delivered",
            user_id=str(notice.user_id),
            email=notice.email,
            event_type=notice.event_type,
            event_id=event_id,
        )
        return notice
