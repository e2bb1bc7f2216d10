"""Billing background tasks.

Ledger retention and payment-failed notifications, run by Celery workers.
The coroutine halves take their collaborators as arguments so they can be
driven directly; the Celery tasks build those from the settings.
"""

import asyncio
import logging
import uuid
from datetime import datetime, timedelta, timezone
from typing import Optional

from celery import shared_task
from sqlalchemy.ext.asyncio import async_sessionmaker

from entitlement_sync.core.config import get_settings
from entitlement_sync.core.database import Database
from entitlement_sync.modules.billing.events import BillingEvent
from entitlement_sync.modules.billing.models import EntitlementState
from entitlement_sync.modules.billing.notifications import BillingNotificationService
from entitlement_sync.modules.billing.repository import EntitlementStore

logger = logging.getLogger(__name__)


async def prune_ledger(
    store: EntitlementStore,
    retention_days: int,
    now: Optional[datetime] = None,
) -> int:
    """Delete ledger rows older than the retention window.

    Safe at any time: ordering is guarded by the per-subscription clock on
    the entitlement row, not by the ledger.
    """
    now = now or datetime.now(timezone.utc)
    cutoff = now - timedelta(days=retention_days)
    deleted = await store.prune_ledger(cutoff)
    logger.info(f"Pruned {deleted} processed-event rows older than {cutoff.isoformat()}")
    return deleted


async def deliver_payment_failed(
    session_maker: async_sessionmaker,
    user_id: uuid.UUID,
    failed_at: datetime,
    event_id: str,
) -> bool:
    async with session_maker() as session:
        notice = await BillingNotificationService(session).notify_payment_failed(
            user_id, failed_at, event_id
        )
    return notice is not None


async def _prune_with_settings() -> int:
    settings = get_settings()
    database = Database(settings.DATABASE_URL)
    try:
        store = EntitlementStore(database.session_maker, settings.STORE_TIMEOUT_SECONDS)
        return await prune_ledger(store, settings.LEDGER_RETENTION_DAYS)
    finally:
        await database.dispose()


async def _deliver_with_settings(user_id: uuid.UUID, failed_at: datetime, event_id: str) -> bool:
    database = Database(get_settings().DATABASE_URL)
    try:
        return await deliver_payment_failed(database.session_maker, user_id, failed_at, event_id)
    finally:
        await database.dispose()


@shared_task(
    bind=True,
    max_retries=3,
    default_retry_delay=60,
)
def prune_processed_events(self) -> dict:
    """Daily ledger retention sweep."""
    deleted = asyncio.run(_prune_with_settings())
    return {
        "deleted": deleted,
        "pruned_at": datetime.now(timezone.utc).isoformat(),
    }


@shared_task(
    bind=True,
    max_retries=3,
    default_retry_delay=30,
)
def notify_payment_failed(
    self,
    user_id: str,
    failed_at: str,
    event_id: str,
) -> dict:
    """Deliver the payment-failed notice for an account.

    Args:
        user_id: UUID of the account
        failed_at: ISO timestamp of the failed payment
        event_id: Provider event id, for audit

    Returns:
        Delivery result dict
    """
    delivered = asyncio.run(
        _deliver_with_settings(uuid.UUID(user_id), datetime.fromisoformat(failed_at), event_id)
    )
    return {
        "user_id": user_id,
        "event_id": event_id,
        "status": "delivered" if delivered else "skipped",
    }


def enqueue_payment_failed_notification(state: EntitlementState, event: BillingEvent) -> None:
    """Notifier handed to the reconciliation engine; runs after commit."""
    notify_payment_failed.delay(
        str(state.user_id),
        event.effective_at.isoformat(),
        event.event_id,
    )
