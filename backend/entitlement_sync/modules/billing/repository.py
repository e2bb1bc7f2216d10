"""Entitlement store and processed-event ledger.

``EntitlementRepository`` and ``LedgerRepository`` are thin session-bound
query helpers. ``EntitlementStore`` is what the reconciliation engine talks
to: every call opens its own short transaction, is bounded by a timeout, and
the compare-and-write commits the entitlement update together with its
``applied`` ledger row or not at all.
"""

import asyncio
import logging
import uuid
from dataclasses import replace
from datetime import datetime
from typing import Awaitable, Callable, Optional, TypeVar

from sqlalchemy import delete, select, update
from sqlalchemy.exc import DBAPIError, IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from entitlement_sync.core.errors import ConflictError, StoreUnavailableError
from entitlement_sync.modules.billing.models import (
    Entitlement,
    EntitlementState,
    LedgerOutcome,
    ProcessedEvent,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")


class AlreadyAppliedError(Exception):
    """Another delivery of the same event id committed first."""

    pass


class EntitlementRepository:
    """Repository for entitlement rows."""

    def __init__(self, session: AsyncSession):
        self.session = session

    async def create_for_user(self, user_id: uuid.UUID) -> Entitlement:
        """Create the tier ``none`` record that every account starts with."""
        entitlement = Entitlement(user_id=user_id, event_clock={}, version=1)
        self.session.add(entitlement)
        await self.session.flush()
        return entitlement

    async def get_by_user_id(self, user_id: uuid.UUID) -> Optional[Entitlement]:
        result = await self.session.execute(
            select(Entitlement).where(Entitlement.user_id == user_id)
        )
        return result.scalar_one_or_none()

    async def get_by_customer_ref(self, customer_ref: str) -> Optional[Entitlement]:
        result = await self.session.execute(
            select(Entitlement).where(Entitlement.stripe_customer_id == customer_ref)
        )
        return result.scalar_one_or_none()

    async def link_customer(self, user_id: uuid.UUID, customer_ref: str) -> int:
        """Attach a provider customer reference to an account without one."""
        result = await self.session.execute(
            update(Entitlement)
            .where(
                Entitlement.user_id == user_id,
                Entitlement.stripe_customer_id.is_(None),
            )
            .values(stripe_customer_id=customer_ref, version=Entitlement.version + 1)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount

    async def compare_and_write(
        self,
        user_id: uuid.UUID,
        expected_version: Optional[int],
        values: dict,
    ) -> int:
        """Update the row if its version still matches.

        Args:
            user_id: Account whose entitlement is written
            expected_version: Version read before computing ``values``;
                ``None`` writes unconditionally
            values: Column values to set

        Returns:
            Number of rows updated (0 means the version moved)
        """
        stmt = update(Entitlement).where(Entitlement.user_id == user_id)
        if expected_version is not None:
            stmt = stmt.where(Entitlement.version == expected_version)
        stmt = stmt.values(**values, version=Entitlement.version + 1).execution_options(
            synchronize_session=False
        )
        result = await self.session.execute(stmt)
        return result.rowcount


class LedgerRepository:
    """Repository for processed-event ledger rows."""

    def __init__(self, session: AsyncSession):
        self.session = session

    async def find_applied(self, event_id: str) -> Optional[ProcessedEvent]:
        result = await self.session.execute(
            select(ProcessedEvent).where(ProcessedEvent.applied_event_id == event_id)
        )
        return result.scalar_one_or_none()

    async def list_for_event(self, event_id: str) -> list[ProcessedEvent]:
        result = await self.session.execute(
            select(ProcessedEvent)
            .where(ProcessedEvent.event_id == event_id)
            .order_by(ProcessedEvent.recorded_at)
        )
        return list(result.scalars().all())

    async def record(
        self,
        event_id: str,
        event_kind: str,
        outcome: LedgerOutcome,
        user_id: Optional[uuid.UUID] = None,
        effective_at: Optional[datetime] = None,
    ) -> ProcessedEvent:
        entry = ProcessedEvent(
            event_id=event_id,
            applied_event_id=event_id if outcome == LedgerOutcome.APPLIED else None,
            event_kind=event_kind,
            outcome=outcome.value,
            user_id=user_id,
            effective_at=effective_at,
        )
        self.session.add(entry)
        await self.session.flush()
        return entry

    async def prune(self, older_than: datetime) -> int:
        """Delete ledger rows recorded before ``older_than``."""
        result = await self.session.execute(
            delete(ProcessedEvent).where(ProcessedEvent.recorded_at < older_than)
        )
        return result.rowcount


class EntitlementStore:
    """Durable entitlement state with timeout-bounded, atomic writes."""

    def __init__(self, session_maker: async_sessionmaker, timeout_seconds: float = 5.0):
        self.session_maker = session_maker
        self.timeout_seconds = timeout_seconds

    async def _bounded(self, operation: Callable[[AsyncSession], Awaitable[T]]) -> T:
        async def run() -> T:
            async with self.session_maker() as session:
                async with session.begin():
                    return await operation(session)

        try:
            return await asyncio.wait_for(run(), timeout=self.timeout_seconds)
        except asyncio.TimeoutError as e:
            raise StoreUnavailableError("entitlement store timed out") from e
        except IntegrityError:
            raise
        except DBAPIError as e:
            raise StoreUnavailableError(f"entitlement store error: {e.orig}") from e

    # ==================== Reads ====================

    async def get_by_user_id(self, user_id: uuid.UUID) -> Optional[EntitlementState]:
        async def op(session: AsyncSession) -> Optional[EntitlementState]:
            row = await EntitlementRepository(session).get_by_user_id(user_id)
            return EntitlementState.from_row(row) if row else None

        return await self._bounded(op)

    async def get_by_customer_ref(self, customer_ref: str) -> Optional[EntitlementState]:
        async def op(session: AsyncSession) -> Optional[EntitlementState]:
            row = await EntitlementRepository(session).get_by_customer_ref(customer_ref)
            return EntitlementState.from_row(row) if row else None

        return await self._bounded(op)

    async def is_applied(self, event_id: str) -> bool:
        async def op(session: AsyncSession) -> bool:
            return await LedgerRepository(session).find_applied(event_id) is not None

        return await self._bounded(op)

    async def ledger_outcomes(self, event_id: str) -> list[LedgerOutcome]:
        async def op(session: AsyncSession) -> list[LedgerOutcome]:
            rows = await LedgerRepository(session).list_for_event(event_id)
            return [LedgerOutcome(row.outcome) for row in rows]

        return await self._bounded(op)

    # ==================== Writes ====================

    async def compare_and_write(
        self,
        expected: Optional[EntitlementState],
        new_state: EntitlementState,
        event_id: str,
        event_kind: str,
        effective_at: Optional[datetime] = None,
    ) -> EntitlementState:
        """Apply a transition atomically.

        Args:
            expected: Snapshot the transition was computed from, or ``None``
                to write regardless of the stored version
            new_state: State to persist
            event_id: Provider event id recorded as ``applied``
            event_kind: Normalized event kind for the ledger
            effective_at: Event timestamp for the ledger

        Returns:
            The persisted state with its new version

        Raises:
            ConflictError: The stored version moved since ``expected`` was read
            AlreadyAppliedError: The event id was applied by a concurrent delivery
            StoreUnavailableError: Database failure or timeout
        """
        expected_version = expected.version if expected is not None else None

        async def op(session: AsyncSession) -> int:
            updated = await EntitlementRepository(session).compare_and_write(
                new_state.user_id, expected_version, new_state.column_values()
            )
            if updated != 1:
                raise ConflictError(f"entitlement for {new_state.user_id} changed concurrently")
            await LedgerRepository(session).record(
                event_id,
                event_kind,
                LedgerOutcome.APPLIED,
                user_id=new_state.user_id,
                effective_at=effective_at,
            )
            return updated

        try:
            await self._bounded(op)
        except IntegrityError as e:
            if await self.is_applied(event_id):
                raise AlreadyAppliedError(event_id) from e
            raise ConflictError(f"integrity conflict applying {event_id}") from e

        base_version = expected_version if expected_version is not None else new_state.version
        return replace(new_state, version=base_version + 1)

    async def record_outcome(
        self,
        event_id: str,
        event_kind: str,
        outcome: LedgerOutcome,
        user_id: Optional[uuid.UUID] = None,
        effective_at: Optional[datetime] = None,
    ) -> None:
        """Append a non-applied ledger row (duplicate, stale, pending-retry)."""
        if outcome == LedgerOutcome.APPLIED:
            raise ValueError("applied outcomes are written by compare_and_write")

        async def op(session: AsyncSession) -> None:
            await LedgerRepository(session).record(
                event_id, event_kind, outcome, user_id=user_id, effective_at=effective_at
            )

        await self._bounded(op)

    async def link_customer(self, user_id: uuid.UUID, customer_ref: str) -> bool:
        async def op(session: AsyncSession) -> bool:
            return await EntitlementRepository(session).link_customer(user_id, customer_ref) == 1

        return await self._bounded(op)

    async def prune_ledger(self, older_than: datetime) -> int:
        async def op(session: AsyncSession) -> int:
            return await LedgerRepository(session).prune(older_than)

        return await self._bounded(op)
