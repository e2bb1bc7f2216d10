"""Reconciliation engine.

Applies normalized billing events to an account's entitlement. The state
machine itself (``plan_transition``) is pure; ``ReconciliationEngine`` wraps
it with the ledger duplicate check, the per-subscription ordering guard and
optimistic compare-and-write with bounded, jittered retry.
"""

import asyncio
import logging
import random
import time
import uuid
from dataclasses import dataclass, replace
from typing import Callable, Optional

from entitlement_sync.core.config import BillingConfig
from entitlement_sync.core.errors import ConflictError, FailureKind, StoreUnavailableError
from entitlement_sync.core.logging import log_error, log_info, log_warning
from entitlement_sync.core.metrics import (
    ENTITLEMENT_TRANSITIONS_TOTAL,
    RECONCILE_CONFLICTS_TOTAL,
    RECONCILE_DURATION_SECONDS,
)
from entitlement_sync.modules.billing.events import (
    BillingEvent,
    PaymentFailed,
    PaymentSucceeded,
    SubscriptionActivated,
    SubscriptionCanceled,
    SubscriptionChanged,
)
from entitlement_sync.modules.billing.models import (
    EntitlementState,
    EntitlementStatus,
    LedgerOutcome,
    PlanTier,
)
from entitlement_sync.modules.billing.repository import AlreadyAppliedError, EntitlementStore

logger = logging.getLogger(__name__)

PaymentFailedNotifier = Callable[[EntitlementState, BillingEvent], None]


@dataclass(frozen=True)
class Transition:
    """Result of running one event through the state machine."""

    state: EntitlementState
    reason: str
    notify_payment_failed: bool = False


@dataclass(frozen=True)
class ReconcileResult:
    """What happened to one delivery of an event."""

    event_id: str
    outcome: Optional[LedgerOutcome] = None
    kind: Optional[FailureKind] = None
    user_id: Optional[uuid.UUID] = None
    state: Optional[EntitlementState] = None
    detail: str = ""

    @property
    def label(self) -> str:
        if self.outcome is not None:
            return self.outcome.value
        if self.kind == FailureKind.UNAVAILABLE:
            return "unavailable"
        return "ignored-unknown-account"

    @property
    def retryable(self) -> bool:
        """The provider should redeliver (answer 5xx)."""
        return self.outcome == LedgerOutcome.PENDING_RETRY or self.kind == FailureKind.UNAVAILABLE


def _refers_elsewhere(state: EntitlementState, event: BillingEvent) -> bool:
    """Event names a subscription other than the account's current one."""
    return (
        event.subscription_ref is not None
        and state.stripe_subscription_id is not None
        and event.subscription_ref != state.stripe_subscription_id
    )


def _activate(state: EntitlementState, event: BillingEvent) -> EntitlementState:
    """Activate from any status.

    A repeat activation for the subscription already on file (for example
    ``checkout.session.completed`` after ``customer.subscription.created``)
    keeps the stored period and payment time when the event carries none.
    """
    same_subscription = (
        event.subscription_ref is not None and event.subscription_ref == state.stripe_subscription_id
    )
    replay = same_subscription and state.status == EntitlementStatus.ACTIVE

    if event.tier == PlanTier.LIFETIME:
        period_end = None
    elif same_subscription:
        period_end = event.period_end or state.period_end
    else:
        period_end = event.period_end

    return replace(
        state,
        plan_tier=event.tier,
        status=EntitlementStatus.ACTIVE,
        stripe_customer_id=state.stripe_customer_id or event.customer_ref,
        stripe_subscription_id=event.subscription_ref,
        stripe_price_id=(event.price_ref or state.stripe_price_id) if replay else event.price_ref,
        period_start=state.period_start if replay and state.period_start else event.effective_at,
        period_end=period_end,
        last_payment_at=state.last_payment_at if replay and state.last_payment_at else event.effective_at,
        payment_failed_at=None,
    )


def plan_transition(state: EntitlementState, event: BillingEvent) -> Transition:
    """Compute the next entitlement state for an event.

    The ordering guard is the caller's job; this function assumes the event
    is not stale. Every returned state has the event's clock entry advanced
    except payments arriving before the account is active, so that a
    late-delivered activation for the same subscription still applies.
    """
    at = event.effective_at
    ref = event.subscription_ref
    active = state.status == EntitlementStatus.ACTIVE

    # Lifetime is absorbing
    if active and state.plan_tier == PlanTier.LIFETIME:
        if (
            isinstance(event, SubscriptionCanceled)
            and ref is not None
            and ref == state.stripe_subscription_id
        ):
            return Transition(
                replace(state, status=EntitlementStatus.CANCELED).with_clock(ref, at),
                "lifetime canceled",
            )
        if isinstance(event, PaymentSucceeded) and not _refers_elsewhere(state, event):
            return Transition(
                replace(state, last_payment_at=at).with_clock(ref, at), "lifetime payment recorded"
            )
        return Transition(state.with_clock(ref, at), "lifetime unchanged")

    if isinstance(event, SubscriptionActivated):
        if event.tier_resolved:
            return Transition(_activate(state, event).with_clock(ref, at), "activated")
        if active:
            kept = replace(
                state,
                stripe_subscription_id=ref or state.stripe_subscription_id,
                period_end=event.period_end or state.period_end,
            )
            return Transition(kept.with_clock(ref, at), "activation with unmapped price, tier kept")
        return Transition(state.with_clock(ref, at), "activation with unmapped price ignored")

    if isinstance(event, SubscriptionChanged):
        if _refers_elsewhere(state, event):
            return Transition(state.with_clock(ref, at), "change for another subscription")
        if not event.tier_resolved:
            return Transition(state.with_clock(ref, at), "change with unmapped price, tier kept")
        if not active:
            if not event.live:
                return Transition(state.with_clock(ref, at), "unpaid subscription cannot activate")
            return Transition(_activate(state, event).with_clock(ref, at), "activated by change")
        changed = replace(
            state,
            plan_tier=event.tier,
            stripe_subscription_id=ref or state.stripe_subscription_id,
            stripe_price_id=event.price_ref,
            period_end=None if event.tier == PlanTier.LIFETIME else (event.period_end or state.period_end),
        )
        return Transition(changed.with_clock(ref, at), "changed")

    if isinstance(event, SubscriptionCanceled):
        if not active:
            return Transition(state.with_clock(ref, at), "already inactive")
        if _refers_elsewhere(state, event):
            return Transition(state.with_clock(ref, at), "cancel for another subscription")
        return Transition(
            replace(state, status=EntitlementStatus.CANCELED).with_clock(ref, at), "canceled"
        )

    if isinstance(event, (PaymentSucceeded, PaymentFailed)):
        if not active:
            return Transition(state, "payment for inactive account")
        if _refers_elsewhere(state, event):
            return Transition(state.with_clock(ref, at), "payment for another subscription")
        if isinstance(event, PaymentFailed):
            return Transition(
                replace(state, payment_failed_at=at).with_clock(ref, at),
                "payment failed",
                notify_payment_failed=True,
            )
        period_end = state.period_end
        if event.period_end is not None and (period_end is None or event.period_end > period_end):
            period_end = event.period_end
        paid = replace(state, period_end=period_end, last_payment_at=at, payment_failed_at=None)
        return Transition(paid.with_clock(ref, at), "payment recorded")

    raise TypeError(f"Unsupported event type {type(event).__name__}")


class ReconciliationEngine:
    """Applies normalized events to the entitlement store exactly once."""

    def __init__(
        self,
        store: EntitlementStore,
        config: BillingConfig,
        notifier: Optional[PaymentFailedNotifier] = None,
    ):
        self.store = store
        self.max_attempts = max(1, config.max_attempts)
        self.backoff_seconds = config.backoff_seconds
        self.notifier = notifier

    def _backoff(self, attempt: int) -> float:
        """Exponential delay with +/-50% jitter."""
        return self.backoff_seconds * (2 ** (attempt - 1)) * random.uniform(0.5, 1.5)

    async def apply(self, event: BillingEvent) -> ReconcileResult:
        """Apply one event.

        Never raises for store trouble: an unreachable store comes back as a
        result with kind ``UNAVAILABLE``.
        """
        started = time.perf_counter()
        try:
            result = await self._apply(event)
        except StoreUnavailableError as e:
            log_error(
                logger,
                "Entitlement store unavailable",
                exception=e,
                event_id=event.event_id,
                event_kind=event.kind.value,
            )
            result = ReconcileResult(event.event_id, kind=FailureKind.UNAVAILABLE, detail=str(e))
        finally:
            RECONCILE_DURATION_SECONDS.labels(kind=event.kind.value).observe(
                time.perf_counter() - started
            )
        return result

    async def _resolve_account(self, event: BillingEvent) -> Optional[EntitlementState]:
        state = await self.store.get_by_customer_ref(event.customer_ref)
        if state is not None or event.account_hint is None:
            return state
        state = await self.store.get_by_user_id(event.account_hint)
        if state is not None and state.stripe_customer_id not in (None, event.customer_ref):
            log_warning(
                logger,
                "Account hint points at an account linked to another customer",
                event_id=event.event_id,
                user_id=str(event.account_hint),
            )
            return None
        return state

    async def _record(
        self,
        event: BillingEvent,
        outcome: LedgerOutcome,
        state: EntitlementState,
        kind: Optional[FailureKind] = None,
        detail: str = "",
    ) -> ReconcileResult:
        await self.store.record_outcome(
            event.event_id,
            event.kind.value,
            outcome,
            user_id=state.user_id,
            effective_at=event.effective_at,
        )
        log_info(
            logger,
            f"Event {outcome.value}",
            event_id=event.event_id,
            event_kind=event.kind.value,
            user_id=str(state.user_id),
            outcome=outcome.value,
        )
        return ReconcileResult(
            event.event_id, outcome=outcome, kind=kind, user_id=state.user_id, state=state, detail=detail
        )

    async def _apply(self, event: BillingEvent) -> ReconcileResult:
        state = await self._resolve_account(event)
        if state is None:
            log_warning(
                logger,
                "No account for billing event",
                event_id=event.event_id,
                event_kind=event.kind.value,
                customer_ref=event.customer_ref,
            )
            return ReconcileResult(event.event_id, detail="unknown customer")

        for attempt in range(1, self.max_attempts + 1):
            if attempt > 1:
                state = await self.store.get_by_user_id(state.user_id)

            if await self.store.is_applied(event.event_id):
                return await self._record(event, LedgerOutcome.IGNORED_DUPLICATE, state, FailureKind.DUPLICATE)

            last_applied = state.last_applied_at(event.subscription_ref)
            if last_applied is not None and event.effective_at < last_applied:
                return await self._record(
                    event,
                    LedgerOutcome.IGNORED_STALE,
                    state,
                    FailureKind.STALE,
                    detail=f"older than {last_applied.isoformat()}",
                )

            transition = plan_transition(state, event)
            try:
                written = await self.store.compare_and_write(
                    state,
                    transition.state,
                    event.event_id,
                    event.kind.value,
                    effective_at=event.effective_at,
                )
            except AlreadyAppliedError:
                return await self._record(event, LedgerOutcome.IGNORED_DUPLICATE, state, FailureKind.DUPLICATE)
            except ConflictError:
                RECONCILE_CONFLICTS_TOTAL.inc()
                log_warning(
                    logger,
                    "Entitlement write conflict",
                    event_id=event.event_id,
                    user_id=str(state.user_id),
                    attempt=attempt,
                )
                if attempt < self.max_attempts:
                    await asyncio.sleep(self._backoff(attempt))
                continue

            ENTITLEMENT_TRANSITIONS_TOTAL.labels(
                from_status=state.status.value, to_status=written.status.value
            ).inc()
            log_info(
                logger,
                "Event applied",
                event_id=event.event_id,
                event_kind=event.kind.value,
                user_id=str(written.user_id),
                outcome=LedgerOutcome.APPLIED.value,
                transition=transition.reason,
                tier=written.plan_tier.value,
                status=written.status.value,
            )
            if transition.notify_payment_failed:
                self._notify(written, event)
            return ReconcileResult(
                event.event_id,
                outcome=LedgerOutcome.APPLIED,
                user_id=written.user_id,
                state=written,
                detail=transition.reason,
            )

        return await self._record(
            event,
            LedgerOutcome.PENDING_RETRY,
            state,
            FailureKind.CONFLICT,
            detail=f"conflict after {self.max_attempts} attempts",
        )

    def _notify(self, state: EntitlementState, event: BillingEvent) -> None:
        if self.notifier is None:
            return
        try:
            self.notifier(state, event)
        except Exception as e:
            # The write is committed; a lost notification must not trigger redelivery
            log_error(
                logger,
                "Failed to enqueue payment-failed notification",
                exception=e,
                event_id=event.event_id,
                user_id=str(state.user_id),
            )
