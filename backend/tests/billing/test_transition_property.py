"""Property-based tests for the entitlement state machine.

**Feature: entitlement-sync, Property 5: Entitlement Transitions**
"""

import uuid
from dataclasses import replace
from datetime import timedelta

import pytest
from hypothesis import given, settings, strategies as st

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
    PlanTier,
)
from entitlement_sync.modules.billing.reconciliation import plan_transition

from factories import at, normalized

EVENT_CLASSES = [
    SubscriptionActivated,
    SubscriptionChanged,
    SubscriptionCanceled,
    PaymentSucceeded,
    PaymentFailed,
]

event_cls_strategy = st.sampled_from(EVENT_CLASSES)
tier_strategy = st.sampled_from([None, PlanTier.MONTHLY, PlanTier.YEARLY, PlanTier.LIFETIME])
sub_ref_strategy = st.sampled_from([None, "sub_life", "sub_other"])
event_strategy = st.builds(
    lambda cls, tier, ref, seconds: normalized(cls, seconds, subscription_ref=ref, tier=tier),
    event_cls_strategy,
    tier_strategy,
    sub_ref_strategy,
    st.integers(min_value=1, max_value=10**6),
)


def fresh(**fields) -> EntitlementState:
    return EntitlementState(user_id=uuid.uuid4(), version=1, stripe_customer_id="cus_1", **fields)


def active(tier: PlanTier = PlanTier.MONTHLY, ref: str = "sub_1", days: int = 30) -> EntitlementState:
    return fresh(
        plan_tier=tier,
        status=EntitlementStatus.ACTIVE,
        stripe_subscription_id=ref,
        period_start=at(0),
        period_end=None if tier == PlanTier.LIFETIME else at(days * 86400),
    )


class TestLifetimeIsAbsorbing:
    """Property tests for lifetime entitlements."""

    @given(events=st.lists(event_strategy, min_size=1, max_size=20))
    @settings(max_examples=200)
    def test_lifetime_survives_any_sequence_except_own_cancel(self, events) -> None:
        """**Feature: entitlement-sync, Property 5: Entitlement Transitions**

        An active lifetime entitlement SHALL keep its tier and status under
        any event sequence that contains no cancellation of its own
        subscription.
        """
        state = active(PlanTier.LIFETIME, ref="sub_life")
        for event in events:
            own_cancel = (
                isinstance(event, SubscriptionCanceled) and event.subscription_ref == "sub_life"
            )
            state = plan_transition(state, event).state
            if own_cancel:
                assert state.status == EntitlementStatus.CANCELED
                return
            assert state.plan_tier == PlanTier.LIFETIME
            assert state.status == EntitlementStatus.ACTIVE
            assert state.period_end is None

    def test_lifetime_payment_only_updates_last_payment(self) -> None:
        state = active(PlanTier.LIFETIME, ref="sub_life")
        event = normalized(PaymentSucceeded, 100, subscription_ref="sub_life")
        new = plan_transition(state, event).state
        assert new.last_payment_at == at(100)
        assert new.period_end is None
        assert new.plan_tier == PlanTier.LIFETIME

    def test_ref_less_cancel_does_not_end_lifetime(self) -> None:
        state = active(PlanTier.LIFETIME, ref=None)
        event = normalized(SubscriptionCanceled, 100, subscription_ref=None)
        assert plan_transition(state, event).state.status == EntitlementStatus.ACTIVE


class TestClockAdvances:
    """Property tests for the per-subscription event clock."""

    @given(event=event_strategy, state_is_active=st.booleans())
    @settings(max_examples=200)
    def test_clock_never_moves_backwards(self, event, state_is_active) -> None:
        """**Feature: entitlement-sync, Property 5: Entitlement Transitions**

        Applying an event SHALL leave its subscription clock at or after
        the event time, except for payments on inactive accounts, which
        leave the state untouched.
        """
        state = active(ref="sub_other") if state_is_active else fresh()
        new = plan_transition(state, event).state
        last = new.last_applied_at(event.subscription_ref)
        inactive_payment = not state_is_active and isinstance(event, (PaymentSucceeded, PaymentFailed))
        if inactive_payment:
            assert new == state
        else:
            assert last is not None and last >= event.effective_at

    def test_clock_keeps_the_later_time(self) -> None:
        state = fresh().with_clock("sub_1", at(500))
        assert state.with_clock("sub_1", at(100)).last_applied_at("sub_1") == at(500)
        assert state.with_clock("sub_1", at(900)).last_applied_at("sub_1") == at(900)

    def test_ref_less_events_share_one_clock(self) -> None:
        state = fresh().with_clock(None, at(10))
        assert state.last_applied_at(None) == at(10)
        assert state.last_applied_at("sub_1") is None


class TestTransitions:
    """Example-based checks of each transition."""

    @pytest.mark.parametrize("status", list(EntitlementStatus))
    def test_activation_with_mapped_price_activates(self, status) -> None:
        state = fresh(status=status, plan_tier=PlanTier.NONE)
        event = normalized(SubscriptionActivated, 10, tier=PlanTier.YEARLY, period_days=365)
        transition = plan_transition(state, event)
        new = transition.state
        assert new.status == EntitlementStatus.ACTIVE
        assert new.plan_tier == PlanTier.YEARLY
        assert new.period_start == at(10)
        assert new.period_end == at(10 + 365 * 86400)
        assert new.stripe_subscription_id == "sub_1"
        assert new.stripe_price_id == "price_yearly"
        assert not transition.notify_payment_failed

    def test_lifetime_activation_has_no_period_end(self) -> None:
        event = normalized(SubscriptionActivated, 10, subscription_ref=None, tier=PlanTier.LIFETIME)
        new = plan_transition(fresh(), event).state
        assert new.plan_tier == PlanTier.LIFETIME
        assert new.period_end is None

    def test_activation_links_customer_when_missing(self) -> None:
        state = EntitlementState(user_id=uuid.uuid4(), version=1)
        new = plan_transition(state, normalized(SubscriptionActivated, 1, customer_ref="cus_new")).state
        assert new.stripe_customer_id == "cus_new"

    def test_unmapped_activation_on_inactive_only_advances_clock(self) -> None:
        state = fresh()
        new = plan_transition(state, normalized(SubscriptionActivated, 10, tier=None)).state
        assert new.plan_tier == PlanTier.NONE
        assert new.status == EntitlementStatus.NONE
        assert new.last_applied_at("sub_1") == at(10)

    def test_unmapped_activation_on_active_keeps_tier(self) -> None:
        state = active(PlanTier.YEARLY, ref="sub_1")
        event = normalized(SubscriptionActivated, 10, subscription_ref="sub_2", tier=None, period_days=40)
        new = plan_transition(state, event).state
        assert new.plan_tier == PlanTier.YEARLY
        assert new.stripe_subscription_id == "sub_2"
        assert new.period_end == at(10 + 40 * 86400)

    def test_change_updates_tier_and_period(self) -> None:
        state = active(PlanTier.MONTHLY)
        event = normalized(SubscriptionChanged, 10, tier=PlanTier.YEARLY, period_days=365)
        new = plan_transition(state, event).state
        assert new.plan_tier == PlanTier.YEARLY
        assert new.stripe_price_id == "price_yearly"
        assert new.period_end == at(10 + 365 * 86400)
        assert new.status == EntitlementStatus.ACTIVE

    def test_unmapped_change_keeps_tier(self) -> None:
        state = active(PlanTier.MONTHLY)
        new = plan_transition(state, normalized(SubscriptionChanged, 10, tier=None)).state
        assert new.plan_tier == PlanTier.MONTHLY
        assert new.period_end == state.period_end
        assert new.last_applied_at("sub_1") == at(10)

    def test_change_for_other_subscription_is_ignored(self) -> None:
        state = active(PlanTier.MONTHLY, ref="sub_1")
        event = normalized(SubscriptionChanged, 10, subscription_ref="sub_2", tier=PlanTier.YEARLY)
        new = plan_transition(state, event).state
        assert new.plan_tier == PlanTier.MONTHLY
        assert new.stripe_subscription_id == "sub_1"

    def test_change_on_inactive_account_activates(self) -> None:
        state = fresh(status=EntitlementStatus.CANCELED, plan_tier=PlanTier.MONTHLY)
        new = plan_transition(state, normalized(SubscriptionChanged, 10, tier=PlanTier.MONTHLY)).state
        assert new.status == EntitlementStatus.ACTIVE

    def test_repeat_activation_keeps_period_and_payment_time(self) -> None:
        state = replace(active(PlanTier.MONTHLY, ref="sub_1"), last_payment_at=at(0))
        checkout = normalized(SubscriptionActivated, 20, tier=PlanTier.MONTHLY, period_days=None)
        new = plan_transition(state, checkout).state
        assert new.status == EntitlementStatus.ACTIVE
        assert new.period_end == at(30 * 86400)
        assert new.period_start == at(0)
        assert new.last_payment_at == at(0)
        assert new.last_applied_at("sub_1") == at(20)

    def test_activation_for_new_subscription_takes_its_period(self) -> None:
        state = active(PlanTier.MONTHLY, ref="sub_1")
        event = normalized(SubscriptionActivated, 20, subscription_ref="sub_2", tier=PlanTier.YEARLY, period_days=365)
        new = plan_transition(state, event).state
        assert new.stripe_subscription_id == "sub_2"
        assert new.period_start == at(20)
        assert new.period_end == at(20 + 365 * 86400)

    @pytest.mark.parametrize("status", [EntitlementStatus.NONE, EntitlementStatus.CANCELED])
    def test_unpaid_change_cannot_activate(self, status) -> None:
        state = fresh(status=status, plan_tier=PlanTier.NONE)
        new = plan_transition(state, normalized(SubscriptionChanged, 10, live=False)).state
        assert new.status == status
        assert new.plan_tier == PlanTier.NONE
        assert new.last_applied_at("sub_1") == at(10)

    def test_unpaid_change_still_updates_active_account(self) -> None:
        state = active(PlanTier.MONTHLY)
        event = normalized(SubscriptionChanged, 10, tier=PlanTier.YEARLY, period_days=365, live=False)
        new = plan_transition(state, event).state
        assert new.status == EntitlementStatus.ACTIVE
        assert new.plan_tier == PlanTier.YEARLY

    def test_cancel_keeps_tier_and_period(self) -> None:
        state = active(PlanTier.YEARLY, days=200)
        new = plan_transition(state, normalized(SubscriptionCanceled, 10)).state
        assert new.status == EntitlementStatus.CANCELED
        assert new.plan_tier == PlanTier.YEARLY
        assert new.period_end == at(200 * 86400)

    def test_cancel_for_other_subscription_is_ignored(self) -> None:
        state = active(ref="sub_1")
        new = plan_transition(state, normalized(SubscriptionCanceled, 10, subscription_ref="sub_2")).state
        assert new.status == EntitlementStatus.ACTIVE

    def test_cancel_on_inactive_only_advances_clock(self) -> None:
        new = plan_transition(fresh(), normalized(SubscriptionCanceled, 10)).state
        assert new.status == EntitlementStatus.NONE
        assert new.last_applied_at("sub_1") == at(10)

    def test_payment_extends_period_and_clears_failure(self) -> None:
        state = active(days=30)
        state = plan_transition(state, normalized(PaymentFailed, 5)).state
        assert state.payment_failed_at == at(5)
        event = normalized(PaymentSucceeded, 10, period_days=60)
        new = plan_transition(state, event).state
        assert new.period_end == at(10 + 60 * 86400)
        assert new.last_payment_at == at(10)
        assert new.payment_failed_at is None

    def test_payment_never_shortens_period(self) -> None:
        state = active(days=90)
        new = plan_transition(state, normalized(PaymentSucceeded, 10, period_days=30)).state
        assert new.period_end == at(90 * 86400)

    def test_payment_failure_requests_notification(self) -> None:
        transition = plan_transition(active(), normalized(PaymentFailed, 10))
        assert transition.notify_payment_failed
        assert transition.state.status == EntitlementStatus.ACTIVE

    def test_payment_on_inactive_account_leaves_clock_alone(self) -> None:
        state = fresh()
        transition = plan_transition(state, normalized(PaymentSucceeded, 10))
        assert transition.state == state
        assert not transition.notify_payment_failed

    def test_canceled_subscription_reactivates_after_period(self) -> None:
        state = active(days=30)
        state = plan_transition(state, normalized(SubscriptionCanceled, 10)).state
        event = normalized(SubscriptionActivated, 40 * 86400, subscription_ref="sub_2")
        new = plan_transition(state, event).state
        assert new.status == EntitlementStatus.ACTIVE
        assert new.stripe_subscription_id == "sub_2"
        assert new.period_start == at(40 * 86400)
        assert new.period_end == at(40 * 86400) + timedelta(days=30)

    def test_unknown_event_type_raises(self) -> None:
        with pytest.raises(TypeError):
            plan_transition(fresh(), normalized(BillingEvent, 10))
