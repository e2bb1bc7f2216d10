"""Property-based tests for webhook signature verification.

**Feature: entitlement-sync, Property 2: Only Authentic Deliveries Are Processed**
"""

import json
import time

import pytest
from hypothesis import given, settings, strategies as st

from entitlement_sync.core.errors import Failure, FailureKind
from entitlement_sync.modules.billing.verifier import VerifiedEvent, WebhookVerifier

from factories import WEBHOOK_SECRET, billing_config, sign, stripe_event, subscription_object

event_id_strategy = st.from_regex(r"^evt_[A-Za-z0-9]{8,24}$", fullmatch=True)
json_text_strategy = st.dictionaries(
    st.text(min_size=1, max_size=10),
    st.one_of(st.integers(), st.text(max_size=20), st.booleans(), st.none()),
    max_size=5,
)


def verifier(**overrides) -> WebhookVerifier:
    return WebhookVerifier(billing_config(**overrides))


class TestSignatureVerification:
    """Property tests for signature verification."""

    @given(event_id=event_id_strategy)
    @settings(max_examples=50)
    def test_correctly_signed_event_verifies(self, event_id: str) -> None:
        """**Feature: entitlement-sync, Property 2: Only Authentic Deliveries Are Processed**

        A body signed with the shared secret at the current time SHALL verify
        and be returned parsed.
        """
        event = stripe_event("customer.subscription.created", subscription_object("cus_1"), event_id)
        body = json.dumps(event)
        result = verifier().verify(body.encode(), sign(body))

        assert isinstance(result, VerifiedEvent)
        assert result.ok
        assert result.event_id == event_id
        assert result.event_type == "customer.subscription.created"

    @given(extra=json_text_strategy)
    @settings(max_examples=50)
    def test_any_byte_change_is_rejected(self, extra: dict) -> None:
        """**Feature: entitlement-sync, Property 2: Only Authentic Deliveries Are Processed**

        Any change to the signed body SHALL be rejected as UNAUTHENTICATED.
        """
        body = json.dumps({"id": "evt_1", "type": "invoice.paid", "extra": extra})
        header = sign(body)
        tampered = body + " "
        result = verifier().verify(tampered.encode(), header)
        assert result == Failure(FailureKind.UNAUTHENTICATED)

    @given(secret=st.text(min_size=1, max_size=40).filter(lambda s: s != WEBHOOK_SECRET))
    @settings(max_examples=50)
    def test_wrong_secret_is_rejected(self, secret: str) -> None:
        """**Feature: entitlement-sync, Property 2: Only Authentic Deliveries Are Processed**"""
        body = json.dumps({"id": "evt_1", "type": "invoice.paid"})
        result = verifier().verify(body.encode(), sign(body, secret=secret))
        assert result == Failure(FailureKind.UNAUTHENTICATED)

    @given(age=st.integers(min_value=301, max_value=86400))
    @settings(max_examples=30)
    def test_stale_signature_is_rejected(self, age: int) -> None:
        """**Feature: entitlement-sync, Property 2: Only Authentic Deliveries Are Processed**

        A signature older than the tolerance window SHALL be rejected even
        when the HMAC is valid.
        """
        body = json.dumps({"id": "evt_1", "type": "invoice.paid"})
        header = sign(body, timestamp=int(time.time()) - age)
        assert verifier().verify(body.encode(), header).kind == FailureKind.UNAUTHENTICATED

    @given(ahead=st.integers(min_value=61, max_value=86400))
    @settings(max_examples=30)
    def test_future_signature_beyond_skew_is_rejected(self, ahead: int) -> None:
        """**Feature: entitlement-sync, Property 2: Only Authentic Deliveries Are Processed**"""
        body = json.dumps({"id": "evt_1", "type": "invoice.paid"})
        header = sign(body, timestamp=int(time.time()) + ahead)
        assert verifier().verify(body.encode(), header).kind == FailureKind.UNAUTHENTICATED

    def test_small_forward_skew_is_accepted(self) -> None:
        body = json.dumps({"id": "evt_1", "type": "invoice.paid"})
        header = sign(body, timestamp=int(time.time()) + 30)
        assert isinstance(verifier().verify(body.encode(), header), VerifiedEvent)


class TestRejectedInputs:
    """Every authentication failure collapses into one outcome."""

    @pytest.mark.parametrize(
        "header",
        [None, "", "garbage", "t=abc,v1=deadbeef", "v1=deadbeef", "t=1700000000"],
    )
    def test_bad_headers_are_unauthenticated(self, header) -> None:
        body = json.dumps({"id": "evt_1", "type": "invoice.paid"}).encode()
        assert verifier().verify(body, header) == Failure(FailureKind.UNAUTHENTICATED)

    def test_missing_secret_rejects_everything(self) -> None:
        body = json.dumps({"id": "evt_1"})
        result = verifier(signing_secret="").verify(body.encode(), sign(body))
        assert result.kind == FailureKind.UNAUTHENTICATED

    def test_failure_detail_is_generic(self) -> None:
        body = json.dumps({"id": "evt_1"})
        wrong_secret = verifier().verify(body.encode(), sign(body, secret="whsec_other"))
        stale = verifier().verify(body.encode(), sign(body, timestamp=int(time.time()) - 3600))
        assert wrong_secret == stale

    def test_authentic_non_json_is_malformed(self) -> None:
        body = "not json at all"
        result = verifier().verify(body.encode(), sign(body))
        assert result.kind == FailureKind.MALFORMED

    def test_authentic_json_array_is_malformed(self) -> None:
        body = json.dumps([1, 2, 3])
        result = verifier().verify(body.encode(), sign(body))
        assert result.kind == FailureKind.MALFORMED

    def test_non_utf8_body_is_unauthenticated(self) -> None:
        assert verifier().verify(b"\xff\xfe\xfd", sign("x")).kind == FailureKind.UNAUTHENTICATED
