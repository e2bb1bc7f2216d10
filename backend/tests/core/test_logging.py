"""Tests for structured logging."""

import json
import logging
import sys

import pytest

from entitlement_sync.core.logging import (
    StructuredFormatter,
    bind_correlation_id,
    get_correlation_id,
    redact,
    reset_correlation_id,
    setup_logging,
)


def record(message: str = "hello", **extra) -> logging.LogRecord:
    rec = logging.LogRecord("entitlement_sync.test", logging.INFO, __file__, 1, message, None, None)
    for key, value in extra.items():
        setattr(rec, key, value)
    return rec


class TestCorrelationId:
    def test_bound_id_is_visible_until_reset(self) -> None:
        token = bind_correlation_id("req-12345678")
        try:
            assert get_correlation_id() == "req-12345678"
        finally:
            reset_correlation_id(token)
        assert get_correlation_id() != "req-12345678"


class TestStructuredFormatter:
    def test_record_is_one_json_object(self) -> None:
        token = bind_correlation_id("req-abcdefgh")
        try:
            line = StructuredFormatter(service="svc").format(record(event_id="evt_1"))
        finally:
            reset_correlation_id(token)
        payload = json.loads(line)
        assert payload["message"] == "hello"
        assert payload["service"] == "svc"
        assert payload["correlation_id"] == "req-abcdefgh"
        assert payload["fields"] == {"event_id": "evt_1"}

    def test_credentials_are_masked(self) -> None:
        line = StructuredFormatter().format(record(stripe_signature="t=1,v1=deadbeefcafebabe", password="pw"))
        fields = json.loads(line)["fields"]
        assert fields["stripe_signature"] == "t=1,****"
        assert fields["password"] == "[REDACTED]"

    def test_exception_is_attached(self) -> None:
        try:
            raise RuntimeError("boom")
        except RuntimeError:
            rec = record()
            rec.exc_info = sys.exc_info()
        payload = json.loads(StructuredFormatter(include_stack_trace=False).format(rec))
        assert payload["error"] == {"type": "RuntimeError", "message": "boom"}


class TestRedaction:
    @pytest.mark.parametrize("key", ["customer_ref", "event_id", "user_id"])
    def test_ordinary_keys_pass_through(self, key: str) -> None:
        assert redact(key, "cus_123456789") == "cus_123456789"


class TestSetupLogging:
    def test_unknown_level_is_rejected(self) -> None:
        with pytest.raises(ValueError):
            setup_logging(level="LOUD")
