"""Webhook signature verification.

Checks the ``Stripe-Signature`` header against an HMAC-SHA256 of the exact
raw request bytes. Every failure collapses into one generic
``UNAUTHENTICATED`` outcome; the specific cause only reaches debug logs.
"""

import json
import logging
import time
from dataclasses import dataclass
from typing import Any, Optional, Union

import stripe

from entitlement_sync.core.config import BillingConfig
from entitlement_sync.core.errors import Failure, FailureKind

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class VerifiedEvent:
    """A provider event whose signature checked out."""

    payload: dict[str, Any]
    signed_at: int

    @property
    def ok(self) -> bool:
        return True

    @property
    def event_id(self) -> Optional[str]:
        return self.payload.get("id")

    @property
    def event_type(self) -> Optional[str]:
        return self.payload.get("type")


VerificationResult = Union[VerifiedEvent, Failure]

UNAUTHENTICATED = Failure(FailureKind.UNAUTHENTICATED)


def _signed_timestamp(header: str) -> Optional[int]:
    for item in header.split(","):
        key, _, value = item.strip().partition("=")
        if key == "t":
            try:
                return int(value)
            except ValueError:
                return None
    return None


class WebhookVerifier:
    """Authenticates inbound provider events with the shared signing secret."""

    def __init__(self, config: BillingConfig):
        self.secret = config.signing_secret
        self.tolerance = config.tolerance_seconds
        self.clock_skew = config.clock_skew_seconds

    def verify(
        self,
        raw_body: bytes,
        signature_header: Optional[str],
        now: Optional[float] = None,
    ) -> VerificationResult:
        """Verify a delivery and parse its body.

        Args:
            raw_body: Request body exactly as received
            signature_header: Value of the ``Stripe-Signature`` header
            now: Current unix time (defaults to ``time.time()``)

        Returns:
            VerifiedEvent, or Failure(UNAUTHENTICATED / MALFORMED)
        """
        if not signature_header or not self.secret:
            logger.debug("Webhook rejected: missing signature header or secret")
            return UNAUTHENTICATED

        try:
            payload_text = raw_body.decode("utf-8")
        except UnicodeDecodeError:
            logger.debug("Webhook rejected: body is not UTF-8")
            return UNAUTHENTICATED

        try:
            stripe.WebhookSignature.verify_header(
                payload_text, signature_header, self.secret, tolerance=self.tolerance
            )
        except stripe.SignatureVerificationError as e:
            logger.debug("Webhook rejected: %s", e)
            return UNAUTHENTICATED

        signed_at = _signed_timestamp(signature_header)
        current = time.time() if now is None else now
        if signed_at is None or signed_at > current + self.clock_skew:
            logger.debug("Webhook rejected: signature timestamp outside freshness window")
            return UNAUTHENTICATED
        if signed_at < current - self.tolerance:
            logger.debug("Webhook rejected: signature timestamp too old")
            return UNAUTHENTICATED

        try:
            payload = json.loads(payload_text)
        except ValueError:
            return Failure(FailureKind.MALFORMED, "body is not valid JSON")
        if not isinstance(payload, dict):
            return Failure(FailureKind.MALFORMED, "body is not a JSON object")

        return VerifiedEvent(payload=payload, signed_at=signed_at)
