"""Failure taxonomy shared by the webhook pipeline and the identity gate.

Components at the verify/normalize/reconcile seams return ``Failure`` values
instead of raising; callers branch on ``Failure.kind``.
"""

from dataclasses import dataclass
from enum import Enum


class FailureKind(str, Enum):
    """Kinds of failure a component can report."""

    UNAUTHENTICATED = "unauthenticated"
    MALFORMED = "malformed"
    CONFLICT = "conflict"
    UNRESOLVABLE = "unresolvable"
    STALE = "stale"
    DUPLICATE = "duplicate"
    UNAVAILABLE = "unavailable"


@dataclass(frozen=True)
class Failure:
    """A typed failure outcome.

    ``detail`` is for logs only and must never be echoed to a caller for
    ``UNAUTHENTICATED`` failures.
    """

    kind: FailureKind
    detail: str = ""

    @property
    def ok(self) -> bool:
        return False


class ConflictError(Exception):
    """Raised by the store when a compare-and-write loses a race."""

    pass


class StoreUnavailableError(Exception):
    """Raised when a store call fails or exceeds its timeout."""

    pass


class UnauthenticatedError(Exception):
    """Raised by the identity gate. The message is always generic."""

    def __init__(self) -> None:
        super().__init__("Invalid or expired credentials")


class ProviderUnavailableError(Exception):
    """Raised when an outbound payment provider call fails or times out."""

    pass
