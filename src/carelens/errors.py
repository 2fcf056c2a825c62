"""Error taxonomy for the abuse detection engine.

Every failure surfaced by the stores, the lifecycle manager or the pipeline
is one of these kinds. ``retryable`` tells the caller whether the same
request may succeed if issued again (on the next trigger, or immediately
for a lost compare-and-swap).
"""

from typing import Optional


class CareLensError(Exception):
    """Base class for all engine errors."""

    kind = "CareLensError"
    retryable = False

    def __init__(self, message: str, *, detail: Optional[dict] = None) -> None:
        super().__init__(message)
        self.message = message
        self.detail = detail or {}


class ValidationError(CareLensError):
    """Malformed input rejected at the boundary (bad rule config, score out of range)."""

    kind = "ValidationError"


class NotFoundError(CareLensError):
    """Unknown assessment, alert or rule id."""

    kind = "NotFoundError"


class InvalidStateError(CareLensError):
    """Operation not allowed in the record's current state."""

    kind = "InvalidStateError"


class ConcurrencyConflict(InvalidStateError):
    """Lost a compare-and-swap race against another writer."""

    kind = "ConcurrencyConflict"
    retryable = True


class TransientInfraError(CareLensError):
    """Store or snapshot provider timed out or was unavailable."""

    kind = "TransientInfraError"
    retryable = True
