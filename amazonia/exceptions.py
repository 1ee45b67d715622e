"""
Domain errors raised by the service layer.

Every error carries the HTTP status the API layer answers with and a
machine-readable code. Routers let them propagate; the handlers registered
in ``amazonia.main`` turn them into JSON responses.
"""
from typing import Any, Dict, Optional


class AmazoniaError(Exception):
    """Base class for recoverable request-level errors"""

    status_code = 400
    code = "bad_request"
    default_message = "Request could not be processed"

    def __init__(self, message: Optional[str] = None, **details: Any):
        self.message = message or self.default_message
        self.details = details
        super().__init__(self.message)

    def to_dict(self) -> Dict[str, Any]:
        body = {"error": self.code, "detail": self.message}
        if self.details:
            body["context"] = self.details
        return body


class NotFound(AmazoniaError):
    status_code = 404
    code = "not_found"
    default_message = "Resource not found"


class Forbidden(AmazoniaError):
    status_code = 403
    code = "forbidden"
    default_message = "Access forbidden"


class InsufficientBalance(AmazoniaError):
    status_code = 400
    code = "insufficient_balance"
    default_message = "Balance too low for this debit"


class ConcurrentModification(AmazoniaError):
    status_code = 409
    code = "concurrent_modification"
    default_message = "Balance changed concurrently, please retry"


class TooFar(AmazoniaError):
    status_code = 422
    code = "too_far"
    default_message = "You are too far from this location to check in"


class AlreadyCheckedIn(AmazoniaError):
    status_code = 409
    code = "already_checked_in"
    default_message = "You have already checked in here recently"


class EventFull(AmazoniaError):
    status_code = 409
    code = "event_full"
    default_message = "Event has reached its maximum capacity"


class OutOfStock(AmazoniaError):
    status_code = 409
    code = "out_of_stock"
    default_message = "Reward is out of stock"


class InsufficientFunds(AmazoniaError):
    status_code = 400
    code = "insufficient_funds"
    default_message = "Not enough AmaCoins for this reward"


class RewardUnavailable(AmazoniaError):
    status_code = 409
    code = "reward_unavailable"
    default_message = "Reward is no longer available"


class RedemptionLimitReached(AmazoniaError):
    status_code = 409
    code = "redemption_limit_reached"
    default_message = "Redemption limit for this reward reached"


class InvalidStateTransition(AmazoniaError):
    status_code = 409
    code = "invalid_state_transition"
    default_message = "Operation not allowed in the current state"


class CancellationWindowExpired(AmazoniaError):
    status_code = 409
    code = "cancellation_window_expired"
    default_message = "Cancellation period has expired"


class RedemptionExpired(AmazoniaError):
    status_code = 410
    code = "redemption_expired"
    default_message = "Redemption code has expired"


class AttemptExpired(AmazoniaError):
    status_code = 409
    code = "attempt_expired"
    default_message = "Time to answer this quiz has expired"


class AttemptLimitReached(AmazoniaError):
    status_code = 429
    code = "attempt_limit_reached"
    default_message = "Daily attempt limit for this quiz reached"


class IdempotencyKeyConflict(AmazoniaError):
    status_code = 409
    code = "idempotency_key_conflict"
    default_message = "Idempotency-Key was already used for a different request"
