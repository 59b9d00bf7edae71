"""Domain errors raised by the reservation services.

Every error carries an HTTP status code and a machine-readable ``code`` so the
exception handler in ``main.py`` can render it without knowing each type.
None of these are retried by the services; callers decide what to do.
"""
from typing import Any, Optional


class ReservationError(Exception):
    status_code = 400
    code = "reservation_error"

    def __init__(self, message: str, **extra: Any):
        super().__init__(message)
        self.message = message
        self.extra = extra

    def to_dict(self) -> dict[str, Any]:
        return {"error": self.code, "message": self.message, **self.extra}


class ValidationError(ReservationError):
    status_code = 400
    code = "validation_error"


class NotAuthorized(ReservationError):
    status_code = 403
    code = "not_authorized"


class EventNotFound(ReservationError):
    status_code = 404
    code = "event_not_found"

    def __init__(self, event_id: str):
        super().__init__(f"Event {event_id} not found", event_id=event_id)


class RequestNotFound(ReservationError):
    status_code = 404
    code = "request_not_found"

    def __init__(self, request_id: str):
        super().__init__(f"Join request {request_id} not found", request_id=request_id)


class EventNotAcceptingRequests(ReservationError):
    status_code = 409
    code = "event_not_published"

    def __init__(self, event_id: str, event_status: str):
        super().__init__(
            f"Event {event_id} is {event_status}; only published events accept join requests",
            event_id=event_id,
            event_status=event_status,
        )


class DuplicateActiveRequest(ReservationError):
    status_code = 409
    code = "already_requested"

    def __init__(self, event_id: str, user_id: str, reason: str = "an active join request"):
        super().__init__(
            f"User {user_id} already has {reason} for event {event_id}",
            event_id=event_id,
            user_id=user_id,
        )


class InvalidTransition(ReservationError):
    """Stored status differs from the one the caller expected (stale read or illegal move)."""

    status_code = 409
    code = "invalid_status_transition"

    def __init__(self, expected: str, actual: str, target: Optional[str] = None, reason: Optional[str] = None):
        message = f"Invalid status transition: expected {expected}, got {actual}"
        if target:
            message += f" (requested {target})"
        if reason:
            message += f": {reason}"
        super().__init__(message, expected=expected, actual=actual, target=target)
        self.expected = expected
        self.actual = actual
        self.target = target


class HoldExpired(InvalidTransition):
    code = "hold_expired"

    def __init__(self, target: str, hold_expires_at: Optional[str] = None):
        super().__init__("pending", "pending", target=target, reason=f"hold expired at {hold_expires_at}")
        self.extra["hold_expires_at"] = hold_expires_at


class CapacityExceeded(ReservationError):
    status_code = 409
    code = "capacity_unavailable"

    def __init__(self, required: int, available: int):
        super().__init__(
            f"Insufficient capacity: need {required}, have {available}",
            required=required,
            available=available,
        )
        self.required = required
        self.available = available
