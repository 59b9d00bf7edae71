"""Notifier capability — the reservation core publishes, delivery lives elsewhere.

Implementations (email, push, SMS, in-app) only need ``notify(kind, payload)``.
``dispatch`` is the only way services call a notifier: it runs after the
database commit and never lets a delivery failure escape.
"""
import enum
import logging
from typing import Any, Optional, Protocol

from event_capacity.database import as_utc
from event_capacity.models.join_request import JoinRequest

logger = logging.getLogger(__name__)


class NotificationKind(str, enum.Enum):
    join_request_received = "join_request_received"  # host
    request_approved = "request_approved"
    request_declined = "request_declined"
    request_waitlisted = "request_waitlisted"
    request_cancelled = "request_cancelled"  # host
    hold_extended = "hold_extended"
    hold_expiring_soon = "hold_expiring_soon"
    hold_expired = "hold_expired"
    waitlist_reordered = "waitlist_reordered"
    waitlist_promoted = "waitlist_promoted"


class Notifier(Protocol):
    def notify(self, kind: NotificationKind, payload: dict[str, Any]) -> None: ...


class LoggingNotifier:
    """Default notifier: records each event in the application log."""

    def notify(self, kind: NotificationKind, payload: dict[str, Any]) -> None:
        logger.info(
            "[notify] %s request=%s event=%s user=%s",
            kind.value,
            payload.get("request_id"),
            payload.get("event_id"),
            payload.get("user_id"),
        )


_default_notifier: Notifier = LoggingNotifier()


def get_notifier() -> Notifier:
    """FastAPI dependency. Override in tests or at startup to plug in real delivery."""
    return _default_notifier


def set_default_notifier(notifier: Notifier) -> None:
    global _default_notifier
    _default_notifier = notifier


def request_payload(
    request: JoinRequest,
    old_status: Optional[str],
    host_id: Optional[str] = None,
    actor_user_id: Optional[str] = None,
) -> dict[str, Any]:
    """Serialize a join request change for the notifier."""
    hold = as_utc(request.hold_expires_at)
    return {
        "request_id": request.request_id,
        "event_id": request.event_id,
        "user_id": request.user_id,
        "host_id": host_id,
        "actor_user_id": actor_user_id,
        "party_size": request.party_size,
        "old_status": old_status,
        "new_status": request.status.value if request.status else None,
        "hold_expires_at": hold.isoformat() if hold else None,
        "waitlist_pos": request.waitlist_pos,
    }


def dispatch(notifier: Notifier, kind: NotificationKind, payload: dict[str, Any]) -> bool:
    """Deliver best-effort. Failures are logged, never raised: the state change already committed."""
    try:
        notifier.notify(kind, payload)
    except Exception:
        logger.exception("Notifier failed for %s (request %s)", kind.value, payload.get("request_id"))
        return False
    return True
