"""Request service — guest/host operations on join requests.

Responsibilities:
- Authorization hook: host-only decisions, owner-only cancellation
- Scoping: a request must belong to the event it is addressed through
- Delegation to the store / waitlist manager for every state change
- Exactly one notification per successful operation, sent after commit

Errors from the lower layers propagate unchanged and are never retried here.
"""
import logging
from datetime import datetime
from typing import Optional

from sqlalchemy.orm import Session

from event_capacity.config import settings
from event_capacity.errors import NotAuthorized, RequestNotFound, ValidationError
from event_capacity.models.event import Event
from event_capacity.models.join_request import JoinRequest, RequestStatus
from event_capacity.services import join_request_store as store
from event_capacity.services import waitlist_service
from event_capacity.services.availability_service import Availability, compute_availability
from event_capacity.services.notifier import Notifier, NotificationKind, dispatch, request_payload

logger = logging.getLogger(__name__)

MIN_EXTENSION_MINUTES = 5
MAX_EXTENSION_MINUTES = 120


def _check_host(event: Event, actor_user_id: str) -> None:
    """Only the event host may decide on join requests."""
    if event.host_id != actor_user_id:
        logger.warning("User %s refused host action on event %s", actor_user_id, event.event_id)
        raise NotAuthorized("Only the event host may manage join requests", event_id=event.event_id)


def _request_for_event(db: Session, event_id: str, request_id: str) -> JoinRequest:
    request = store.get_request(db, request_id)
    if request.event_id != event_id:
        raise RequestNotFound(request_id)
    return request


def get_availability(db: Session, event_id: str, now: Optional[datetime] = None) -> Availability:
    return compute_availability(db, event_id, now)


def get_request(db: Session, event_id: str, request_id: str, actor_user_id: str) -> JoinRequest:
    """Visible to the requesting guest and the event host."""
    request = _request_for_event(db, event_id, request_id)
    if request.user_id != actor_user_id:
        _check_host(store.get_event(db, event_id), actor_user_id)
    return request


def list_requests(
    db: Session,
    event_id: str,
    actor_user_id: str,
    status: Optional[RequestStatus] = None,
    limit: int = 25,
    offset: int = 0,
) -> tuple[list[JoinRequest], int]:
    _check_host(store.get_event(db, event_id), actor_user_id)
    return store.list_requests(db, event_id, status=status, limit=limit, offset=offset)


def list_waitlist(db: Session, event_id: str, actor_user_id: str) -> list[JoinRequest]:
    _check_host(store.get_event(db, event_id), actor_user_id)
    return waitlist_service.list_waitlist(db, event_id)


def create_request(
    db: Session,
    notifier: Notifier,
    event_id: str,
    user_id: str,
    party_size: int,
    note: Optional[str] = None,
    now: Optional[datetime] = None,
) -> JoinRequest:
    """Guest asks to join; the request holds ``party_size`` seats for the configured TTL."""
    result = store.insert_request(
        db, event_id, user_id, party_size, note,
        hold_minutes=settings.JOIN_HOLD_TTL_MIN, now=now,
    )
    dispatch(
        notifier,
        NotificationKind.join_request_received,
        request_payload(result.request, None, host_id=result.event.host_id, actor_user_id=user_id),
    )
    return result.request


def _decide(
    db: Session,
    notifier: Notifier,
    event_id: str,
    request_id: str,
    actor_user_id: str,
    to_status: RequestStatus,
    expected_status: RequestStatus,
    kind: NotificationKind,
    now: Optional[datetime] = None,
) -> JoinRequest:
    _check_host(store.get_event(db, event_id), actor_user_id)
    _request_for_event(db, event_id, request_id)

    result = store.transition(
        db, request_id, to_status, expected_status, actor_user_id=actor_user_id, now=now
    )
    dispatch(
        notifier,
        kind,
        request_payload(
            result.request, expected_status.value, host_id=result.event.host_id, actor_user_id=actor_user_id
        ),
    )
    return result.request


def approve_request(
    db: Session,
    notifier: Notifier,
    event_id: str,
    request_id: str,
    actor_user_id: str,
    expected_status: RequestStatus = RequestStatus.pending,
    now: Optional[datetime] = None,
) -> JoinRequest:
    """Host approves a pending (or directly a waitlisted) request, capacity permitting."""
    return _decide(
        db, notifier, event_id, request_id, actor_user_id,
        RequestStatus.approved, RequestStatus(expected_status), NotificationKind.request_approved, now,
    )


def decline_request(
    db: Session,
    notifier: Notifier,
    event_id: str,
    request_id: str,
    actor_user_id: str,
    expected_status: RequestStatus = RequestStatus.pending,
    now: Optional[datetime] = None,
) -> JoinRequest:
    return _decide(
        db, notifier, event_id, request_id, actor_user_id,
        RequestStatus.declined, RequestStatus(expected_status), NotificationKind.request_declined, now,
    )


def waitlist_request(
    db: Session,
    notifier: Notifier,
    event_id: str,
    request_id: str,
    actor_user_id: str,
    now: Optional[datetime] = None,
) -> JoinRequest:
    """Host parks a pending request at the tail of the waitlist, releasing its hold."""
    return _decide(
        db, notifier, event_id, request_id, actor_user_id,
        RequestStatus.waitlisted, RequestStatus.pending, NotificationKind.request_waitlisted, now,
    )


def cancel_own_request(
    db: Session,
    notifier: Notifier,
    event_id: str,
    request_id: str,
    actor_user_id: str,
    now: Optional[datetime] = None,
) -> JoinRequest:
    """Guest withdraws their own pending request while the hold is still live.

    Races legitimately with host decisions: whichever commits first wins and
    the other side gets InvalidTransition.
    """
    request = _request_for_event(db, event_id, request_id)
    if request.user_id != actor_user_id:
        raise NotAuthorized("Only the requester may cancel this request", request_id=request_id)

    result = store.transition(
        db, request_id, RequestStatus.cancelled, RequestStatus.pending, actor_user_id=actor_user_id, now=now
    )
    dispatch(
        notifier,
        NotificationKind.request_cancelled,
        request_payload(
            result.request, RequestStatus.pending.value, host_id=result.event.host_id, actor_user_id=actor_user_id
        ),
    )
    return result.request


def extend_hold(
    db: Session,
    notifier: Notifier,
    event_id: str,
    request_id: str,
    actor_user_id: str,
    extension_minutes: Optional[int] = None,
    now: Optional[datetime] = None,
) -> JoinRequest:
    """Host buys more time to decide on a pending request."""
    if extension_minutes is None:
        extension_minutes = settings.HOLD_EXTENSION_MIN
    if not MIN_EXTENSION_MINUTES <= extension_minutes <= MAX_EXTENSION_MINUTES:
        raise ValidationError(
            f"Extension must be between {MIN_EXTENSION_MINUTES} and {MAX_EXTENSION_MINUTES} minutes",
            field="extension_minutes",
        )

    _check_host(store.get_event(db, event_id), actor_user_id)
    _request_for_event(db, event_id, request_id)

    result = store.extend_hold(db, request_id, extension_minutes, actor_user_id=actor_user_id, now=now)
    payload = request_payload(
        result.request, RequestStatus.pending.value, host_id=result.event.host_id, actor_user_id=actor_user_id
    )
    payload["extension_minutes"] = extension_minutes
    dispatch(notifier, NotificationKind.hold_extended, payload)
    return result.request


def reorder_waitlist(
    db: Session,
    notifier: Notifier,
    event_id: str,
    request_id: str,
    position: int,
    actor_user_id: str,
    now: Optional[datetime] = None,
) -> list[JoinRequest]:
    """Move a waitlisted request to ``position`` (1-based); returns the new order."""
    event = store.get_event(db, event_id)
    _check_host(event, actor_user_id)

    moved, old_pos, ordered = waitlist_service.reorder(
        db, event_id, request_id, position, actor_user_id=actor_user_id, now=now
    )
    payload = request_payload(moved, RequestStatus.waitlisted.value, host_id=event.host_id, actor_user_id=actor_user_id)
    payload["from_position"] = old_pos
    payload["to_position"] = position
    dispatch(notifier, NotificationKind.waitlist_reordered, payload)
    return ordered


def promote_waitlist(
    db: Session,
    notifier: Notifier,
    event_id: str,
    actor_user_id: str,
    max_to_promote: Optional[int] = None,
    now: Optional[datetime] = None,
) -> list[JoinRequest]:
    """Approve from the front of the waitlist while capacity allows; returns promoted requests."""
    event = store.get_event(db, event_id)
    _check_host(event, actor_user_id)

    results = waitlist_service.promote(
        db, event_id, max_to_promote=max_to_promote, actor_user_id=actor_user_id, now=now
    )
    if results:
        dispatch(
            notifier,
            NotificationKind.waitlist_promoted,
            {
                "event_id": event_id,
                "host_id": event.host_id,
                "actor_user_id": actor_user_id,
                "promoted": [
                    request_payload(result.request, RequestStatus.waitlisted.value, host_id=event.host_id)
                    for result in results
                ],
            },
        )
    return [result.request for result in results]
