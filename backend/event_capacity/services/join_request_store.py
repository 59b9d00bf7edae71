"""Join request store — the only code path that writes status, holds, or waitlist positions.

Every change is a compare-and-swap inside one transaction:

1. lock the event row (``SELECT ... FOR UPDATE``; SQLite serializes writers instead)
2. ``UPDATE join_requests ... WHERE request_id = :id AND status = :expected``
3. rowcount 0 → diagnose and raise, rowcount 1 → continue
4. capacity check + participant insert for approvals, ledger row for everything
5. commit, or roll the whole unit back on any exception

The status write happens before the capacity read so that, on either backend,
the read runs while this transaction already holds the write lock.
"""
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Optional

from sqlalchemy import func, or_
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from event_capacity.config import settings
from event_capacity.database import utcnow, as_utc
from event_capacity.errors import (
    CapacityExceeded,
    DuplicateActiveRequest,
    EventNotAcceptingRequests,
    EventNotFound,
    HoldExpired,
    InvalidTransition,
    RequestNotFound,
    ValidationError,
)
from event_capacity.models.event import Event, EventStatus
from event_capacity.models.join_request import JoinRequest, RequestStatus, ACTIVE_STATUSES
from event_capacity.models.participant import EventParticipant, ParticipantStatus
from event_capacity.models.request_transition import RequestTransition, TransitionAction
from event_capacity.services.availability_service import compute_availability

logger = logging.getLogger(__name__)

ALLOWED_TRANSITIONS: dict[RequestStatus, frozenset[RequestStatus]] = {
    RequestStatus.pending: frozenset({
        RequestStatus.approved,
        RequestStatus.declined,
        RequestStatus.waitlisted,
        RequestStatus.expired,
        RequestStatus.cancelled,
    }),
    RequestStatus.waitlisted: frozenset({RequestStatus.approved, RequestStatus.declined}),
}

_DEFAULT_ACTIONS = {
    RequestStatus.approved: TransitionAction.approve,
    RequestStatus.declined: TransitionAction.decline,
    RequestStatus.waitlisted: TransitionAction.waitlist,
    RequestStatus.expired: TransitionAction.expire,
    RequestStatus.cancelled: TransitionAction.cancel,
}


@dataclass
class TransitionResult:
    request: JoinRequest
    old_status: Optional[RequestStatus]
    event: Event


def get_request(db: Session, request_id: str) -> JoinRequest:
    """Fetch a request, always re-reading the row rather than trusting the identity map."""
    request = (
        db.query(JoinRequest)
        .filter(JoinRequest.request_id == request_id)
        .populate_existing()
        .first()
    )
    if request is None:
        raise RequestNotFound(request_id)
    return request


def get_event(db: Session, event_id: str) -> Event:
    event = db.query(Event).filter(Event.event_id == event_id).first()
    if event is None:
        raise EventNotFound(event_id)
    return event


def lock_event(db: Session, event_id: str) -> Event:
    """Serialize capacity decisions and waitlist renumbering for one event."""
    event = (
        db.query(Event)
        .filter(Event.event_id == event_id)
        .with_for_update()
        .populate_existing()
        .first()
    )
    if event is None:
        raise EventNotFound(event_id)
    return event


def record_transition(
    db: Session,
    request: JoinRequest,
    action: TransitionAction,
    from_status: Optional[RequestStatus],
    to_status: RequestStatus,
    actor_user_id: Optional[str] = None,
    details: Optional[dict[str, Any]] = None,
    now: Optional[datetime] = None,
) -> RequestTransition:
    """Append a ledger row; callers commit it together with the change itself."""
    entry = RequestTransition(
        request_id=request.request_id,
        event_id=request.event_id,
        actor_user_id=actor_user_id,
        action=action,
        from_status=from_status.value if from_status else None,
        to_status=to_status.value,
        details=details,
        created_at=now or utcnow(),
    )
    db.add(entry)
    return entry


_ACTIVE_REQUEST_CONFLICT_MARKERS = (
    "uq_join_requests_active_per_user",
    "join_requests.event_id, join_requests.user_id",
)


def _is_active_request_conflict(exc: IntegrityError) -> bool:
    """True when the violated constraint is the one-active-request-per-user index."""
    message = str(exc.orig)
    return any(marker in message for marker in _ACTIVE_REQUEST_CONFLICT_MARKERS)


def validate_new_request(party_size: int, note: Optional[str]) -> None:
    if party_size is None or party_size < 1:
        raise ValidationError("party_size must be at least 1", field="party_size")
    if note is not None and len(note) > settings.NOTE_MAX_LENGTH:
        raise ValidationError(
            f"note must be at most {settings.NOTE_MAX_LENGTH} characters", field="note"
        )


def insert_request(
    db: Session,
    event_id: str,
    user_id: str,
    party_size: int,
    note: Optional[str] = None,
    hold_minutes: Optional[int] = None,
    now: Optional[datetime] = None,
) -> TransitionResult:
    """Create a pending request holding ``party_size`` seats until the hold lapses."""
    validate_new_request(party_size, note)
    now = now or utcnow()
    if hold_minutes is None:
        hold_minutes = settings.JOIN_HOLD_TTL_MIN
    if hold_minutes < 1:
        raise ValidationError("hold_minutes must be at least 1", field="hold_minutes")

    try:
        event = lock_event(db, event_id)
        if event.status != EventStatus.published:
            raise EventNotAcceptingRequests(event_id, event.status.value)

        existing = (
            db.query(JoinRequest.request_id)
            .filter(
                JoinRequest.event_id == event_id,
                JoinRequest.user_id == user_id,
                JoinRequest.status.in_(list(ACTIVE_STATUSES)),
            )
            .first()
        )
        if existing:
            raise DuplicateActiveRequest(event_id, user_id)

        participant = (
            db.query(EventParticipant)
            .filter(
                EventParticipant.event_id == event_id,
                EventParticipant.user_id == user_id,
                EventParticipant.status == ParticipantStatus.accepted,
            )
            .first()
        )
        if participant:
            raise DuplicateActiveRequest(event_id, user_id, reason="an accepted participation")

        request = JoinRequest(
            event_id=event_id,
            user_id=user_id,
            party_size=party_size,
            note=note,
            status=RequestStatus.pending,
            hold_expires_at=now + timedelta(minutes=hold_minutes),
            created_at=now,
            updated_at=now,
        )
        db.add(request)
        db.flush()

        record_transition(
            db, request, TransitionAction.create, None, RequestStatus.pending,
            actor_user_id=user_id,
            details={"party_size": party_size, "hold_minutes": hold_minutes},
            now=now,
        )
        db.commit()
    except IntegrityError as exc:
        db.rollback()
        if _is_active_request_conflict(exc):
            # Lost the race on the active-request unique index.
            raise DuplicateActiveRequest(event_id, user_id) from exc
        logger.error("Integrity error creating join request for event %s: %s", event_id, exc.orig)
        raise
    except Exception:
        db.rollback()
        raise

    db.refresh(request)
    logger.info(
        "Join request %s created for event %s by user %s (party %d, hold until %s)",
        request.request_id, event_id, user_id, party_size, request.hold_expires_at,
    )
    return TransitionResult(request=request, old_status=None, event=event)


def _diagnose(
    db: Session,
    request_id: str,
    expected: RequestStatus,
    target: RequestStatus,
    now: datetime,
) -> Exception:
    """Explain why a conditional update matched no row."""
    row = (
        db.query(JoinRequest.status, JoinRequest.hold_expires_at)
        .filter(JoinRequest.request_id == request_id)
        .first()
    )
    if row is None:
        return RequestNotFound(request_id)

    actual, hold = row[0], as_utc(row[1])
    if actual != expected:
        return InvalidTransition(expected.value, actual.value, target=target.value)
    if target == RequestStatus.expired:
        return InvalidTransition(expected.value, actual.value, target=target.value, reason="hold has not expired yet")
    if hold is not None and hold <= now:
        return HoldExpired(target.value, hold.isoformat())
    return InvalidTransition(
        expected.value, actual.value, target=target.value, reason="request changed concurrently"
    )


def _next_waitlist_pos(db: Session, event_id: str) -> int:
    current = (
        db.query(func.max(JoinRequest.waitlist_pos))
        .filter(JoinRequest.event_id == event_id, JoinRequest.status == RequestStatus.waitlisted)
        .scalar()
    )
    return (current or 0) + 1


def _confirm_participant(db: Session, event: Event, request: JoinRequest, now: datetime) -> dict[str, Any]:
    """Capacity check + participant insert. Runs after the status write, same transaction.

    The request's own hold was released by the status write, so ``held`` here
    only counts other pending requests.
    """
    details: dict[str, Any] = {}
    if event.capacity_total is not None:
        snapshot = compute_availability(db, event.event_id, now)
        if not snapshot.fits(request.party_size):
            raise CapacityExceeded(required=request.party_size, available=snapshot.available)
        details["available_before"] = snapshot.available

    participant = (
        db.query(EventParticipant)
        .filter(EventParticipant.event_id == event.event_id, EventParticipant.user_id == request.user_id)
        .first()
    )
    if participant is None:
        db.add(EventParticipant(
            event_id=event.event_id,
            user_id=request.user_id,
            status=ParticipantStatus.accepted,
            party_size=request.party_size,
            joined_at=now,
        ))
    elif participant.status == ParticipantStatus.accepted:
        raise DuplicateActiveRequest(event.event_id, request.user_id, reason="an accepted participation")
    else:
        participant.status = ParticipantStatus.accepted
        participant.party_size = request.party_size
        participant.joined_at = now
    db.flush()
    return details


def transition(
    db: Session,
    request_id: str,
    to_status: RequestStatus,
    expected_status: RequestStatus,
    actor_user_id: Optional[str] = None,
    action: Optional[TransitionAction] = None,
    now: Optional[datetime] = None,
) -> TransitionResult:
    """Atomically move a request from ``expected_status`` to ``to_status``.

    Raises InvalidTransition if the stored status is not ``expected_status`` or
    the move is not in the state machine, CapacityExceeded if an approval does
    not fit, RequestNotFound if the row does not exist. On any error nothing is
    written.
    """
    now = now or utcnow()
    to_status = RequestStatus(to_status)
    expected_status = RequestStatus(expected_status)

    request = get_request(db, request_id)
    if to_status not in ALLOWED_TRANSITIONS.get(expected_status, frozenset()):
        raise InvalidTransition(
            expected_status.value, request.status.value, target=to_status.value, reason="not a legal transition"
        )

    try:
        event = lock_event(db, request.event_id)

        conditions = [JoinRequest.request_id == request_id, JoinRequest.status == expected_status]
        if to_status == RequestStatus.expired:
            conditions += [JoinRequest.hold_expires_at.isnot(None), JoinRequest.hold_expires_at <= now]
        elif to_status == RequestStatus.cancelled:
            conditions.append(or_(JoinRequest.hold_expires_at.is_(None), JoinRequest.hold_expires_at > now))

        updated = (
            db.query(JoinRequest)
            .filter(*conditions)
            .update(
                {
                    JoinRequest.status: to_status,
                    JoinRequest.hold_expires_at: None,
                    JoinRequest.waitlist_pos: None,
                    JoinRequest.updated_at: now,
                },
                synchronize_session=False,
            )
        )
        if updated != 1:
            raise _diagnose(db, request_id, expected_status, to_status, now)

        details: dict[str, Any] = {}
        if to_status == RequestStatus.waitlisted:
            position = _next_waitlist_pos(db, event.event_id)
            db.query(JoinRequest).filter(JoinRequest.request_id == request_id).update(
                {JoinRequest.waitlist_pos: position}, synchronize_session=False
            )
            details["waitlist_pos"] = position
        elif to_status == RequestStatus.approved:
            details.update(_confirm_participant(db, event, request, now))

        record_transition(
            db, request, action or _DEFAULT_ACTIONS[to_status], expected_status, to_status,
            actor_user_id=actor_user_id, details=details or None, now=now,
        )
        db.commit()
    except Exception:
        db.rollback()
        raise

    db.refresh(request)
    logger.info(
        "Join request %s: %s -> %s (actor %s)",
        request_id, expected_status.value, to_status.value, actor_user_id or "system",
    )
    return TransitionResult(request=request, old_status=expected_status, event=event)


def extend_hold(
    db: Session,
    request_id: str,
    extension_minutes: int,
    actor_user_id: Optional[str] = None,
    now: Optional[datetime] = None,
) -> TransitionResult:
    """Push a live hold further out; same status-checked write path as a transition."""
    now = now or utcnow()
    request = get_request(db, request_id)
    if request.status != RequestStatus.pending:
        raise InvalidTransition(
            RequestStatus.pending.value, request.status.value,
            target=RequestStatus.pending.value, reason="only pending holds can be extended",
        )

    stored_hold = request.hold_expires_at
    current = as_utc(stored_hold)
    if current is not None and current <= now:
        raise HoldExpired(RequestStatus.pending.value, current.isoformat())
    new_hold = (current or now) + timedelta(minutes=extension_minutes)

    try:
        lock_event(db, request.event_id)

        conditions = [JoinRequest.request_id == request_id, JoinRequest.status == RequestStatus.pending]
        if stored_hold is None:
            conditions.append(JoinRequest.hold_expires_at.is_(None))
        else:
            conditions += [JoinRequest.hold_expires_at == stored_hold, JoinRequest.hold_expires_at > now]

        updated = (
            db.query(JoinRequest)
            .filter(*conditions)
            .update(
                {JoinRequest.hold_expires_at: new_hold, JoinRequest.updated_at: now},
                synchronize_session=False,
            )
        )
        if updated != 1:
            raise _diagnose(db, request_id, RequestStatus.pending, RequestStatus.pending, now)

        record_transition(
            db, request, TransitionAction.extend_hold, RequestStatus.pending, RequestStatus.pending,
            actor_user_id=actor_user_id,
            details={
                "extension_minutes": extension_minutes,
                "previous_hold_expires_at": current.isoformat() if current else None,
                "hold_expires_at": new_hold.isoformat(),
            },
            now=now,
        )
        db.commit()
    except Exception:
        db.rollback()
        raise

    db.refresh(request)
    logger.info("Hold for join request %s extended by %d min to %s", request_id, extension_minutes, new_hold)
    return TransitionResult(request=request, old_status=RequestStatus.pending, event=get_event(db, request.event_id))


def list_requests(
    db: Session,
    event_id: str,
    status: Optional[RequestStatus] = None,
    limit: int = 25,
    offset: int = 0,
) -> tuple[list[JoinRequest], int]:
    """Newest first; returns (page, total_count)."""
    query = db.query(JoinRequest).filter(JoinRequest.event_id == event_id)
    if status is not None:
        query = query.filter(JoinRequest.status == status)
    total = query.count()
    page = (
        query.order_by(JoinRequest.created_at.desc(), JoinRequest.request_id)
        .offset(offset)
        .limit(limit)
        .all()
    )
    return page, total
