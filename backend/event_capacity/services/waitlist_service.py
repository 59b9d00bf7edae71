"""Waitlist manager — ordering and strict-FIFO promotion of waitlisted requests."""
import logging
from datetime import datetime
from typing import Optional

from sqlalchemy.orm import Session

from event_capacity.database import utcnow
from event_capacity.errors import (
    CapacityExceeded,
    DuplicateActiveRequest,
    InvalidTransition,
    RequestNotFound,
    ValidationError,
)
from event_capacity.models.join_request import JoinRequest, RequestStatus
from event_capacity.models.request_transition import TransitionAction
from event_capacity.services import join_request_store as store

logger = logging.getLogger(__name__)

# Position first (unset positions last), then created_at, then id for a total order.
WAITLIST_ORDER = (
    JoinRequest.waitlist_pos.is_(None),
    JoinRequest.waitlist_pos,
    JoinRequest.created_at,
    JoinRequest.request_id,
)


def list_waitlist(db: Session, event_id: str) -> list[JoinRequest]:
    return (
        db.query(JoinRequest)
        .filter(JoinRequest.event_id == event_id, JoinRequest.status == RequestStatus.waitlisted)
        .order_by(*WAITLIST_ORDER)
        .populate_existing()
        .all()
    )


def reorder(
    db: Session,
    event_id: str,
    request_id: str,
    new_pos: int,
    actor_user_id: Optional[str] = None,
    now: Optional[datetime] = None,
) -> tuple[JoinRequest, int, list[JoinRequest]]:
    """Move one waitlisted request to a 1-based position, renumbering the event's waitlist densely.

    All affected rows are rewritten in one transaction under the event lock;
    each write is guarded on ``status = waitlisted`` so an entry decided
    concurrently aborts the whole renumber instead of corrupting it.

    Returns (moved request, its previous position, the new ordered waitlist).
    """
    now = now or utcnow()

    try:
        store.lock_event(db, event_id)
        entries = list_waitlist(db, event_id)

        target = next((entry for entry in entries if entry.request_id == request_id), None)
        if target is None:
            request = store.get_request(db, request_id)
            if request.event_id != event_id:
                raise RequestNotFound(request_id)
            raise InvalidTransition(
                RequestStatus.waitlisted.value, request.status.value,
                target=RequestStatus.waitlisted.value, reason="only waitlisted requests can be reordered",
            )
        if not 1 <= new_pos <= len(entries):
            raise ValidationError(
                f"position must be between 1 and {len(entries)}", field="position", size=len(entries)
            )

        old_pos = entries.index(target) + 1
        entries.remove(target)
        entries.insert(new_pos - 1, target)

        for position, entry in enumerate(entries, start=1):
            if entry.waitlist_pos == position:
                continue
            updated = (
                db.query(JoinRequest)
                .filter(
                    JoinRequest.request_id == entry.request_id,
                    JoinRequest.status == RequestStatus.waitlisted,
                )
                .update(
                    {JoinRequest.waitlist_pos: position, JoinRequest.updated_at: now},
                    synchronize_session=False,
                )
            )
            if updated != 1:
                current = store.get_request(db, entry.request_id)
                raise InvalidTransition(
                    RequestStatus.waitlisted.value, current.status.value,
                    target=RequestStatus.waitlisted.value, reason="waitlist changed concurrently",
                )

        store.record_transition(
            db, target, TransitionAction.reorder, RequestStatus.waitlisted, RequestStatus.waitlisted,
            actor_user_id=actor_user_id,
            details={"from_position": old_pos, "to_position": new_pos},
            now=now,
        )
        db.commit()
    except Exception:
        db.rollback()
        raise

    logger.info("Waitlist for event %s: request %s moved %d -> %d", event_id, request_id, old_pos, new_pos)
    ordered = list_waitlist(db, event_id)
    moved = next(entry for entry in ordered if entry.request_id == request_id)
    return moved, old_pos, ordered


def promote(
    db: Session,
    event_id: str,
    max_to_promote: Optional[int] = None,
    actor_user_id: Optional[str] = None,
    now: Optional[datetime] = None,
) -> list[store.TransitionResult]:
    """Approve waitlisted requests from the front until the head no longer fits.

    Strict FIFO: a smaller party further down is never approved ahead of a
    head that does not fit. The head is re-read before every attempt so host
    reorders and decisions made in the meantime are respected. Each promotion
    is its own atomic transition.
    """
    if max_to_promote is not None and max_to_promote < 1:
        raise ValidationError("max_to_promote must be at least 1", field="max_to_promote")
    store.get_event(db, event_id)

    promoted: list[store.TransitionResult] = []
    skipped: set[str] = set()

    while max_to_promote is None or len(promoted) < max_to_promote:
        head = next((entry for entry in list_waitlist(db, event_id) if entry.request_id not in skipped), None)
        if head is None:
            break
        try:
            result = store.transition(
                db, head.request_id, RequestStatus.approved, RequestStatus.waitlisted,
                actor_user_id=actor_user_id, action=TransitionAction.promote, now=now,
            )
        except CapacityExceeded as exc:
            logger.info(
                "Promotion for event %s stopped at request %s: need %d, have %d",
                event_id, head.request_id, exc.required, exc.available,
            )
            break
        except InvalidTransition:
            logger.info("Waitlisted request %s was decided concurrently; skipping", head.request_id)
            skipped.add(head.request_id)
            continue
        except DuplicateActiveRequest:
            logger.warning("User of request %s is already a participant; leaving it waitlisted", head.request_id)
            skipped.add(head.request_id)
            continue
        promoted.append(result)

    logger.info("Promoted %d request(s) from the waitlist of event %s", len(promoted), event_id)
    return promoted
