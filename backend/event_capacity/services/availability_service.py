"""Availability calculator — total, confirmed, held and available seats for one event."""
import logging
from dataclasses import dataclass, asdict
from datetime import datetime
from typing import Any, Optional

from sqlalchemy import func
from sqlalchemy.orm import Session

from event_capacity.database import utcnow
from event_capacity.errors import EventNotFound
from event_capacity.models.event import Event
from event_capacity.models.join_request import JoinRequest, RequestStatus
from event_capacity.models.participant import EventParticipant, ParticipantStatus

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Availability:
    total: Optional[int]
    confirmed: int
    held: int
    available: Optional[int]

    @property
    def bounded(self) -> bool:
        return self.total is not None

    def fits(self, party_size: int) -> bool:
        return self.available is None or party_size <= self.available

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


def compute_availability(db: Session, event_id: str, now: Optional[datetime] = None) -> Availability:
    """Return the capacity snapshot for an event.

    Confirmed and held are scalar subqueries of a single SELECT, so both are
    evaluated against the same snapshot and the same ``now``. A hold expiring
    between two round-trips can't be counted twice or dropped.

    ``available`` is deliberately not clamped: concurrent holds may push it
    below zero and hosts need to see that. It is ``None`` for unbounded events.
    """
    now = now or utcnow()

    confirmed = (
        db.query(func.coalesce(func.sum(EventParticipant.party_size), 0))
        .filter(
            EventParticipant.event_id == event_id,
            EventParticipant.status == ParticipantStatus.accepted,
        )
        .scalar_subquery()
    )
    held = (
        db.query(func.coalesce(func.sum(JoinRequest.party_size), 0))
        .filter(
            JoinRequest.event_id == event_id,
            JoinRequest.status == RequestStatus.pending,
            JoinRequest.hold_expires_at.isnot(None),
            JoinRequest.hold_expires_at > now,
        )
        .scalar_subquery()
    )

    row = (
        db.query(Event.capacity_total, confirmed.label("confirmed"), held.label("held"))
        .filter(Event.event_id == event_id)
        .first()
    )
    if row is None:
        raise EventNotFound(event_id)

    total, confirmed_count, held_count = row[0], int(row[1] or 0), int(row[2] or 0)
    available = None if total is None else total - confirmed_count - held_count

    logger.debug(
        "Availability for event %s: total=%s confirmed=%d held=%d available=%s",
        event_id, total, confirmed_count, held_count, available,
    )
    return Availability(total=total, confirmed=confirmed_count, held=held_count, available=available)
