"""Hold expiry sweeper — releases pending holds nobody decided in time.

Eligibility is derived purely from ``hold_expires_at``, so the sweep is
idempotent, survives restarts, and can run from several instances at once:
each row goes through the store's compare-and-swap and expires at most once.
"""
import logging
from datetime import datetime, timedelta
from typing import Optional

from sqlalchemy.orm import Session

from event_capacity.config import settings
from event_capacity.database import utcnow
from event_capacity.errors import InvalidTransition, RequestNotFound, ValidationError
from event_capacity.models.join_request import JoinRequest, RequestStatus
from event_capacity.services import join_request_store as store
from event_capacity.services.notifier import Notifier, NotificationKind, dispatch, request_payload

logger = logging.getLogger(__name__)


def _lapsed_batch(db: Session, now: datetime, batch_size: int, skipped: set[str]) -> list[str]:
    query = db.query(JoinRequest.request_id).filter(
        JoinRequest.status == RequestStatus.pending,
        JoinRequest.hold_expires_at.isnot(None),
        JoinRequest.hold_expires_at <= now,
    )
    if skipped:
        query = query.filter(JoinRequest.request_id.notin_(list(skipped)))
    return [
        row[0]
        for row in (
            query
            .order_by(JoinRequest.hold_expires_at, JoinRequest.request_id)
            .limit(batch_size)
            .all()
        )
    ]


def expire_stale_holds(
    db: Session,
    notifier: Optional[Notifier] = None,
    now: Optional[datetime] = None,
    batch_size: Optional[int] = None,
) -> int:
    """Expire every pending request whose hold is at or past ``now``. Returns rows actually expired.

    Candidates are read ``batch_size`` at a time until none are left, so a
    single call drains the backlog without loading it all at once.
    """
    if now is None:
        now = utcnow()
    if batch_size is None:
        batch_size = settings.SWEEP_BATCH_SIZE
    if batch_size < 1:
        raise ValidationError("batch_size must be at least 1", field="batch_size")

    expired = 0
    seen = 0
    skipped: set[str] = set()
    while True:
        candidate_ids = _lapsed_batch(db, now, batch_size, skipped)
        seen += len(candidate_ids)

        for request_id in candidate_ids:
            try:
                result = store.transition(db, request_id, RequestStatus.expired, RequestStatus.pending, now=now)
            except (InvalidTransition, RequestNotFound) as exc:
                # Changed by someone else since the SELECT.
                logger.debug("Skipping hold expiry for %s: %s", request_id, exc)
                skipped.add(request_id)
                continue
            expired += 1
            if notifier is not None:
                dispatch(
                    notifier,
                    NotificationKind.hold_expired,
                    request_payload(result.request, RequestStatus.pending.value, host_id=result.event.host_id),
                )
        if len(candidate_ids) < batch_size:
            break

    if seen:
        logger.info("Hold sweep: %d of %d candidate(s) expired", expired, seen)
    return expired


def warn_expiring_holds(
    db: Session,
    notifier: Notifier,
    now: Optional[datetime] = None,
    lead_minutes: Optional[int] = None,
    window_seconds: Optional[int] = None,
) -> int:
    """Raise ``hold_expiring_soon`` for holds crossing the warning lead time during this sweep interval.

    Informational only: nothing is written. Each hold falls into exactly one
    window when sweeps run on schedule, so no per-row "warned" flag is needed.
    """
    if now is None:
        now = utcnow()
    if lead_minutes is None:
        lead_minutes = settings.HOLD_EXPIRING_SOON_MIN
    if window_seconds is None:
        window_seconds = settings.SWEEP_INTERVAL_SECONDS
    lead = timedelta(minutes=lead_minutes)
    window = timedelta(seconds=window_seconds)

    expiring = (
        db.query(JoinRequest)
        .filter(
            JoinRequest.status == RequestStatus.pending,
            JoinRequest.hold_expires_at > now + lead - window,
            JoinRequest.hold_expires_at <= now + lead,
        )
        .order_by(JoinRequest.hold_expires_at)
        .all()
    )
    for request in expiring:
        payload = request_payload(request, RequestStatus.pending.value)
        payload["minutes_left"] = int(lead.total_seconds() // 60)
        dispatch(notifier, NotificationKind.hold_expiring_soon, payload)
    return len(expiring)


def run_sweep(db: Session, notifier: Notifier, now: Optional[datetime] = None) -> dict[str, int]:
    """One sweeper tick: expire stale holds, then warn about holds about to lapse."""
    now = now or utcnow()
    expired = expire_stale_holds(db, notifier=notifier, now=now)
    warned = warn_expiring_holds(db, notifier, now=now)
    return {"expired": expired, "warned": warned}
