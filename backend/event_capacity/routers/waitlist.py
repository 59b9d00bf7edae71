"""Waitlist API routes — host ordering and promotion."""
import logging
from typing import Optional
from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session

from event_capacity.database import get_db
from event_capacity.schemas.join_request import JoinRequestOut, PromotePayload, PromoteResult, WaitlistReorder
from event_capacity.services import request_service
from event_capacity.services.notifier import Notifier, get_notifier

logger = logging.getLogger(__name__)
router = APIRouter()


@router.get("/{event_id}/waitlist", response_model=list[JoinRequestOut])
def list_waitlist(event_id: str, actor_user_id: str = Query(...), db: Session = Depends(get_db)):
    """Waitlisted requests in promotion order."""
    return request_service.list_waitlist(db, event_id, actor_user_id)


@router.post("/{event_id}/waitlist/promote", response_model=PromoteResult)
def promote_waitlist(
    event_id: str,
    payload: Optional[PromotePayload] = None,
    actor_user_id: str = Query(...),
    db: Session = Depends(get_db),
    notifier: Notifier = Depends(get_notifier),
):
    """Approve from the front of the waitlist until the next party no longer fits."""
    promoted = request_service.promote_waitlist(
        db, notifier, event_id, actor_user_id,
        max_to_promote=(payload or PromotePayload()).max_to_promote,
    )
    return {"promoted_count": len(promoted), "promoted": promoted}


@router.post("/{event_id}/waitlist/{request_id}/reorder", response_model=list[JoinRequestOut])
def reorder_waitlist(
    event_id: str,
    request_id: str,
    payload: WaitlistReorder,
    actor_user_id: str = Query(...),
    db: Session = Depends(get_db),
    notifier: Notifier = Depends(get_notifier),
):
    """Move one entry to a 1-based position; returns the renumbered waitlist."""
    return request_service.reorder_waitlist(
        db, notifier, event_id, request_id, payload.position, actor_user_id
    )
