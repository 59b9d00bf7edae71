"""Join request API routes — guest requests, host decisions.

Routes delegate to request_service; domain errors propagate to the handler
registered in main.py. Actor identity arrives as ``actor_user_id`` because
authentication is handled upstream.
"""
import logging
from typing import Optional
from fastapi import APIRouter, Depends, Query, status
from sqlalchemy.orm import Session

from event_capacity.database import get_db
from event_capacity.errors import ValidationError
from event_capacity.models.join_request import RequestStatus
from event_capacity.schemas.join_request import (
    DecisionPayload,
    HoldExtension,
    JoinRequestCreate,
    JoinRequestOut,
    PaginatedJoinRequests,
)
from event_capacity.services import request_service
from event_capacity.services.notifier import Notifier, get_notifier

logger = logging.getLogger(__name__)
router = APIRouter()


def _parse_status(value: Optional[str], field: str) -> Optional[RequestStatus]:
    if value is None:
        return None
    try:
        return RequestStatus(value)
    except ValueError:
        raise ValidationError(f"Invalid request status: {value}", field=field)


@router.post("/{event_id}/requests", response_model=JoinRequestOut, status_code=status.HTTP_201_CREATED)
def create_join_request(
    event_id: str,
    payload: JoinRequestCreate,
    db: Session = Depends(get_db),
    notifier: Notifier = Depends(get_notifier),
):
    """Guest requests to join; a pending request holds capacity until decided or expired."""
    return request_service.create_request(
        db, notifier, event_id, payload.user_id, payload.party_size, payload.note
    )


@router.get("/{event_id}/requests", response_model=PaginatedJoinRequests)
def list_join_requests(
    event_id: str,
    actor_user_id: str = Query(..., description="Host user ID"),
    status_filter: Optional[str] = Query(None, alias="status"),
    limit: int = Query(25, ge=1, le=100),
    offset: int = Query(0, ge=0),
    db: Session = Depends(get_db),
):
    """Host-only paginated listing, newest first."""
    items, total = request_service.list_requests(
        db, event_id, actor_user_id,
        status=_parse_status(status_filter, "status"), limit=limit, offset=offset,
    )
    next_offset = offset + limit if offset + limit < total else None
    return {"data": items, "next_offset": next_offset, "total_count": total}


@router.get("/{event_id}/requests/{request_id}", response_model=JoinRequestOut)
def get_join_request(
    event_id: str,
    request_id: str,
    actor_user_id: str = Query(...),
    db: Session = Depends(get_db),
):
    return request_service.get_request(db, event_id, request_id, actor_user_id)


@router.post("/{event_id}/requests/{request_id}/approve", response_model=JoinRequestOut)
def approve_join_request(
    event_id: str,
    request_id: str,
    payload: Optional[DecisionPayload] = None,
    actor_user_id: str = Query(...),
    db: Session = Depends(get_db),
    notifier: Notifier = Depends(get_notifier),
):
    """Approve atomically against capacity. 409 on stale status or insufficient capacity."""
    expected = _parse_status((payload or DecisionPayload()).expected_status, "expected_status")
    return request_service.approve_request(
        db, notifier, event_id, request_id, actor_user_id, expected_status=expected
    )


@router.post("/{event_id}/requests/{request_id}/decline", response_model=JoinRequestOut)
def decline_join_request(
    event_id: str,
    request_id: str,
    payload: Optional[DecisionPayload] = None,
    actor_user_id: str = Query(...),
    db: Session = Depends(get_db),
    notifier: Notifier = Depends(get_notifier),
):
    expected = _parse_status((payload or DecisionPayload()).expected_status, "expected_status")
    return request_service.decline_request(
        db, notifier, event_id, request_id, actor_user_id, expected_status=expected
    )


@router.post("/{event_id}/requests/{request_id}/waitlist", response_model=JoinRequestOut)
def waitlist_join_request(
    event_id: str,
    request_id: str,
    actor_user_id: str = Query(...),
    db: Session = Depends(get_db),
    notifier: Notifier = Depends(get_notifier),
):
    """Move a pending request to the tail of the waitlist."""
    return request_service.waitlist_request(db, notifier, event_id, request_id, actor_user_id)


@router.post("/{event_id}/requests/{request_id}/cancel", response_model=JoinRequestOut)
def cancel_join_request(
    event_id: str,
    request_id: str,
    actor_user_id: str = Query(..., description="Requesting guest's user ID"),
    db: Session = Depends(get_db),
    notifier: Notifier = Depends(get_notifier),
):
    """Guest cancels their own pending request."""
    return request_service.cancel_own_request(db, notifier, event_id, request_id, actor_user_id)


@router.post("/{event_id}/requests/{request_id}/extend-hold", response_model=JoinRequestOut)
def extend_join_request_hold(
    event_id: str,
    request_id: str,
    payload: Optional[HoldExtension] = None,
    actor_user_id: str = Query(...),
    db: Session = Depends(get_db),
    notifier: Notifier = Depends(get_notifier),
):
    return request_service.extend_hold(
        db, notifier, event_id, request_id, actor_user_id,
        extension_minutes=(payload or HoldExtension()).extension_minutes,
    )
