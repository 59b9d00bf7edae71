"""Event capacity routes."""
import logging
from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from event_capacity.database import get_db
from event_capacity.schemas.event import AvailabilityOut
from event_capacity.services import request_service

logger = logging.getLogger(__name__)
router = APIRouter()


@router.get("/{event_id}/availability", response_model=AvailabilityOut)
def get_availability(event_id: str, db: Session = Depends(get_db)):
    """Seats total / confirmed / held / available. ``available`` may be negative."""
    return request_service.get_availability(db, event_id).to_dict()
