"""Maintenance routes — on-demand sweep for cron-driven deployments."""
import logging
from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from event_capacity.database import get_db
from event_capacity.schemas.join_request import SweepResult
from event_capacity.services.hold_sweeper import run_sweep
from event_capacity.services.notifier import Notifier, get_notifier

logger = logging.getLogger(__name__)
router = APIRouter()


@router.post("/expire-holds", response_model=SweepResult)
def expire_holds(db: Session = Depends(get_db), notifier: Notifier = Depends(get_notifier)):
    """Run one sweeper tick now. Safe alongside the scheduled job."""
    result = run_sweep(db, notifier)
    logger.info("Manual hold sweep: %d expired, %d warned", result["expired"], result["warned"])
    return result
