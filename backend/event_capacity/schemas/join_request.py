"""Pydantic schemas for join requests and the waitlist."""
from datetime import datetime
from typing import Optional
from pydantic import BaseModel


class JoinRequestCreate(BaseModel):
    user_id: str
    party_size: int = 1
    note: Optional[str] = None


class JoinRequestOut(BaseModel):
    request_id: str
    event_id: str
    user_id: str
    party_size: int
    note: Optional[str] = None
    status: str
    hold_expires_at: Optional[datetime] = None
    waitlist_pos: Optional[int] = None
    created_at: datetime
    updated_at: datetime

    model_config = {"from_attributes": True}


class PaginatedJoinRequests(BaseModel):
    data: list[JoinRequestOut]
    next_offset: Optional[int] = None
    total_count: int


class DecisionPayload(BaseModel):
    expected_status: str = "pending"  # the status the host last saw


class HoldExtension(BaseModel):
    extension_minutes: Optional[int] = None


class WaitlistReorder(BaseModel):
    position: int


class PromotePayload(BaseModel):
    max_to_promote: Optional[int] = None


class PromoteResult(BaseModel):
    promoted_count: int
    promoted: list[JoinRequestOut]


class SweepResult(BaseModel):
    expired: int
    warned: int
