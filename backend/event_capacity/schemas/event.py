"""Pydantic schemas for event capacity."""
from typing import Optional
from pydantic import BaseModel


class AvailabilityOut(BaseModel):
    total: Optional[int] = None  # None = unbounded
    confirmed: int
    held: int
    available: Optional[int] = None  # may be negative under contention
