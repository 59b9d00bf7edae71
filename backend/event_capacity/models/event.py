"""Event ORM model — owned by the event store, read-only to the reservation core."""
import uuid
import enum
from sqlalchemy import Column, String, DateTime, Integer, CheckConstraint, Enum as SAEnum
from sqlalchemy.sql import func
from sqlalchemy.orm import relationship
from event_capacity.database import Base


class EventStatus(str, enum.Enum):
    draft = "draft"
    published = "published"
    cancelled = "cancelled"
    completed = "completed"


class Event(Base):
    __tablename__ = "events"
    __table_args__ = (
        CheckConstraint("capacity_total IS NULL OR capacity_total >= 0", name="ck_events_capacity_total"),
    )

    event_id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    host_id = Column(String(36), nullable=False)
    title = Column(String(255), nullable=False)
    capacity_total = Column(Integer, nullable=True)  # NULL = unbounded
    status = Column(SAEnum(EventStatus, native_enum=False, length=20), nullable=False, default=EventStatus.draft)
    created_at = Column(DateTime(timezone=True), server_default=func.now())

    participants = relationship("EventParticipant", back_populates="event", cascade="all, delete-orphan")
