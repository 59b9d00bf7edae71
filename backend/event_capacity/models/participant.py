"""EventParticipant ORM model — confirmed attendance, written by the core on approval."""
import enum
from sqlalchemy import Column, String, Integer, DateTime, ForeignKey, CheckConstraint, Enum as SAEnum
from sqlalchemy.orm import relationship
from event_capacity.database import Base, utcnow


class ParticipantStatus(str, enum.Enum):
    accepted = "accepted"
    left = "left"


class EventParticipant(Base):
    __tablename__ = "event_participants"
    __table_args__ = (
        CheckConstraint("party_size >= 1", name="ck_participants_party_size_positive"),
    )

    event_id = Column(String(36), ForeignKey("events.event_id"), primary_key=True)
    user_id = Column(String(36), primary_key=True)
    status = Column(SAEnum(ParticipantStatus, native_enum=False, length=20), nullable=False, default=ParticipantStatus.accepted)
    party_size = Column(Integer, nullable=False, default=1)
    joined_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)

    event = relationship("Event", back_populates="participants")
