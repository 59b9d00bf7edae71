"""JoinRequest ORM model — a guest's request for a seat, with its capacity hold."""
import uuid
import enum
from sqlalchemy import (
    Column, String, Text, Integer, DateTime, ForeignKey, CheckConstraint, Index, text, Enum as SAEnum,
)
from event_capacity.database import Base, utcnow


class RequestStatus(str, enum.Enum):
    pending = "pending"
    approved = "approved"
    declined = "declined"
    waitlisted = "waitlisted"
    expired = "expired"
    cancelled = "cancelled"


TERMINAL_STATUSES = frozenset({RequestStatus.declined, RequestStatus.expired, RequestStatus.cancelled})

# A user may hold one of these per event at a time. Approved counts: the user is already in.
ACTIVE_STATUSES = frozenset({RequestStatus.pending, RequestStatus.waitlisted, RequestStatus.approved})

_ACTIVE_WHERE = text("status IN ('pending', 'waitlisted', 'approved')")


class JoinRequest(Base):
    __tablename__ = "join_requests"
    __table_args__ = (
        CheckConstraint("party_size >= 1", name="ck_join_requests_party_size_positive"),
        Index("ix_join_requests_event_status", "event_id", "status"),
        Index("ix_join_requests_waitlist", "event_id", "status", "waitlist_pos", "created_at"),
        Index(
            "ix_join_requests_pending_hold",
            "hold_expires_at",
            postgresql_where=text("status = 'pending' AND hold_expires_at IS NOT NULL"),
        ),
        Index(
            "uq_join_requests_active_per_user",
            "event_id",
            "user_id",
            unique=True,
            postgresql_where=_ACTIVE_WHERE,
            sqlite_where=_ACTIVE_WHERE,
        ),
    )

    request_id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    event_id = Column(String(36), ForeignKey("events.event_id"), nullable=False)
    user_id = Column(String(36), nullable=False)
    party_size = Column(Integer, nullable=False)
    note = Column(Text, nullable=True)
    status = Column(SAEnum(RequestStatus, native_enum=False, length=20), nullable=False, default=RequestStatus.pending)
    hold_expires_at = Column(DateTime(timezone=True), nullable=True)  # only while pending
    waitlist_pos = Column(Integer, nullable=True)  # only while waitlisted
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)
