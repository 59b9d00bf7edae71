"""RequestTransition ORM model — append-only ledger of every committed join request change."""
import uuid
import enum
from sqlalchemy import Column, String, DateTime, JSON, ForeignKey, Enum as SAEnum
from event_capacity.database import Base, utcnow


class TransitionAction(str, enum.Enum):
    create = "create"
    approve = "approve"
    decline = "decline"
    waitlist = "waitlist"
    cancel = "cancel"
    expire = "expire"
    extend_hold = "extend_hold"
    reorder = "reorder"
    promote = "promote"


class RequestTransition(Base):
    __tablename__ = "request_transitions"

    transition_id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    request_id = Column(String(36), ForeignKey("join_requests.request_id"), nullable=False, index=True)
    event_id = Column(String(36), ForeignKey("events.event_id"), nullable=False)
    actor_user_id = Column(String(36), nullable=True)  # NULL for the sweeper
    action = Column(SAEnum(TransitionAction, native_enum=False, length=20), nullable=False)
    from_status = Column(String(20), nullable=True)
    to_status = Column(String(20), nullable=False)
    details = Column(JSON, nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)
