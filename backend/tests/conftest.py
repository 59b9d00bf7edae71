"""Pytest fixtures: file-backed SQLite database and data helpers."""
import os
import uuid
from datetime import datetime, timezone

os.environ["DATABASE_URL"] = "sqlite:///./test.db"
os.environ["SWEEPER_ENABLED"] = "false"

import pytest
from sqlalchemy import create_engine, event
from sqlalchemy.orm import sessionmaker
from fastapi.testclient import TestClient

from event_capacity.database import Base, get_db
from event_capacity.main import app
from event_capacity.services.notifier import get_notifier
from event_capacity.services import request_service

# Import all models so they register with Base.metadata
from event_capacity.models.event import Event, EventStatus                       # noqa: F401
from event_capacity.models.participant import EventParticipant, ParticipantStatus  # noqa: F401
from event_capacity.models.join_request import JoinRequest                        # noqa: F401
from event_capacity.models.request_transition import RequestTransition            # noqa: F401

SQLITE_URL = "sqlite:///./test.db"

HOST_ID = "host-0001"


class RecordingNotifier:
    """Notifier fake that keeps every (kind, payload) it is handed."""

    def __init__(self):
        self.events = []

    def notify(self, kind, payload):
        self.events.append((kind, payload))

    @property
    def kinds(self) -> list[str]:
        return [kind.value for kind, _ in self.events]

    def last(self):
        return self.events[-1]


class FailingNotifier:
    """Notifier fake that is always down."""

    def __init__(self):
        self.calls = 0

    def notify(self, kind, payload):
        self.calls += 1
        raise RuntimeError("notification provider unavailable")


@pytest.fixture(scope="function")
def db_engine():
    """Create a fresh SQLite engine for each test."""
    engine = create_engine(SQLITE_URL, connect_args={"check_same_thread": False})

    # Enable WAL mode for better concurrency
    @event.listens_for(engine, "connect")
    def _set_sqlite_pragma(dbapi_conn, connection_record):
        cursor = dbapi_conn.cursor()
        cursor.execute("PRAGMA journal_mode=WAL")
        cursor.close()

    Base.metadata.create_all(bind=engine)
    yield engine
    Base.metadata.drop_all(bind=engine)
    engine.dispose()


@pytest.fixture(scope="function")
def session_factory(db_engine):
    return sessionmaker(autocommit=False, autoflush=False, bind=db_engine)


@pytest.fixture(scope="function")
def db(session_factory):
    """Yield a database session, closed after the test."""
    session = session_factory()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture(scope="function")
def notifier():
    return RecordingNotifier()


@pytest.fixture(scope="function")
def client(session_factory, notifier):
    """FastAPI TestClient with the database and notifier dependencies overridden."""

    def _override_get_db():
        session = session_factory()
        try:
            yield session
        finally:
            session.close()

    app.dependency_overrides[get_db] = _override_get_db
    app.dependency_overrides[get_notifier] = lambda: notifier
    with TestClient(app) as c:
        yield c
    app.dependency_overrides.clear()


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------
def utc(year=2026, month=10, day=19, hour=12, minute=0) -> datetime:
    return datetime(year, month, day, hour, minute, tzinfo=timezone.utc)


def new_user_id() -> str:
    return str(uuid.uuid4())


def make_event(db, capacity_total=10, status=EventStatus.published, host_id=HOST_ID, title="Potluck") -> Event:
    """Insert an event straight into the event store."""
    ev = Event(host_id=host_id, title=title, capacity_total=capacity_total, status=status)
    db.add(ev)
    db.commit()
    db.refresh(ev)
    return ev


def add_participant(db, event_id: str, party_size: int = 1, user_id=None,
                    status=ParticipantStatus.accepted) -> EventParticipant:
    """Seed confirmed attendance that did not come through a join request."""
    participant = EventParticipant(
        event_id=event_id,
        user_id=user_id or new_user_id(),
        party_size=party_size,
        status=status,
    )
    db.add(participant)
    db.commit()
    return participant


def make_request(db, event_id: str, party_size: int = 1, user_id=None, now=None, notifier=None) -> JoinRequest:
    """Create a pending join request through the service."""
    return request_service.create_request(
        db, notifier or RecordingNotifier(), event_id, user_id or new_user_id(), party_size, now=now
    )
