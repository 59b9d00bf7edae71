"""Tests for the join request store: compare-and-swap transitions and capacity-checked approval."""
import threading
from datetime import timedelta

import pytest
from sqlalchemy.exc import IntegrityError

from event_capacity.errors import (
    CapacityExceeded,
    DuplicateActiveRequest,
    EventNotAcceptingRequests,
    EventNotFound,
    HoldExpired,
    InvalidTransition,
    RequestNotFound,
    ValidationError,
)
from event_capacity.models.event import EventStatus
from event_capacity.models.join_request import JoinRequest, RequestStatus
from event_capacity.models.participant import EventParticipant, ParticipantStatus
from event_capacity.models.request_transition import RequestTransition, TransitionAction
from event_capacity.services import join_request_store as store
from event_capacity.services.availability_service import compute_availability
from event_capacity.database import as_utc
from tests.conftest import add_participant, make_event, new_user_id, utc


def _participants(db, event_id):
    return db.query(EventParticipant).filter(EventParticipant.event_id == event_id).all()


def _ledger(db, request_id):
    return (
        db.query(RequestTransition)
        .filter(RequestTransition.request_id == request_id)
        .order_by(RequestTransition.created_at)
        .all()
    )


class TestInsertRequest:

    def test_creates_pending_request_with_hold(self, db):
        now = utc()
        ev = make_event(db, capacity_total=10)
        result = store.insert_request(db, ev.event_id, new_user_id(), 3, note="vegetarian", hold_minutes=30, now=now)

        request = result.request
        assert request.status == RequestStatus.pending
        assert request.party_size == 3
        assert request.note == "vegetarian"
        assert as_utc(request.hold_expires_at) == now + timedelta(minutes=30)
        assert request.waitlist_pos is None
        assert result.old_status is None

        entries = _ledger(db, request.request_id)
        assert [e.action for e in entries] == [TransitionAction.create]
        assert entries[0].to_status == "pending"

    def test_hold_counts_against_availability(self, db):
        now = utc()
        ev = make_event(db, capacity_total=10)
        store.insert_request(db, ev.event_id, new_user_id(), 4, now=now)
        assert compute_availability(db, ev.event_id, now=now).available == 6

    def test_second_active_request_rejected(self, db):
        now = utc()
        ev = make_event(db)
        user = new_user_id()
        store.insert_request(db, ev.event_id, user, 1, now=now)
        with pytest.raises(DuplicateActiveRequest):
            store.insert_request(db, ev.event_id, user, 2, now=now)
        assert db.query(JoinRequest).count() == 1

    def test_new_request_allowed_after_terminal(self, db):
        now = utc()
        ev = make_event(db)
        user = new_user_id()
        first = store.insert_request(db, ev.event_id, user, 1, now=now).request
        store.transition(db, first.request_id, RequestStatus.declined, RequestStatus.pending, now=now)

        second = store.insert_request(db, ev.event_id, user, 1, now=now).request
        assert second.status == RequestStatus.pending
        assert second.request_id != first.request_id

    def test_accepted_participant_cannot_request(self, db):
        ev = make_event(db)
        user = new_user_id()
        add_participant(db, ev.event_id, user_id=user)
        with pytest.raises(DuplicateActiveRequest):
            store.insert_request(db, ev.event_id, user, 1, now=utc())

    @pytest.mark.parametrize("status", [EventStatus.draft, EventStatus.cancelled, EventStatus.completed])
    def test_unpublished_event_rejected(self, db, status):
        ev = make_event(db, status=status)
        with pytest.raises(EventNotAcceptingRequests):
            store.insert_request(db, ev.event_id, new_user_id(), 1, now=utc())
        assert db.query(JoinRequest).count() == 0

    def test_unknown_event(self, db):
        with pytest.raises(EventNotFound):
            store.insert_request(db, "missing", new_user_id(), 1, now=utc())

    def test_party_size_must_be_positive(self, db):
        ev = make_event(db)
        with pytest.raises(ValidationError):
            store.insert_request(db, ev.event_id, new_user_id(), 0, now=utc())

    def test_note_length_limit(self, db):
        ev = make_event(db)
        with pytest.raises(ValidationError):
            store.insert_request(db, ev.event_id, new_user_id(), 1, note="x" * 501, now=utc())


    def test_zero_hold_minutes_is_not_the_default(self, db):
        ev = make_event(db)
        with pytest.raises(ValidationError):
            store.insert_request(db, ev.event_id, new_user_id(), 1, hold_minutes=0, now=utc())
        assert db.query(JoinRequest).count() == 0

    def test_explicit_hold_minutes(self, db):
        now = utc()
        ev = make_event(db)
        request = store.insert_request(db, ev.event_id, new_user_id(), 1, hold_minutes=5, now=now).request
        assert as_utc(request.hold_expires_at) == now + timedelta(minutes=5)

    def test_other_integrity_errors_are_not_duplicates(self, db, monkeypatch):
        """Only the active-request index maps to DuplicateActiveRequest; anything else propagates."""
        ev = make_event(db)

        def _check_violation(*args, **kwargs):
            raise IntegrityError(
                "INSERT INTO request_transitions ...", {},
                Exception("CHECK constraint failed: ck_join_requests_party_size_positive"),
            )

        monkeypatch.setattr(store, "record_transition", _check_violation)
        with pytest.raises(IntegrityError):
            store.insert_request(db, ev.event_id, new_user_id(), 1, now=utc())
        assert db.query(JoinRequest).count() == 0

    @pytest.mark.parametrize("message, expected", [
        ("UNIQUE constraint failed: join_requests.event_id, join_requests.user_id", True),
        ('duplicate key value violates unique constraint "uq_join_requests_active_per_user"', True),
        ("FOREIGN KEY constraint failed", False),
        ("UNIQUE constraint failed: event_participants.event_id, event_participants.user_id", False),
    ])
    def test_active_request_conflict_detection(self, message, expected):
        exc = IntegrityError("INSERT ...", {}, Exception(message))
        assert store._is_active_request_conflict(exc) is expected


class TestApproveTransition:

    def test_approve_creates_participant(self, db):
        now = utc()
        ev = make_event(db, capacity_total=10)
        user = new_user_id()
        request = store.insert_request(db, ev.event_id, user, 3, now=now).request

        result = store.transition(
            db, request.request_id, RequestStatus.approved, RequestStatus.pending, actor_user_id=ev.host_id,
            now=now + timedelta(minutes=1),
        )
        assert result.request.status == RequestStatus.approved
        assert result.request.hold_expires_at is None
        assert result.old_status == RequestStatus.pending

        participants = _participants(db, ev.event_id)
        assert len(participants) == 1
        assert participants[0].user_id == user
        assert participants[0].party_size == 3
        assert participants[0].status == ParticipantStatus.accepted

        snapshot = compute_availability(db, ev.event_id, now=now)
        assert (snapshot.confirmed, snapshot.held, snapshot.available) == (3, 0, 7)

        actions = [e.action for e in _ledger(db, request.request_id)]
        assert actions == [TransitionAction.create, TransitionAction.approve]

    def test_approve_over_capacity_changes_nothing(self, db):
        """capacity 5, 4 confirmed, party of 2 → need 2, have 1; request stays pending."""
        now = utc()
        ev = make_event(db, capacity_total=5)
        add_participant(db, ev.event_id, party_size=4)
        request = store.insert_request(db, ev.event_id, new_user_id(), 2, now=now).request

        with pytest.raises(CapacityExceeded) as exc_info:
            store.transition(db, request.request_id, RequestStatus.approved, RequestStatus.pending, now=now)
        assert exc_info.value.required == 2
        assert exc_info.value.available == 1

        reloaded = store.get_request(db, request.request_id)
        assert reloaded.status == RequestStatus.pending
        assert reloaded.hold_expires_at is not None
        assert len(_participants(db, ev.event_id)) == 1
        assert [e.action for e in _ledger(db, request.request_id)] == [TransitionAction.create]

    def test_other_live_holds_count_against_approval(self, db):
        now = utc()
        ev = make_event(db, capacity_total=4)
        store.insert_request(db, ev.event_id, new_user_id(), 3, now=now)
        request = store.insert_request(db, ev.event_id, new_user_id(), 2, now=now).request

        with pytest.raises(CapacityExceeded) as exc_info:
            store.transition(db, request.request_id, RequestStatus.approved, RequestStatus.pending, now=now)
        assert exc_info.value.available == 1

    def test_own_hold_is_not_double_counted(self, db):
        """A request that exactly fills the room can be approved."""
        now = utc()
        ev = make_event(db, capacity_total=4)
        request = store.insert_request(db, ev.event_id, new_user_id(), 4, now=now).request
        result = store.transition(db, request.request_id, RequestStatus.approved, RequestStatus.pending, now=now)
        assert result.request.status == RequestStatus.approved
        assert compute_availability(db, ev.event_id, now=now).available == 0

    def test_unbounded_event_always_approves(self, db):
        now = utc()
        ev = make_event(db, capacity_total=None)
        add_participant(db, ev.event_id, party_size=500)
        request = store.insert_request(db, ev.event_id, new_user_id(), 20, now=now).request
        result = store.transition(db, request.request_id, RequestStatus.approved, RequestStatus.pending, now=now)
        assert result.request.status == RequestStatus.approved

    def test_left_participant_rejoins(self, db):
        now = utc()
        ev = make_event(db, capacity_total=10)
        user = new_user_id()
        add_participant(db, ev.event_id, party_size=1, user_id=user, status=ParticipantStatus.left)
        request = store.insert_request(db, ev.event_id, user, 2, now=now).request

        store.transition(db, request.request_id, RequestStatus.approved, RequestStatus.pending, now=now)
        db.expire_all()
        participants = _participants(db, ev.event_id)
        assert len(participants) == 1
        assert participants[0].status == ParticipantStatus.accepted
        assert participants[0].party_size == 2

    def test_simulated_concurrent_approvals(self, db, session_factory):
        """Two hosts approve the last seats from separate sessions: one wins, the other gets 409."""
        now = utc()
        ev = make_event(db, capacity_total=3)
        add_participant(db, ev.event_id, party_size=1)
        first = store.insert_request(db, ev.event_id, new_user_id(), 2, now=now).request
        second = store.insert_request(db, ev.event_id, new_user_id(), 2, now=now).request

        session_a = session_factory()
        session_b = session_factory()
        try:
            store.transition(session_a, first.request_id, RequestStatus.approved, RequestStatus.pending, now=now)
            with pytest.raises(CapacityExceeded):
                store.transition(session_b, second.request_id, RequestStatus.approved, RequestStatus.pending, now=now)
        finally:
            session_a.close()
            session_b.close()

        snapshot = compute_availability(db, ev.event_id, now=now)
        assert snapshot.confirmed == 3
        assert snapshot.available == -2  # second request still holds 2 seats
        assert store.get_request(db, second.request_id).status == RequestStatus.pending

    def test_same_request_decided_twice(self, db, session_factory):
        """Approve and decline race on one request: the loser sees the winner's status."""
        now = utc()
        ev = make_event(db, capacity_total=10)
        request = store.insert_request(db, ev.event_id, new_user_id(), 1, now=now).request

        session_a = session_factory()
        session_b = session_factory()
        try:
            store.transition(session_a, request.request_id, RequestStatus.declined, RequestStatus.pending, now=now)
            with pytest.raises(InvalidTransition) as exc_info:
                store.transition(session_b, request.request_id, RequestStatus.approved, RequestStatus.pending, now=now)
        finally:
            session_a.close()
            session_b.close()

        assert exc_info.value.actual == "declined"
        assert exc_info.value.expected == "pending"
        assert _participants(db, ev.event_id) == []


    def test_same_request_approved_twice(self, db, session_factory):
        """Two hosts approve one request from separate sessions: one participant, one InvalidTransition."""
        now = utc()
        ev = make_event(db, capacity_total=10)
        request = store.insert_request(db, ev.event_id, new_user_id(), 2, now=now).request

        session_a = session_factory()
        session_b = session_factory()
        try:
            store.transition(session_a, request.request_id, RequestStatus.approved, RequestStatus.pending, now=now)
            with pytest.raises(InvalidTransition) as exc_info:
                store.transition(session_b, request.request_id, RequestStatus.approved, RequestStatus.pending, now=now)
        finally:
            session_a.close()
            session_b.close()

        assert exc_info.value.actual == "approved"
        assert len(_participants(db, ev.event_id)) == 1
        assert compute_availability(db, ev.event_id, now=now).confirmed == 2

    def test_threaded_approvals_of_one_request(self, db, session_factory):
        """Both threads pass the barrier before writing; exactly one approval lands."""
        now = utc()
        ev = make_event(db, capacity_total=10)
        request = store.insert_request(db, ev.event_id, new_user_id(), 2, now=now).request
        barrier = threading.Barrier(2)
        winners = []
        losers = []

        def _approve():
            session = session_factory()
            try:
                barrier.wait()
                store.transition(session, request.request_id, RequestStatus.approved, RequestStatus.pending, now=now)
                winners.append(request.request_id)
            except InvalidTransition as exc:
                losers.append(exc)
            finally:
                session.close()

        threads = [threading.Thread(target=_approve) for _ in range(2)]
        for t in threads:
            t.start()
        for t in threads:
            t.join(timeout=30)

        assert len(winners) == 1
        assert len(losers) == 1
        assert losers[0].actual == "approved"
        assert len(_participants(db, ev.event_id)) == 1
        assert [e.action for e in _ledger(db, request.request_id)] == [
            TransitionAction.create, TransitionAction.approve,
        ]


class TestTransitionRules:

    def test_stale_expected_status(self, db):
        now = utc()
        ev = make_event(db)
        request = store.insert_request(db, ev.event_id, new_user_id(), 1, now=now).request
        with pytest.raises(InvalidTransition) as exc_info:
            store.transition(db, request.request_id, RequestStatus.approved, RequestStatus.waitlisted, now=now)
        assert exc_info.value.actual == "pending"
        assert store.get_request(db, request.request_id).status == RequestStatus.pending

    @pytest.mark.parametrize("terminal", [RequestStatus.declined, RequestStatus.cancelled])
    def test_terminal_status_is_final(self, db, terminal):
        now = utc()
        ev = make_event(db)
        request = store.insert_request(db, ev.event_id, new_user_id(), 1, now=now).request
        store.transition(db, request.request_id, terminal, RequestStatus.pending, now=now)

        for target in (RequestStatus.pending, RequestStatus.approved, RequestStatus.waitlisted):
            with pytest.raises(InvalidTransition):
                store.transition(db, request.request_id, target, terminal, now=now)

    def test_approved_is_final(self, db):
        now = utc()
        ev = make_event(db)
        request = store.insert_request(db, ev.event_id, new_user_id(), 1, now=now).request
        store.transition(db, request.request_id, RequestStatus.approved, RequestStatus.pending, now=now)
        with pytest.raises(InvalidTransition):
            store.transition(db, request.request_id, RequestStatus.declined, RequestStatus.approved, now=now)

    def test_waitlisted_cannot_be_cancelled_by_store(self, db):
        now = utc()
        ev = make_event(db)
        request = store.insert_request(db, ev.event_id, new_user_id(), 1, now=now).request
        store.transition(db, request.request_id, RequestStatus.waitlisted, RequestStatus.pending, now=now)
        with pytest.raises(InvalidTransition):
            store.transition(db, request.request_id, RequestStatus.cancelled, RequestStatus.waitlisted, now=now)

    def test_unknown_request(self, db):
        with pytest.raises(RequestNotFound):
            store.transition(db, "missing", RequestStatus.approved, RequestStatus.pending, now=utc())

    def test_waitlist_assigns_tail_positions(self, db):
        now = utc()
        ev = make_event(db)
        ids = [store.insert_request(db, ev.event_id, new_user_id(), 1, now=now).request.request_id for _ in range(3)]
        positions = [
            store.transition(db, rid, RequestStatus.waitlisted, RequestStatus.pending, now=now).request.waitlist_pos
            for rid in ids
        ]
        assert positions == [1, 2, 3]

        waitlisted = store.get_request(db, ids[0])
        assert waitlisted.hold_expires_at is None

    def test_waitlisted_request_releases_hold(self, db):
        now = utc()
        ev = make_event(db, capacity_total=5)
        request = store.insert_request(db, ev.event_id, new_user_id(), 3, now=now).request
        store.transition(db, request.request_id, RequestStatus.waitlisted, RequestStatus.pending, now=now)
        assert compute_availability(db, ev.event_id, now=now).available == 5

    def test_waitlisted_can_be_declined(self, db):
        now = utc()
        ev = make_event(db)
        request = store.insert_request(db, ev.event_id, new_user_id(), 1, now=now).request
        store.transition(db, request.request_id, RequestStatus.waitlisted, RequestStatus.pending, now=now)
        result = store.transition(db, request.request_id, RequestStatus.declined, RequestStatus.waitlisted, now=now)
        assert result.request.status == RequestStatus.declined
        assert result.request.waitlist_pos is None

    def test_cancel_after_hold_lapsed(self, db):
        now = utc()
        ev = make_event(db)
        request = store.insert_request(db, ev.event_id, new_user_id(), 1, hold_minutes=30, now=now).request
        with pytest.raises(HoldExpired):
            store.transition(
                db, request.request_id, RequestStatus.cancelled, RequestStatus.pending,
                now=now + timedelta(minutes=31),
            )
        assert store.get_request(db, request.request_id).status == RequestStatus.pending

    def test_expire_requires_lapsed_hold(self, db):
        now = utc()
        ev = make_event(db)
        request = store.insert_request(db, ev.event_id, new_user_id(), 1, hold_minutes=30, now=now).request
        with pytest.raises(InvalidTransition):
            store.transition(
                db, request.request_id, RequestStatus.expired, RequestStatus.pending,
                now=now + timedelta(minutes=10),
            )
        result = store.transition(
            db, request.request_id, RequestStatus.expired, RequestStatus.pending,
            now=now + timedelta(minutes=30),
        )
        assert result.request.status == RequestStatus.expired


class TestExtendHold:

    def test_extends_from_current_expiry(self, db):
        now = utc()
        ev = make_event(db)
        request = store.insert_request(db, ev.event_id, new_user_id(), 1, hold_minutes=30, now=now).request

        result = store.extend_hold(db, request.request_id, 15, now=now + timedelta(minutes=20))
        assert as_utc(result.request.hold_expires_at) == now + timedelta(minutes=45)
        assert result.request.status == RequestStatus.pending

        entry = _ledger(db, request.request_id)[-1]
        assert entry.action == TransitionAction.extend_hold
        assert entry.details["extension_minutes"] == 15

    def test_lapsed_hold_cannot_be_extended(self, db):
        now = utc()
        ev = make_event(db)
        request = store.insert_request(db, ev.event_id, new_user_id(), 1, hold_minutes=30, now=now).request
        with pytest.raises(HoldExpired):
            store.extend_hold(db, request.request_id, 15, now=now + timedelta(minutes=30))

    def test_only_pending_requests(self, db):
        now = utc()
        ev = make_event(db)
        request = store.insert_request(db, ev.event_id, new_user_id(), 1, now=now).request
        store.transition(db, request.request_id, RequestStatus.waitlisted, RequestStatus.pending, now=now)
        with pytest.raises(InvalidTransition):
            store.extend_hold(db, request.request_id, 15, now=now)


class TestListRequests:

    def test_newest_first_with_total(self, db):
        now = utc()
        ev = make_event(db)
        ids = [
            store.insert_request(db, ev.event_id, new_user_id(), 1, now=now + timedelta(minutes=i)).request.request_id
            for i in range(5)
        ]
        page, total = store.list_requests(db, ev.event_id, limit=2, offset=0)
        assert total == 5
        assert [r.request_id for r in page] == [ids[4], ids[3]]

        page, _ = store.list_requests(db, ev.event_id, limit=2, offset=4)
        assert [r.request_id for r in page] == [ids[0]]

    def test_status_filter(self, db):
        now = utc()
        ev = make_event(db)
        kept = store.insert_request(db, ev.event_id, new_user_id(), 1, now=now).request
        dropped = store.insert_request(db, ev.event_id, new_user_id(), 1, now=now).request
        store.transition(db, dropped.request_id, RequestStatus.declined, RequestStatus.pending, now=now)

        page, total = store.list_requests(db, ev.event_id, status=RequestStatus.pending)
        assert total == 1
        assert page[0].request_id == kept.request_id
