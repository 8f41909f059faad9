import sqlite3
import threading

import pytest
from sqlalchemy.exc import OperationalError
from sqlalchemy.orm import sessionmaker

from huddle.data.meeting_manager import MeetingManager
from huddle.models import (
    Meeting,
    MeetingParticipant,
    MeetingSession,
    MeetingStatus,
    SessionCloseReason,
    User,
    WorkspaceMember,
)
from huddle.schemas.meeting import MeetingCreate
from huddle.schemas.webhook import ProviderWebhookEvent
from huddle.services.errors import CapacityExceeded, Forbidden, MeetingEndedError, NotFound
from huddle.services.meeting_locks import MeetingLockRegistry
from huddle.services.session_tracker import SessionTracker
from huddle.utils.identifiers import connection_identity


def _left_event(room: str, identity: str) -> ProviderWebhookEvent:
    return ProviderWebhookEvent.model_validate(
        {
            "event": "participant_left",
            "room": {"name": room},
            "participant": {"identity": identity},
        }
    )


def _assert_durations_conserved(db_session):
    for participant in db_session.query(MeetingParticipant).all():
        summed = sum(s.duration_seconds for s in participant.sessions)
        assert participant.total_duration_seconds == pytest.approx(summed)


def test_scenario_user_leaves_and_rejoins(manager, meeting, clock):
    first = manager.join(meeting.join_code, user_id="alice", now=clock.at(0))
    assert meeting.status == MeetingStatus.LIVE.value
    assert meeting.started_at == clock.at(0)

    assert manager.leave(first.session_id, now=clock.at(60)) == 60
    assert manager.tracker.active_participant_count(meeting.id) == 0
    assert meeting.status == MeetingStatus.ENDED.value
    assert meeting.ended_at == clock.at(60)

    manager.join(meeting.join_code, user_id="alice", now=clock.at(120))
    assert meeting.status == MeetingStatus.LIVE.value
    assert meeting.ended_at is None
    assert meeting.started_at == clock.at(0)


def test_scenario_guest_two_tabs_then_duplicate_webhook(manager, db_session, meeting, clock):
    tab1 = manager.join(meeting.join_code, guest_name="Alex", now=clock.at(0))
    tab2 = manager.join(
        meeting.join_code, guest_name="Alex", guest_key=tab1.guest_key, now=clock.at(5)
    )

    assert tab1.participant_id == tab2.participant_id
    assert db_session.query(MeetingParticipant).count() == 1
    assert db_session.query(MeetingSession).filter(MeetingSession.leave_time.is_(None)).count() == 2

    assert manager.leave(tab1.session_id, now=clock.at(30)) == 30
    participant = db_session.get(MeetingParticipant, tab1.participant_id)
    assert manager.tracker.is_participant_active(participant.id)
    assert manager.tracker.active_participant_count(meeting.id) == 1

    duplicate = _left_event(meeting.join_code, connection_identity(tab1.identity, tab1.session_id))
    assert manager.reconciler.provider_left(duplicate, at=clock.at(45)) is None

    assert db_session.get(MeetingSession, tab2.session_id).is_open
    assert db_session.get(MeetingSession, tab1.session_id).leave_time == clock.at(30)
    assert participant.total_duration_seconds == pytest.approx(30)
    assert meeting.status == MeetingStatus.LIVE.value


def test_scenario_full_room_rejects_without_creating_rows(manager, db_session, meeting, clock):
    for index in range(50):
        manager.join(meeting.join_code, user_id=f"user-{index}", now=clock.at(index))
    participants_before = db_session.query(MeetingParticipant).count()
    sessions_before = db_session.query(MeetingSession).count()

    with pytest.raises(CapacityExceeded):
        manager.join(meeting.join_code, user_id="user-50", now=clock.at(60))
    with pytest.raises(CapacityExceeded):
        manager.join(meeting.join_code, guest_name="Guest", now=clock.at(61))

    assert db_session.query(MeetingParticipant).count() == participants_before == 50
    assert db_session.query(MeetingSession).count() == sessions_before == 50


def test_scenario_host_end_closes_everyone_at_once(manager, db_session, meeting, clock):
    joins = [
        manager.join(meeting.join_code, user_id="alice", now=clock.at(0)),
        manager.join(meeting.join_code, user_id="bob", now=clock.at(10)),
        manager.join(meeting.join_code, guest_name="Carol", now=clock.at(20)),
    ]

    manager.end_meeting(meeting.id, "host-1", now=clock.at(100))

    sessions = [db_session.get(MeetingSession, j.session_id) for j in joins]
    assert {s.leave_time for s in sessions} == {clock.at(100)}
    assert {s.close_reason for s in sessions} == {SessionCloseReason.HOST_END.value}
    durations = [
        db_session.get(MeetingParticipant, j.participant_id).total_duration_seconds
        for j in joins
    ]
    assert durations == [pytest.approx(100), pytest.approx(90), pytest.approx(80)]
    assert meeting.status == MeetingStatus.ENDED.value
    assert meeting.hard_ended is True
    assert meeting.ended_at == clock.at(100)

    with pytest.raises(MeetingEndedError):
        manager.join(meeting.join_code, user_id="alice", now=clock.at(150))


def test_explicit_leave_is_idempotent(manager, db_session, meeting, clock):
    joined = manager.join(meeting.join_code, user_id="alice", now=clock.at(0))

    assert manager.leave(joined.session_id, now=clock.at(10)) == 10
    assert manager.leave(joined.session_id, now=clock.at(20)) is None
    assert manager.leave("no-such-session", now=clock.at(20)) is None

    participant = db_session.get(MeetingParticipant, joined.participant_id)
    assert participant.total_duration_seconds == pytest.approx(10)
    assert participant.last_left_at == clock.at(10)


def test_webhook_then_explicit_leave_for_same_tab(manager, db_session, meeting, clock):
    joined = manager.join(meeting.join_code, user_id="alice", now=clock.at(0))
    event = _left_event(meeting.join_code, connection_identity(joined.identity, joined.session_id))

    assert manager.reconciler.provider_left(event, at=clock.at(15)) == 15
    assert manager.leave(joined.session_id, now=clock.at(25)) is None

    session = db_session.get(MeetingSession, joined.session_id)
    assert session.close_reason == SessionCloseReason.WEBHOOK.value
    _assert_durations_conserved(db_session)


def test_webhook_without_connection_suffix_closes_oldest(manager, db_session, meeting, clock):
    first = manager.join(meeting.join_code, user_id="alice", now=clock.at(0))
    second = manager.join(meeting.join_code, user_id="alice", now=clock.at(10))

    manager.reconciler.provider_left(_left_event(meeting.join_code, "user:alice"), at=clock.at(30))

    assert not db_session.get(MeetingSession, first.session_id).is_open
    assert db_session.get(MeetingSession, second.session_id).is_open


def test_webhook_for_unknown_room_or_participant_is_ignored(manager, db_session, meeting, clock):
    joined = manager.join(meeting.join_code, user_id="alice", now=clock.at(0))

    assert manager.reconciler.provider_left(_left_event("nope", "user:alice"), at=clock.at(5)) is None
    assert (
        manager.reconciler.provider_left(_left_event(meeting.join_code, "user:ghost"), at=clock.at(5))
        is None
    )
    assert db_session.get(MeetingSession, joined.session_id).is_open


def test_room_finished_soft_ends(manager, db_session, meeting, clock):
    manager.join(meeting.join_code, user_id="alice", now=clock.at(0))
    manager.join(meeting.join_code, guest_name="Visitor", now=clock.at(5))
    event = ProviderWebhookEvent.model_validate(
        {"event": "room_finished", "room": {"name": meeting.join_code}}
    )

    manager.handle_provider_event(event, now=clock.at(50))

    assert manager.tracker.active_participant_count(meeting.id) == 0
    assert meeting.status == MeetingStatus.ENDED.value
    assert meeting.hard_ended is False
    manager.join(meeting.join_code, user_id="alice", now=clock.at(70))
    assert meeting.status == MeetingStatus.LIVE.value


def test_host_end_requires_creator(manager, meeting, clock):
    manager.join(meeting.join_code, user_id="alice", now=clock.at(0))

    with pytest.raises(Forbidden):
        manager.end_meeting(meeting.id, "alice", now=clock.at(10))
    with pytest.raises(Forbidden):
        manager.end_meeting(meeting.id, None, now=clock.at(10))
    with pytest.raises(NotFound):
        manager.end_meeting("MTG20240101-0000", "host-1", now=clock.at(10))

    assert meeting.status == MeetingStatus.LIVE.value
    assert meeting.hard_ended is False


def test_leave_after_host_end_is_a_no_op(manager, db_session, meeting, clock):
    joined = manager.join(meeting.join_code, user_id="alice", now=clock.at(0))
    manager.end_meeting(meeting.id, "host-1", now=clock.at(40))

    assert manager.leave(joined.session_id, now=clock.at(90)) is None

    participant = db_session.get(MeetingParticipant, joined.participant_id)
    assert participant.total_duration_seconds == pytest.approx(40)


def test_durations_conserved_across_mixed_signals(manager, db_session, meeting, clock):
    a1 = manager.join(meeting.join_code, user_id="alice", now=clock.at(0))
    a2 = manager.join(meeting.join_code, user_id="alice", now=clock.at(3))
    g = manager.join(meeting.join_code, guest_name="Gus", now=clock.at(7))
    manager.leave(a2.session_id, now=clock.at(11))
    _assert_durations_conserved(db_session)
    manager.reconciler.provider_left(
        _left_event(meeting.join_code, connection_identity(g.identity, g.session_id)),
        at=clock.at(19),
    )
    _assert_durations_conserved(db_session)
    manager.leave(a2.session_id, now=clock.at(23))
    manager.join(meeting.join_code, guest_name="Gus", guest_key=g.guest_key, now=clock.at(29))
    manager.end_meeting(meeting.id, "host-1", now=clock.at(31))
    _assert_durations_conserved(db_session)

    alice = db_session.get(MeetingParticipant, a1.participant_id)
    gus = db_session.get(MeetingParticipant, g.participant_id)
    assert alice.total_duration_seconds == pytest.approx(8 + 31)
    assert gus.total_duration_seconds == pytest.approx(12 + 2)


def test_sweep_closes_only_stale_sessions(manager, db_session, meeting, clock):
    old = manager.join(meeting.join_code, user_id="alice", now=clock.at(0))
    fresh = manager.join(meeting.join_code, user_id="bob", now=clock.at(3000))

    closed = manager.sweep_stale_sessions(ttl_seconds=3600, now=clock.at(4000))

    assert closed == 1
    swept = db_session.get(MeetingSession, old.session_id)
    assert swept.close_reason == SessionCloseReason.SWEEP.value
    assert swept.leave_time == clock.at(4000)
    assert db_session.get(MeetingSession, fresh.session_id).is_open
    assert manager.sweep_stale_sessions(ttl_seconds=3600, now=clock.at(4000)) == 0


def test_no_op_signals_end_their_transaction(manager, db_session, meeting, clock):
    joined = manager.join(meeting.join_code, user_id="alice", now=clock.at(0))
    manager.leave(joined.session_id, now=clock.at(10))

    assert manager.leave(joined.session_id, now=clock.at(20)) is None
    assert not db_session.in_transaction()

    ghost = _left_event(meeting.join_code, "user:ghost")
    assert manager.reconciler.provider_left(ghost, at=clock.at(25)) is None
    assert not db_session.in_transaction()

    manager.end_meeting(meeting.id, "host-1", now=clock.at(30))
    manager.end_meeting(meeting.id, "host-1", now=clock.at(40))
    assert not db_session.in_transaction()
    assert meeting.hard_ended is True


def test_locked_commit_reruns_the_whole_close(manager, db_session, meeting, clock, monkeypatch):
    joined = manager.join(meeting.join_code, user_id="alice", now=clock.at(0))
    real_close = manager.tracker.close_session
    real_commit = db_session.commit
    state = {"armed": False, "failures": 0}

    def close_then_arm(*args, **kwargs):
        duration = real_close(*args, **kwargs)
        state["armed"] = state["failures"] == 0
        return duration

    def commit_once_locked():
        if state["armed"]:
            state["armed"] = False
            state["failures"] += 1
            raise OperationalError(
                "COMMIT", {}, sqlite3.OperationalError("database is locked")
            )
        return real_commit()

    monkeypatch.setattr(manager.tracker, "close_session", close_then_arm)
    monkeypatch.setattr(db_session, "commit", commit_once_locked)

    assert manager.leave(joined.session_id, now=clock.at(30)) == 30

    assert state["failures"] == 1
    db_session.expire_all()
    session = db_session.get(MeetingSession, joined.session_id)
    assert session.leave_time == clock.at(30)
    participant = db_session.get(MeetingParticipant, joined.participant_id)
    assert participant.total_duration_seconds == pytest.approx(30)
    assert manager.leave(joined.session_id, now=clock.at(40)) is None


def test_simultaneous_last_leaves_end_the_meeting(file_engine, provider):
    SessionFactory = sessionmaker(autocommit=False, autoflush=False, bind=file_engine)
    locks = MeetingLockRegistry()
    leavers = 6
    rounds = 5

    setup = SessionFactory()
    setup.add(User(user_id="host-1", display_name="Host"))
    setup.add(WorkspaceMember(workspace_id="ws-1", user_id="host-1"))
    setup.commit()
    setup_manager = MeetingManager(setup, media_provider=provider, locks=locks)
    meetings = []
    for index in range(rounds):
        ref = setup_manager.create_meeting(
            MeetingCreate(workspace_id="ws-1", title=f"Standup {index}"),
            creator_id="host-1",
        )
        session_ids = [
            setup_manager.join(ref.join_code, guest_name=f"Guest {n}").session_id
            for n in range(leavers)
        ]
        meetings.append((ref.id, session_ids))
    setup.close()

    failures = []
    results_lock = threading.Lock()

    def leaver(session_id: str, barrier: threading.Barrier) -> None:
        db = SessionFactory()
        try:
            barrier.wait()
            MeetingManager(db, media_provider=provider, locks=locks).leave(session_id)
        except Exception as exc:  # noqa: BLE001
            with results_lock:
                failures.append(exc)
        finally:
            db.close()

    for _, session_ids in meetings:
        barrier = threading.Barrier(leavers)
        threads = [
            threading.Thread(target=leaver, args=(session_id, barrier))
            for session_id in session_ids
        ]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

    assert failures == []
    check = SessionFactory()
    for meeting_id, _ in meetings:
        ended = check.get(Meeting, meeting_id)
        assert ended.status == MeetingStatus.ENDED.value
        assert ended.hard_ended is False
        assert SessionTracker(check).active_participant_count(meeting_id) == 0
    check.close()
