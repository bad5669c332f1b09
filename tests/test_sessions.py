from concurrent.futures import ThreadPoolExecutor
from datetime import timedelta

import pytest

from conftest import T0
from presence.errors import AlreadyInactive, InvalidDuration, SessionEnded, SessionExpired, SessionNotFound
from presence.sessions import RECORDS, SESSIONS, SessionLifecycle


@pytest.fixture
def sessions(store, clock):
    return SessionLifecycle(store, clock)


def test_create_with_thirty_minutes(sessions):
    session = sessions.create("math101", 30)
    assert session.active
    assert session.created_at == T0
    assert session.expires_at == T0 + timedelta(minutes=30)
    assert session.remaining_minutes(T0) == 30
    assert len(session.token) == 64
    int(session.token, 16)


def test_create_uses_default_duration(sessions):
    session = sessions.create("math101")
    assert session.expires_at - session.created_at == timedelta(minutes=30)


@pytest.mark.parametrize("minutes", [3, 4, 181, 0, -5, 4.5, True, "30"])
def test_create_rejects_invalid_duration(sessions, store, minutes):
    with pytest.raises(InvalidDuration):
        sessions.create("math101", minutes)
    assert store.find(SESSIONS) == []


def test_create_accepts_range_bounds(sessions):
    assert sessions.create("math101", 5)
    assert sessions.create("math101", 180)


def test_new_session_supersedes_previous(sessions, clock):
    first = sessions.create("math101", 30)
    clock.advance(minutes=1)
    second = sessions.create("math101", 30)

    old = sessions.get(first.token)
    assert not old.active
    assert old.deactivated_at == clock()
    assert sessions.get_active_for_class("math101").token == second.token


def test_expiry_boundary(sessions, clock):
    session = sessions.create("math101", 30)
    clock.advance(minutes=30, milliseconds=-1)
    assert session.is_valid(clock())
    assert session.remaining_minutes(clock()) == 1
    clock.advance(milliseconds=1)
    assert session.is_expired(clock())
    assert not session.is_valid(clock())
    assert session.remaining_minutes(clock()) == 0
    assert sessions.get_active_for_class("math101") is None


def test_get_rejects_empty_and_path_like_tokens(sessions):
    assert sessions.get("") is None
    assert sessions.get("abc/def") is None
    assert sessions.get("missing") is None


def test_extend_pushes_expiry(sessions):
    session = sessions.create("math101", 30)
    extended = sessions.extend(session, 15)
    assert extended.expires_at == T0 + timedelta(minutes=45)
    assert sessions.get(session.token).expires_at == extended.expires_at


def test_extend_default_minutes(sessions):
    session = sessions.create("math101", 30)
    assert sessions.extend(session).expires_at == T0 + timedelta(minutes=45)


@pytest.mark.parametrize("minutes", [0, 61, 2.5, False])
def test_extend_rejects_invalid_minutes(sessions, minutes):
    session = sessions.create("math101", 30)
    with pytest.raises(InvalidDuration):
        sessions.extend(session, minutes)


def test_extend_ended_session_fails(sessions):
    session = sessions.create("math101", 30)
    sessions.deactivate(session)
    with pytest.raises(SessionEnded):
        sessions.extend(session, 10)


def test_extend_expired_session_fails(sessions, clock):
    session = sessions.create("math101", 30)
    clock.advance(minutes=31)
    with pytest.raises(SessionExpired):
        sessions.extend(session, 10)


def test_extend_reports_ended_once_an_ended_session_passes_expiry(sessions, clock):
    session = sessions.create("math101", 30)
    clock.advance(minutes=5)
    sessions.deactivate(session)
    clock.advance(minutes=30)
    with pytest.raises(SessionEnded):
        sessions.extend(session, 10)


def test_extend_swept_session_reports_expired(sessions, clock):
    session = sessions.create("math101", 30)
    clock.advance(minutes=31)
    sessions.cleanup_expired()
    with pytest.raises(SessionExpired):
        sessions.extend(session, 10)


def test_extend_unknown_session_fails(sessions):
    session = sessions.create("math101", 30)
    sessions.purge_class("math101")
    with pytest.raises(SessionNotFound):
        sessions.extend(session, 10)


def test_deactivate_twice(sessions):
    session = sessions.create("math101", 30)
    ended = sessions.deactivate(session)
    assert not ended.active
    with pytest.raises(AlreadyInactive):
        sessions.deactivate(session)


def test_cleanup_expired_is_idempotent(sessions, store, clock):
    sessions.create("math101", 10)
    sessions.create("unplaced", 60)
    clock.advance(minutes=10)

    assert sessions.cleanup_expired() == 1
    assert sessions.cleanup_expired() == 0
    active = store.find(SESSIONS, [("active", "==", True)])
    assert [doc["class_id"] for doc in active] == ["unplaced"]


def test_purge_retained_deletes_after_retention(sessions, store, clock):
    sessions.create("math101", 30)
    clock.advance(minutes=30, hours=23)
    assert sessions.purge_retained() == 0
    clock.advance(hours=1)
    assert sessions.purge_retained() == 1
    assert store.find(SESSIONS) == []


def test_purge_class_removes_sessions_and_records(sessions, store):
    session = sessions.create("math101", 30)
    sessions.create("unplaced", 30)
    store.create(RECORDS, f"{session.token}_student-1", {"class_id": "math101", "session_token": session.token})

    assert sessions.purge_class("math101") == {"sessions": 1, "records": 1}
    assert store.find(RECORDS) == []
    assert len(store.find(SESSIONS)) == 1
    assert len(sessions._class_locks) == 1


def test_concurrent_creates_leave_one_active_session(sessions, store):
    with ThreadPoolExecutor(max_workers=8) as pool:
        created = list(pool.map(lambda _: sessions.create("math101", 30), range(16)))

    active = store.find(SESSIONS, [("class_id", "==", "math101"), ("active", "==", True)])
    assert len(active) == 1
    assert len({s.token for s in created}) == 16
    assert sessions.get_active_for_class("math101").token == active[0]["id"]
