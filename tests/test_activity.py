import pytest

from conftest import LOS_ANGELES, NYC, NYC_NEARBY
from presence import activity
from presence.activity import ActivityTracker, MemoryActivityStore, SuspiciousActivityDetector


@pytest.fixture
def detector(clock):
    return SuspiciousActivityDetector(clock=clock)


def test_fifth_failed_login_is_suspicious(detector):
    results = [detector.record("user-1", activity.FAILED_LOGIN, {"ip": "10.0.0.1"}) for _ in range(5)]
    assert results[:4] == [[], [], [], []]
    assert results[4] == [activity.EXCESSIVE_FAILED_LOGINS]
    assert detector.is_suspicious("user-1", activity.FAILED_LOGIN)
    assert not detector.is_suspicious("user-2", activity.FAILED_LOGIN)


def test_old_activity_falls_out_of_the_window(detector, clock):
    for _ in range(4):
        detector.record("user-1", activity.FAILED_LOGIN)
    clock.advance(minutes=61)
    assert detector.record("user-1", activity.FAILED_LOGIN) == []


def test_excessive_attendance_attempts(detector):
    results = [detector.record("student-1", activity.ATTENDANCE_ATTEMPT) for _ in range(20)]
    assert results[18] == []
    assert results[19] == [activity.EXCESSIVE_ATTENDANCE_ATTEMPTS]


def test_rapid_location_change(detector):
    detector.record("student-1", activity.ATTENDANCE_MARKED, {"location": NYC})
    assert detector.record("student-1", activity.ATTENDANCE_MARKED, {"location": LOS_ANGELES}) == []
    patterns = detector.record("student-1", activity.ATTENDANCE_MARKED, {"location": NYC})
    assert patterns == [activity.RAPID_LOCATION_CHANGE]


def test_stationary_markings_are_fine(detector):
    for point in (NYC, NYC_NEARBY, NYC):
        patterns = detector.record("student-1", activity.ATTENDANCE_MARKED, {"location": point})
    assert patterns == []


def test_logins_from_distinct_clients(detector):
    detector.record("user-1", activity.LOGIN, {"ip": "10.0.0.1"})
    detector.record("user-1", activity.LOGIN, {"ip": "10.0.0.1"})
    assert detector.record("user-1", activity.LOGIN, {"ip": "10.0.0.2"}) == []
    assert detector.record("user-1", activity.LOGIN, {"ip": "10.0.0.3"}) == [activity.MULTIPLE_SIMULTANEOUS_SESSIONS]


def test_history_is_capped():
    store = MemoryActivityStore(max_size=3)
    for i in range(5):
        store.append("user-1", activity.LOGIN, (i, {}))
    assert [stamp for stamp, _ in store.history("user-1", activity.LOGIN)] == [2, 3, 4]


def test_tracker_logs_each_detection(detector, security_log, alerts):
    tracker = ActivityTracker(detector, security_log)
    for _ in range(5):
        patterns = tracker.track("user-1", activity.FAILED_LOGIN, {"ip": "10.0.0.9"})

    assert patterns == [activity.EXCESSIVE_FAILED_LOGINS]
    assert len(alerts) == 1
    assert alerts[0]["event"] == "suspicious_activity"
    assert alerts[0]["details"]["activity_type"] == activity.EXCESSIVE_FAILED_LOGINS
    assert alerts[0]["details"]["ip"] == "10.0.0.9"


def test_tracker_ignores_anonymous_activity(detector, security_log):
    tracker = ActivityTracker(detector, security_log)
    assert tracker.track(None, activity.LOGIN) == []
    assert tracker.track("user-1", "") == []
    assert detector.store.history("user-1", "") == []


def test_prune_forgets_idle_actors(detector, clock):
    detector.record("student-1", activity.ATTENDANCE_ATTEMPT)
    detector.record("student-2", activity.LOGIN, {"ip": "10.0.0.1"})
    clock.advance(minutes=30)
    detector.record("student-2", activity.LOGIN, {"ip": "10.0.0.1"})

    clock.advance(minutes=31)
    assert detector.prune() == 1
    assert detector.store.history("student-1", activity.ATTENDANCE_ATTEMPT) == []
    assert len(detector.store.history("student-2", activity.LOGIN)) == 2
    assert len(detector.store._locks) == 1

    clock.advance(minutes=30)
    assert detector.prune() == 1
    assert len(detector.store._histories) == 0
    assert len(detector.store._locks) == 0


def test_store_prune_drops_many_distinct_actors(clock):
    store = MemoryActivityStore()
    for i in range(1000):
        store.append(f"student-{i}", activity.ATTENDANCE_ATTEMPT, (clock(), {}))
    assert store.prune(clock()) == 1000
    assert len(store._histories) == 0
    assert len(store._locks) == 0
