import pytest
from datetime import datetime, timedelta, timezone
from httpx import AsyncClient, ASGITransport

from presence.dependencies import get_context
from presence.directory import CLASSES, ENROLLMENTS
from presence.main import app
from presence.security_log import SecurityEventLog
from presence.service import PresenceContext
from presence.store import MemoryStore

T0 = datetime(2024, 3, 4, 9, 0, tzinfo=timezone.utc)

NYC = {"lat": 40.7128, "lng": -74.0060}
NYC_NEARBY = {"lat": 40.71281, "lng": -74.00601}
LOS_ANGELES = {"lat": 34.0522, "lng": -118.2437}

TEACHER_HEADERS = {"X-Actor-Id": "teacher-1", "X-Actor-Role": "teacher"}
OTHER_TEACHER_HEADERS = {"X-Actor-Id": "teacher-2", "X-Actor-Role": "teacher"}
STUDENT_HEADERS = {"X-Actor-Id": "student-1", "X-Actor-Role": "student"}
ADMIN_HEADERS = {"X-Actor-Id": "admin-1", "X-Actor-Role": "admin"}


class FakeClock:
    def __init__(self, start: datetime = T0):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now += timedelta(**kwargs)
        return self.now


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def store():
    store = MemoryStore()
    store.create(CLASSES, "math101", {
        "name": "Math 101",
        "teacher_id": "teacher-1",
        "subject": "Mathematics",
        "location": dict(NYC),
    })
    store.create(CLASSES, "unplaced", {"name": "Field Trip", "teacher_id": "teacher-1", "location": None})
    store.create(ENROLLMENTS, "e1", {"student_id": "student-1", "class_id": "math101", "status": "active"})
    store.create(ENROLLMENTS, "e2", {"student_id": "student-2", "class_id": "math101", "status": "active"})
    store.create(ENROLLMENTS, "e3", {"student_id": "student-3", "class_id": "math101", "status": "dropped"})
    store.create(ENROLLMENTS, "e4", {"student_id": "student-1", "class_id": "unplaced", "status": "active"})
    return store


@pytest.fixture
def alerts():
    return []


@pytest.fixture
def security_log(tmp_path, clock, alerts):
    return SecurityEventLog(log_dir=str(tmp_path / "security"), clock=clock, alert_hooks=[alerts.append])


@pytest.fixture
def ctx(store, clock, security_log):
    return PresenceContext(store, clock=clock, security_log=security_log)


@pytest.fixture
def events(security_log):
    """Names of the events logged so far."""
    def _events(level=None):
        return [e["event"] for e in reversed(security_log.get_recent(hours=24 * 7, level=level))]
    return _events


@pytest.fixture(name="client")
async def client_fixture(ctx):
    app.dependency_overrides[get_context] = lambda: ctx
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
        yield client
    app.dependency_overrides.clear()
