from dataclasses import dataclass
from typing import Optional

from presence.clock import Clock, utcnow
from presence.directory import ClassDirectory
from presence.errors import (
    AlreadyMarked,
    ClassNotFound,
    NotEnrolled,
    PresenceError,
    SessionEnded,
    SessionExpired,
    SessionNotFound,
)
from presence.models import AttendanceSession, ClassInfo
from presence.sessions import RECORDS, SessionLifecycle
from presence.store import DocumentStore


def is_valid_attendee_id(attendee_id: str) -> bool:
    # Embedded in record ids, so it must be a legal single document id segment
    return bool(attendee_id) and "/" not in attendee_id and attendee_id not in (".", "..")


def record_id(session_token: str, attendee_id: str) -> str:
    # Deterministic id: the store's create-if-absent enforces one record per pair
    return f"{session_token}_{attendee_id}"


@dataclass
class Eligibility:
    session: Optional[AttendanceSession] = None
    class_info: Optional[ClassInfo] = None
    error: Optional[PresenceError] = None

    @property
    def eligible(self) -> bool:
        return self.error is None


class EligibilityChecker:
    """Decides whether an attendee may mark attendance for a session.

    Checks run in a fixed order and stop at the first failure: the session
    exists, it is still open, the attendee is enrolled, and no record exists
    yet. Failures come back in the result rather than being raised.
    """

    def __init__(self, store: DocumentStore, sessions: SessionLifecycle,
                 directory: ClassDirectory, clock: Clock = utcnow):
        self.store = store
        self.sessions = sessions
        self.directory = directory
        self.clock = clock

    def check(self, session_token: str, attendee_id: str) -> Eligibility:
        session = self.sessions.get(session_token)
        if session is None:
            return Eligibility(error=SessionNotFound())

        now = self.clock()
        if not session.is_valid(now):
            # The sweep flips expired sessions inactive at or after expiry, so only
            # a deactivation before expiry counts as ended
            if session.is_expired(now) and not session.ended_early():
                return Eligibility(session=session, error=SessionExpired())
            return Eligibility(session=session, error=SessionEnded())

        class_info = self.directory.get_class(session.class_id)
        if class_info is None:
            return Eligibility(session=session, error=ClassNotFound())

        if not is_valid_attendee_id(attendee_id) or not self.directory.is_enrolled(attendee_id, session.class_id):
            return Eligibility(
                session=session,
                class_info=class_info,
                error=NotEnrolled(className=class_info.name),
            )

        if self.store.get(RECORDS, record_id(session.token, attendee_id)) is not None:
            return Eligibility(
                session=session,
                class_info=class_info,
                error=AlreadyMarked(className=class_info.name),
            )

        return Eligibility(session=session, class_info=class_info)
