"""Lifecycle of attendance sessions: the time-boxed windows a class opens.

A class has at most one valid session at a time. Opening a new one
deactivates the previous one; expired sessions are flipped inactive by the
maintenance sweep and physically removed once the retention window after
their expiry has passed.
"""
import logging
import secrets
from datetime import timedelta
from typing import Dict, Optional

from presence.clock import Clock, utcnow
from presence.config import settings
from presence.errors import (
    AlreadyInactive,
    InvalidDuration,
    SessionEnded,
    SessionExpired,
    SessionNotFound,
)
from presence.locks import KeyedLocks
from presence.models import AttendanceSession
from presence.store import DocumentStore, DuplicateKeyError

logger = logging.getLogger(__name__)

SESSIONS = "attendance_sessions"
RECORDS = "attendance_records"

TOKEN_BYTES = 32


def _check_minutes(value, low: int, high: int, label: str) -> int:
    if isinstance(value, bool) or not isinstance(value, int) or not low <= value <= high:
        raise InvalidDuration(
            f"{label} must be a whole number between {low} and {high} minutes",
            minimum=low,
            maximum=high,
        )
    return value


def new_token() -> str:
    return secrets.token_hex(TOKEN_BYTES)


class SessionLifecycle:
    def __init__(self, store: DocumentStore, clock: Clock = utcnow):
        self.store = store
        self.clock = clock
        self._class_locks = KeyedLocks()

    @staticmethod
    def _from_doc(doc) -> AttendanceSession:
        return AttendanceSession(
            token=doc["id"],
            class_id=doc["class_id"],
            created_at=doc["created_at"],
            expires_at=doc["expires_at"],
            active=doc.get("active", False),
            deactivated_at=doc.get("deactivated_at"),
        )

    def get(self, token: str) -> Optional[AttendanceSession]:
        if not token or "/" in token:
            return None
        doc = self.store.get(SESSIONS, token)
        return self._from_doc(doc) if doc else None

    def get_active_for_class(self, class_id: str) -> Optional[AttendanceSession]:
        now = self.clock()
        candidates = [
            self._from_doc(doc)
            for doc in self.store.find(SESSIONS, [("class_id", "==", class_id), ("active", "==", True)])
        ]
        valid = [s for s in candidates if s.is_valid(now)]
        if not valid:
            return None
        # A lost supersession race may leave stragglers; the newest one wins
        return max(valid, key=lambda s: s.created_at)

    def create(self, class_id: str, duration_minutes=None) -> AttendanceSession:
        if duration_minutes is None:
            duration_minutes = settings.SESSION_DEFAULT_MINUTES
        duration = _check_minutes(
            duration_minutes,
            settings.SESSION_MIN_MINUTES,
            settings.SESSION_MAX_MINUTES,
            "Duration",
        )

        with self._class_locks.hold(class_id):
            now = self.clock()
            superseded = self.store.update_many(
                SESSIONS,
                [("class_id", "==", class_id), ("active", "==", True)],
                {"active": False, "deactivated_at": now},
            )
            if superseded:
                logger.info("Deactivated %d previous session(s) for class %s", superseded, class_id)

            expires_at = now + timedelta(minutes=duration)
            if expires_at <= now:
                raise InvalidDuration("Expiration time must be in the future")

            for _ in range(3):
                token = new_token()
                try:
                    doc = self.store.create(SESSIONS, token, {
                        "class_id": class_id,
                        "created_at": now,
                        "expires_at": expires_at,
                        "active": True,
                        "deactivated_at": None,
                    })
                    break
                except DuplicateKeyError:
                    logger.warning("Session token collision, regenerating")
            else:
                raise RuntimeError("Could not allocate a unique session token")

        session = self._from_doc(doc)
        logger.info(f"Created session {token[:8]}... for class {class_id}, expires {expires_at.isoformat()}")
        return session

    def extend(self, session: AttendanceSession, additional_minutes=None) -> AttendanceSession:
        if additional_minutes is None:
            additional_minutes = settings.EXTEND_DEFAULT_MINUTES
        minutes = _check_minutes(
            additional_minutes,
            settings.EXTEND_MIN_MINUTES,
            settings.EXTEND_MAX_MINUTES,
            "Additional minutes",
        )

        current = self._reload(session)
        now = self.clock()
        if current.ended_early() or (not current.active and not current.is_expired(now)):
            raise SessionEnded("Cannot extend inactive session")
        if current.is_expired(now):
            raise SessionExpired("Cannot extend expired session")

        expires_at = current.expires_at + timedelta(minutes=minutes)
        self.store.update(SESSIONS, current.token, {"expires_at": expires_at})
        logger.info("Extended session %s... by %d minutes", current.token[:8], minutes)
        return current.model_copy(update={"expires_at": expires_at})

    def deactivate(self, session: AttendanceSession) -> AttendanceSession:
        current = self._reload(session)
        if not current.active:
            raise AlreadyInactive()

        now = self.clock()
        self.store.update(SESSIONS, current.token, {"active": False, "deactivated_at": now})
        logger.info("Deactivated session %s... for class %s", current.token[:8], current.class_id)
        return current.model_copy(update={"active": False, "deactivated_at": now})

    def cleanup_expired(self) -> int:
        """Flip every expired-but-active session to inactive. Safe to repeat."""
        now = self.clock()
        changed = self.store.update_many(
            SESSIONS,
            [("active", "==", True), ("expires_at", "<=", now)],
            {"active": False, "deactivated_at": now},
        )
        if changed:
            logger.info("Expiry sweep deactivated %d session(s)", changed)
        return changed

    def purge_retained(self) -> int:
        """Delete sessions whose expiry is older than the retention window."""
        cutoff = self.clock() - timedelta(hours=settings.SESSION_RETENTION_HOURS)
        purged = self.store.delete_many(SESSIONS, [("expires_at", "<=", cutoff)])
        if purged:
            logger.info("Purged %d session(s) past retention", purged)
        return purged

    def purge_class(self, class_id: str) -> Dict[str, int]:
        """Cascade delete for a removed class: its records, then its sessions."""
        with self._class_locks.hold(class_id):
            records = self.store.delete_many(RECORDS, [("class_id", "==", class_id)])
            sessions = self.store.delete_many(SESSIONS, [("class_id", "==", class_id)])
            self._class_locks.discard(class_id)
        logger.info("Purged class %s: %d session(s), %d record(s)", class_id, sessions, records)
        return {"sessions": sessions, "records": records}

    def _reload(self, session: AttendanceSession) -> AttendanceSession:
        current = self.get(session.token)
        if current is None:
            raise SessionNotFound("Attendance session not found")
        return current
