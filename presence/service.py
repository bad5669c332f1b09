import logging
from typing import Optional

from presence.activity import ActivityTracker, SuspiciousActivityDetector
from presence.attendance import AttendanceTransaction
from presence.clock import Clock, utcnow
from presence.config import settings
from presence.directory import ClassDirectory
from presence.eligibility import EligibilityChecker
from presence.rate_limit import RateLimiter
from presence.security_log import SecurityEventLog
from presence.sessions import SessionLifecycle
from presence.store import DocumentStore, MemoryStore

logger = logging.getLogger(__name__)


class PresenceContext:
    """Everything a request needs, built around one document store.

    Rate-limit and activity state live in the injected stores, so tests and
    single-instance deployments get fresh in-memory ones while a shared
    backend can be passed in for multi-instance setups.
    """

    def __init__(self, store: DocumentStore, clock: Clock = utcnow,
                 security_log: Optional[SecurityEventLog] = None,
                 rate_limiter: Optional[RateLimiter] = None,
                 detector: Optional[SuspiciousActivityDetector] = None):
        self.store = store
        self.clock = clock
        self.directory = ClassDirectory(store)
        self.sessions = SessionLifecycle(store, clock)
        self.security_log = security_log or SecurityEventLog(clock=clock)
        self.rate_limiter = rate_limiter or RateLimiter(clock=clock)
        self.detector = detector or SuspiciousActivityDetector(clock=clock)
        self.tracker = ActivityTracker(self.detector, self.security_log)
        self.checker = EligibilityChecker(store, self.sessions, self.directory, clock)
        self.attendance = AttendanceTransaction(
            store, self.checker, self.security_log, self.tracker, clock
        )

    def run_maintenance(self) -> dict:
        """One pass of every periodic cleanup; each step is idempotent."""
        return {
            "sessions_expired": self.sessions.cleanup_expired(),
            "sessions_purged": self.sessions.purge_retained(),
            "log_files_removed": self.security_log.purge_expired(),
            "rate_windows_pruned": self.rate_limiter.prune(),
            "activity_histories_pruned": self.detector.prune(),
        }


def build_store() -> DocumentStore:
    if settings.STORE_BACKEND == "firestore":
        # Imported lazily so the memory backend runs without Firebase credentials
        from presence.firebase_service import FirestoreStore
        return FirestoreStore()
    if settings.STORE_BACKEND != "memory":
        raise ValueError(f"Unknown STORE_BACKEND: {settings.STORE_BACKEND}")
    logger.warning("Using in-memory document store; data is lost on restart")
    return MemoryStore()
