"""Suspicious activity heuristics over short per-actor histories.

The detector keeps the last few activities for each (actor, activity type)
and checks a handful of patterns over the trailing window. Its signals are
best-effort and feed review and alerting; nothing here blocks a request.
Legitimate travel trips the location heuristic and a static spoofed position
never will.
"""
import logging
import threading
from collections import deque
from datetime import datetime, timedelta
from typing import Any, Deque, Dict, List, Optional, Tuple

from presence.clock import Clock, utcnow
from presence.config import settings
from presence.errors import InvalidCoordinates
from presence.geo import distance
from presence.locks import KeyedLocks

logger = logging.getLogger(__name__)

# Activity types
FAILED_LOGIN = "failed_login"
LOGIN = "login"
ATTENDANCE_ATTEMPT = "attendance_attempt"
ATTENDANCE_MARKED = "attendance_marked"
LOCATION_SPOOFING_SUSPECTED = "location_spoofing_suspected"
QR_GENERATED = "qr_generated"

# Pattern names
EXCESSIVE_FAILED_LOGINS = "excessive_failed_logins"
EXCESSIVE_ATTENDANCE_ATTEMPTS = "excessive_attendance_attempts"
RAPID_LOCATION_CHANGE = "rapid_location_change"
MULTIPLE_SIMULTANEOUS_SESSIONS = "multiple_simultaneous_sessions"

Activity = Tuple[datetime, Dict[str, Any]]


class MemoryActivityStore:
    """Process-local histories, one bounded deque per (actor, type)."""

    def __init__(self, max_size: Optional[int] = None):
        self.max_size = max_size or settings.ACTIVITY_HISTORY_SIZE
        self._histories: Dict[Tuple[str, str], Deque[Activity]] = {}
        self._locks = KeyedLocks()
        self._guard = threading.Lock()

    def append(self, actor: str, activity_type: str, activity: Activity) -> List[Activity]:
        """Append and return a snapshot of the history, oldest first."""
        key = (actor, activity_type)
        with self._locks.hold(key):
            with self._guard:
                history = self._histories.get(key)
                if history is None:
                    history = self._histories[key] = deque(maxlen=self.max_size)
            history.append(activity)
            return list(history)

    def history(self, actor: str, activity_type: str) -> List[Activity]:
        key = (actor, activity_type)
        with self._locks.hold(key):
            with self._guard:
                history = self._histories.get(key)
            if history is None:
                self._locks.discard(key)
                return []
            return list(history)

    def prune(self, cutoff: datetime) -> int:
        """Drop histories whose newest activity is at or before ``cutoff``."""
        with self._guard:
            keys = list(self._histories)

        removed = 0
        for key in keys:
            with self._locks.hold(key):
                with self._guard:
                    history = self._histories.get(key)
                    if history is None or (history and history[-1][0] > cutoff):
                        continue
                    del self._histories[key]
                self._locks.discard(key)
                removed += 1
        return removed


class SuspiciousActivityDetector:
    def __init__(self, store: Optional[MemoryActivityStore] = None, clock: Clock = utcnow):
        self.store = store if store is not None else MemoryActivityStore()
        self.clock = clock

    def record(self, actor: str, activity_type: str, metadata: Optional[Dict[str, Any]] = None) -> List[str]:
        history = self.store.append(actor, activity_type, (self.clock(), dict(metadata or {})))
        return self.detect(activity_type, history)

    def prune(self) -> int:
        """Forget actors with no activity inside the lookback window."""
        cutoff = self.clock() - timedelta(seconds=settings.ACTIVITY_WINDOW_SECONDS)
        removed = self.store.prune(cutoff)
        if removed:
            logger.info("Pruned %d idle activity history(ies)", removed)
        return removed

    def is_suspicious(self, actor: str, activity_type: str) -> bool:
        return bool(self.detect(activity_type, self.store.history(actor, activity_type)))

    def detect(self, activity_type: str, history: List[Activity]) -> List[str]:
        window_start = self.clock() - timedelta(seconds=settings.ACTIVITY_WINDOW_SECONDS)
        recent = [metadata for stamp, metadata in history if stamp > window_start]
        patterns = []

        if activity_type == FAILED_LOGIN and len(recent) >= settings.FAILED_LOGIN_THRESHOLD:
            patterns.append(EXCESSIVE_FAILED_LOGINS)

        if activity_type == ATTENDANCE_ATTEMPT and len(recent) >= settings.ATTENDANCE_ATTEMPT_THRESHOLD:
            patterns.append(EXCESSIVE_ATTENDANCE_ATTEMPTS)

        if activity_type == ATTENDANCE_MARKED and len(recent) >= settings.RAPID_LOCATION_MIN_MARKINGS:
            if self._max_hop(recent) > settings.RAPID_LOCATION_DISTANCE_METERS:
                patterns.append(RAPID_LOCATION_CHANGE)

        if activity_type == LOGIN and len(recent) >= settings.LOGIN_DISTINCT_CLIENTS_THRESHOLD:
            clients = {m.get("ip") for m in recent if m.get("ip")}
            if len(clients) >= settings.LOGIN_DISTINCT_CLIENTS_THRESHOLD:
                patterns.append(MULTIPLE_SIMULTANEOUS_SESSIONS)

        return patterns

    @staticmethod
    def _max_hop(recent: List[Dict[str, Any]]) -> float:
        locations = [m["location"] for m in recent if m.get("location")]
        if len(locations) < settings.RAPID_LOCATION_MIN_MARKINGS:
            return 0.0
        hops = []
        for previous, current in zip(locations, locations[1:]):
            try:
                hops.append(distance(previous, current))
            except InvalidCoordinates:
                logger.debug("Ignoring malformed location in activity history")
        return max(hops, default=0.0)


class ActivityTracker:
    """Records activity and writes a security event for every pattern hit."""

    def __init__(self, detector: SuspiciousActivityDetector, security_log):
        self.detector = detector
        self.security_log = security_log

    def track(self, actor: Optional[str], activity_type: str,
              metadata: Optional[Dict[str, Any]] = None) -> List[str]:
        if not actor or not activity_type:
            return []

        patterns = self.detector.record(actor, activity_type, metadata)
        for pattern in patterns:
            logger.warning("Suspicious pattern %s for actor %s", pattern, actor)
            self.security_log.log_suspicious_activity(
                pattern,
                actor,
                {"source_activity": activity_type, "ip": (metadata or {}).get("ip")},
            )
        return patterns
