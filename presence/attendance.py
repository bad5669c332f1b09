"""Attendance marking.

The transaction runs eligibility, then proximity, then writes the record.
The record id is derived from (session, attendee), so the store's
create-if-absent is what guarantees at most one record per pair: a request
that passes the eligibility read but loses the write to a concurrent
duplicate gets AlreadyMarked, exactly like one that was caught by the read.
"""
import logging
from dataclasses import dataclass
from typing import Any, Dict, Optional

from presence import activity, proximity
from presence.activity import ActivityTracker
from presence.clock import Clock, utcnow
from presence.config import settings
from presence.eligibility import EligibilityChecker, record_id
from presence.errors import (
    AlreadyMarked,
    InvalidCoordinates,
    PresenceError,
    SystemFailure,
    TooFar,
)
from presence.geo import validate_coordinates
from presence.models import AttendanceRecord, AttendanceSession, ClassInfo, Location
from presence.security_log import LogLevel, SecurityEventLog, SecurityEvents
from presence.sessions import RECORDS
from presence.store import DocumentStore, DuplicateKeyError, StoreError

logger = logging.getLogger(__name__)


@dataclass
class AttendanceOutcome:
    record: Optional[AttendanceRecord] = None
    distance: Optional[float] = None
    tolerance_meters: Optional[float] = None
    session: Optional[AttendanceSession] = None
    class_info: Optional[ClassInfo] = None
    error: Optional[PresenceError] = None

    @property
    def success(self) -> bool:
        return self.error is None and self.record is not None


def mask_token(token: str) -> str:
    return f"{token[:8]}..." if token else ""


class AttendanceTransaction:
    def __init__(self, store: DocumentStore, checker: EligibilityChecker,
                 security_log: SecurityEventLog, tracker: ActivityTracker,
                 clock: Clock = utcnow):
        self.store = store
        self.checker = checker
        self.security_log = security_log
        self.tracker = tracker
        self.clock = clock

    def mark_attendance(self, session_token: str, attendee_id: str, claimed: Location,
                        tolerance_meters: Optional[float] = None,
                        client_ip: Optional[str] = None) -> AttendanceOutcome:
        if tolerance_meters is None:
            tolerance_meters = settings.PROXIMITY_TOLERANCE_METERS
        context = {
            "session_token": mask_token(session_token),
            "location": {"lat": claimed.lat, "lng": claimed.lng},
            "ip": client_ip,
        }

        self.tracker.track(attendee_id, activity.ATTENDANCE_ATTEMPT, dict(context))

        try:
            outcome = self._run(session_token, attendee_id, claimed, tolerance_meters)
        except StoreError as e:
            logger.exception("Storage failure while marking attendance")
            self.security_log.log(
                SecurityEvents.SYSTEM_ERROR,
                LogLevel.HIGH,
                {**context, "error": str(e), "operation": "mark_attendance"},
                attendee_id,
            )
            return AttendanceOutcome(tolerance_meters=tolerance_meters, error=SystemFailure())

        self._report(outcome, attendee_id, claimed, context)
        return outcome

    def _run(self, session_token, attendee_id, claimed, tolerance_meters) -> AttendanceOutcome:
        try:
            validate_coordinates(claimed.lat, claimed.lng)
        except InvalidCoordinates as e:
            return AttendanceOutcome(tolerance_meters=tolerance_meters, error=e)

        eligibility = self.checker.check(session_token, attendee_id)
        if not eligibility.eligible:
            return AttendanceOutcome(
                session=eligibility.session,
                class_info=eligibility.class_info,
                tolerance_meters=tolerance_meters,
                error=eligibility.error,
            )

        session, class_info = eligibility.session, eligibility.class_info
        try:
            check = proximity.verify(claimed, class_info.location, tolerance_meters)
        except PresenceError as e:
            return AttendanceOutcome(session=session, class_info=class_info,
                                     tolerance_meters=tolerance_meters, error=e)

        if not check.accepted:
            return AttendanceOutcome(
                session=session,
                class_info=class_info,
                distance=check.distance,
                tolerance_meters=tolerance_meters,
                error=TooFar(
                    check.message(),
                    distance=round(check.distance),
                    toleranceMeters=tolerance_meters,
                    className=class_info.name,
                ),
            )

        doc_id = record_id(session.token, attendee_id)
        now = self.clock()
        try:
            self.store.create(RECORDS, doc_id, {
                "session_token": session.token,
                "class_id": session.class_id,
                "attendee_id": attendee_id,
                "location": {"lat": claimed.lat, "lng": claimed.lng},
                "marked_at": now,
                "distance": check.distance,
            })
        except DuplicateKeyError:
            logger.info("Concurrent duplicate for %s resolved as already marked", doc_id)
            return AttendanceOutcome(
                session=session,
                class_info=class_info,
                distance=check.distance,
                tolerance_meters=tolerance_meters,
                error=AlreadyMarked(className=class_info.name),
            )

        record = AttendanceRecord(
            id=doc_id,
            session_token=session.token,
            class_id=session.class_id,
            attendee_id=attendee_id,
            location=claimed,
            marked_at=now,
            distance=check.distance,
        )
        return AttendanceOutcome(
            record=record,
            distance=check.distance,
            tolerance_meters=tolerance_meters,
            session=session,
            class_info=class_info,
        )

    def _report(self, outcome: AttendanceOutcome, attendee_id: str, claimed: Location,
                context: Dict[str, Any]) -> None:
        details = dict(context)
        if outcome.class_info is not None:
            details["class_name"] = outcome.class_info.name
        if outcome.distance is not None:
            details["distance"] = round(outcome.distance, 1)
            details["tolerance_meters"] = outcome.tolerance_meters

        if outcome.success:
            logger.info(f"Marked {attendee_id} present in session {context['session_token']}")
            self.security_log.log_attendance_event(True, attendee_id, details)
            self.tracker.track(attendee_id, activity.ATTENDANCE_MARKED, {
                "location": {"lat": claimed.lat, "lng": claimed.lng},
                "distance": outcome.distance,
                "ip": context.get("ip"),
            })
            return

        details["reason"] = outcome.error.kind
        logger.info("Attendance rejected for %s: %s", attendee_id, outcome.error.kind)
        self.security_log.log_attendance_event(False, attendee_id, details)

        if isinstance(outcome.error, TooFar):
            self.security_log.log(
                SecurityEvents.LOCATION_VERIFICATION_FAILED, LogLevel.MEDIUM, details, attendee_id
            )
            if outcome.distance > settings.SPOOFING_DISTANCE_MULTIPLIER * outcome.tolerance_meters:
                self.security_log.log_suspicious_activity("potential_location_spoofing", attendee_id, details)
                self.tracker.track(attendee_id, activity.LOCATION_SPOOFING_SUSPECTED, {
                    "location": {"lat": claimed.lat, "lng": claimed.lng},
                    "distance": outcome.distance,
                    "ip": context.get("ip"),
                })
        elif outcome.error.kind in ("SessionNotFound", "SessionExpired", "SessionEnded"):
            self.security_log.log(SecurityEvents.INVALID_QR_SCAN, LogLevel.LOW, details, attendee_id)
