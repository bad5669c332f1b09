"""Error kinds surfaced to callers of the presence service.

Business outcomes (an expired session, a claim that is too far away) are
instances of these classes. The eligibility checker and the attendance
transaction hand them back as values; only the HTTP layer raises them.
"""
from typing import Any, Dict, Optional


class PresenceError(Exception):
    status_code: int = 400
    default_message: str = "Request could not be processed"

    def __init__(self, message: Optional[str] = None, **context: Any):
        self.message = message or self.default_message
        self.context: Dict[str, Any] = {k: v for k, v in context.items() if v is not None}
        self.headers: Dict[str, str] = {}
        super().__init__(self.message)

    @property
    def kind(self) -> str:
        return type(self).__name__

    def to_dict(self) -> Dict[str, Any]:
        body = {"error": self.kind, "message": self.message}
        body.update(self.context)
        return body


# Input errors

class InvalidDuration(PresenceError):
    default_message = "Duration is outside the allowed range"


class InvalidCoordinates(PresenceError):
    default_message = "Latitude must be between -90 and 90 and longitude between -180 and 180"


class MalformedDescriptor(PresenceError):
    default_message = "Invalid QR code. Please scan a valid attendance QR code."


# State errors

class SessionNotFound(PresenceError):
    status_code = 404
    default_message = "Invalid QR code. Please scan a valid attendance QR code."


class SessionExpired(PresenceError):
    default_message = "This QR code has expired. Please ask your teacher for a new one."


class SessionEnded(PresenceError):
    default_message = "This attendance session has been ended by the teacher"


class AlreadyInactive(PresenceError):
    status_code = 409
    default_message = "Session is already inactive"


class AlreadyMarked(PresenceError):
    status_code = 409
    default_message = "Attendance already marked for this session"


class NotEnrolled(PresenceError):
    status_code = 403
    default_message = "Student is not enrolled in this class"


class InvalidSessionState(PresenceError):
    status_code = 409
    default_message = "Cannot generate QR data for invalid session"


class ClassNotFound(PresenceError):
    status_code = 404
    default_message = "Class not found"


# Policy errors

class TooFar(PresenceError):
    default_message = "You are too far from the classroom to mark attendance"


class RateLimited(PresenceError):
    status_code = 429
    default_message = "Too many requests. Please try again later."


# Access errors

class Unauthorized(PresenceError):
    status_code = 401
    default_message = "Authentication required"


class AccessDenied(PresenceError):
    status_code = 403
    default_message = "Access denied"


# System errors

class SystemFailure(PresenceError):
    status_code = 500
    default_message = "Internal server error. Please try again."


class ClassLocationMissing(SystemFailure):
    default_message = "Class location not configured"
