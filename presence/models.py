import math
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field


class Location(BaseModel):
    # Range checks happen in presence.geo so they surface as InvalidCoordinates
    lat: float
    lng: float


class ClassInfo(BaseModel):
    id: str
    name: str
    teacher_id: Optional[str] = None
    subject: Optional[str] = None
    location: Optional[Location] = None


class AttendanceSession(BaseModel):
    token: str = Field(..., description="Opaque session token, also the document id")
    class_id: str
    created_at: datetime
    expires_at: datetime
    active: bool = True
    deactivated_at: Optional[datetime] = None

    def is_expired(self, now: datetime) -> bool:
        return now >= self.expires_at

    def is_valid(self, now: datetime) -> bool:
        return self.active and not self.is_expired(now)

    def ended_early(self) -> bool:
        """Deactivated before its window closed (by the owner or a newer session)."""
        return (
            not self.active
            and self.deactivated_at is not None
            and self.deactivated_at < self.expires_at
        )

    def remaining(self, now: datetime) -> timedelta:
        return max(timedelta(0), self.expires_at - now)

    def remaining_minutes(self, now: datetime) -> int:
        return math.ceil(self.remaining(now).total_seconds() / 60)


class AttendanceRecord(BaseModel):
    id: str
    session_token: str
    class_id: str
    attendee_id: str
    location: Location
    marked_at: datetime
    distance: float


class SessionDescriptor(BaseModel):
    """Portable session payload embedded in the QR code."""
    model_config = ConfigDict(populate_by_name=True)

    session_token: str = Field(..., alias="sessionToken")
    class_id: str = Field(..., alias="classId")
    class_name: str = Field(..., alias="className")
    location: Location
    expires_at: datetime = Field(..., alias="expiresAt")


# Request models

class CreateSessionRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    duration_minutes: Any = Field(default=None, alias="durationMinutes")


class ExtendSessionRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    additional_minutes: Any = Field(default=None, alias="additionalMinutes")


class MarkAttendanceRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    session_token: str = Field(..., alias="sessionToken", min_length=1)
    location: Location


class ScanAttendanceRequest(BaseModel):
    descriptor: Any = Field(..., description="Raw descriptor as scanned (JSON string or object)")
    location: Location


class LoginEventRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    actor_id: str = Field(..., alias="actorId", min_length=1)
    success: bool
    client_ip: Optional[str] = Field(default=None, alias="clientIp")
    user_agent: Optional[str] = Field(default=None, alias="userAgent")


# Response models

class SessionInfo(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    session_token: str = Field(..., serialization_alias="sessionToken")
    class_id: str = Field(..., serialization_alias="classId")
    class_name: Optional[str] = Field(default=None, serialization_alias="className")
    created_at: datetime = Field(..., serialization_alias="createdAt")
    expires_at: datetime = Field(..., serialization_alias="expiresAt")
    remaining_minutes: int = Field(..., serialization_alias="remainingMinutes")
    is_active: bool = Field(..., serialization_alias="isActive")
    is_expired: bool = Field(..., serialization_alias="isExpired")
    is_valid: bool = Field(..., serialization_alias="isValid")


class SessionResponse(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    success: bool = True
    session: SessionInfo
    qr_data: Optional[Dict[str, Any]] = Field(default=None, serialization_alias="qrData")
    qr_image: Optional[str] = Field(default=None, serialization_alias="qrImage")


class AttendanceResult(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    success: bool = True
    message: str
    record_id: str = Field(..., serialization_alias="recordId")
    class_id: str = Field(..., serialization_alias="classId")
    class_name: str = Field(..., serialization_alias="className")
    marked_at: datetime = Field(..., serialization_alias="markedAt")
    distance: float
    tolerance_meters: float = Field(..., serialization_alias="toleranceMeters")
    session_expires_at: datetime = Field(..., serialization_alias="sessionExpiresAt")


class SecurityStats(BaseModel):
    total: int
    by_level: Dict[str, int]
    by_event: Dict[str, int]
    by_hour: Dict[int, int]
    top_ips: Dict[str, int]
    suspicious_users: List[str]
