"""Session descriptor codec.

The descriptor is what the instructor's screen renders as a QR code and what
the attendee's scanner sends back. It travels through an untrusted client, so
``decode`` only checks its shape; the token inside must still be resolved
against the session store before anything is trusted.
"""
import base64
import io
import json
import logging
from datetime import datetime, timezone
from typing import Any, Dict, Optional, Union

import qrcode
from qrcode.constants import ERROR_CORRECT_M
from pydantic import ValidationError

from presence.errors import InvalidCoordinates, InvalidSessionState
from presence.geo import validate_coordinates
from presence.models import AttendanceSession, ClassInfo, SessionDescriptor

logger = logging.getLogger(__name__)

REQUIRED_FIELDS = ("sessionToken", "classId", "className", "location", "expiresAt")


def encode(session: AttendanceSession, class_info: ClassInfo, now: datetime) -> SessionDescriptor:
    if not session.is_valid(now):
        raise InvalidSessionState()
    if class_info.location is None:
        raise InvalidSessionState("Class location not configured")
    return SessionDescriptor(
        session_token=session.token,
        class_id=session.class_id,
        class_name=class_info.name,
        location=class_info.location,
        expires_at=session.expires_at,
    )


def to_payload(descriptor: SessionDescriptor) -> Dict[str, Any]:
    return descriptor.model_dump(mode="json", by_alias=True)


def dumps(descriptor: SessionDescriptor) -> str:
    return json.dumps(to_payload(descriptor), separators=(",", ":"))


def decode(raw: Union[str, bytes, Dict[str, Any], None]) -> Optional[SessionDescriptor]:
    """Parse a scanned descriptor; None when it is malformed."""
    if isinstance(raw, (str, bytes)):
        try:
            raw = json.loads(raw)
        except (ValueError, UnicodeDecodeError) as e:
            logger.debug(f"Descriptor is not valid JSON: {e}")
            return None

    if not isinstance(raw, dict):
        return None
    if any(field not in raw for field in REQUIRED_FIELDS):
        return None

    location = raw.get("location")
    if not isinstance(location, dict):
        return None
    try:
        validate_coordinates(location.get("lat"), location.get("lng"))
    except InvalidCoordinates:
        return None

    if not isinstance(raw["sessionToken"], str) or not raw["sessionToken"]:
        return None

    try:
        descriptor = SessionDescriptor.model_validate(raw)
    except ValidationError as e:
        logger.debug("Descriptor failed validation: %s", e.errors())
        return None

    # Timestamps without an offset are read as UTC
    if descriptor.expires_at.tzinfo is None:
        descriptor = descriptor.model_copy(
            update={"expires_at": descriptor.expires_at.replace(tzinfo=timezone.utc)}
        )
    return descriptor


def is_descriptor_expired(descriptor: SessionDescriptor, now: datetime) -> bool:
    return now >= descriptor.expires_at


def render_qr(descriptor: SessionDescriptor) -> str:
    """PNG data URL of the QR code carrying the descriptor."""
    img = qrcode.make(dumps(descriptor), error_correction=ERROR_CORRECT_M, border=1)
    buf = io.BytesIO()
    img.save(buf, format="PNG")
    qr_b64 = base64.b64encode(buf.getvalue()).decode("utf-8")
    return f"data:image/png;base64,{qr_b64}"
