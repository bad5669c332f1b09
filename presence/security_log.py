"""Append-only structured log of security-relevant events.

Each event is one JSON line in a per-day file under SECURITY_LOG_DIR. Events
at an alerting level (HIGH and CRITICAL by default) are also handed to the
registered alert hooks. The read side aggregates recent events for the admin
dashboard.
"""
import json
import logging
import os
import re
import secrets
import string
import threading
from collections import Counter
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, Iterable, List, Optional

from presence.clock import Clock, epoch_ms, utcnow
from presence.config import settings

logger = logging.getLogger(__name__)
event_logger = logging.getLogger("presence_service.security")


class LogLevel:
    LOW = "LOW"
    MEDIUM = "MEDIUM"
    HIGH = "HIGH"
    CRITICAL = "CRITICAL"

    ALL = (LOW, MEDIUM, HIGH, CRITICAL)


class SecurityEvents:
    # Authentication
    LOGIN_SUCCESS = "login_success"
    LOGIN_FAILED = "login_failed"

    # Authorization
    UNAUTHORIZED_ACCESS = "unauthorized_access"
    PERMISSION_DENIED = "permission_denied"

    RATE_LIMIT_EXCEEDED = "rate_limit_exceeded"
    SUSPICIOUS_ACTIVITY = "suspicious_activity"

    INVALID_INPUT = "invalid_input"
    SYSTEM_ERROR = "system_error"

    # Attendance
    ATTENDANCE_MARKED = "attendance_marked"
    ATTENDANCE_FAILED = "attendance_failed"
    QR_GENERATED = "qr_generated"
    INVALID_QR_SCAN = "invalid_qr_scan"
    LOCATION_VERIFICATION_FAILED = "location_verification_failed"
    SESSION_EXTENDED = "session_extended"
    SESSION_DEACTIVATED = "session_deactivated"

    @classmethod
    def all(cls) -> List[str]:
        return [v for k, v in vars(cls).items() if k.isupper() and isinstance(v, str)]


_PYTHON_LEVELS = {
    LogLevel.LOW: logging.INFO,
    LogLevel.MEDIUM: logging.WARNING,
    LogLevel.HIGH: logging.ERROR,
    LogLevel.CRITICAL: logging.CRITICAL,
}

_SENSITIVE_KEY = re.compile(r"password|token|key|secret", re.IGNORECASE)
_ID_ALPHABET = string.digits + string.ascii_lowercase

AlertHook = Callable[[Dict[str, Any]], None]


def log_alert(entry: Dict[str, Any]) -> None:
    event_logger.warning(
        "SECURITY ALERT: %s [%s] actor=%s details=%s",
        entry["event"], entry["level"], entry.get("actor_id"), entry["details"],
    )


def sanitize_for_log(data: Any) -> Any:
    if isinstance(data, str):
        return _SENSITIVE_KEY.sub("[REDACTED]", data)[:500]
    if isinstance(data, dict):
        return {
            key: "[REDACTED]" if _SENSITIVE_KEY.search(str(key)) else sanitize_for_log(value)
            for key, value in data.items()
        }
    if isinstance(data, (list, tuple)):
        return [sanitize_for_log(item) for item in data]
    return data


class SecurityEventLog:
    def __init__(self, log_dir: Optional[str] = None, clock: Clock = utcnow,
                 alert_hooks: Optional[Iterable[AlertHook]] = None,
                 alert_levels: Optional[Iterable[str]] = None):
        self.log_dir = log_dir or settings.SECURITY_LOG_DIR
        self.clock = clock
        self.alert_hooks: List[AlertHook] = list(alert_hooks) if alert_hooks is not None else [log_alert]
        self.alert_levels = set(alert_levels if alert_levels is not None else settings.ALERT_LEVELS)
        self._lock = threading.Lock()
        os.makedirs(self.log_dir, exist_ok=True)

    @staticmethod
    def _generate_id(now: datetime) -> str:
        suffix = "".join(secrets.choice(_ID_ALPHABET) for _ in range(9))
        return f"{epoch_ms(now)}-{suffix}"

    def _path_for(self, day: str) -> str:
        return os.path.join(self.log_dir, f"security-{day}.log")

    def log(self, event: str, level: str, details: Optional[Dict[str, Any]] = None,
            actor_id: Optional[str] = None) -> str:
        if level not in LogLevel.ALL:
            raise ValueError(f"Unknown security log level: {level}")

        now = self.clock()
        details = dict(details or {})
        for field in ("ip", "user_agent", "url"):
            if not details.get(field):
                details[field] = "unknown"

        entry = {
            "id": self._generate_id(now),
            "timestamp": now.isoformat(),
            "event": event,
            "level": level,
            "actor_id": actor_id,
            "details": details,
        }

        self._write(entry, now)
        event_logger.log(_PYTHON_LEVELS[level], "[SECURITY %s] %s actor=%s", level, event, actor_id)

        if level in self.alert_levels:
            for hook in self.alert_hooks:
                try:
                    hook(entry)
                except Exception:
                    logger.exception("Security alert hook %r failed", hook)

        return entry["id"]

    def _write(self, entry: Dict[str, Any], now: datetime) -> None:
        line = json.dumps(entry, default=str) + "\n"
        try:
            with self._lock:
                with open(self._path_for(now.date().isoformat()), "a", encoding="utf-8") as f:
                    f.write(line)
        except OSError:
            logger.exception("Failed to write security log entry %s", entry["id"])

    # Convenience methods

    def log_attendance_event(self, success: bool, actor_id: Optional[str], details=None) -> str:
        if success:
            return self.log(SecurityEvents.ATTENDANCE_MARKED, LogLevel.LOW, details, actor_id)
        return self.log(SecurityEvents.ATTENDANCE_FAILED, LogLevel.MEDIUM, details, actor_id)

    def log_login_attempt(self, success: bool, actor_id: Optional[str], details=None) -> str:
        if success:
            return self.log(SecurityEvents.LOGIN_SUCCESS, LogLevel.LOW, details, actor_id)
        return self.log(SecurityEvents.LOGIN_FAILED, LogLevel.MEDIUM, details, actor_id)

    def log_suspicious_activity(self, activity_type: str, actor_id: Optional[str], details=None) -> str:
        return self.log(
            SecurityEvents.SUSPICIOUS_ACTIVITY,
            LogLevel.HIGH,
            {"activity_type": activity_type, **(details or {})},
            actor_id,
        )

    def log_rate_limit_exceeded(self, endpoint: str, ip: str, details=None) -> str:
        return self.log(
            SecurityEvents.RATE_LIMIT_EXCEEDED,
            LogLevel.MEDIUM,
            {"endpoint": endpoint, "ip": ip, **(details or {})},
        )

    def log_invalid_input(self, data: Any, endpoint: str, details=None) -> str:
        return self.log(
            SecurityEvents.INVALID_INPUT,
            LogLevel.MEDIUM,
            {"input": sanitize_for_log(data), "endpoint": endpoint, **(details or {})},
        )

    def log_unauthorized_access(self, actor_id: Optional[str], resource: str, details=None) -> str:
        return self.log(
            SecurityEvents.UNAUTHORIZED_ACCESS,
            LogLevel.HIGH,
            {"resource": resource, **(details or {})},
            actor_id,
        )

    def log_permission_denied(self, actor_id: Optional[str], resource: str, details=None) -> str:
        return self.log(
            SecurityEvents.PERMISSION_DENIED,
            LogLevel.HIGH,
            {"resource": resource, **(details or {})},
            actor_id,
        )

    # Read side

    @staticmethod
    def _day_of(name: str) -> str:
        return name[len("security-"):-len(".log")]

    def _log_files(self) -> List[str]:
        try:
            names = os.listdir(self.log_dir)
        except FileNotFoundError:
            return []
        return sorted(n for n in names if n.startswith("security-") and n.endswith(".log"))

    def get_recent(self, hours: float = 24, level: Optional[str] = None) -> List[Dict[str, Any]]:
        cutoff = self.clock() - timedelta(hours=hours)
        events = []
        skipped = 0
        first_day = cutoff.date().isoformat()

        for name in self._log_files():
            if self._day_of(name) < first_day:
                continue
            with open(os.path.join(self.log_dir, name), encoding="utf-8") as f:
                for line in f:
                    if not line.strip():
                        continue
                    try:
                        entry = json.loads(line)
                        stamp = datetime.fromisoformat(entry["timestamp"])
                    except (ValueError, KeyError):
                        skipped += 1
                        continue
                    if stamp >= cutoff and (level is None or entry.get("level") == level):
                        events.append(entry)

        if skipped:
            logger.warning("Skipped %d unreadable security log line(s)", skipped)
        events.sort(key=lambda e: e["timestamp"], reverse=True)
        return events

    def get_stats(self, hours: float = 24) -> Dict[str, Any]:
        events = self.get_recent(hours)

        by_level = {lvl: 0 for lvl in LogLevel.ALL}
        by_event = {name: 0 for name in SecurityEvents.all()}
        by_hour: Counter = Counter()
        ips: Counter = Counter()
        suspicious_users = set()

        for entry in events:
            by_level[entry["level"]] = by_level.get(entry["level"], 0) + 1
            by_event[entry["event"]] = by_event.get(entry["event"], 0) + 1
            by_hour[datetime.fromisoformat(entry["timestamp"]).hour] += 1

            ip = entry.get("details", {}).get("ip")
            if ip and ip != "unknown":
                ips[ip] += 1

            if entry["level"] in (LogLevel.HIGH, LogLevel.CRITICAL) and entry.get("actor_id"):
                suspicious_users.add(entry["actor_id"])

        return {
            "total": len(events),
            "by_level": by_level,
            "by_event": by_event,
            "by_hour": dict(by_hour),
            "top_ips": dict(ips.most_common(10)),
            "suspicious_users": sorted(suspicious_users),
        }

    def purge_expired(self) -> int:
        """Remove daily files older than the retention window."""
        cutoff = (self.clock() - timedelta(days=settings.SECURITY_LOG_RETENTION_DAYS)).date().isoformat()
        removed = 0
        for name in self._log_files():
            if self._day_of(name) < cutoff:
                with self._lock:
                    os.remove(os.path.join(self.log_dir, name))
                removed += 1
        if removed:
            logger.info("Removed %d expired security log file(s)", removed)
        return removed
