import json
import os
import re

import pytest

from presence.security_log import LogLevel, SecurityEventLog, SecurityEvents, sanitize_for_log


def _lines(security_log, day="2024-03-04"):
    with open(os.path.join(security_log.log_dir, f"security-{day}.log"), encoding="utf-8") as f:
        return [json.loads(line) for line in f]


def test_log_appends_json_line(security_log):
    event_id = security_log.log(SecurityEvents.LOGIN_FAILED, LogLevel.MEDIUM, {"ip": "10.0.0.1"}, "user-1")

    assert re.fullmatch(r"\d+-[0-9a-z]{9}", event_id)
    [entry] = _lines(security_log)
    assert entry["id"] == event_id
    assert entry["event"] == "login_failed"
    assert entry["level"] == "MEDIUM"
    assert entry["actor_id"] == "user-1"
    assert entry["timestamp"] == "2024-03-04T09:00:00+00:00"
    assert entry["details"] == {"ip": "10.0.0.1", "user_agent": "unknown", "url": "unknown"}


def test_unknown_level_is_rejected(security_log):
    with pytest.raises(ValueError):
        security_log.log(SecurityEvents.LOGIN_FAILED, "SEVERE")


def test_alert_hooks_fire_for_high_and_critical_only(security_log, alerts):
    security_log.log(SecurityEvents.ATTENDANCE_MARKED, LogLevel.LOW)
    security_log.log(SecurityEvents.ATTENDANCE_FAILED, LogLevel.MEDIUM)
    security_log.log(SecurityEvents.UNAUTHORIZED_ACCESS, LogLevel.HIGH)
    security_log.log(SecurityEvents.SYSTEM_ERROR, LogLevel.CRITICAL)
    assert [a["level"] for a in alerts] == ["HIGH", "CRITICAL"]


def test_failing_hook_does_not_break_logging(tmp_path, clock):
    def broken(entry):
        raise RuntimeError("pager offline")

    log = SecurityEventLog(log_dir=str(tmp_path), clock=clock, alert_hooks=[broken])
    assert log.log(SecurityEvents.SUSPICIOUS_ACTIVITY, LogLevel.HIGH)
    assert len(log.get_recent()) == 1


def test_get_recent_filters_by_age_and_level(security_log, clock):
    security_log.log(SecurityEvents.LOGIN_FAILED, LogLevel.MEDIUM)
    clock.advance(hours=2)
    security_log.log(SecurityEvents.LOGIN_SUCCESS, LogLevel.LOW)
    security_log.log(SecurityEvents.UNAUTHORIZED_ACCESS, LogLevel.HIGH)

    recent = security_log.get_recent(hours=1)
    assert {e["event"] for e in recent} == {"login_success", "unauthorized_access"}
    assert [e["event"] for e in security_log.get_recent(hours=3, level="MEDIUM")] == ["login_failed"]
    assert security_log.get_recent(hours=3)[-1]["event"] == "login_failed"


def test_get_recent_spans_every_day_in_the_window(security_log, clock):
    security_log.log(SecurityEvents.LOGIN_FAILED, LogLevel.MEDIUM, actor_id="user-1")
    clock.advance(hours=-2)
    for _ in range(7):
        clock.advance(days=1)
        security_log.log(SecurityEvents.LOGIN_SUCCESS, LogLevel.LOW, actor_id="user-1")
    clock.advance(hours=1)

    assert len(os.listdir(security_log.log_dir)) == 8
    stats = security_log.get_stats(hours=168)
    assert stats["by_event"]["login_failed"] == 1
    assert stats["by_event"]["login_success"] == 7
    assert security_log.get_stats(hours=24)["by_event"]["login_failed"] == 0


def test_get_recent_skips_corrupt_lines(security_log):
    security_log.log(SecurityEvents.LOGIN_FAILED, LogLevel.MEDIUM)
    with open(os.path.join(security_log.log_dir, "security-2024-03-04.log"), "a", encoding="utf-8") as f:
        f.write("{not json\n")
    assert len(security_log.get_recent()) == 1


def test_get_stats(security_log):
    security_log.log_login_attempt(False, "user-1", {"ip": "10.0.0.1"})
    security_log.log_login_attempt(False, "user-1", {"ip": "10.0.0.1"})
    security_log.log_suspicious_activity("excessive_failed_logins", "user-1", {"ip": "10.0.0.1"})
    security_log.log_rate_limit_exceeded("auth", "10.0.0.2")
    security_log.log_unauthorized_access(None, "/admin/security")

    stats = security_log.get_stats(hours=24)
    assert stats["total"] == 5
    assert stats["by_level"] == {"LOW": 0, "MEDIUM": 3, "HIGH": 2, "CRITICAL": 0}
    assert stats["by_event"]["login_failed"] == 2
    assert stats["by_event"]["qr_generated"] == 0
    assert stats["by_hour"] == {9: 5}
    assert stats["top_ips"] == {"10.0.0.1": 3, "10.0.0.2": 1}
    assert stats["suspicious_users"] == ["user-1"]


def test_invalid_input_is_sanitized(security_log):
    security_log.log_invalid_input({"password": "hunter2", "note": "x" * 600}, "/attendance/mark")
    [entry] = _lines(security_log)
    assert entry["details"]["input"]["password"] == "[REDACTED]"
    assert len(entry["details"]["input"]["note"]) == 500


def test_sanitize_for_log():
    assert sanitize_for_log({"apiKey": "abc", "nested": [{"secret": 1}], "n": 3}) == {
        "apiKey": "[REDACTED]",
        "nested": [{"secret": "[REDACTED]"}],
        "n": 3,
    }
    assert sanitize_for_log("my token is here") == "my [REDACTED] is here"


def test_purge_expired_removes_old_files(security_log):
    security_log.log(SecurityEvents.LOGIN_SUCCESS, LogLevel.LOW)
    old = os.path.join(security_log.log_dir, "security-2024-01-01.log")
    with open(old, "w", encoding="utf-8") as f:
        f.write("")

    assert security_log.purge_expired() == 1
    assert not os.path.exists(old)
    assert security_log.purge_expired() == 0
    assert len(_lines(security_log)) == 1


def test_permission_denied_is_high(security_log, alerts):
    security_log.log_permission_denied("student-1", "/attendance/session/create", {"reason": "wrong_role"})
    [entry] = _lines(security_log)
    assert entry["event"] == "permission_denied"
    assert entry["level"] == "HIGH"
    assert entry["details"]["resource"] == "/attendance/session/create"
    assert [a["event"] for a in alerts] == ["permission_denied"]
