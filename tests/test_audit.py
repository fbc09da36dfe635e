"""Audit logger tests."""

import json
import logging

import pytest

from shortlink.audit import AuditAction, AuditLogger


def _records(caplog: pytest.LogCaptureFixture) -> list[dict]:
    return [json.loads(record.getMessage()) for record in caplog.records if record.name == "shortlink.audit"]


def test_success_is_logged_at_info(caplog: pytest.LogCaptureFixture) -> None:
    caplog.set_level(logging.INFO, logger="shortlink.audit")

    AuditLogger().record("198.51.100.4", AuditAction.URL_CREATE, "success", resource_id=12, details={"code": "abc123"})

    (entry,) = _records(caplog)
    assert entry["action"] == "URL_CREATE"
    assert entry["actor"] == "198.51.100.4"
    assert entry["resource_id"] == "12"
    assert entry["details"] == {"code": "abc123"}
    assert caplog.records[-1].levelno == logging.INFO


def test_security_events_and_failures_are_warnings(caplog: pytest.LogCaptureFixture) -> None:
    caplog.set_level(logging.INFO, logger="shortlink.audit")
    audit = AuditLogger()

    audit.record(None, AuditAction.SECURITY_RATE_LIMIT, "rejected")
    audit.record("1.2.3.4", AuditAction.URL_PASSWORD_CHECK, "failure")

    levels = [record.levelno for record in caplog.records if record.name == "shortlink.audit"]
    assert levels == [logging.WARNING, logging.WARNING]
    assert _records(caplog)[0]["actor"] == "anonymous"


def test_sensitive_details_are_redacted(caplog: pytest.LogCaptureFixture) -> None:
    caplog.set_level(logging.INFO, logger="shortlink.audit")

    AuditLogger().record(
        "1.2.3.4",
        AuditAction.URL_UPDATE,
        "success",
        details={"password": "hunter2", "nested": {"api_token": "t0k"}, "fields": ["url"]},
    )

    (entry,) = _records(caplog)
    assert entry["details"] == {"password": "[REDACTED]", "nested": {"api_token": "[REDACTED]"}, "fields": ["url"]}


def test_disabled_logger_writes_nothing(caplog: pytest.LogCaptureFixture) -> None:
    caplog.set_level(logging.INFO, logger="shortlink.audit")
    AuditLogger(enabled=False).record("1.2.3.4", AuditAction.URL_DELETE, "success")
    assert _records(caplog) == []
