"""Audit trail for link management and security events.

Each record is one JSON object written to the ``shortlink.audit`` logger,
so shipping and retention are left to the logging configuration. Values
under sensitive keys are redacted before they are written.
"""

import json
import logging
from enum import StrEnum
from typing import Any

from shortlink.timeutils import utcnow

__all__ = ["AuditAction", "AuditLogger"]

SENSITIVE_KEYS = ("password", "token", "secret", "key", "authorization")
REDACTED = "[REDACTED]"


class AuditAction(StrEnum):
    URL_CREATE = "URL_CREATE"
    URL_UPDATE = "URL_UPDATE"
    URL_DELETE = "URL_DELETE"
    URL_PASSWORD_CHECK = "URL_PASSWORD_CHECK"
    SECURITY_RATE_LIMIT = "SECURITY_RATE_LIMIT"
    SECURITY_INVALID_INPUT = "SECURITY_INVALID_INPUT"
    SYSTEM_START = "SYSTEM_START"
    SYSTEM_SHUTDOWN = "SYSTEM_SHUTDOWN"


def _redact(details: dict[str, Any]) -> dict[str, Any]:
    clean: dict[str, Any] = {}
    for key, value in details.items():
        if any(marker in key.lower() for marker in SENSITIVE_KEYS):
            clean[key] = REDACTED
        elif isinstance(value, dict):
            clean[key] = _redact(value)
        else:
            clean[key] = value
    return clean


class AuditLogger:
    def __init__(self, enabled: bool = True, logger: logging.Logger | None = None) -> None:
        self.enabled = enabled
        self._logger = logger or logging.getLogger("shortlink.audit")

    def record(
        self,
        actor: str | None,
        action: AuditAction,
        outcome: str,
        resource_id: str | int | None = None,
        details: dict[str, Any] | None = None,
    ) -> None:
        if not self.enabled:
            return
        entry: dict[str, Any] = {
            "timestamp": utcnow().isoformat(),
            "action": str(action),
            "actor": actor or "anonymous",
            "outcome": outcome,
        }
        if resource_id is not None:
            entry["resource_id"] = str(resource_id)
        if details:
            entry["details"] = _redact(details)

        line = json.dumps(entry, default=str, sort_keys=True)
        if action.startswith("SECURITY_") or outcome != "success":
            self._logger.warning(line)
        else:
            self._logger.info(line)
