"""
Audit sink for backup lifecycle events.

The audit trail itself is owned by the main application; the default sink
forwards events to a dedicated logger so any log shipper can pick them up.
"""

from __future__ import annotations

import json
import logging
import time
from dataclasses import dataclass, field
from typing import Optional, Protocol

AUDIT_LOGGER_NAME = "studio_backup.audit"

INFO = "info"
WARNING = "warning"
ERROR = "error"

_LEVELS = {INFO: logging.INFO, WARNING: logging.WARNING, ERROR: logging.ERROR}


class AuditSink(Protocol):
    def log(
        self,
        action: str,
        details: dict,
        *,
        severity: str = INFO,
        user_id: Optional[str] = None,
    ) -> None:
        ...


@dataclass
class AuditEvent:
    action: str
    details: dict
    severity: str
    user_id: Optional[str]
    resource_type: str = "system"
    timestamp: float = field(default_factory=lambda: time.time())


class LoggingAuditSink:
    """Writes one JSON line per event to the audit logger."""

    def __init__(self, logger: Optional[logging.Logger] = None):
        self.logger = logger or logging.getLogger(AUDIT_LOGGER_NAME)

    def log(
        self,
        action: str,
        details: dict,
        *,
        severity: str = INFO,
        user_id: Optional[str] = None,
    ) -> None:
        event = AuditEvent(action=action, details=details, severity=severity, user_id=user_id)
        self.logger.log(
            _LEVELS.get(severity, logging.INFO),
            json.dumps(
                {
                    "action": event.action,
                    "resource_type": event.resource_type,
                    "severity": event.severity,
                    "user_id": event.user_id,
                    "details": event.details,
                    "timestamp": event.timestamp,
                },
                default=str,
            ),
        )


class InMemoryAuditSink:
    """Test double collecting events in a list."""

    def __init__(self):
        self.events: list[AuditEvent] = []

    def log(
        self,
        action: str,
        details: dict,
        *,
        severity: str = INFO,
        user_id: Optional[str] = None,
    ) -> None:
        self.events.append(
            AuditEvent(action=action, details=details, severity=severity, user_id=user_id)
        )

    def actions(self) -> list[str]:
        return [event.action for event in self.events]
