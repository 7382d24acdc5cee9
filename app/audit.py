"""Audit logging for registry-mutating operations.

Every mint, controller grant/revoke and key retirement (successful or
not) is written as a structured event to the "audit" logger and kept in
an in-memory ring buffer for the admin endpoint.
"""

import logging
from collections import deque
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from typing import Any

log = logging.getLogger("audit")


@dataclass
class AuditEvent:
    """Structured audit event."""

    action: str  # e.g., "pkp.mint", "controller.revoke", "pkp.retire"
    resource: str | None = None  # key id or handle
    status: str = "success"  # "success", "error", "noop"
    principal: str = "service"  # auth method handle the request acted for
    details: dict[str, Any] | None = None
    timestamp: str = field(default_factory=lambda: datetime.now(timezone.utc).isoformat())


class AuditLogger:
    """Audit logger for PKP operations.

    Logs events as structured JSON via Python's logging module and keeps
    the most recent ones in memory.
    """

    MAX_BUFFER_SIZE = 1000

    def __init__(self, enabled: bool = True):
        self.enabled = enabled
        self._buffer: deque[dict] = deque(maxlen=self.MAX_BUFFER_SIZE)

    def log(
        self,
        action: str,
        *,
        resource: str | None = None,
        status: str = "success",
        principal: str | None = None,
        details: dict[str, Any] | None = None,
    ) -> None:
        if not self.enabled:
            return

        event = AuditEvent(
            action=action,
            resource=resource,
            status=status,
            principal=principal or "service",
            details=details,
        )
        self._buffer.append(asdict(event))

        extra = {
            "type": "audit",
            "action": event.action,
            "status": event.status,
        }
        if event.resource:
            extra["resource"] = event.resource
        if event.details:
            extra["details"] = event.details

        if event.status == "error":
            log.warning(f"audit: {event.action} {event.status}", extra=extra)
        else:
            log.info(f"audit: {event.action} {event.status}", extra=extra)

    def get_recent_events(
        self,
        limit: int = 100,
        action_filter: str | None = None,
        status_filter: str | None = None,
    ) -> list[dict]:
        """Recent audit events, newest first.

        Args:
            limit: Max events to return
            action_filter: Filter by action prefix (e.g., "controller.")
            status_filter: Filter by status (e.g., "error")
        """
        events = list(self._buffer)
        events.reverse()

        if action_filter:
            events = [e for e in events if e["action"].startswith(action_filter)]
        if status_filter:
            events = [e for e in events if e["status"] == status_filter]

        return events[:limit]


_audit_logger: AuditLogger | None = None


def get_audit_logger() -> AuditLogger:
    """Get the global audit logger instance."""
    global _audit_logger
    if _audit_logger is None:
        _audit_logger = AuditLogger()
    return _audit_logger


def reset_audit_logger() -> None:
    """Reset the global audit logger (for testing)."""
    global _audit_logger
    _audit_logger = None
