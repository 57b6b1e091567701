"""
Audit Logging Module

Structured audit trail for status transitions, administrator overrides
and alerting events. Participant identifiers are hashed before they are
written so the audit file never carries raw ids.
"""

import hashlib
import itertools
import json
import logging
import logging.handlers
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Optional

_logger_ids = itertools.count(1)

HASHED_KEYS = ("appointment_id", "actor_id", "requester_id", "resource_id")


class AuditJSONFormatter(logging.Formatter):
    """Render audit records as one JSON object per line."""

    def format(self, record):
        """Format log record as an audit entry."""
        timestamp = datetime.fromtimestamp(record.created, tz=timezone.utc)

        audit_entry = {
            "timestamp": timestamp.isoformat(),
            "level": record.levelname,
            "event_type": getattr(record, "event_type", "SYSTEM"),
            "user_id": getattr(record, "user_id", "SYSTEM"),
            "action": getattr(record, "action", record.getMessage()),
            "resource": getattr(record, "resource", None),
            "result": getattr(record, "result", "SUCCESS"),
            "additional_data": getattr(record, "additional_data", {}),
        }

        # Remove None values to keep logs clean
        audit_entry = {k: v for k, v in audit_entry.items() if v is not None}

        return json.dumps(audit_entry, default=str)


class AuditLogger:
    """
    Audit logging system.

    Features:
    - Automatic log rotation
    - Hashed participant identifiers
    - Structured JSON format
    """

    def __init__(
        self,
        log_file: str = "audit.log",
        max_bytes: int = 10 * 1024 * 1024,
        backup_count: int = 5,
        enabled: bool = True,
    ):
        """
        Initialize audit logger.

        Args:
            log_file: Path to audit log file
            max_bytes: Maximum log file size before rotation (default: 10MB)
            backup_count: Number of backup files to keep
            enabled: When False, events are dropped without touching the file
        """
        self.log_file = Path(log_file)
        self.max_bytes = max_bytes
        self.backup_count = backup_count
        self.enabled = enabled
        # Each instance writes through its own child of "audit" so that
        # several engines in one process keep separate files.
        self._logger = logging.getLogger(f"audit.{next(_logger_ids)}")
        self._handler: Optional[logging.Handler] = None
        if self.enabled:
            self._setup_logger()

    def _setup_logger(self):
        """Set up the audit logger with rotation."""
        self.log_file.parent.mkdir(parents=True, exist_ok=True)

        handler = logging.handlers.RotatingFileHandler(
            filename=self.log_file,
            maxBytes=self.max_bytes,
            backupCount=self.backup_count,
            encoding="utf-8",
        )
        handler.setFormatter(AuditJSONFormatter())

        self._logger.addHandler(handler)
        self._logger.setLevel(logging.INFO)
        self._logger.propagate = False
        self._handler = handler

    def close(self):
        """Flush and detach this logger's file handler."""
        if self._handler is None:
            return
        self._handler.flush()
        self._logger.removeHandler(self._handler)
        self._handler.close()
        self._handler = None

    def _hash_sensitive_data(self, data: Optional[str]) -> Optional[str]:
        """Hash sensitive data for audit logging."""
        if not data:
            return None
        return hashlib.sha256(data.encode()).hexdigest()[:16]

    def _anonymize(self, details: Optional[Dict[str, Any]]) -> Dict[str, Any]:
        safe_details = {}
        for key, value in (details or {}).items():
            if key in HASHED_KEYS:
                safe_details[f"{key}_hash"] = self._hash_sensitive_data(
                    None if value is None else str(value)
                )
            else:
                safe_details[key] = value
        return safe_details

    def log_event(
        self,
        event_type: str,
        action: str,
        user_id: str = "SYSTEM",
        resource: Optional[str] = None,
        result: str = "SUCCESS",
        additional_data: Optional[Dict[str, Any]] = None,
    ):
        """
        Log an audit event.

        Args:
            event_type: Type of event (e.g., 'TRANSITION', 'OVERRIDE', 'ALERT')
            action: Description of the action performed
            user_id: Actor identifier (already hashed when sensitive)
            resource: Resource being changed
            result: Result of the action ('SUCCESS', 'REJECTED', 'ERROR')
            additional_data: Additional non-sensitive data
        """
        if self._handler is None:
            return

        extra = {
            "event_type": event_type,
            "user_id": user_id,
            "action": action,
            "resource": resource,
            "result": result,
            "additional_data": additional_data or {},
        }

        self._logger.info(action, extra=extra)

    def log_system_event(
        self,
        action: str,
        result: str = "SUCCESS",
        additional_data: Optional[Dict[str, Any]] = None,
    ):
        """Log a system event."""
        self.log_event(
            event_type="SYSTEM",
            action=action,
            result=result,
            additional_data=additional_data,
        )

    def log_transition_event(
        self,
        appointment_id: str,
        actor_id: str,
        actor_role: str,
        from_status: str,
        to_status: str,
        reason: Optional[str] = None,
    ):
        """Log a committed status transition."""
        self.log_event(
            event_type="TRANSITION",
            action="status_transition_committed",
            user_id=self._hash_sensitive_data(actor_id) or "SYSTEM",
            resource=self._hash_sensitive_data(appointment_id),
            additional_data={
                "actor_role": actor_role,
                "from_status": from_status,
                "to_status": to_status,
                "reason": reason,
            },
        )

    def log_transition_rejected(
        self,
        appointment_id: str,
        actor_id: str,
        actor_role: str,
        from_status: str,
        to_status: str,
        violation_codes: Any,
        result: str = "REJECTED",
    ):
        """
        Log a transition request that was not committed.

        Args:
            appointment_id: Appointment identifier (hashed)
            actor_id: Requesting actor (hashed)
            actor_role: Role of the requesting actor
            from_status: Resolved status at request time
            to_status: Requested target status
            violation_codes: Codes of the violated rules
            result: 'REJECTED' for rule violations, 'STALE' for lost races
        """
        self.log_event(
            event_type="TRANSITION",
            action="status_transition_rejected",
            user_id=self._hash_sensitive_data(actor_id) or "SYSTEM",
            resource=self._hash_sensitive_data(appointment_id),
            result=result,
            additional_data={
                "actor_role": actor_role,
                "from_status": from_status,
                "to_status": to_status,
                "violations": list(violation_codes),
            },
        )

    def log_status_override(
        self,
        appointment_id: str,
        actor_id: str,
        previous_status: str,
        override_status: str,
        reason: Optional[str] = None,
    ):
        """Log an administrator override of the resolved status."""
        self.log_event(
            event_type="OVERRIDE",
            action="status_override_applied",
            user_id=self._hash_sensitive_data(actor_id) or "SYSTEM",
            resource=self._hash_sensitive_data(appointment_id),
            additional_data={
                "previous_status": previous_status,
                "override_status": override_status,
                "reason": reason,
            },
        )

    def log_alert_event(self, action: str, alert: Dict[str, Any]):
        """Log alert creation or resolution."""
        details = dict(alert.get("metadata") or {})
        details.update(
            {
                "type": alert.get("type"),
                "severity": alert.get("severity"),
                "title": alert.get("title"),
            }
        )
        self.log_event(
            event_type="ALERT",
            action=action,
            resource=alert.get("id"),
            additional_data=self._anonymize(details),
        )
