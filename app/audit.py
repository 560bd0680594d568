#!/usr/bin/env python3
"""
Sentinel Dispatch - Audit Logging Module

Records who did what to alerts and drones:
- Alert creation, neutralisation (single and bulk) and deletion
- Manual and automatic drone dispatch
- Operator drone commands
- System startup/shutdown

Audit events are written to:
1. The "audit" logger as one JSON document per line (always)
2. The audit_log table (when AUDIT_TO_DATABASE=true and a store is attached)
"""

import os
import json
import logging
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional

from entities import utc_now
from errors import DispatchError

logger = logging.getLogger(__name__)

# Create separate audit logger
audit_logger = logging.getLogger("audit")

AUDIT_LOG_LEVEL = os.environ.get("AUDIT_LOG_LEVEL", "INFO")

SYSTEM_USER = "system"

# =============================================================================
# Audit Event Types
# =============================================================================

class AuditAction(str, Enum):
    """Types of auditable actions."""
    # Alerts
    ALERT_CREATED = "alert_created"
    ALERT_NEUTRALISED = "alert_neutralised"
    ALERTS_NEUTRALISED_ALL = "alerts_neutralised_all"
    ALERT_DELETED = "alert_deleted"

    # Drones
    DRONE_DISPATCHED = "drone_dispatched"
    DRONE_AUTO_DISPATCHED = "drone_auto_dispatched"
    DRONE_COMMAND_SENT = "drone_command_sent"

    # System
    SYSTEM_STARTUP = "system_startup"
    SYSTEM_SHUTDOWN = "system_shutdown"


class AuditResult(str, Enum):
    """Result of an audited action."""
    SUCCESS = "success"
    FAILURE = "failure"
    SKIPPED = "skipped"


@dataclass
class AuditEvent:
    """Represents an audit log entry."""
    action: AuditAction
    result: AuditResult
    user: str  # Operator name, or "system" for automatic actions
    resource: Optional[str] = None  # Alert id, drone id, ...
    details: Dict[str, Any] = field(default_factory=dict)
    client_ip: Optional[str] = None
    timestamp: datetime = field(default_factory=utc_now)

    def to_dict(self) -> dict:
        """Convert to dictionary for JSON serialization."""
        return {
            "timestamp": self.timestamp.isoformat(),
            "action": self.action.value,
            "result": self.result.value,
            "user": self.user,
            "resource": self.resource,
            "details": self.details,
            "client_ip": self.client_ip,
        }

    def to_json(self) -> str:
        """Convert to JSON string."""
        return json.dumps(self.to_dict(), default=str)


# =============================================================================
# Audit Logger
# =============================================================================

class AuditLog:
    """
    Centralized audit logging with optional database storage.
    """

    def __init__(self, to_database: bool = False):
        self.to_database = to_database
        self._store = None
        self._setup_file_logger()

    def _setup_file_logger(self):
        """Configure the audit logger with JSON formatting (once per process)."""
        if audit_logger.handlers:
            return
        audit_handler = logging.StreamHandler()
        audit_formatter = logging.Formatter(
            '{"timestamp": "%(asctime)s", "level": "%(levelname)s", "audit": %(message)s}'
        )
        audit_handler.setFormatter(audit_formatter)
        audit_logger.addHandler(audit_handler)
        audit_logger.setLevel(getattr(logging, AUDIT_LOG_LEVEL.upper(), logging.INFO))

    def set_store(self, store):
        """Attach the entity store for database audit storage."""
        self._store = store
        if self.to_database:
            logger.info("Audit logging to database enabled")

    async def _write_to_database(self, event: AuditEvent):
        """Write audit event to database."""
        try:
            await self._store.insert_audit_event(dict(event.to_dict(), timestamp=event.timestamp))
        except DispatchError as e:
            logger.error(f"Failed to write audit event to database: {e}")

    async def log(self, event: AuditEvent):
        """Log an audit event."""
        audit_logger.info(event.to_json())

        if self.to_database and self._store is not None:
            await self._write_to_database(event)

    def log_sync(self, event: AuditEvent):
        """
        Synchronous logging (for non-async contexts).
        Only writes to the audit logger, not the database.
        """
        audit_logger.info(event.to_json())

    async def record(self, action: AuditAction, user: str, resource: Optional[str] = None,
                     result: AuditResult = AuditResult.SUCCESS, details: Optional[dict] = None,
                     client_ip: Optional[str] = None):
        """Build and log an event in one call."""
        await self.log(AuditEvent(
            action=action,
            result=result,
            user=user or SYSTEM_USER,
            resource=resource,
            details=details or {},
            client_ip=client_ip,
        ))

    async def query(
        self,
        action: Optional[AuditAction] = None,
        user: Optional[str] = None,
        resource: Optional[str] = None,
        limit: int = 100,
    ) -> List[dict]:
        """
        Query audit logs from database.
        Only works if database audit storage is enabled.
        """
        if not self.to_database or self._store is None:
            return []

        try:
            return await self._store.list_audit_events(
                action=action.value if action else None,
                user=user,
                resource=resource,
                limit=limit,
            )
        except DispatchError as e:
            logger.error(f"Failed to query audit logs: {e}")
            return []

    def system_startup(self):
        """Audit system startup (synchronous)."""
        self.log_sync(AuditEvent(
            action=AuditAction.SYSTEM_STARTUP,
            result=AuditResult.SUCCESS,
            user=SYSTEM_USER,
            details={"audit_to_database": self.to_database},
        ))

    def system_shutdown(self):
        """Audit system shutdown (synchronous)."""
        self.log_sync(AuditEvent(
            action=AuditAction.SYSTEM_SHUTDOWN,
            result=AuditResult.SUCCESS,
            user=SYSTEM_USER,
        ))
