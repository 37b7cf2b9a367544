"""
Audit trail - The Black Box
===========================
Every state change, webhook receipt and reconciliation discrepancy flows
through here. Entries carry the request's correlation id, so one checkout can
be replayed end to end from the log.
"""

from typing import Any, Optional

import structlog

from errors import StorageError
from schemas.orders import AuditEventType, AuditLogEntry
from storage.interfaces import IAuditLog

logger = structlog.get_logger().bind(component="audit")


def current_correlation_id() -> Optional[str]:
    return structlog.contextvars.get_contextvars().get("correlation_id")


class AuditTrail:
    def __init__(self, audit_log: IAuditLog):
        self.log = audit_log

    async def emit(
        self,
        event_type: AuditEventType,
        entity_type: str,
        entity_id: Optional[str],
        severity: str = "INFO",
        **payload: Any,
    ) -> AuditLogEntry:
        entry = AuditLogEntry(
            correlation_id=current_correlation_id(),
            event_type=event_type,
            entity_type=entity_type,
            entity_id=entity_id,
            severity=severity,
            payload=payload,
        )

        # Log to console with context
        log_method = getattr(logger, severity.lower(), logger.info)
        log_method(
            "audit_event",
            event_type=event_type.value,
            entity_type=entity_type,
            entity_id=entity_id,
            **payload,
        )

        try:
            await self.log.append(entry)
        except StorageError as e:
            logger.error("audit_append_failed", event_type=event_type.value, error=str(e))

        return entry
