"""
Audit and security event sinks used by the job executor.

The durable audit trail is owned by the wider application; the executor only
needs the two narrow calls described by ``AuditLogger``.
"""

from typing import Any, Protocol

from fieldqueue.config.logging import get_logger

logger = get_logger(__name__)


class AuditLogger(Protocol):
    """Append-only sink for job lifecycle events and anomalies."""

    async def log_action(
        self,
        *,
        org_id: str | None,
        action: str,
        entity_type: str,
        entity_id: str | None,
        metadata: dict[str, Any] | None = None,
    ) -> None:
        """Record a lifecycle action (job_start, job_completed, ...)."""
        ...

    async def log_security_event(
        self,
        *,
        org_id: str | None,
        type: str,
        source: str,
        metadata: dict[str, Any] | None = None,
    ) -> None:
        """Record a security-relevant anomaly (missing_org_id, ...)."""
        ...


class StructlogAuditLogger:
    """Audit logger that writes events to the structured log stream."""

    def __init__(self, name: str = "fieldqueue.audit"):
        self._logger = get_logger(name)

    async def log_action(
        self,
        *,
        org_id: str | None,
        action: str,
        entity_type: str,
        entity_id: str | None,
        metadata: dict[str, Any] | None = None,
    ) -> None:
        self._logger.info(
            "audit_action",
            org_id=org_id,
            action=action,
            entity_type=entity_type,
            entity_id=entity_id,
            metadata=metadata or {},
        )

    async def log_security_event(
        self,
        *,
        org_id: str | None,
        type: str,
        source: str,
        metadata: dict[str, Any] | None = None,
    ) -> None:
        self._logger.warning(
            "security_event",
            org_id=org_id,
            event_type=type,
            source=source,
            metadata=metadata or {},
        )
