"""Audit trail for webhook outcomes and operator actions."""

from typing import Any

from creditflow.core.logging import get_logger
from creditflow.models.audit_log import AuditLog

log = get_logger(__name__)


async def log_event(
    user_id: str | None,
    event_type: str,
    entity_type: str,
    entity_id: str | None = None,
    metadata: dict[str, Any] | None = None,
) -> None:
    """Append to audit_logs. A failed audit write is logged, never raised to the caller."""
    try:
        await AuditLog(
            user_id=user_id,
            event_type=event_type,
            entity_type=entity_type,
            entity_id=entity_id,
            metadata=metadata or {},
        ).insert()
    except Exception as e:
        log.error("audit_write_failed", event_type=event_type, entity_id=entity_id, error=str(e))
