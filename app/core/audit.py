"""Audit trail for money movement and session lifecycle events."""

from typing import Any

import structlog

from app.core.logging import get_logger
from app.models.audit_log import AuditLog

log = get_logger(__name__)


async def log_event(
    user_id: str | None,
    event_type: str,
    entity_type: str,
    entity_id: str | None = None,
    metadata: dict[str, Any] | None = None,
    session=None,
) -> None:
    """Append to audit_logs collection (inside the caller's transaction when given one)."""
    request_id = structlog.contextvars.get_contextvars().get("request_id")
    await AuditLog(
        user_id=user_id,
        event_type=event_type,
        entity_type=entity_type,
        entity_id=entity_id,
        request_id=request_id,
        metadata=metadata or {},
    ).insert(session=session)
    log.debug("audit", event_type=event_type, entity_type=entity_type, entity_id=entity_id)
