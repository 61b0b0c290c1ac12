from datetime import datetime
from typing import Any, Literal

from beanie import Document
from pydantic import Field


class AuditLog(Document):
    """Who did what to which ledger or session record."""

    user_id: str | None = None  # None for scheduler / system events
    event_type: str  # credit_purchase, credit_transfer, session_transition, ledger_compensated, ...
    entity_type: Literal["user", "credit_transaction", "session"]
    entity_id: str | None = None
    request_id: str | None = None
    metadata: dict[str, Any] = Field(default_factory=dict)
    created_at: datetime = Field(default_factory=datetime.utcnow)

    class Settings:
        name = "audit_logs"
        indexes = [
            [("user_id", 1), ("created_at", -1)],
            [("entity_type", 1), ("entity_id", 1)],
        ]
