"""Cron: session reminder sweep."""

from datetime import datetime

from app.core.logging import get_logger
from app.services.reminders import run_reminder_sweep

log = get_logger(__name__)


async def run_send_due_reminders(now: datetime | None = None) -> int:
    """Send reminders that are due now; the worker's startup hook has already initialised the DB."""
    now = now or datetime.utcnow()
    sent = await run_reminder_sweep(now)
    log.info("send_due_reminders", sent=sent, at=now.isoformat())
    return sent
