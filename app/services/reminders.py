"""Session reminders: 24h / 1h / 15min before a confirmed session starts.

Sending a reminder appends to `reminders_sent` only; it never touches status.
"""

from datetime import datetime, timedelta

from beanie import PydanticObjectId
from beanie.odm.queries.update import UpdateResponse

from app.core.exceptions import BadRequestError, ConflictError, NotFoundError
from app.core.logging import get_logger
from app.models.session import TutoringSession
from app.services import notifications

log = get_logger(__name__)

LOOKAHEAD = timedelta(hours=24)

# (type, remaining time upper bound inclusive, lower bound exclusive, wording)
REMINDER_WINDOWS = (
    ("24h", timedelta(hours=24), timedelta(hours=1), "in 24 hours"),
    ("1h", timedelta(hours=1), timedelta(minutes=15), "in 1 hour"),
    ("15min", timedelta(minutes=15), timedelta(0), "in 15 minutes"),
)
REMINDER_TYPES = tuple(w[0] for w in REMINDER_WINDOWS)


def pending_reminder(session: TutoringSession, now: datetime) -> tuple[str, str] | None:
    """(type, wording) of the reminder due for this session now, if not already sent."""
    remaining = session.scheduled_for - now
    for reminder_type, upper, lower, wording in REMINDER_WINDOWS:
        if lower < remaining <= upper:
            if session.has_reminder(reminder_type):
                return None
            return reminder_type, wording
    return None


async def due_sessions(now: datetime, reminder_type: str | None = None) -> list[TutoringSession]:
    """Confirmed sessions starting within the next 24 hours, optionally lacking `reminder_type`."""
    filters = {
        "status": "confirmed",
        "scheduled_for": {"$gte": now, "$lte": now + LOOKAHEAD},
    }
    if reminder_type:
        filters["reminders_sent.type"] = {"$ne": reminder_type}
    return await TutoringSession.find(filters).sort("scheduled_for").to_list()


async def record_reminder(session_id: PydanticObjectId, reminder_type: str, now: datetime | None = None) -> bool:
    """Append a reminder record unless one of this type exists. True if this call added it."""
    updated = await TutoringSession.find_one(
        {"_id": session_id, "reminders_sent.type": {"$ne": reminder_type}}
    ).update(
        {"$push": {"reminders_sent": {"type": reminder_type, "sent_at": now or datetime.utcnow()}}},
        response_type=UpdateResponse.NEW_DOCUMENT,
    )
    return updated is not None


async def send_reminder(session: TutoringSession, reminder_type: str, wording: str, now: datetime | None = None) -> bool:
    # Record first so two sweeps never both notify
    if not await record_reminder(session.id, reminder_type, now):
        return False
    await notifications.session_reminder(session, reminder_type, wording)
    log.info("reminder_sent", session_id=str(session.id), reminder_type=reminder_type)
    return True


async def run_reminder_sweep(now: datetime | None = None) -> int:
    """Send every reminder that is due; returns how many were sent."""
    now = now or datetime.utcnow()
    sent = 0
    for session in await due_sessions(now):
        due = pending_reminder(session, now)
        if due is None:
            continue
        try:
            if await send_reminder(session, due[0], due[1], now):
                sent += 1
        except Exception:
            log.exception("reminder_failed", session_id=str(session.id), reminder_type=due[0])
    if sent:
        log.info("reminder_sweep", sent=sent)
    return sent


async def send_manual_reminder(session_id: PydanticObjectId, reminder_type: str = "15min") -> TutoringSession:
    if reminder_type not in REMINDER_TYPES:
        raise BadRequestError("Invalid reminder type")
    session = await TutoringSession.get(session_id)
    if not session:
        raise NotFoundError("Session not found")
    if not await send_reminder(session, reminder_type, "now (manual trigger)"):
        raise ConflictError("Reminder already sent", code="REMINDER_ALREADY_SENT")
    return await TutoringSession.get(session_id)


async def reminder_stats(now: datetime | None = None) -> dict:
    """Upcoming confirmed sessions and how many reminders they have had."""
    upcoming = await TutoringSession.find(
        {"status": "confirmed", "scheduled_for": {"$gte": now or datetime.utcnow()}}
    ).to_list()
    total_reminders = sum(len(s.reminders_sent) for s in upcoming)
    return {
        "total_sessions": len(upcoming),
        "total_reminders": total_reminders,
        "avg_reminders_per_session": round(total_reminders / len(upcoming), 2) if upcoming else 0,
    }
