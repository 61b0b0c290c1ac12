from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel

from app.core.exceptions import NotFoundError
from app.deps import parse_object_id, require_admin
from app.models.session import ReminderType
from app.models.user import User
from app.services import reminders as reminders_service
from app.worker.tasks import enqueue_manual_reminder

router = APIRouter()


class ManualReminder(BaseModel):
    reminder_type: ReminderType = "15min"


@router.get("/stats")
async def reminders_stats(user: User = Depends(require_admin)):
    return {"stats": await reminders_service.reminder_stats()}


@router.post("/send/{session_id}")
async def reminders_send(
    session_id: str,
    body: ManualReminder,
    user: User = Depends(require_admin),
    queue: bool = Query(False, description="Hand off to the worker instead of sending inline"),
):
    """Send one reminder now (admin/testing). Each type is sent at most once per session."""
    sid = parse_object_id(session_id, NotFoundError("Session not found"))
    if queue:
        await enqueue_manual_reminder(str(sid), body.reminder_type)
        return {"status": "queued", "session_id": str(sid)}
    s = await reminders_service.send_manual_reminder(sid, body.reminder_type)
    return {"status": "sent", "session_id": str(s.id), "reminders_sent": [r.type for r in s.reminders_sent]}
