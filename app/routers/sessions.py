from datetime import datetime
from typing import Literal

from fastapi import APIRouter, Depends, Query, Response
from pydantic import BaseModel, Field

from app.core.exceptions import NotFoundError, TeacherNotFoundError
from app.deps import get_current_user, parse_object_id
from app.models.session import SessionStatus, TutoringSession
from app.models.user import User
from app.services import sessions as sessions_service

router = APIRouter()


class SessionCreate(BaseModel):
    teacher: str
    skill: str = Field(..., min_length=1, max_length=100)
    scheduled_for: datetime
    duration: int = Field(..., ge=15, le=480)
    message: str | None = Field(None, max_length=500)


class StatusUpdate(BaseModel):
    status: SessionStatus
    reason: str | None = Field(None, max_length=500)


class SessionEnd(BaseModel):
    actual_duration: int | None = Field(None, ge=0, le=1440)
    teacher_notes: str | None = Field(None, max_length=2000)
    student_notes: str | None = Field(None, max_length=2000)
    session_summary: str | None = Field(None, max_length=2000)


class SessionRating(BaseModel):
    rating: int = Field(..., ge=1, le=5)
    review: str | None = Field(None, max_length=500)
    would_recommend: bool | None = None


class SessionReschedule(BaseModel):
    new_scheduled_for: datetime
    reason: str | None = Field(None, max_length=500)


def session_out(s: TutoringSession) -> dict:
    return {
        "id": str(s.id),
        "teacher": str(s.teacher),
        "student": str(s.student),
        "skill": s.skill,
        "message": s.message,
        "scheduled_for": s.scheduled_for.isoformat(),
        "duration": s.duration,
        "status": s.status,
        "cancellation_reason": s.cancellation_reason,
        "started_at": s.started_at.isoformat() if s.started_at else None,
        "completed_at": s.completed_at.isoformat() if s.completed_at else None,
        "actual_duration": s.actual_duration,
        "room_id": s.room_id,
        "meeting_url": s.meeting_url,
        "rating": s.rating,
        "review": s.review,
        "reminders_sent": [{"type": r.type, "sent_at": r.sent_at.isoformat()} for r in s.reminders_sent],
        "created_at": s.created_at.isoformat(),
    }


def _session_id(session_id: str):
    return parse_object_id(session_id, NotFoundError("Session not found"))


@router.get("")
async def sessions_list(
    user: User = Depends(get_current_user),
    role: Literal["teacher", "student"] | None = Query(None),
    status: SessionStatus | None = Query(None),
    page: int = Query(1, ge=1),
    limit: int = Query(10, ge=1, le=100),
):
    """Sessions where the current user teaches or learns."""
    result = await sessions_service.list_sessions(user.id, role=role, status=status, page=page, limit=limit)
    return {
        "sessions": [session_out(s) for s in result.items],
        "pagination": {"page": result.page, "limit": result.limit, "total": result.total, "pages": result.pages},
    }


@router.post("", status_code=201)
async def session_create(body: SessionCreate, user: User = Depends(get_current_user)):
    """Request a session with a teacher; credits are charged when the teacher confirms."""
    s = await sessions_service.create_session(
        user.id,
        parse_object_id(body.teacher, TeacherNotFoundError()),
        body.skill,
        body.scheduled_for,
        body.duration,
        message=body.message,
    )
    return {"session": session_out(s)}


@router.get("/{session_id}")
async def session_get(session_id: str, user: User = Depends(get_current_user)):
    return {"session": session_out(await sessions_service.get_session(_session_id(session_id), user.id))}


@router.patch("/{session_id}/status")
async def session_update_status(session_id: str, body: StatusUpdate, user: User = Depends(get_current_user)):
    """Confirm, cancel, complete or mark no-show."""
    s = await sessions_service.transition(_session_id(session_id), body.status, user.id, reason=body.reason)
    return {"session": session_out(s)}


@router.post("/{session_id}/start")
async def session_start(session_id: str, user: User = Depends(get_current_user)):
    s = await sessions_service.start(_session_id(session_id), user.id)
    return {"session": session_out(s)}


@router.post("/{session_id}/end")
async def session_end(session_id: str, body: SessionEnd, user: User = Depends(get_current_user)):
    s = await sessions_service.end(
        _session_id(session_id),
        user.id,
        actual_duration=body.actual_duration,
        teacher_notes=body.teacher_notes,
        student_notes=body.student_notes,
        session_summary=body.session_summary,
    )
    return {"session": session_out(s)}


@router.post("/{session_id}/rate")
async def session_rate(session_id: str, body: SessionRating, user: User = Depends(get_current_user)):
    s, teacher = await sessions_service.rate(
        _session_id(session_id),
        user.id,
        body.rating,
        review=body.review,
        would_recommend=body.would_recommend,
    )
    return {
        "session": session_out(s),
        "teacher_rating": teacher.rating,
        "teacher_total_reviews": teacher.total_reviews,
    }


@router.post("/{session_id}/reschedule")
async def session_reschedule(session_id: str, body: SessionReschedule, user: User = Depends(get_current_user)):
    s = await sessions_service.reschedule(_session_id(session_id), user.id, body.new_scheduled_for, reason=body.reason)
    return {"session": session_out(s)}


@router.delete("/{session_id}", status_code=204, response_class=Response)
async def session_delete(session_id: str, user: User = Depends(get_current_user)):
    """Remove a session that has not completed; a held booking charge is refunded first."""
    await sessions_service.delete_session(_session_id(session_id), user.id)
    return Response(status_code=204)
