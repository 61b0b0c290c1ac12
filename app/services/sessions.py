"""Tutoring session lifecycle: booking, status transitions, rating, rescheduling."""

import secrets
import uuid
from datetime import datetime, timedelta, timezone
from decimal import ROUND_HALF_UP, Decimal
from typing import Any

from beanie import PydanticObjectId
from beanie.odm.queries.update import UpdateResponse
from pymongo.errors import PyMongoError

from app.core.audit import log_event
from app.core.config import get_settings
from app.core.exceptions import (
    AlreadyRatedError,
    BadRequestError,
    ConflictError,
    ForbiddenError,
    InsufficientCreditsError,
    InvalidTransitionError,
    NotFoundError,
    PastScheduleError,
    SkillNotOfferedError,
    TeacherNotFoundError,
)
from app.core.logging import get_logger
from app.core.pagination import Page, page_count, paginate
from app.db.transactions import run_in_transaction
from app.models.credit_transaction import CreditTransaction
from app.models.session import TutoringSession
from app.models.user import User
from app.services import credits as credits_service
from app.services import notifications
from app.services.session_transitions import SYSTEM, Edge, get_edge, required_credits

log = get_logger(__name__)

DELETABLE_STATUSES = ("pending", "cancelled", "no_show", "abandoned")
# Sessions still holding the booking charge are closed through their refunding edge first
CLOSE_BEFORE_DELETE = {"confirmed": "cancelled", "in_progress": "abandoned"}
RATING_WRITE_ATTEMPTS = 10


def _as_utc(value: datetime) -> datetime:
    """Naive UTC, the form datetimes come back from MongoDB in."""
    if value.tzinfo is not None:
        return value.astimezone(timezone.utc).replace(tzinfo=None)
    return value


async def _get_for_participant(session_id: PydanticObjectId, actor_id: PydanticObjectId) -> TutoringSession:
    session = await TutoringSession.get(session_id)
    if not session:
        raise NotFoundError("Session not found")
    if session.role_of(actor_id) is None:
        raise ForbiddenError("Access denied")
    return session


async def create_session(
    student_id: PydanticObjectId,
    teacher_id: PydanticObjectId,
    skill: str,
    scheduled_for: datetime,
    duration: int,
    message: str | None = None,
    now: datetime | None = None,
) -> TutoringSession:
    """
    Student requests a session. The balance check here is advisory; the
    authoritative debit happens when the teacher confirms.
    """
    if duration <= 0:
        raise BadRequestError("Duration must be positive")
    if str(teacher_id) == str(student_id):
        raise BadRequestError("Cannot book a session with yourself")
    teacher = await User.get(teacher_id)
    if not teacher:
        raise TeacherNotFoundError()
    if not teacher.offers_skill(skill):
        raise SkillNotOfferedError(skill)
    scheduled_for = _as_utc(scheduled_for)
    if scheduled_for <= (now or datetime.utcnow()):
        raise PastScheduleError()
    student = await User.get(student_id)
    if not student:
        raise NotFoundError("Student not found")
    required = required_credits(duration)
    if student.credits < required:
        raise InsufficientCreditsError(required=required, available=student.credits)

    session = TutoringSession(
        teacher=teacher.id,
        student=student.id,
        skill=skill,
        message=message,
        scheduled_for=scheduled_for,
        duration=duration,
    )
    await session.insert()
    log.info(
        "session_created",
        session_id=str(session.id),
        teacher_id=str(teacher.id),
        student_id=str(student.id),
        credits_required=required,
    )
    await notifications.session_requested(session)
    return session


async def get_session(session_id: PydanticObjectId, actor_id: PydanticObjectId) -> TutoringSession:
    return await _get_for_participant(session_id, actor_id)


async def list_sessions(
    actor_id: PydanticObjectId,
    role: str | None = None,
    status: str | None = None,
    page: int = 1,
    limit: int = 10,
) -> Page[TutoringSession]:
    """Sessions where the actor teaches, learns, or either; newest first."""
    page, limit, skip = paginate(page, limit)
    if role == "teacher":
        filters: dict[str, Any] = {"teacher": actor_id}
    elif role == "student":
        filters = {"student": actor_id}
    else:
        filters = {"$or": [{"teacher": actor_id}, {"student": actor_id}]}
    if status:
        filters["status"] = status
    total = await TutoringSession.find(filters).count()
    items = await TutoringSession.find(filters).sort("-created_at", "-_id").skip(skip).limit(limit).to_list()
    return Page[TutoringSession](items=items, page=page, limit=limit, total=total, pages=page_count(total, limit))


# --- state machine -------------------------------------------------------------------------


async def _claim(session: TutoringSession, edge: Edge) -> str:
    """Compare-and-swap a transition lock onto the session while it is still in edge.source."""
    settings = get_settings()
    token = uuid.uuid4().hex
    now = datetime.utcnow()
    stale_before = now - timedelta(seconds=settings.transition_lock_ttl_seconds)
    claimed = await TutoringSession.find_one(
        {
            "_id": session.id,
            "status": edge.source,
            "$or": [{"transition_lock": None}, {"transition_lock_at": {"$lt": stale_before}}],
        }
    ).update(
        {"$set": {"transition_lock": token, "transition_lock_at": now}},
        response_type=UpdateResponse.NEW_DOCUMENT,
    )
    if claimed is not None:
        return token
    current = await TutoringSession.get(session.id)
    if current is None:
        raise NotFoundError("Session not found")
    if current.status == edge.source:
        raise InvalidTransitionError(
            current.status, edge.target, message="Another update to this session is in progress"
        )
    raise InvalidTransitionError(current.status, edge.target)


async def _release(session_id: PydanticObjectId, token: str) -> None:
    await TutoringSession.find_one({"_id": session_id, "transition_lock": token}).update(
        {"$set": {"transition_lock": None, "transition_lock_at": None}}
    )


def _status_fields(edge: Edge, actor_id, reason: str | None, now: datetime) -> dict[str, Any]:
    fields: dict[str, Any] = {
        "status": edge.target,
        "transition_lock": None,
        "transition_lock_at": None,
        "updated_at": now,
    }
    if reason:
        fields["cancellation_reason"] = reason
    if edge.target == "confirmed":
        fields["confirmed_at"] = now
    elif edge.target == "cancelled":
        fields["cancelled_by"] = actor_id
    elif edge.target == "completed":
        fields["completed_at"] = now
    return fields


async def _already_committed(session_id: PydanticObjectId, token: str, status: str, db_session=None) -> TutoringSession | None:
    """The session if a write carrying `token` already landed (an ambiguous error hid the reply)."""
    current = await TutoringSession.get(session_id, session=db_session)
    if current is not None and current.status == status and current.last_transition_token == token:
        return current
    return None


async def _commit_status(
    session: TutoringSession,
    token: str,
    fields: dict[str, Any],
    db_session=None,
) -> TutoringSession:
    """Write the new status, retrying transient failures outside a transaction.

    A retry after an ambiguous error (e.g. AutoReconnect) can find the lock already
    cleared by the first attempt; the write is then recognised by its token.
    """
    attempts = 1 if db_session is not None else max(1, get_settings().status_write_retries)
    error: Exception | None = None
    for attempt in range(1, attempts + 1):
        try:
            updated = await TutoringSession.find_one(
                {"_id": session.id, "transition_lock": token}, session=db_session
            ).update(
                {"$set": {**fields, "last_transition_token": token}},
                session=db_session,
                response_type=UpdateResponse.NEW_DOCUMENT,
            )
        except PyMongoError as e:
            error = e
            log.warning("status_write_retry", session_id=str(session.id), attempt=attempt, error=str(e))
            continue
        if updated is None:
            updated = await _already_committed(session.id, token, fields["status"], db_session)
            if updated is None:
                raise ConflictError("Session was modified concurrently, please retry", code="TRANSITION_CONFLICT")
            log.info("status_write_already_applied", session_id=str(session.id), attempt=attempt)
        return updated
    if db_session is None:
        landed = await _already_committed(session.id, token, fields["status"])
        if landed is not None:
            log.info("status_write_already_applied", session_id=str(session.id), attempt=attempts)
            return landed
    raise error


async def _compensate(
entry: CreditTransaction, session_id: PydanticObjectId) -> None:
    try:
        await credits_service.reverse(entry, f"Reversal (status update failed): {entry.description}")
    except Exception:
        log.exception("ledger_compensation_failed", session_id=str(session_id), transaction_id=str(entry.id))
        raise
    log.error("ledger_compensated", session_id=str(session_id), transaction_id=str(entry.id))


async def transition(
    session_id: PydanticObjectId,
    target: str,
    actor_id: PydanticObjectId | None,
    reason: str | None = None,
    changes: dict[str, Any] | None = None,
) -> TutoringSession:
    """
    Move a session to `target`. actor_id=None means the system (only allowed where
    the edge says so). The credit side effect runs first; the status is written only
    after it succeeds. Same-status and unlisted edges raise InvalidTransitionError.
    """
    session = await TutoringSession.get(session_id)
    if not session:
        raise NotFoundError("Session not found")
    role = SYSTEM if actor_id is None else session.role_of(actor_id)
    if role is None:
        raise ForbiddenError("Only participants can update this session")
    if session.is_terminal:
        raise InvalidTransitionError(session.status, target, message=f"Session is already {session.status}")
    edge = get_edge(session.status, target)
    if edge is None:
        raise InvalidTransitionError(session.status, target)
    if role not in edge.actors:
        if edge.actors == {"teacher"}:
            raise ForbiddenError(f"Only the teacher can mark a session {target}")
        raise ForbiddenError(f"Not allowed to mark this session {target}")

    token = await _claim(session, edge)
    now = datetime.utcnow()
    fields = {**_status_fields(edge, actor_id, reason, now), **(changes or {})}

    async def _apply(db) -> tuple[TutoringSession, CreditTransaction | None]:
        entry = await edge.effect(session, db) if edge.effect is not None else None
        try:
            updated = await _commit_status(session, token, fields, db)
        except Exception:
            log.error("status_write_failed", session_id=str(session.id), target=target)
            if db is None and entry is not None:
                await _compensate(entry, session.id)
            raise
        await log_event(
            str(actor_id) if actor_id else None,
            "session_transition",
            "session",
            str(session.id),
            {"from": edge.source, "to": edge.target, "transaction_id": str(entry.id) if entry else None},
            session=db,
        )
        return updated, entry

    try:
        updated, entry = await run_in_transaction(_apply)
    except Exception:
        await _release(session.id, token)
        log.info("session_transition_failed", session_id=str(session.id), source=edge.source, target=target)
        raise

    log.info(
        "session_transition",
        session_id=str(session.id),
        source=edge.source,
        target=edge.target,
        actor=role,
        credits_moved=entry.amount if entry else 0,
    )
    await notifications.session_status_changed(updated, actor_id, previous_status=edge.source)
    if entry is not None:
        await notifications.balance_changed(entry.user, entry.balance_after)
    return updated


async def confirm(session_id: PydanticObjectId, actor_id: PydanticObjectId) -> TutoringSession:
    return await transition(session_id, "confirmed", actor_id)


async def cancel(session_id: PydanticObjectId, actor_id: PydanticObjectId, reason: str | None = None) -> TutoringSession:
    return await transition(session_id, "cancelled", actor_id, reason=reason)


async def start(
    session_id: PydanticObjectId,
    actor_id: PydanticObjectId,
    now: datetime | None = None,
) -> TutoringSession:
    """Confirmed -> in_progress, no earlier than the start window before the scheduled time."""
    settings = get_settings()
    session = await _get_for_participant(session_id, actor_id)
    if session.status != "confirmed":
        raise InvalidTransitionError(session.status, "in_progress", message="Session must be confirmed to start")
    now = now or datetime.utcnow()
    window = timedelta(minutes=settings.session_start_window_minutes)
    if now < session.scheduled_for - window:
        raise BadRequestError(
            f"Session can only be started within {settings.session_start_window_minutes} minutes of scheduled time",
            code="TOO_EARLY",
        )
    changes = {
        "started_at": now,
        "room_id": session.room_id or f"session_{session.id}_{secrets.token_hex(4)}",
        "meeting_url": f"{settings.frontend_url}/session/{session.id}/room",
    }
    return await transition(session_id, "in_progress", actor_id, changes=changes)


async def end(
    session_id: PydanticObjectId,
    actor_id: PydanticObjectId,
    actual_duration: int | None = None,
    teacher_notes: str | None = None,
    student_notes: str | None = None,
    session_summary: str | None = None,
    now: datetime | None = None,
) -> TutoringSession:
    """In_progress -> completed. The teacher is paid for the planned duration."""
    session = await _get_for_participant(session_id, actor_id)
    if session.status != "in_progress":
        raise InvalidTransitionError(session.status, "completed", message="Session must be in progress to end")
    if actual_duration is not None and actual_duration < 0:
        raise BadRequestError("Actual duration cannot be negative")
    changes: dict[str, Any] = {
        "ended_at": now or datetime.utcnow(),
        "actual_duration": actual_duration if actual_duration is not None else session.duration,
    }
    if teacher_notes:
        changes["teacher_notes"] = teacher_notes
    if student_notes:
        changes["student_notes"] = student_notes
    if session_summary:
        changes["session_summary"] = session_summary
    return await transition(session_id, "completed", actor_id, changes=changes)


async def reschedule(
    session_id: PydanticObjectId,
    actor_id: PydanticObjectId,
    new_time: datetime,
    reason: str | None = None,
    now: datetime | None = None,
) -> TutoringSession:
    """Move a confirmed session to a new future time. Reminders start over."""
    session = await _get_for_participant(session_id, actor_id)
    if session.status != "confirmed":
        raise BadRequestError(
            "Only confirmed sessions can be rescheduled",
            code="NOT_RESCHEDULABLE",
            details={"current_status": session.status},
        )
    new_time = _as_utc(new_time)
    if new_time <= (now or datetime.utcnow()):
        raise PastScheduleError("New schedule time must be in the future")
    original_time = session.scheduled_for
    updated = await TutoringSession.find_one(
        {"_id": session.id, "status": "confirmed", "transition_lock": None}
    ).update(
        {
            "$set": {
                "scheduled_for": new_time,
                "rescheduled_at": datetime.utcnow(),
                "rescheduled_by": actor_id,
                "reschedule_reason": reason,
                "reminders_sent": [],
                "updated_at": datetime.utcnow(),
            }
        },
        response_type=UpdateResponse.NEW_DOCUMENT,
    )
    if updated is None:
        current = await TutoringSession.get(session.id)
        raise BadRequestError(
            "Only confirmed sessions can be rescheduled",
            code="NOT_RESCHEDULABLE",
            details={"current_status": current.status if current else None},
        )
    log.info("session_rescheduled", session_id=str(session.id), new_time=new_time.isoformat())
    await notifications.session_rescheduled(updated, original_time, actor_id)
    return updated


async def delete_session(session_id: PydanticObjectId, actor_id: PydanticObjectId) -> None:
    """Hard-delete a non-completed session; completed sessions stay as history.

    A confirmed or in-progress session is first moved through its refunding edge,
    so the student gets the booking charge back before the record disappears.
    """
    session = await _get_for_participant(session_id, actor_id)
    if session.status == "completed":
        raise BadRequestError(
            "Completed sessions cannot be deleted",
            code="NOT_DELETABLE",
            details={"current_status": session.status},
        )
    if session.status in CLOSE_BEFORE_DELETE:
        session = await transition(
            session.id, CLOSE_BEFORE_DELETE[session.status], actor_id, reason="Deleted by participant"
        )
    result = await TutoringSession.find_one(
        {"_id": session.id, "status": {"$in": list(DELETABLE_STATUSES)}, "transition_lock": None}
    ).delete()
    if not result or result.deleted_count == 0:
        current = await TutoringSession.get(session.id)
        raise BadRequestError(
            "Session changed before it could be deleted",
            code="NOT_DELETABLE",
            details={"current_status": current.status if current else None},
        )
    await log_event(str(actor_id), "session_deleted", "session", str(session.id), {"status": session.status})
    log.info("session_deleted", session_id=str(session.id), status=session.status)


# --- rating --------------------------------------------------------------------------------


def running_average(old_average: float, old_count: int, rating: int) -> float:
    """(old_average * old_count + rating) / (old_count + 1), rounded half-up to one decimal."""
    total = Decimal(str(old_average)) * old_count + rating
    return float((total / (old_count + 1)).quantize(Decimal("0.1"), rounding=ROUND_HALF_UP))


async def _apply_teacher_rating(teacher_id: PydanticObjectId, rating: int, db_session=None) -> User:
    """Optimistic read-modify-write on (rating, total_reviews), keyed on the review count."""
    for _ in range(RATING_WRITE_ATTEMPTS):
        teacher = await User.get(teacher_id, session=db_session)
        if not teacher:
            raise TeacherNotFoundError()
        updated = await User.find_one(
            {"_id": teacher_id, "total_reviews": teacher.total_reviews}, session=db_session
        ).update(
            {
                "$set": {
                    "rating": running_average(teacher.rating, teacher.total_reviews, rating),
                    "total_reviews": teacher.total_reviews + 1,
                    "updated_at": datetime.utcnow(),
                }
            },
            session=db_session,
            response_type=UpdateResponse.NEW_DOCUMENT,
        )
        if updated is not None:
            return updated
    raise ConflictError("Teacher rating is being updated, please retry", code="RATING_CONFLICT")


async def rate(
    session_id: PydanticObjectId,
    actor_id: PydanticObjectId,
    rating: int,
    review: str | None = None,
    would_recommend: bool | None = None,
) -> tuple[TutoringSession, User]:
    """Student rates a completed session once; the teacher's running average is updated."""
    if not 1 <= rating <= 5:
        raise BadRequestError("Rating must be between 1 and 5")
    session = await TutoringSession.get(session_id)
    if not session:
        raise NotFoundError("Session not found")
    if session.role_of(actor_id) != "student":
        raise ForbiddenError("Only the student can rate the session")
    if session.status != "completed":
        raise BadRequestError(
            "Can only rate completed sessions",
            code="SESSION_NOT_COMPLETED",
            details={"current_status": session.status},
        )
    if session.rating is not None:
        raise AlreadyRatedError()

    async def _write(db) -> tuple[TutoringSession, User]:
        rated = await TutoringSession.find_one(
            {"_id": session.id, "status": "completed", "rating": None}, session=db
        ).update(
            {
                "$set": {
                    "rating": rating,
                    "review": review,
                    "would_recommend": would_recommend,
                    "reviewed_at": datetime.utcnow(),
                    "updated_at": datetime.utcnow(),
                }
            },
            session=db,
            response_type=UpdateResponse.NEW_DOCUMENT,
        )
        if rated is None:
            raise AlreadyRatedError()
        try:
            teacher = await _apply_teacher_rating(session.teacher, rating, db)
        except Exception:
            if db is None:
                await TutoringSession.find_one({"_id": session.id}).update(
                    {"$set": {"rating": None, "review": None, "would_recommend": None, "reviewed_at": None}}
                )
            raise
        return rated, teacher

    rated, teacher = await run_in_transaction(_write)

    log.info(
        "session_rated",
        session_id=str(session.id),
        rating=rating,
        teacher_id=str(teacher.id),
        teacher_rating=teacher.rating,
        total_reviews=teacher.total_reviews,
    )
    return rated, teacher
