from datetime import datetime
from typing import Literal

from beanie import Document, PydanticObjectId
from pydantic import BaseModel, Field

SessionStatus = Literal[
    "pending",
    "confirmed",
    "in_progress",
    "completed",
    "cancelled",
    "no_show",
    "abandoned",
]

TERMINAL_STATUSES = frozenset({"completed", "cancelled", "no_show", "abandoned"})

ReminderType = Literal["24h", "1h", "15min"]


class ReminderRecord(BaseModel):
    type: ReminderType
    sent_at: datetime = Field(default_factory=datetime.utcnow)


class TutoringSession(Document):
    """One scheduled tutoring engagement between a teacher and a student."""

    teacher: PydanticObjectId
    student: PydanticObjectId
    skill: str
    message: str | None = None
    scheduled_for: datetime
    duration: int  # planned, minutes
    status: SessionStatus = "pending"

    cancellation_reason: str | None = None
    cancelled_by: PydanticObjectId | None = None
    confirmed_at: datetime | None = None
    started_at: datetime | None = None
    ended_at: datetime | None = None
    completed_at: datetime | None = None
    actual_duration: int | None = None

    room_id: str | None = None
    meeting_url: str | None = None

    teacher_notes: str | None = None
    student_notes: str | None = None
    session_summary: str | None = None

    rating: int | None = None
    review: str | None = None
    would_recommend: bool | None = None
    reviewed_at: datetime | None = None

    rescheduled_at: datetime | None = None
    rescheduled_by: PydanticObjectId | None = None
    reschedule_reason: str | None = None

    reminders_sent: list[ReminderRecord] = Field(default_factory=list)

    # Claimed by a transition while its credit side effect runs
    transition_lock: str | None = None
    transition_lock_at: datetime | None = None
    # Token of the transition whose status write last landed
    last_transition_token: str | None = None

    created_at: datetime = Field(default_factory=datetime.utcnow)
    updated_at: datetime = Field(default_factory=datetime.utcnow)

    class Settings:
        name = "sessions"
        indexes = [
            [("teacher", 1), ("status", 1)],
            [("student", 1), ("status", 1)],
            [("status", 1), ("scheduled_for", 1)],
        ]

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    def role_of(self, user_id) -> str | None:
        """Return 'teacher', 'student' or None for a non-participant."""
        if user_id is None:
            return None
        uid = str(user_id)
        if uid == str(self.teacher):
            return "teacher"
        if uid == str(self.student):
            return "student"
        return None

    def has_reminder(self, reminder_type: str) -> bool:
        return any(r.type == reminder_type for r in self.reminders_sent)
