"""Session status edges, who may take them, and the credit movement each one causes.

Every legal `(from, to)` pair is a key of TRANSITIONS; anything else is rejected
by the state machine in app.services.sessions. Effects run inside the caller's
unit of work and return the ledger entry they wrote, so a failed status commit
can be compensated.
"""

import math
from dataclasses import dataclass
from typing import Awaitable, Callable, Optional

from app.core.config import get_settings
from app.models.credit_transaction import CreditTransaction
from app.models.session import TutoringSession
from app.services import credits as credits_service

TEACHER = "teacher"
STUDENT = "student"
SYSTEM = "system"
PARTICIPANTS = frozenset({TEACHER, STUDENT})

Effect = Callable[[TutoringSession, object], Awaitable[Optional[CreditTransaction]]]


def required_credits(duration_minutes: int) -> int:
    """Credits owed for a session: one per started hour."""
    return math.ceil(duration_minutes / get_settings().minutes_per_credit)


async def debit_student(session: TutoringSession, db_session=None) -> CreditTransaction:
    entry, _ = await credits_service.apply_delta(
        session.student,
        -required_credits(session.duration),
        "session_booking",
        f"Session booking: {session.skill}",
        related_session=session.id,
        related_user=session.teacher,
        metadata={"session_duration": session.duration},
        session=db_session,
        notify=False,
    )
    return entry


async def refund_student(session: TutoringSession, db_session=None) -> CreditTransaction:
    entry, _ = await credits_service.apply_delta(
        session.student,
        required_credits(session.duration),
        "session_cancellation",
        f"Session cancellation refund: {session.skill}",
        related_session=session.id,
        related_user=session.teacher,
        metadata={"session_duration": session.duration},
        session=db_session,
        notify=False,
    )
    return entry


async def award_teacher(session: TutoringSession, db_session=None) -> CreditTransaction:
    entry, _ = await credits_service.apply_delta(
        session.teacher,
        required_credits(session.duration),
        "session_completion",
        f"Session teaching: {session.skill}",
        related_session=session.id,
        related_user=session.student,
        metadata={"session_duration": session.duration},
        session=db_session,
        notify=False,
    )
    return entry


async def apply_no_show_policy(session: TutoringSession, db_session=None) -> CreditTransaction | None:
    """NO_SHOW_POLICY: forfeit keeps the booking charge, refund returns it, award_teacher pays the teacher."""
    policy = get_settings().no_show_policy
    if policy == "refund":
        return await refund_student(session, db_session)
    if policy == "award_teacher":
        return await award_teacher(session, db_session)
    return None


@dataclass(frozen=True)
class Edge:
    source: str
    target: str
    actors: frozenset
    effect: Effect | None = None

    @property
    def moves_credits(self) -> bool:
        return self.effect is not None


_EDGES = (
    Edge("pending", "confirmed", frozenset({TEACHER}), debit_student),
    Edge("pending", "cancelled", PARTICIPANTS),
    Edge("confirmed", "cancelled", PARTICIPANTS, refund_student),
    Edge("confirmed", "in_progress", PARTICIPANTS),
    Edge("confirmed", "completed", PARTICIPANTS | {SYSTEM}, award_teacher),
    Edge("in_progress", "completed", PARTICIPANTS | {SYSTEM}, award_teacher),
    Edge("confirmed", "no_show", PARTICIPANTS, apply_no_show_policy),
    Edge("in_progress", "abandoned", PARTICIPANTS, refund_student),
)

TRANSITIONS: dict[tuple[str, str], Edge] = {(e.source, e.target): e for e in _EDGES}


def get_edge(source: str, target: str) -> Edge | None:
    return TRANSITIONS.get((source, target))


def allowed_targets(source: str) -> list[str]:
    return [e.target for e in _EDGES if e.source == source]
