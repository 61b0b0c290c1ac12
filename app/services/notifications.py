"""Realtime fan-out over Redis pub/sub, one channel per user (`user:<id>`).

Events are published after the state they describe is committed. A failed
publish is logged and dropped: it never undoes a balance or status change.
"""

import asyncio
from typing import Any, Iterable

import orjson
import redis.asyncio as aioredis

from app.core.config import get_settings
from app.core.logging import get_logger

log = get_logger(__name__)

CHANNEL_PREFIX = "user"

_redis: aioredis.Redis | None = None


def _get_redis() -> aioredis.Redis:
    global _redis
    if _redis is None:
        settings = get_settings()
        _redis = aioredis.from_url(
            settings.redis_url,
            decode_responses=True,
            socket_timeout=settings.notification_timeout_seconds,
            socket_connect_timeout=settings.notification_timeout_seconds,
        )
    return _redis


async def _publish(channel: str, message: dict[str, Any]) -> None:
    await _get_redis().publish(channel, orjson.dumps(message, default=str))


async def notify(user_ids: Iterable, event: str, payload: dict[str, Any]) -> int:
    """Publish `event` to each user's channel. Returns how many publishes succeeded."""
    settings = get_settings()
    if not settings.notifications_enabled:
        return 0
    delivered = 0
    for user_id in user_ids:
        try:
            await asyncio.wait_for(
                _publish(f"{CHANNEL_PREFIX}:{user_id}", {"event": event, **payload}),
                timeout=settings.notification_timeout_seconds,
            )
            delivered += 1
        except Exception as e:
            log.warning("notification_failed", notification_event=event, user_id=str(user_id), error=str(e))
    return delivered


async def balance_changed(user_id, balance: int) -> None:
    await notify([user_id], "credits:balance", {"user_id": str(user_id), "balance": balance})


async def session_requested(session) -> None:
    await notify(
        [session.teacher],
        "session:request",
        {
            "session_id": str(session.id),
            "student_id": str(session.student),
            "skill": session.skill,
            "scheduled_for": session.scheduled_for,
            "duration": session.duration,
            "message": session.message,
        },
    )


async def session_status_changed(session, actor_id=None, previous_status: str | None = None) -> None:
    """Tell both participants; `updated_by` is the actor's role or 'system'."""
    await notify(
        [session.teacher, session.student],
        "session:status",
        {
            "session_id": str(session.id),
            "status": session.status,
            "previous_status": previous_status,
            "skill": session.skill,
            "scheduled_for": session.scheduled_for,
            "reason": session.cancellation_reason,
            "updated_by": session.role_of(actor_id) or "system",
        },
    )


async def session_rescheduled(session, original_time, actor_id) -> None:
    await notify(
        [session.teacher, session.student],
        "session:rescheduled",
        {
            "session_id": str(session.id),
            "skill": session.skill,
            "original_time": original_time,
            "new_time": session.scheduled_for,
            "reason": session.reschedule_reason,
            "rescheduled_by": session.role_of(actor_id),
        },
    )


async def session_reminder(session, reminder_type: str, time_until: str) -> int:
    payload = {
        "session_id": str(session.id),
        "skill": session.skill,
        "scheduled_for": session.scheduled_for,
        "reminder_type": reminder_type,
        "time_until": time_until,
    }
    sent = await notify([session.teacher], "session:reminder", {**payload, "role": "teacher"})
    sent += await notify([session.student], "session:reminder", {**payload, "role": "student"})
    return sent


async def close() -> None:
    global _redis
    if _redis is not None:
        await _redis.aclose()
        _redis = None
