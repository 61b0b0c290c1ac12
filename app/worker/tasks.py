"""ARQ job definitions."""

import uuid
from typing import Any

from arq import create_pool
from arq.connections import RedisSettings

from app.core.config import get_settings
from app.core.logging import get_logger

log = get_logger(__name__)


async def _run_with_dlq(
    job_name: str,
    job_id: str | None,
    args: list[Any],
    kwargs: dict[str, Any],
    coro,
    session_id: str | None = None,
) -> Any:
    """Run coroutine; on exception persist to FailedJob then re-raise."""
    try:
        return await coro
    except Exception as e:
        from app.models.failed_job import FailedJob
        fid = job_id or str(uuid.uuid4())
        await FailedJob(
            job_name=job_name,
            job_id=fid,
            args=args,
            kwargs=kwargs,
            session_id=session_id,
            reason=str(e)[:2000],
            retries=0,
        ).insert()
        log.exception("job_failed", job=job_name, job_id=fid, session_id=session_id, reason=str(e))
        raise


async def send_due_reminders(ctx: dict[str, Any]) -> int:
    """Cron job: 24h / 1h / 15min reminders for upcoming confirmed sessions."""
    job_id = ctx.get("job_id") if isinstance(ctx.get("job_id"), str) else None
    from app.worker.cron import run_send_due_reminders
    return await _run_with_dlq("send_due_reminders", job_id, [], {}, run_send_due_reminders())


async def send_manual_reminder(ctx: dict[str, Any], session_id: str, reminder_type: str = "15min") -> None:
    """Queued manual reminder for one session."""
    job_id = ctx.get("job_id") if isinstance(ctx.get("job_id"), str) else None
    from beanie import PydanticObjectId
    from app.services.reminders import send_manual_reminder as _send

    async def _run() -> None:
        log.info("job_start", job="send_manual_reminder", session_id=session_id)
        await _send(PydanticObjectId(session_id), reminder_type)
        log.info("job_done", job="send_manual_reminder", session_id=session_id)

    await _run_with_dlq(
        "send_manual_reminder", job_id, [session_id, reminder_type], {}, _run(), session_id=session_id
    )


async def startup(ctx: dict) -> None:
    from app.core.logging import configure_logging
    from app.db.init import init_db
    configure_logging(debug=get_settings().debug)
    await init_db()


async def shutdown(ctx: dict) -> None:
    from app.services import notifications
    await notifications.close()


def get_redis_settings() -> RedisSettings:
    from urllib.parse import urlparse
    s = get_settings()
    u = urlparse(s.redis_url)
    return RedisSettings(
        host=u.hostname or "localhost",
        port=u.port or 6379,
        password=u.password,
        database=int(u.path.lstrip("/")) if u.path.lstrip("/") else 0,
    )


async def enqueue_manual_reminder(session_id: str, reminder_type: str = "15min") -> None:
    """Enqueue send_manual_reminder (call from API or admin scripts)."""
    redis = await create_pool(get_redis_settings())
    try:
        await redis.enqueue_job("send_manual_reminder", session_id, reminder_type)
    finally:
        await redis.close()
