from datetime import datetime, timedelta

import pytest

from app.models.failed_job import FailedJob
from app.models.session import TutoringSession
from app.services import sessions as sessions_service
from app.worker import tasks
from app.worker.cron import run_send_due_reminders


async def test_cron_sweep_sends_due_reminders(student, teacher):
    now = datetime.utcnow()
    s = await sessions_service.create_session(student.id, teacher.id, "Guitar", now + timedelta(minutes=40), 60)
    await sessions_service.confirm(s.id, teacher.id)
    assert await run_send_due_reminders(now) == 1
    assert [r.type for r in (await TutoringSession.get(s.id)).reminders_sent] == ["1h"]


async def test_failed_manual_reminder_goes_to_dead_letter(db):
    missing = "000000000000000000000000"
    with pytest.raises(Exception):
        await tasks.send_manual_reminder({"job_id": "job-1"}, missing, "1h")
    [failed] = await FailedJob.find_all().to_list()
    assert failed.job_name == "send_manual_reminder"
    assert failed.job_id == "job-1"
    assert failed.session_id == missing
    assert failed.args == [missing, "1h"]
    assert "Session not found" in failed.reason


def test_redis_settings_from_url(monkeypatch):
    from app.core.config import get_settings
    monkeypatch.setattr(get_settings(), "redis_url", "redis://:pw@cache.internal:6380/2")
    rs = tasks.get_redis_settings()
    assert (rs.host, rs.port, rs.password, rs.database) == ("cache.internal", 6380, "pw", 2)
