"""Run ARQ worker. Usage: python -m app.worker.run_worker"""

from arq import run_worker
from arq.cron import cron

from app.worker.tasks import get_redis_settings, send_due_reminders, send_manual_reminder, shutdown, startup


class ReminderWorker:
    redis_settings = get_redis_settings()
    functions = [send_manual_reminder]
    cron_jobs = [
        cron(send_due_reminders, minute=set(range(0, 60, 5)), second=0),  # every 5 minutes
    ]
    on_startup = startup
    on_shutdown = shutdown


if __name__ == "__main__":
    run_worker(ReminderWorker)
