"""arq worker settings module.

Import path for arq CLI: arq nudgr.workers.settings.WorkerSettings
"""

from __future__ import annotations

from arq import cron
from arq.connections import RedisSettings

from nudgr.config import get_settings
from nudgr.workers.sweeper import shutdown, startup, sweep_due_events


class WorkerSettings:
    """arq worker settings for the due-event sweeper."""

    functions = [sweep_due_events]
    cron_jobs = [
        # Every minute, on the minute
        cron(sweep_due_events, second=0, run_at_startup=True, unique=True),
    ]
    on_startup = startup
    on_shutdown = shutdown
    redis_settings = RedisSettings.from_dsn(get_settings().arq_redis_url)
    max_jobs = 4
    job_timeout = 300
