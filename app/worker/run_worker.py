"""Run ARQ worker. Usage: python -m app.worker.run_worker"""

from arq import run_worker
from arq.cron import cron

from app.worker.tasks import get_redis_settings, replay_failed_webhooks, shutdown, startup


class WorkerSettings:
    functions = [replay_failed_webhooks]
    cron_jobs = [
        cron(replay_failed_webhooks, minute=set(range(0, 60, 5)), second=0),  # every 5 minutes
    ]
    on_startup = startup
    on_shutdown = shutdown
    redis_settings = get_redis_settings()


if __name__ == "__main__":
    run_worker(WorkerSettings)
