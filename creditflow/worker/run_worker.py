"""Run ARQ worker. Usage: python -m creditflow.worker.run_worker"""

from arq import run_worker
from arq.cron import cron

from creditflow.core.config import get_settings
from creditflow.worker.tasks import expire_credits, get_redis_settings, shutdown, startup


class WorkerSettings:
    redis_settings = get_redis_settings()
    functions = [expire_credits]
    cron_jobs = [
        cron(expire_credits, minute=get_settings().expire_credits_minute, second=0),  # hourly
    ]
    on_startup = startup
    on_shutdown = shutdown


def main() -> None:
    run_worker(WorkerSettings)


if __name__ == "__main__":
    main()
