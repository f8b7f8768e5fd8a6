"""Run ARQ worker. Usage: python -m app.worker.run_worker (or: arq app.worker.run_worker.WorkerSettings)"""

from arq import run_worker
from arq.cron import cron

from app.worker.tasks import (
    enforce_hosting_expiry,
    get_redis_settings,
    provision_order,
    resume_stalled_provisioning,
    shutdown,
    startup,
)


class WorkerSettings:
    redis_settings = get_redis_settings()
    functions = [provision_order]
    cron_jobs = [
        cron(resume_stalled_provisioning, minute=set(range(0, 60, 5)), second=0),  # every 5 minutes
        cron(enforce_hosting_expiry, minute=7, second=0),  # hourly
    ]
    on_startup = startup
    on_shutdown = shutdown
    max_tries = 3


def main() -> None:
    run_worker(WorkerSettings)


if __name__ == "__main__":
    main()
