from __future__ import annotations

import logging
from typing import Iterable

from django.conf import settings

logger = logging.getLogger(__name__)

INVOKE_OPERATION_TASK = "fleet_orchestrator.worker_tasks.invoke_operation"


def _async_mode() -> str:
    return (getattr(settings, "FLEETPLAN_ASYNC_JOBS_MODE", "") or "redis").strip().lower()


def _enqueue_job(func_path: str, *args) -> str:
    import redis
    from rq import Queue

    queue = Queue("default", connection=redis.Redis.from_url(settings.FLEETPLAN_JOBS_REDIS_URL))
    job = queue.enqueue(func_path, *args, job_timeout=settings.FLEETPLAN_JOB_TIMEOUT)
    return job.id


class AsyncDispatcher:
    """Fire-and-forget hand-off of an admitted operation to the job worker."""

    def dispatch(self, operation_id: int, machine_ids: Iterable[int], should_run_now: bool) -> str:
        machine_ids = list(machine_ids)
        if _async_mode() == "redis":
            job_id = _enqueue_job(INVOKE_OPERATION_TASK, operation_id, machine_ids, should_run_now)
            logger.info("Enqueued operation %s as job %s", operation_id, job_id)
            return job_id
        from .worker_tasks import invoke_operation

        invoke_operation(operation_id, machine_ids, should_run_now)
        return ""
