"""
Entry point for an already-parsed ``backport to <branch>`` command.
"""

import logging

from celery import Celery

from agent_backport.core.job_store import JobStore
from agent_backport.models.pydantic_models.jobs import JobCreate, JobRecord

logger = logging.getLogger(__name__)

RUN_BACKPORT_TASK = "backport.run_backport"


async def start_backport(
    store: JobStore, params: JobCreate, celery_app: Celery
) -> JobRecord:
    """
    Create a pending job and hand it to a worker.

    If dispatch fails the job stays pending and the reconciler picks it up
    once it goes stale.
    """
    job = await store.create_job(params)

    try:
        task = celery_app.send_task(RUN_BACKPORT_TASK, kwargs={"job_id": job.id})
    except Exception as exc:
        logger.error(f"Could not dispatch backport job {job.id}: {exc}", exc_info=True)
        await store.append_log(job.id, "Queued; waiting for a worker")
        return job

    logger.info(f"Dispatched backport job {job.id} as Celery task {task.id}")
    return job
