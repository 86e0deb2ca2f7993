"""
Job reconciler - re-dispatches backport jobs whose runs were interrupted.

A job that is still pending or in progress but has not been touched for
``stale_job_seconds`` has lost its worker (crash, deploy, lost message).
Re-dispatching it is safe: the workflow engine resumes from the last durable
step and the per-job lock keeps a slow-but-alive run from being doubled.
"""

import asyncio
import logging
from datetime import timedelta
from typing import Any, Dict

from celery import shared_task

from agent_backport.celery_app import celery_app
from agent_backport.config import settings
from agent_backport.core.job_store import JobStore, utcnow
from agent_backport.core.trigger import RUN_BACKPORT_TASK
from agent_backport.db.session import get_session_local
from agent_backport.models.enums import RunStatus
from agent_backport.models.workflow import WorkflowRun
from agent_backport.tasks.task_lock import with_task_lock

logger = logging.getLogger(__name__)


async def _reconcile_backport_jobs(
    stale_after_seconds: int | None = None,
) -> Dict[str, Any]:
    """
    Find stale in-flight jobs and dispatch their workflow again.

    Returns:
        Dict with reconciliation statistics
    """
    from agent_backport.db.session import dispose_engine

    stale_after = stale_after_seconds or settings.stale_job_seconds
    cutoff = utcnow() - timedelta(seconds=stale_after)

    try:
        session_factory = get_session_local()
        store = JobStore(session_factory)

        stale_jobs = await store.list_in_flight(updated_before=cutoff)
        if not stale_jobs:
            logger.info("No interrupted backport jobs found")
            return {"status": "success", "jobs_found": 0, "jobs_dispatched": 0, "errors": []}

        logger.info(f"Found {len(stale_jobs)} interrupted backport jobs")

        dispatched = 0
        errors = []
        for job in stale_jobs:
            try:
                async with session_factory() as session:
                    run = await session.get(WorkflowRun, job.id)

                if run is not None and run.status in (
                    RunStatus.SUCCEEDED.value,
                    RunStatus.ABORTED.value,
                ):
                    logger.warning(
                        f"Job {job.id} is {job.status.value} but its run is {run.status}; not re-dispatching"
                    )
                    continue

                task = celery_app.send_task(RUN_BACKPORT_TASK, kwargs={"job_id": job.id})
                # Also refreshes updated_at, so the next tick leaves the job alone
                await store.append_log(job.id, "Re-dispatched stale backport")
                logger.info(f"Re-dispatched job {job.id} as Celery task {task.id}")
                dispatched += 1
            except Exception as exc:
                error_msg = f"Failed to re-dispatch job {job.id}: {exc}"
                logger.error(error_msg, exc_info=True)
                errors.append(error_msg)

        return {
            "status": "success",
            "jobs_found": len(stale_jobs),
            "jobs_dispatched": dispatched,
            "errors": errors,
        }

    except Exception as exc:
        logger.error(f"Job reconciler failed: {exc}", exc_info=True)
        return {
            "status": "error",
            "error": str(exc),
            "jobs_found": 0,
            "jobs_dispatched": 0,
            "errors": [str(exc)],
        }
    finally:
        # Dispose of the engine so the next asyncio.run gets fresh connections
        await dispose_engine()


@shared_task(name="job_reconciler.reconcile_backport_jobs")
@with_task_lock(lock_name="job_reconciler")
def reconcile_backport_jobs() -> Dict[str, Any]:
    """
    Celery periodic task that resumes interrupted backport jobs.

    Uses distributed locking to prevent concurrent executions.
    """
    return asyncio.run(_reconcile_backport_jobs())
