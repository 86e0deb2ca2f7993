"""
Utility functions for the jobs endpoint.
"""

import logging

from agent_backport.api.v1.helpers.authentication import Caller
from agent_backport.api.v1.helpers.responses import not_found_response
from agent_backport.core.job_store import JobStore
from agent_backport.models.enums import JobStatus
from agent_backport.models.pydantic_models.jobs import JobRecord

logger = logging.getLogger(__name__)


async def get_job_or_404(job_id: str, caller: Caller, store: JobStore) -> JobRecord:
    job = await store.get_job(job_id)
    if job is None:
        raise not_found_response("Job not found")
    # TODO: verify the caller can see job.repository once repository access
    # lookups exist; until then any authenticated caller can read any job.
    return job


async def list_jobs_for_caller(
    caller: Caller,
    store: JobStore,
    limit: int,
    repository: str | None = None,
    status: JobStatus | None = None,
) -> list[JobRecord]:
    """
    List jobs visible to ``caller``, newest first.

    Every job is visible to every authenticated caller for now; this is the
    single place to add repository-access filtering.
    """
    return await store.list_jobs(repository=repository, status=status, limit=limit)
