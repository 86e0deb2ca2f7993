"""
Jobs API - read-only view of backport jobs for the dashboard.
"""

import logging

from fastapi import APIRouter, Depends, Query

from agent_backport.api.v1.deps import get_job_store
from agent_backport.api.v1.endpoints.utils.jobs import (
    get_job_or_404,
    list_jobs_for_caller,
)
from agent_backport.api.v1.helpers.authentication import Caller, get_current_caller
from agent_backport.config import settings
from agent_backport.core.job_store import JobStore
from agent_backport.models.enums import JobStatus
from agent_backport.models.pydantic_models.jobs import JobListResponse, JobRecord

logger = logging.getLogger(__name__)
router = APIRouter()


@router.get("", response_model=JobRecord | JobListResponse)
async def list_jobs(
    id: str | None = Query(None, description="Return a single job"),
    limit: int = Query(settings.job_list_default_limit, ge=1),
    repository: str | None = Query(None, description="Filter by owner/name"),
    status: JobStatus | None = Query(None, description="Filter by status"),
    caller: Caller = Depends(get_current_caller),
    store: JobStore = Depends(get_job_store),
):
    """Get one job by ``id``, or list jobs newest first."""
    if id:
        return await get_job_or_404(id, caller, store)

    # Oversized limits are clamped, not rejected
    limit = min(limit, settings.job_list_max_limit)
    jobs = await list_jobs_for_caller(
        caller, store, limit=limit, repository=repository, status=status
    )
    return JobListResponse(jobs=jobs)


@router.get("/{job_id}", response_model=JobRecord)
async def get_job(
    job_id: str,
    caller: Caller = Depends(get_current_caller),
    store: JobStore = Depends(get_job_store),
):
    """Get a single job by ID."""
    return await get_job_or_404(job_id, caller, store)
