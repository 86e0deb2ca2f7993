"""
Job record store - durable job metadata plus an append-only log per job.

This is the single source of truth for externally visible job state. Every
operation runs in its own short transaction; status monotonicity is enforced
inside the UPDATE statement itself so no read-modify-write window exists.
"""

import logging
import uuid
from collections import defaultdict
from collections.abc import Mapping, Sequence
from datetime import datetime, timezone
from typing import Any

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from agent_backport.core.errors import InvalidJobTransition
from agent_backport.models.enums import ALLOWED_PREVIOUS_STATUSES, JobStatus
from agent_backport.models.jobs import BackportJob, JobLog
from agent_backport.models.pydantic_models.jobs import (
    JobCreate,
    JobRecord,
    JobUpdate,
)

logger = logging.getLogger(__name__)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def generate_job_id() -> str:
    millis = int(utcnow().timestamp() * 1000)
    return f"bp_{millis}_{uuid.uuid4().hex[:8]}"


def format_log_entry(message: str, at: datetime) -> str:
    stamp = at.isoformat(timespec="milliseconds").replace("+00:00", "Z")
    return f"[{stamp}] {message}"


def _to_record(job: BackportJob, logs: Sequence[str] = ()) -> JobRecord:
    return JobRecord.model_validate(job).model_copy(update={"logs": tuple(logs)})


class JobStore:
    """Async job store backed by SQLAlchemy."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self._session_factory = session_factory

    async def create_job(self, params: JobCreate) -> JobRecord:
        now = utcnow()
        job = BackportJob(
            id=generate_job_id(),
            repository=params.repository,
            installation_id=params.installation_id,
            source_pr=params.source_pr,
            target_branch=params.target_branch,
            requested_by=params.requested_by,
            comment_id=params.comment_id,
            status=JobStatus.PENDING.value,
            created_at=now,
            updated_at=now,
        )

        async with self._session_factory() as session:
            session.add(job)
            await session.commit()

        logger.info(
            f"Created backport job {job.id} for {params.repository}#{params.source_pr} -> {params.target_branch}"
        )
        return _to_record(job)

    async def get_job(self, job_id: str) -> JobRecord | None:
        async with self._session_factory() as session:
            job = await session.get(BackportJob, job_id)
            if job is None:
                return None
            logs = await self._load_logs(session, [job_id])
            return _to_record(job, logs.get(job_id, []))

    async def update_job(
        self, job_id: str, changes: JobUpdate | Mapping[str, Any]
    ) -> JobRecord | None:
        """
        Merge ``changes`` into the stored job and refresh ``updated_at``.

        Args:
            job_id: Job to update
            changes: JobUpdate or a mapping validated into one; unknown or
                immutable fields are rejected

        Returns:
            The updated job, or None if the job does not exist

        Raises:
            pydantic.ValidationError: If the changes are malformed
            InvalidJobTransition: If the status would move backwards or
                leave a terminal state
        """
        if not isinstance(changes, JobUpdate):
            changes = JobUpdate.model_validate(dict(changes))

        now = utcnow()
        values: dict[str, Any] = {"updated_at": now}
        stmt = update(BackportJob).where(BackportJob.id == job_id)

        if changes.status is not None:
            allowed = ALLOWED_PREVIOUS_STATUSES[changes.status]
            stmt = stmt.where(BackportJob.status.in_([s.value for s in allowed]))
            values["status"] = changes.status.value
            if changes.status.is_terminal:
                values["result_pr"] = changes.result_pr
                values["error"] = changes.error

        async with self._session_factory() as session:
            result = await session.execute(stmt.values(**values))
            if result.rowcount == 0:
                job = await session.get(BackportJob, job_id)
                if job is None:
                    return None
                raise InvalidJobTransition(job_id, job.status, values["status"])
            await session.commit()

        if changes.status is not None:
            logger.info(f"Job {job_id} status -> {changes.status.value}")

        return await self.get_job(job_id)

    async def append_log(self, job_id: str, message: str) -> None:
        """Append one timestamped entry without reading existing entries."""
        now = utcnow()

        async with self._session_factory() as session:
            result = await session.execute(
                update(BackportJob)
                .where(BackportJob.id == job_id)
                .values(updated_at=now)
            )
            if result.rowcount == 0:
                logger.debug(f"Dropping log entry for unknown job {job_id}")
                return

            session.add(
                JobLog(
                    job_id=job_id,
                    message=format_log_entry(message, now),
                    logged_at=now,
                )
            )
            await session.commit()

    async def list_jobs(
        self,
        repository: str | None = None,
        status: JobStatus | str | None = None,
        limit: int | None = 50,
    ) -> list[JobRecord]:
        """List jobs newest first; filters are exact-match and combined with AND."""
        stmt = select(BackportJob)
        if repository:
            stmt = stmt.where(BackportJob.repository == repository)
        if status:
            stmt = stmt.where(BackportJob.status == JobStatus(status).value)
        stmt = stmt.order_by(BackportJob.created_at.desc(), BackportJob.id.desc())
        if limit is not None:
            stmt = stmt.limit(limit)

        async with self._session_factory() as session:
            jobs = (await session.execute(stmt)).scalars().all()
            logs = await self._load_logs(session, [j.id for j in jobs])
            return [_to_record(j, logs.get(j.id, [])) for j in jobs]

    async def list_in_flight(self, updated_before: datetime) -> list[JobRecord]:
        """Jobs still pending or in progress that have not changed since ``updated_before``."""
        stmt = (
            select(BackportJob)
            .where(
                BackportJob.status.in_(
                    [JobStatus.PENDING.value, JobStatus.IN_PROGRESS.value]
                ),
                BackportJob.updated_at < updated_before,
            )
            .order_by(BackportJob.created_at)
        )
        async with self._session_factory() as session:
            jobs = (await session.execute(stmt)).scalars().all()
            return [_to_record(j) for j in jobs]

    @staticmethod
    async def _load_logs(
        session: AsyncSession, job_ids: Sequence[str]
    ) -> dict[str, list[str]]:
        if not job_ids:
            return {}
        result = await session.execute(
            select(JobLog.job_id, JobLog.message)
            .where(JobLog.job_id.in_(list(job_ids)))
            .order_by(JobLog.seq)
        )
        grouped: dict[str, list[str]] = defaultdict(list)
        for job_id, message in result.all():
            grouped[job_id].append(message)
        return grouped
