"""
Backport workflow - the step sequence that carries one job to completion.

acknowledge -> fetch_pr_details -> validate_target_branch -> analyze_changes
-> perform_backport -> (create_backport_pr -> report_success | report_failure)
-> finalize

Every step is a durable StepExecutor invocation, so the Celery task below can
be redelivered or re-dispatched after a crash and pick up where it stopped.
"""

import asyncio
import logging
from collections.abc import Awaitable, Callable, Sequence
from typing import Any

from celery import shared_task
from pydantic import BaseModel, ConfigDict
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from agent_backport.config import settings
from agent_backport.core.changes import (
    BackportExecutor,
    PlaceholderBackportExecutor,
    analyze_diff,
)
from agent_backport.core.errors import BackportError, FatalError, NotFoundError
from agent_backport.core.job_store import JobStore
from agent_backport.core.source_control import GitHubClient, SourceControlClient
from agent_backport.core.workflow import (
    Step,
    StepExecutor,
    WorkflowContext,
    WorkflowDefinition,
    WorkflowEngine,
    WorkflowOutcome,
)
from agent_backport.db.session import dispose_engine, get_session_local
from agent_backport.models.enums import JobStatus
from agent_backport.models.pydantic_models.backport import (
    Acknowledgement,
    BackportAttempt,
    BranchCheck,
    ChangeAnalysis,
    CommentPosted,
    CreatedPullRequest,
    JobFinalized,
    PullRequestDetails,
)
from agent_backport.models.pydantic_models.jobs import JobRecord, JobUpdate
from agent_backport.tasks.task_lock import acquire_task_lock

logger = logging.getLogger(__name__)

ACK_REACTION = "eyes"


class BackportParams(BaseModel):
    model_config = ConfigDict(frozen=True)

    job_id: str
    installation_id: int
    repository: str
    pr_number: int
    target_branch: str
    comment_id: int

    @classmethod
    def from_job(cls, job: JobRecord) -> "BackportParams":
        return cls(
            job_id=job.id,
            installation_id=job.installation_id,
            repository=job.repository,
            pr_number=job.source_pr,
            target_branch=job.target_branch,
            comment_id=job.comment_id,
        )


def backport_pr_title(target_branch: str, source_pr: int) -> str:
    return f"[Backport {target_branch}] Changes from #{source_pr}"


def backport_pr_body(target_branch: str, source_pr: int) -> str:
    return (
        f"This is an automated backport of #{source_pr} to `{target_branch}`.\n\n"
        "Created by agent-backport."
    )


def success_comment(target_branch: str, result_pr: int) -> str:
    return f"✅ Successfully backported to `{target_branch}`!\n\nSee #{result_pr}"


def failure_comment(target_branch: str, error: str) -> str:
    return (
        f"❌ Failed to backport to `{target_branch}`.\n\n"
        f"**Error:** {error}\n\n"
        "Please try backporting manually."
    )


def _backport_succeeded(ctx: WorkflowContext) -> bool:
    return ctx.result("perform_backport", BackportAttempt).success


def _backport_failed(ctx: WorkflowContext) -> bool:
    return not _backport_succeeded(ctx)


class BackportWorkflow(WorkflowDefinition):
    name = "backport"

    def __init__(
        self,
        store: JobStore,
        client: SourceControlClient,
        executor: StepExecutor,
        backport_executor: BackportExecutor | None = None,
    ):
        self.store = store
        self.client = client
        self.executor = executor
        self.backport_executor = backport_executor or PlaceholderBackportExecutor()

    def steps(self) -> Sequence[Step]:
        return (
            Step("acknowledge", self.acknowledge, Acknowledgement),
            Step("fetch_pr_details", self.fetch_pr_details, PullRequestDetails),
            Step("validate_target_branch", self.validate_target_branch, BranchCheck),
            Step("analyze_changes", self.analyze_changes, ChangeAnalysis),
            Step("perform_backport", self.perform_backport, BackportAttempt),
            Step(
                "create_backport_pr",
                self.create_backport_pr,
                CreatedPullRequest,
                when=_backport_succeeded,
            ),
            Step(
                "report_success",
                self.report_success,
                CommentPosted,
                when=_backport_succeeded,
            ),
            Step(
                "report_failure",
                self.report_failure,
                CommentPosted,
                when=_backport_failed,
            ),
            Step("finalize", self.finalize, JobFinalized),
        )

    async def _log(self, ctx: WorkflowContext, message: str) -> None:
        await self.store.append_log(ctx.params.job_id, message)

    # -----------------------------------------------------------------------
    # Lifecycle hooks
    # -----------------------------------------------------------------------

    async def on_start(self, ctx: WorkflowContext) -> None:
        job = await self.store.get_job(ctx.params.job_id)
        if job is not None and job.status == JobStatus.PENDING:
            await self.store.update_job(
                job.id, JobUpdate(status=JobStatus.IN_PROGRESS)
            )

    async def on_abort(self, ctx: WorkflowContext, outcome: WorkflowOutcome) -> None:
        params: BackportParams = ctx.params
        error = outcome.error or "Unknown error"
        await self._log(ctx, f"Workflow error: {error}")

        async def notify() -> CommentPosted:
            try:
                await self.client.create_issue_comment(
                    params.repository,
                    params.pr_number,
                    failure_comment(params.target_branch, error),
                )
            except BackportError as exc:
                logger.warning(
                    f"Could not report failure of job {params.job_id}: {exc.message}"
                )
                return CommentPosted(issue_number=params.pr_number, posted=False)
            return CommentPosted(issue_number=params.pr_number)

        try:
            await self.executor.execute(
                ctx.run_id, "report_abort", notify, CommentPosted
            )
        except BackportError as exc:
            logger.warning(f"Failure report for job {params.job_id} errored: {exc}")

        job = await self.store.get_job(params.job_id)
        if job is not None and not job.status.is_terminal:
            await self.store.update_job(
                params.job_id, JobUpdate(status=JobStatus.FAILED, error=error)
            )

    # -----------------------------------------------------------------------
    # Steps
    # -----------------------------------------------------------------------

    async def acknowledge(self, ctx: WorkflowContext) -> Acknowledgement:
        params: BackportParams = ctx.params
        try:
            await self.client.react_to_comment(
                params.repository, params.comment_id, ACK_REACTION
            )
        except BackportError as exc:
            # Best effort: the backport proceeds without the reaction
            logger.warning(f"Could not acknowledge job {params.job_id}: {exc.message}")
            await self._log(ctx, f"Could not acknowledge request: {exc.message}")
            return Acknowledgement(acknowledged=False, error=exc.message)
        except Exception as exc:
            logger.exception(f"Unexpected error acknowledging job {params.job_id}")
            await self._log(ctx, "Could not acknowledge request")
            return Acknowledgement(acknowledged=False, error=str(exc))

        await self._log(ctx, "Request acknowledged")
        return Acknowledgement(acknowledged=True)

    async def fetch_pr_details(self, ctx: WorkflowContext) -> PullRequestDetails:
        params: BackportParams = ctx.params
        await self._log(ctx, "Fetching PR details...")

        try:
            pr = await self.client.get_pull_request(params.repository, params.pr_number)
        except NotFoundError as exc:
            raise FatalError(
                f"Pull request #{params.pr_number} was not found in {params.repository}"
            ) from exc

        commits = await self.client.list_pull_request_commits(
            params.repository, params.pr_number
        )
        diff = await self.client.get_pull_request_diff(
            params.repository, params.pr_number
        )

        details = PullRequestDetails(
            title=pr.title,
            body=pr.body,
            base_branch=pr.base_branch,
            head_branch=pr.head_branch,
            head_sha=pr.head_sha,
            merged=pr.merged,
            merge_commit_sha=pr.merge_commit_sha,
            commits=tuple(commits),
            diff=diff,
        )
        await self._log(ctx, f"PR title: {details.title}")
        await self._log(ctx, f"Commits: {len(details.commits)}")
        return details

    async def validate_target_branch(self, ctx: WorkflowContext) -> BranchCheck:
        params: BackportParams = ctx.params
        await self._log(ctx, f"Validating target branch: {params.target_branch}")

        try:
            await self.client.get_branch(params.repository, params.target_branch)
        except NotFoundError as exc:
            raise FatalError(
                f"Target branch '{params.target_branch}' does not exist"
            ) from exc

        await self._log(ctx, "Target branch exists")
        return BranchCheck(name=params.target_branch, exists=True)

    async def analyze_changes(self, ctx: WorkflowContext) -> ChangeAnalysis:
        await self._log(ctx, "Analyzing changes...")
        details = ctx.result("fetch_pr_details", PullRequestDetails)
        analysis = analyze_diff(details.diff)
        await self._log(
            ctx, f"Analysis complete. Complexity: {analysis.complexity.value}"
        )
        return analysis

    async def perform_backport(self, ctx: WorkflowContext) -> BackportAttempt:
        params: BackportParams = ctx.params
        await self._log(ctx, "Performing backport in sandbox...")

        attempt = await self.backport_executor.perform(
            self.client,
            params.repository,
            ctx.result("fetch_pr_details", PullRequestDetails),
            params.target_branch,
            ctx.result("analyze_changes", ChangeAnalysis),
        )

        if attempt.success:
            await self._log(ctx, "Backport successful, creating PR...")
        else:
            await self._log(ctx, f"Backport failed: {attempt.error}")
        return attempt

    async def create_backport_pr(self, ctx: WorkflowContext) -> CreatedPullRequest:
        params: BackportParams = ctx.params
        attempt = ctx.result("perform_backport", BackportAttempt)
        number = await self.client.create_pull_request(
            params.repository,
            title=backport_pr_title(params.target_branch, params.pr_number),
            head=attempt.branch,
            base=params.target_branch,
            body=backport_pr_body(params.target_branch, params.pr_number),
        )
        return CreatedPullRequest(number=number)

    async def report_success(self, ctx: WorkflowContext) -> CommentPosted:
        params: BackportParams = ctx.params
        created = ctx.result("create_backport_pr", CreatedPullRequest)
        await self.client.create_issue_comment(
            params.repository,
            params.pr_number,
            success_comment(params.target_branch, created.number),
        )
        return CommentPosted(issue_number=params.pr_number)

    async def report_failure(self, ctx: WorkflowContext) -> CommentPosted:
        params: BackportParams = ctx.params
        attempt = ctx.result("perform_backport", BackportAttempt)
        await self.client.create_issue_comment(
            params.repository,
            params.pr_number,
            failure_comment(params.target_branch, attempt.error),
        )
        return CommentPosted(issue_number=params.pr_number)

    async def finalize(self, ctx: WorkflowContext) -> JobFinalized:
        params: BackportParams = ctx.params
        attempt = ctx.result("perform_backport", BackportAttempt)

        if attempt.success:
            created = ctx.result("create_backport_pr", CreatedPullRequest)
            update = JobUpdate(status=JobStatus.COMPLETED, result_pr=created.number)
        else:
            update = JobUpdate(status=JobStatus.FAILED, error=attempt.error)

        # A crash after the update but before the step was recorded re-runs
        # this body against an already terminal job
        job = await self.store.get_job(params.job_id)
        if job is None or job.status != update.status:
            await self.store.update_job(params.job_id, update)

        if attempt.success:
            await self._log(ctx, f"Backport PR created: #{created.number}")
        return JobFinalized(status=update.status)


async def run_backport_job(
    job_id: str,
    session_factory: async_sessionmaker[AsyncSession] | None = None,
    client_factory: Callable[[int], SourceControlClient] | None = None,
    backport_executor: BackportExecutor | None = None,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
) -> WorkflowOutcome | None:
    """
    Drive the backport workflow for ``job_id`` to a terminal state.

    The job id doubles as the workflow run id, so calling this again for the
    same job resumes the existing run.

    Returns:
        The workflow outcome, or None if the job does not exist
    """
    session_factory = session_factory or get_session_local()
    store = JobStore(session_factory)

    job = await store.get_job(job_id)
    if job is None:
        logger.error(f"Backport job {job_id} not found")
        return None

    client = (client_factory or GitHubClient)(job.installation_id)
    engine = WorkflowEngine(session_factory, sleep=sleep)
    workflow = BackportWorkflow(store, client, engine.executor, backport_executor)
    ctx = WorkflowContext(run_id=job.id, params=BackportParams.from_job(job))

    try:
        return await engine.run(workflow, job.id, ctx)
    finally:
        await client.aclose()


async def _run_backport(job_id: str) -> dict[str, Any]:
    try:
        outcome = await run_backport_job(job_id)
        if outcome is None:
            return {"status": "error", "job_id": job_id, "error": "Job not found"}
        return {
            "status": outcome.status.value,
            "job_id": job_id,
            "error": outcome.error,
            "failed_step": outcome.failed_step,
        }
    finally:
        # Each asyncio.run gets a fresh loop; pooled connections must not outlive it
        await dispose_engine()


@shared_task(name="backport.run_backport", bind=True, acks_late=True)
def run_backport(self, job_id: str) -> dict[str, Any]:
    """
    Celery task driving one backport job.

    Guarded by a per-job lock so a redelivered or re-dispatched message never
    drives the same run concurrently with a live worker.
    """
    with acquire_task_lock(
        f"backport:{job_id}", timeout=settings.backport_lock_seconds
    ) as acquired:
        if not acquired:
            return {
                "status": "skipped",
                "job_id": job_id,
                "reason": "backport_already_running",
            }
        return asyncio.run(_run_backport(job_id))
