"""
End-to-end tests for the backport workflow against the in-memory collaborator.

Covers:
  - a missing target branch fails the job without retries
  - transient 502s on the branch lookup are retried and then succeed
  - a conflicting backport reports failure without opening a PR
  - the success path opens a PR, comments and completes the job
  - interrupting a run between any two steps and resuming it repeats no
    side effect and reaches the same outcome
  - the Celery task honours the per-job lock
"""

from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from agent_backport.core.errors import (
    PermissionDeniedError,
    TransientSourceControlError,
)
from agent_backport.core.workflow import WorkflowEngine
from agent_backport.models.enums import JobStatus, RunStatus
from agent_backport.models.pydantic_models.backport import BackportAttempt
from agent_backport.tasks.backport import (
    backport_pr_title,
    failure_comment,
    run_backport_job,
    success_comment,
)


class SimulatedCrash(BaseException):
    """Stands in for a worker dying between two steps."""


@pytest.fixture()
def drive(session_factory, source_control, recorded_sleeps):
    """Run the workflow for a job with the fakes wired in."""

    async def _drive(job_id, backport_executor=None):
        return await run_backport_job(
            job_id,
            session_factory=session_factory,
            client_factory=lambda installation_id: source_control,
            backport_executor=backport_executor,
            sleep=recorded_sleeps,
        )

    return _drive


def _messages(job):
    return [entry.split("] ", 1)[1] for entry in job.logs]


# ---------------------------------------------------------------------------
# Scenarios
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_missing_target_branch_fails_without_retry(
    job_factory, job_store, drive, source_control, recorded_sleeps, session_factory
):
    job = await job_factory(target_branch="release-1.2")

    outcome = await drive(job.id)

    assert outcome.status == RunStatus.ABORTED
    assert outcome.failed_step == "validate_target_branch"
    assert source_control.calls["get_branch"] == 1
    assert recorded_sleeps.delays == []

    stored = await job_store.get_job(job.id)
    assert stored.status == JobStatus.FAILED
    assert stored.error == "Target branch 'release-1.2' does not exist"
    assert stored.result_pr is None
    assert "Workflow error: Target branch 'release-1.2' does not exist" in _messages(stored)

    assert source_control.created_pull_requests == []
    [(_, issue, body)] = source_control.comments
    assert issue == 42
    assert "release-1.2" in body
    assert "Please try backporting manually." in body


@pytest.mark.asyncio
async def test_transient_branch_lookup_is_retried(
    job_factory, job_store, drive, source_control, successful_backport, session_factory
):
    job = await job_factory(target_branch="v1")
    source_control.failures["get_branch"] = [
        TransientSourceControlError("GitHub lookup of branch v1 failed with HTTP 502", 502),
        TransientSourceControlError("GitHub lookup of branch v1 failed with HTTP 502", 502),
    ]

    outcome = await drive(job.id, backport_executor=successful_backport)

    assert outcome.succeeded
    assert source_control.calls["get_branch"] == 3

    engine = WorkflowEngine(session_factory)
    assert await engine.executor.attempts(job.id, "validate_target_branch") == 3
    assert (await job_store.get_job(job.id)).status == JobStatus.COMPLETED


@pytest.mark.asyncio
async def test_merge_conflict_reports_failure(
    job_factory, job_store, drive, source_control, conflicting_backport
):
    job = await job_factory()

    outcome = await drive(job.id, backport_executor=conflicting_backport)

    # A conflict is a business outcome, not an aborted run
    assert outcome.status == RunStatus.SUCCEEDED
    assert source_control.calls["create_pull_request"] == 0

    stored = await job_store.get_job(job.id)
    assert stored.status == JobStatus.FAILED
    assert stored.error == "Merge conflict in src/widgets.py"
    assert stored.result_pr is None

    [(_, issue, body)] = source_control.comments
    assert issue == 42
    assert body == failure_comment("v1", "Merge conflict in src/widgets.py")
    assert "Backport failed: Merge conflict in src/widgets.py" in _messages(stored)


@pytest.mark.asyncio
async def test_default_executor_reports_not_implemented(
    job_factory, job_store, drive, source_control
):
    job = await job_factory()

    await drive(job.id)

    stored = await job_store.get_job(job.id)
    assert stored.status == JobStatus.FAILED
    assert stored.error == "Backport execution not yet implemented"


@pytest.mark.asyncio
async def test_successful_backport_completes_job(
    job_factory, job_store, drive, source_control, successful_backport
):
    job = await job_factory(source_pr=42, target_branch="v1")

    outcome = await drive(job.id, backport_executor=successful_backport)

    assert outcome.succeeded
    stored = await job_store.get_job(job.id)
    assert stored.status == JobStatus.COMPLETED
    assert stored.result_pr == 101
    assert stored.error is None

    [created] = source_control.created_pull_requests
    assert created["title"] == backport_pr_title("v1", 42)
    assert created["head"] == "backport-42-to-v1"
    assert created["base"] == "v1"

    [(_, issue, body)] = source_control.comments
    assert issue == 42
    assert body == success_comment("v1", 101)
    assert "#101" in body

    assert source_control.reactions == [("acme/widgets", 9001, "eyes")]
    assert source_control.closed

    messages = _messages(stored)
    assert messages[0] == "Request acknowledged"
    assert "PR title: Fix widget alignment" in messages
    assert "Commits: 2" in messages
    assert "Validating target branch: v1" in messages
    assert "Analysis complete. Complexity: low" in messages
    assert messages[-1] == "Backport PR created: #101"


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "failure",
    [
        PermissionDeniedError("GitHub comment reaction failed with HTTP 403", 403),
        KeyError("token"),
        ValueError("Expecting value: line 1 column 1 (char 0)"),
    ],
    ids=["permission_denied", "malformed_token_response", "invalid_json"],
)
async def test_acknowledgement_failure_does_not_stop_backport(
    job_factory, job_store, drive, source_control, successful_backport, failure
):
    job = await job_factory()
    source_control.failures["react_to_comment"] = [failure]

    outcome = await drive(job.id, backport_executor=successful_backport)

    assert outcome.succeeded
    assert source_control.calls["react_to_comment"] == 1
    stored = await job_store.get_job(job.id)
    assert stored.status == JobStatus.COMPLETED
    assert _messages(stored)[0].startswith("Could not acknowledge request")


@pytest.mark.asyncio
async def test_missing_pull_request_is_fatal(job_factory, job_store, drive):
    job = await job_factory(source_pr=999)

    outcome = await drive(job.id)

    assert outcome.failed_step == "fetch_pr_details"
    stored = await job_store.get_job(job.id)
    assert stored.status == JobStatus.FAILED
    assert stored.error == "Pull request #999 was not found in acme/widgets"


@pytest.mark.asyncio
async def test_failure_comment_error_still_fails_job(
    job_factory, job_store, drive, source_control
):
    job = await job_factory(target_branch="release-1.2")
    source_control.failures["create_issue_comment"] = [
        PermissionDeniedError("GitHub comment on #42 failed with HTTP 403", 403)
    ]

    await drive(job.id)

    stored = await job_store.get_job(job.id)
    assert stored.status == JobStatus.FAILED
    assert stored.error == "Target branch 'release-1.2' does not exist"


@pytest.mark.asyncio
async def test_unknown_job_returns_none(drive):
    assert await drive("bp_0_missing") is None


# ---------------------------------------------------------------------------
# Replay after interruption
# ---------------------------------------------------------------------------


def _crash_after(step_count: int):
    """Replacement for WorkflowEngine._advance that dies after ``step_count`` steps."""
    original = WorkflowEngine._advance
    seen = {"count": 0}

    async def _advance(self, run_id, next_index):
        await original(self, run_id, next_index)
        seen["count"] += 1
        if seen["count"] == step_count:
            raise SimulatedCrash(f"worker died after {step_count} steps")

    return _advance


@pytest.mark.asyncio
@pytest.mark.parametrize("step_count", range(1, 9))
async def test_success_path_resumes_without_repeating_side_effects(
    job_factory, job_store, drive, source_control, successful_backport, step_count
):
    job = await job_factory()

    with patch.object(WorkflowEngine, "_advance", _crash_after(step_count)):
        with pytest.raises(SimulatedCrash):
            await drive(job.id, backport_executor=successful_backport)

    outcome = await drive(job.id, backport_executor=successful_backport)

    assert outcome.succeeded
    assert source_control.calls["react_to_comment"] == 1
    assert source_control.calls["get_pull_request"] == 1
    assert source_control.calls["get_branch"] == 1
    assert source_control.calls["create_pull_request"] == 1
    assert source_control.calls["create_issue_comment"] == 1
    assert successful_backport.calls == 1

    stored = await job_store.get_job(job.id)
    assert stored.status == JobStatus.COMPLETED
    assert stored.result_pr == 101
    assert _messages(stored).count("Backport PR created: #101") == 1


@pytest.mark.asyncio
@pytest.mark.parametrize("step_count", range(1, 8))
async def test_failure_path_resumes_without_repeating_side_effects(
    job_factory, job_store, drive, source_control, conflicting_backport, step_count
):
    job = await job_factory()

    with patch.object(WorkflowEngine, "_advance", _crash_after(step_count)):
        with pytest.raises(SimulatedCrash):
            await drive(job.id, backport_executor=conflicting_backport)

    await drive(job.id, backport_executor=conflicting_backport)

    assert source_control.calls["create_pull_request"] == 0
    assert source_control.calls["create_issue_comment"] == 1
    assert conflicting_backport.calls == 1

    stored = await job_store.get_job(job.id)
    assert stored.status == JobStatus.FAILED
    assert stored.error == "Merge conflict in src/widgets.py"


@pytest.mark.asyncio
async def test_completed_run_is_not_repeated(
    job_factory, drive, source_control, successful_backport
):
    job = await job_factory()
    await drive(job.id, backport_executor=successful_backport)

    outcome = await drive(job.id, backport_executor=successful_backport)

    assert outcome.succeeded
    assert source_control.calls["create_pull_request"] == 1
    assert len(source_control.comments) == 1


# ---------------------------------------------------------------------------
# Celery task wrapper
# ---------------------------------------------------------------------------


def test_task_skips_when_job_already_running():
    from agent_backport.tasks.backport import run_backport

    lock = MagicMock()
    lock.acquire.return_value = False
    valkey = MagicMock()
    valkey.lock.return_value = lock

    with (
        patch("agent_backport.tasks.task_lock.get_valkey_client", return_value=valkey),
        patch("agent_backport.tasks.backport._run_backport") as run,
    ):
        result = run_backport.run("bp_1_abc")

    assert result["status"] == "skipped"
    assert result["job_id"] == "bp_1_abc"
    run.assert_not_called()
    assert valkey.lock.call_args[0][0] == "celery:lock:backport:bp_1_abc"


def test_task_drives_job_under_lock():
    from agent_backport.tasks.backport import run_backport

    lock = MagicMock()
    lock.acquire.return_value = True
    valkey = MagicMock()
    valkey.lock.return_value = lock

    with (
        patch("agent_backport.tasks.task_lock.get_valkey_client", return_value=valkey),
        patch(
            "agent_backport.tasks.backport.run_backport_job",
            new_callable=AsyncMock,
            return_value=None,
        ),
        patch("agent_backport.tasks.backport.dispose_engine", new_callable=AsyncMock),
    ):
        result = run_backport.run("bp_1_abc")

    assert result == {"status": "error", "job_id": "bp_1_abc", "error": "Job not found"}
    lock.release.assert_called_once()


def test_backport_attempt_requires_consistent_outcome():
    with pytest.raises(ValueError):
        BackportAttempt(success=True)
    with pytest.raises(ValueError):
        BackportAttempt(success=False)
