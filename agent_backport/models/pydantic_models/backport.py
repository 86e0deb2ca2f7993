"""
Payloads passed between backport workflow steps.

Every step result is validated into one of these frozen models both when the
step first runs and when its recorded result is replayed.
"""

from pydantic import BaseModel, ConfigDict, model_validator

from agent_backport.models.enums import Complexity, JobStatus


class StepPayload(BaseModel):
    model_config = ConfigDict(frozen=True, extra="forbid")


class Acknowledgement(StepPayload):
    acknowledged: bool
    error: str | None = None


class CommitInfo(StepPayload):
    sha: str
    message: str


class PullRequestInfo(StepPayload):
    """Metadata of a single pull request as returned by the collaborator."""

    number: int
    title: str
    body: str | None = None
    base_branch: str
    head_branch: str
    head_sha: str
    merged: bool = False
    merge_commit_sha: str | None = None


class PullRequestDetails(StepPayload):
    title: str
    body: str | None = None
    base_branch: str
    head_branch: str
    head_sha: str
    merged: bool
    merge_commit_sha: str | None = None
    commits: tuple[CommitInfo, ...] = ()
    diff: str = ""


class BranchCheck(StepPayload):
    name: str
    exists: bool


class ChangeAnalysis(StepPayload):
    complexity: Complexity
    files_changed: int
    potential_conflicts: tuple[str, ...] = ()
    recommendations: tuple[str, ...] = ()


class BackportAttempt(StepPayload):
    """Outcome of applying the change to the target branch.

    A conflict is an expected business outcome, so it is carried here as a
    value rather than raised.
    """

    success: bool
    branch: str | None = None
    error: str | None = None

    @model_validator(mode="after")
    def check_outcome(self) -> "BackportAttempt":
        if self.success and not self.branch:
            raise ValueError("a successful backport must name its branch")
        if not self.success and not self.error:
            raise ValueError("a failed backport must carry an error message")
        return self


class CreatedPullRequest(StepPayload):
    number: int


class CommentPosted(StepPayload):
    issue_number: int
    posted: bool = True


class JobFinalized(StepPayload):
    status: JobStatus
