"""
Error taxonomy for backport workflows.

FatalError aborts a run without retry. TransientError is retried at the step
boundary with bounded backoff. A backport that cannot be applied cleanly is
not an error at all; it is returned as a value by the backport step.
"""


class BackportError(Exception):
    """Base class for errors raised by this package."""

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class FatalError(BackportError):
    """A precondition that will not resolve by retrying."""


class TransientError(BackportError):
    """A failure that may succeed on a later attempt.

    ``retry_after`` carries the collaborator's own backoff hint (seconds),
    which replaces the engine's computed delay for the next attempt.
    """

    def __init__(self, message: str, retry_after: float | None = None):
        super().__init__(message)
        self.retry_after = retry_after


class StepFailedError(FatalError):
    """An unclassified exception escaped a step body."""

    def __init__(self, step_name: str, cause: BaseException):
        super().__init__(f"Internal error during {step_name}")
        self.step_name = step_name
        self.cause = cause


# ---------------------------------------------------------------------------
# Source-control collaborator errors
# ---------------------------------------------------------------------------


class SourceControlError(FatalError):
    """The hosting API rejected a request permanently."""

    def __init__(self, message: str, status_code: int | None = None):
        super().__init__(message)
        self.status_code = status_code


class NotFoundError(SourceControlError):
    pass


class PermissionDeniedError(SourceControlError):
    pass


class TransientSourceControlError(TransientError):
    """Network failure, rate limit or 5xx from the hosting API."""

    def __init__(
        self,
        message: str,
        status_code: int | None = None,
        retry_after: float | None = None,
    ):
        super().__init__(message, retry_after=retry_after)
        self.status_code = status_code


# ---------------------------------------------------------------------------
# Job store errors
# ---------------------------------------------------------------------------


class JobStateError(BackportError):
    """An update would leave a job record inconsistent."""


class InvalidJobTransition(JobStateError):
    def __init__(self, job_id: str, current: str, requested: str):
        super().__init__(
            f"Job {job_id} cannot move from '{current}' to '{requested}'"
        )
        self.job_id = job_id
        self.current = current
        self.requested = requested
