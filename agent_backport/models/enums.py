"""
Enumerations shared by the job store and the workflow engine.
"""

from enum import Enum


class JobStatus(str, Enum):
    """Externally visible job statuses"""

    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (JobStatus.COMPLETED, JobStatus.FAILED)


# Statuses a job may be in immediately before moving to the key status.
# Re-asserting a non-terminal status is allowed so resumed runs stay idempotent.
ALLOWED_PREVIOUS_STATUSES: dict[JobStatus, tuple[JobStatus, ...]] = {
    JobStatus.PENDING: (JobStatus.PENDING,),
    JobStatus.IN_PROGRESS: (JobStatus.PENDING, JobStatus.IN_PROGRESS),
    JobStatus.COMPLETED: (JobStatus.IN_PROGRESS,),
    JobStatus.FAILED: (JobStatus.PENDING, JobStatus.IN_PROGRESS),
}


class RunStatus(str, Enum):
    """Workflow run states"""

    NOT_STARTED = "not_started"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    ABORTED = "aborted"


class StepStatus(str, Enum):
    """Durable step record states"""

    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"


class ErrorKind(str, Enum):
    """How a step failure is classified"""

    FATAL = "fatal"
    TRANSIENT = "transient"
    INTERNAL = "internal"


class Complexity(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
