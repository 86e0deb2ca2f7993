from agent_backport.tasks import backport  # noqa: F401
from agent_backport.tasks import job_reconciler  # noqa: F401

__all__ = [
    "backport",
    "job_reconciler",
]
