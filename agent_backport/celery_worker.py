from agent_backport.celery_app import celery_app
from agent_backport.tasks import (
    backport,
    job_reconciler,
)

__all__ = [
    "celery_app",
    "backport",
    "job_reconciler",
]
