from agent_backport.core.job_store import JobStore
from agent_backport.db.session import get_session_local


def get_job_store() -> JobStore:
    return JobStore(get_session_local())
