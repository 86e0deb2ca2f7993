"""
Shared test fixtures for agent_backport.

Uses a throwaway SQLite database per test (aiosqlite) with the full schema,
an in-memory source-control fake that records every call, and an instant
sleep so retry backoff never slows the suite down.
"""

import os
from collections import Counter
from typing import Any
from unittest.mock import MagicMock
from uuid import uuid4

import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

os.environ.setdefault("DEBUG", "false")
os.environ.setdefault("SECRET_KEY", "test-secret-key-for-tests")

from agent_backport.db.base import Base  # noqa: E402
import agent_backport.models  # noqa: E402,F401: register models with metadata
from agent_backport.main import app  # noqa: E402
from agent_backport.core.errors import NotFoundError  # noqa: E402
from agent_backport.core.job_store import JobStore  # noqa: E402
from agent_backport.models.pydantic_models.backport import (  # noqa: E402
    BackportAttempt,
    CommitInfo,
    PullRequestInfo,
)
from agent_backport.models.pydantic_models.jobs import JobCreate  # noqa: E402


# ---------------------------------------------------------------------------
# Database fixtures
# ---------------------------------------------------------------------------


@pytest_asyncio.fixture(scope="function")
async def test_engine(tmp_path):
    """A fresh SQLite database file with every table created."""
    engine = create_async_engine(
        f"sqlite+aiosqlite:///{tmp_path / 'backport.db'}", echo=False
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest_asyncio.fixture(scope="function")
async def session_factory(test_engine):
    return async_sessionmaker(
        bind=test_engine,
        class_=AsyncSession,
        expire_on_commit=False,
        autocommit=False,
        autoflush=False,
    )


@pytest_asyncio.fixture(scope="function")
async def job_store(session_factory):
    return JobStore(session_factory)


@pytest_asyncio.fixture(scope="function")
async def job_factory(job_store):
    async def _create(
        repository: str = "acme/widgets",
        source_pr: int = 42,
        target_branch: str = "v1",
        requested_by: str = "octocat",
        comment_id: int = 9001,
        installation_id: int = 77,
    ):
        return await job_store.create_job(
            JobCreate(
                repository=repository,
                installation_id=installation_id,
                source_pr=source_pr,
                target_branch=target_branch,
                requested_by=requested_by,
                comment_id=comment_id,
            )
        )

    return _create


# ---------------------------------------------------------------------------
# Collaborator fakes
# ---------------------------------------------------------------------------


def _diff_touching(count: int) -> str:
    return "".join(
        f"diff --git a/src/file{i}.py b/src/file{i}.py\n+change {i}\n"
        for i in range(count)
    )


class FakeSourceControl:
    """
    In-memory SourceControlClient.

    ``calls`` counts invocations per operation. ``failures`` maps an operation
    name to exceptions raised, in order, before the operation starts to
    succeed.
    """

    def __init__(self, installation_id: int = 77):
        self.installation_id = installation_id
        self.calls: Counter[str] = Counter()
        self.failures: dict[str, list[BaseException]] = {}
        self.branches = {"main", "v1", "release-2.0"}
        self.pull_requests = {
            42: PullRequestInfo(
                number=42,
                title="Fix widget alignment",
                body="Aligns the widgets.",
                base_branch="main",
                head_branch="fix/alignment",
                head_sha="abc123",
                merged=True,
                merge_commit_sha="def456",
            )
        }
        self.commits = [
            CommitInfo(sha="abc123", message="Fix widget alignment"),
            CommitInfo(sha="abc124", message="Add regression test"),
        ]
        self.diff = _diff_touching(2)
        self.reactions: list[tuple[str, int, str]] = []
        self.comments: list[tuple[str, int, str]] = []
        self.created_pull_requests: list[dict[str, Any]] = []
        self.next_pr_number = 101
        self.closed = False

    def _enter(self, operation: str) -> None:
        self.calls[operation] += 1
        pending = self.failures.get(operation)
        if pending:
            raise pending.pop(0)

    async def react_to_comment(self, repository, comment_id, reaction):
        self._enter("react_to_comment")
        self.reactions.append((repository, comment_id, reaction))

    async def get_pull_request(self, repository, number):
        self._enter("get_pull_request")
        if number not in self.pull_requests:
            raise NotFoundError(f"GitHub fetch of PR #{number} failed with HTTP 404", 404)
        return self.pull_requests[number]

    async def list_pull_request_commits(self, repository, number):
        self._enter("list_pull_request_commits")
        return list(self.commits)

    async def get_pull_request_diff(self, repository, number):
        self._enter("get_pull_request_diff")
        return self.diff

    async def get_branch(self, repository, branch):
        self._enter("get_branch")
        if branch not in self.branches:
            raise NotFoundError(
                f"GitHub lookup of branch {branch} failed with HTTP 404", 404
            )

    async def create_pull_request(self, repository, title, head, base, body):
        self._enter("create_pull_request")
        number = self.next_pr_number
        self.next_pr_number += 1
        self.created_pull_requests.append(
            {"number": number, "title": title, "head": head, "base": base, "body": body}
        )
        return number

    async def create_issue_comment(self, repository, issue_number, body):
        self._enter("create_issue_comment")
        self.comments.append((repository, issue_number, body))

    async def aclose(self):
        self.closed = True


class ScriptedBackportExecutor:
    """BackportExecutor returning a fixed attempt and counting calls."""

    def __init__(self, attempt: BackportAttempt):
        self.attempt = attempt
        self.calls = 0

    async def perform(self, client, repository, details, target_branch, analysis):
        self.calls += 1
        return self.attempt


@pytest_asyncio.fixture()
async def source_control():
    return FakeSourceControl()


@pytest_asyncio.fixture()
async def successful_backport():
    return ScriptedBackportExecutor(
        BackportAttempt(success=True, branch="backport-42-to-v1")
    )


@pytest_asyncio.fixture()
async def conflicting_backport():
    return ScriptedBackportExecutor(
        BackportAttempt(
            success=False, error="Merge conflict in src/widgets.py"
        )
    )


@pytest_asyncio.fixture()
async def recorded_sleeps():
    """Instant replacement for asyncio.sleep; records requested delays."""
    delays: list[float] = []

    async def _sleep(seconds: float) -> None:
        delays.append(seconds)

    _sleep.delays = delays
    return _sleep


# ---------------------------------------------------------------------------
# Celery mock
# ---------------------------------------------------------------------------


@pytest_asyncio.fixture()
async def mock_celery():
    """A Celery stand-in that records send_task calls instead of hitting a broker."""
    dispatched: list[dict[str, Any]] = []

    def fake_send_task(name, args=None, kwargs=None, **kw):
        dispatched.append({"name": name, "args": args, "kwargs": kwargs})
        result = MagicMock()
        result.id = str(uuid4())
        return result

    celery = MagicMock(send_task=MagicMock(side_effect=fake_send_task))
    celery.dispatched = dispatched
    return celery


# ---------------------------------------------------------------------------
# Test client
# ---------------------------------------------------------------------------


@pytest_asyncio.fixture(scope="function")
async def test_client(job_store):
    from agent_backport.api.v1.deps import get_job_store

    app.dependency_overrides[get_job_store] = lambda: job_store

    async with AsyncClient(
        transport=ASGITransport(app=app), base_url="http://test"
    ) as client:
        yield client

    app.dependency_overrides.clear()


@pytest_asyncio.fixture(scope="function")
async def auth_headers():
    """Bearer headers carrying a valid caller token."""
    from agent_backport.api.v1.helpers.authentication import create_access_token

    token = create_access_token("dashboard-user")
    return {"Authorization": f"Bearer {token}"}
