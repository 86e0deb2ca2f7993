"""
Source-control collaborator.

``SourceControlClient`` is the contract the backport workflow consumes. A
client is scoped to a single app installation and is passed explicitly
through a workflow run. ``GitHubClient`` implements it against the GitHub
REST API with httpx.

Clients perform exactly one HTTP attempt per call, bounded by their own
timeout, and classify failures: permanent ones raise ``SourceControlError``
subclasses (fatal), network errors, rate limits and 5xx raise
``TransientSourceControlError`` carrying any server-provided backoff. The
workflow engine owns retrying.
"""

import logging
import time
from typing import Protocol
from urllib.parse import quote

import httpx
from jose import jwt

from agent_backport.config import settings
from agent_backport.core.errors import (
    NotFoundError,
    PermissionDeniedError,
    SourceControlError,
    TransientSourceControlError,
)
from agent_backport.models.pydantic_models.backport import CommitInfo, PullRequestInfo

logger = logging.getLogger(__name__)

GITHUB_API_VERSION = "2022-11-28"
COMMITS_PAGE_SIZE = 100


class SourceControlClient(Protocol):
    """Operations the backport workflow needs from the hosting service."""

    installation_id: int

    async def react_to_comment(
        self, repository: str, comment_id: int, reaction: str
    ) -> None: ...

    async def get_pull_request(self, repository: str, number: int) -> PullRequestInfo: ...

    async def list_pull_request_commits(
        self, repository: str, number: int
    ) -> list[CommitInfo]: ...

    async def get_pull_request_diff(self, repository: str, number: int) -> str: ...

    async def get_branch(self, repository: str, branch: str) -> None:
        """Return if the branch exists; raise NotFoundError otherwise."""
        ...

    async def create_pull_request(
        self, repository: str, title: str, head: str, base: str, body: str
    ) -> int: ...

    async def create_issue_comment(
        self, repository: str, issue_number: int, body: str
    ) -> None: ...

    async def aclose(self) -> None: ...


def _retry_after(response: httpx.Response) -> float | None:
    """Server-provided backoff in seconds, from Retry-After or the rate-limit reset."""
    retry_after = response.headers.get("Retry-After")
    if retry_after:
        try:
            return max(float(retry_after), 0.0)
        except ValueError:
            return None

    reset = response.headers.get("X-RateLimit-Reset")
    if reset and response.headers.get("X-RateLimit-Remaining") == "0":
        try:
            return max(float(reset) - time.time(), 0.0)
        except ValueError:
            return None
    return None


def raise_for_github_status(response: httpx.Response, action: str) -> None:
    """Map an unsuccessful GitHub response onto the error taxonomy."""
    status = response.status_code
    if status < 400:
        return

    message = f"GitHub {action} failed with HTTP {status}"
    rate_limited = status == 429 or (
        status == 403 and response.headers.get("X-RateLimit-Remaining") == "0"
    )

    if rate_limited or status >= 500:
        raise TransientSourceControlError(
            message, status_code=status, retry_after=_retry_after(response)
        )
    if status == 404:
        raise NotFoundError(message, status_code=status)
    if status in (401, 403):
        raise PermissionDeniedError(message, status_code=status)
    raise SourceControlError(message, status_code=status)


class GitHubClient:
    """Installation-scoped GitHub REST client."""

    def __init__(
        self,
        installation_id: int,
        app_id: str | None = None,
        private_key: str | None = None,
        base_url: str | None = None,
        timeout: float | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.installation_id = installation_id
        self._app_id = app_id or settings.github_app_id
        self._private_key = private_key or settings.github_private_key
        self._http = httpx.AsyncClient(
            base_url=base_url or settings.github_api_url,
            timeout=timeout or settings.github_timeout_seconds,
            transport=transport,
            headers={
                "Accept": "application/vnd.github+json",
                "X-GitHub-Api-Version": GITHUB_API_VERSION,
            },
        )
        self._token: str | None = None
        self._token_expires_at = 0.0

    async def __aenter__(self) -> "GitHubClient":
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        await self._http.aclose()

    def _app_jwt(self) -> str:
        now = int(time.time())
        payload = {"iat": now - 60, "exp": now + 540, "iss": self._app_id}
        return jwt.encode(payload, self._private_key, algorithm="RS256")

    async def _installation_token(self) -> str:
        # Refresh a minute before GitHub's one-hour expiry
        if self._token and time.time() < self._token_expires_at - 60:
            return self._token

        response = await self._send(
            "POST",
            f"/app/installations/{self.installation_id}/access_tokens",
            "installation token exchange",
            headers={"Authorization": f"Bearer {self._app_jwt()}"},
            authenticated=False,
        )
        self._token = response.json()["token"]
        self._token_expires_at = time.time() + 3600
        return self._token

    async def _send(
        self,
        method: str,
        url: str,
        action: str,
        authenticated: bool = True,
        headers: dict[str, str] | None = None,
        **kwargs,
    ) -> httpx.Response:
        request_headers = dict(headers or {})
        if authenticated:
            token = await self._installation_token()
            request_headers["Authorization"] = f"token {token}"

        try:
            response = await self._http.request(
                method, url, headers=request_headers, **kwargs
            )
        except httpx.TransportError as exc:
            raise TransientSourceControlError(
                f"GitHub {action} failed: {exc.__class__.__name__}"
            ) from exc

        raise_for_github_status(response, action)
        return response

    async def react_to_comment(
        self, repository: str, comment_id: int, reaction: str
    ) -> None:
        await self._send(
            "POST",
            f"/repos/{repository}/issues/comments/{comment_id}/reactions",
            "comment reaction",
            json={"content": reaction},
        )

    async def get_pull_request(self, repository: str, number: int) -> PullRequestInfo:
        response = await self._send(
            "GET", f"/repos/{repository}/pulls/{number}", f"fetch of PR #{number}"
        )
        pr = response.json()
        return PullRequestInfo(
            number=pr["number"],
            title=pr["title"],
            body=pr.get("body"),
            base_branch=pr["base"]["ref"],
            head_branch=pr["head"]["ref"],
            head_sha=pr["head"]["sha"],
            merged=bool(pr.get("merged")),
            merge_commit_sha=pr.get("merge_commit_sha"),
        )

    async def list_pull_request_commits(
        self, repository: str, number: int
    ) -> list[CommitInfo]:
        commits: list[CommitInfo] = []
        page = 1
        while True:
            response = await self._send(
                "GET",
                f"/repos/{repository}/pulls/{number}/commits",
                f"commit listing of PR #{number}",
                params={"per_page": COMMITS_PAGE_SIZE, "page": page},
            )
            batch = response.json()
            commits.extend(
                CommitInfo(sha=c["sha"], message=c["commit"]["message"]) for c in batch
            )
            if len(batch) < COMMITS_PAGE_SIZE:
                return commits
            page += 1

    async def get_pull_request_diff(self, repository: str, number: int) -> str:
        response = await self._send(
            "GET",
            f"/repos/{repository}/pulls/{number}",
            f"diff of PR #{number}",
            headers={"Accept": "application/vnd.github.v3.diff"},
        )
        return response.text

    async def get_branch(self, repository: str, branch: str) -> None:
        await self._send(
            "GET",
            f"/repos/{repository}/branches/{quote(branch, safe='')}",
            f"lookup of branch {branch}",
        )

    async def create_pull_request(
        self, repository: str, title: str, head: str, base: str, body: str
    ) -> int:
        response = await self._send(
            "POST",
            f"/repos/{repository}/pulls",
            "pull request creation",
            json={"title": title, "head": head, "base": base, "body": body},
        )
        number = response.json()["number"]
        logger.info(f"Opened {repository}#{number} ({head} -> {base})")
        return number

    async def create_issue_comment(
        self, repository: str, issue_number: int, body: str
    ) -> None:
        await self._send(
            "POST",
            f"/repos/{repository}/issues/{issue_number}/comments",
            f"comment on #{issue_number}",
            json={"body": body},
        )
