"""
Change analysis and backport execution hooks.

Both are stand-ins: the analysis only sizes the diff, and the default
executor reports that sandboxed git execution is not available yet. A real
executor plugs in by implementing ``BackportExecutor``.
"""

import re
from typing import Protocol

from agent_backport.core.source_control import SourceControlClient
from agent_backport.models.enums import Complexity
from agent_backport.models.pydantic_models.backport import (
    BackportAttempt,
    ChangeAnalysis,
    PullRequestDetails,
)

_FILE_HEADER = re.compile(r"^diff --git ", re.MULTILINE)

HIGH_COMPLEXITY_FILES = 10
MEDIUM_COMPLEXITY_FILES = 3


def analyze_diff(diff: str) -> ChangeAnalysis:
    files_changed = len(_FILE_HEADER.findall(diff or ""))

    if files_changed > HIGH_COMPLEXITY_FILES:
        complexity = Complexity.HIGH
    elif files_changed > MEDIUM_COMPLEXITY_FILES:
        complexity = Complexity.MEDIUM
    else:
        complexity = Complexity.LOW

    return ChangeAnalysis(complexity=complexity, files_changed=files_changed)


class BackportExecutor(Protocol):
    async def perform(
        self,
        client: SourceControlClient,
        repository: str,
        details: PullRequestDetails,
        target_branch: str,
        analysis: ChangeAnalysis,
    ) -> BackportAttempt:
        """Apply the change onto a new branch based on ``target_branch``.

        Conflicts are reported as ``BackportAttempt(success=False, error=...)``.
        """
        ...


class PlaceholderBackportExecutor:
    async def perform(
        self,
        client: SourceControlClient,
        repository: str,
        details: PullRequestDetails,
        target_branch: str,
        analysis: ChangeAnalysis,
    ) -> BackportAttempt:
        return BackportAttempt(
            success=False,
            error="Backport execution not yet implemented",
        )
