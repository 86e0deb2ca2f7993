"""
Workflow engine - drives an ordered list of durable steps for one run.

Run state machine: not_started -> running -> {succeeded, aborted}.

Progress is persisted per step through the StepExecutor, so a run that is
interrupted between two steps can be re-driven with the same run id: already
completed steps replay their recorded results and execution continues with
the first step that has no durable result.

Transient step failures are retried at the step boundary with bounded
exponential backoff (tenacity). A ``retry_after`` hint from the collaborator
replaces the computed delay but is capped at the same ``max_delay``, so a
step's total wait stays well inside the per-job lock. Collaborators never
retry on their own, so retries do not compound. Fatal failures abort the run
immediately.
"""

import asyncio
import logging
from abc import ABC, abstractmethod
from collections.abc import Awaitable, Callable, Sequence
from dataclasses import dataclass, field
from typing import Any, TypeVar

from opentelemetry import trace
from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from tenacity import (
    AsyncRetrying,
    RetryCallState,
    before_sleep_log,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from agent_backport.config import settings
from agent_backport.core.errors import FatalError, TransientError
from agent_backport.core.workflow.steps import StepExecutor
from agent_backport.models.enums import RunStatus, StepStatus
from agent_backport.models.workflow import WorkflowRun

logger = logging.getLogger(__name__)
tracer = trace.get_tracer(__name__)

T = TypeVar("T", bound=BaseModel)


@dataclass
class WorkflowContext:
    """Per-run state threaded through every step."""

    run_id: str
    params: Any
    results: dict[str, BaseModel] = field(default_factory=dict)

    def result(self, step_name: str, result_type: type[T]) -> T:
        value = self.results[step_name]
        if not isinstance(value, result_type):
            raise TypeError(
                f"Step {step_name} produced {type(value).__name__}, expected {result_type.__name__}"
            )
        return value


@dataclass(frozen=True)
class Step:
    name: str
    fn: Callable[[WorkflowContext], Awaitable[BaseModel]]
    result_type: type[BaseModel]
    # Steps whose predicate is false are skipped and leave no record
    when: Callable[[WorkflowContext], bool] | None = None


@dataclass(frozen=True)
class RetryPolicy:
    max_attempts: int = 5
    initial_delay: float = 1.0
    max_delay: float = 60.0

    @classmethod
    def from_settings(cls) -> "RetryPolicy":
        return cls(
            max_attempts=settings.workflow_retry_max_attempts,
            initial_delay=settings.workflow_retry_initial_delay,
            max_delay=settings.workflow_retry_max_delay,
        )


@dataclass(frozen=True)
class WorkflowOutcome:
    run_id: str
    status: RunStatus
    results: dict[str, BaseModel] = field(default_factory=dict)
    error: str | None = None
    failed_step: str | None = None

    @property
    def succeeded(self) -> bool:
        return self.status == RunStatus.SUCCEEDED


class WorkflowDefinition(ABC):
    """An ordered list of steps plus lifecycle hooks."""

    name: str = "workflow"

    @abstractmethod
    def steps(self) -> Sequence[Step]: ...

    async def on_start(self, ctx: WorkflowContext) -> None:
        """Called before the first step is dispatched on every drive."""

    async def on_abort(self, ctx: WorkflowContext, outcome: WorkflowOutcome) -> None:
        """Called once a run has failed fatally, before the abort is persisted."""


class WorkflowEngine:
    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        executor: StepExecutor | None = None,
        retry_policy: RetryPolicy | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self._session_factory = session_factory
        self.executor = executor or StepExecutor(session_factory)
        self.retry_policy = retry_policy or RetryPolicy.from_settings()
        self._sleep = sleep
        self._backoff = wait_exponential(
            multiplier=self.retry_policy.initial_delay,
            max=self.retry_policy.max_delay,
        )

    async def run(
        self, definition: WorkflowDefinition, run_id: str, ctx: WorkflowContext
    ) -> WorkflowOutcome:
        """
        Drive ``definition`` for ``run_id`` to a terminal state.

        Safe to call again for the same run after an interruption; finished
        runs return their stored outcome without dispatching anything.
        """
        run = await self._load_run(run_id, definition.name)
        if run.status in (RunStatus.SUCCEEDED.value, RunStatus.ABORTED.value):
            logger.info(f"Run {run_id} already {run.status}, nothing to do")
            return WorkflowOutcome(
                run_id=run_id,
                status=RunStatus(run.status),
                error=run.error,
                failed_step=run.failed_step,
            )

        if run.next_step_index:
            logger.info(
                f"Resuming run {run_id} ({definition.name}) at step {run.next_step_index}"
            )

        await self._set_status(run_id, RunStatus.RUNNING)
        await definition.on_start(ctx)

        for index, step in enumerate(definition.steps()):
            if step.when is not None and not step.when(ctx):
                logger.debug(f"Run {run_id}: skipping step {step.name}")
                continue

            try:
                ctx.results[step.name] = await self._dispatch(run_id, index, step, ctx)
            except (FatalError, TransientError) as exc:
                outcome = WorkflowOutcome(
                    run_id=run_id,
                    status=RunStatus.ABORTED,
                    results=dict(ctx.results),
                    error=exc.message,
                    failed_step=step.name,
                )
                logger.error(f"Run {run_id} aborted at {step.name}: {exc.message}")
                await definition.on_abort(ctx, outcome)
                await self._set_status(
                    run_id,
                    RunStatus.ABORTED,
                    error=exc.message,
                    failed_step=step.name,
                )
                return outcome

            await self._advance(run_id, index + 1)

        await self._set_status(run_id, RunStatus.SUCCEEDED)
        logger.info(f"Run {run_id} ({definition.name}) succeeded")
        return WorkflowOutcome(
            run_id=run_id, status=RunStatus.SUCCEEDED, results=dict(ctx.results)
        )

    async def _dispatch(
        self, run_id: str, index: int, step: Step, ctx: WorkflowContext
    ) -> BaseModel:
        record = await self.executor.get_record(run_id, step.name)
        used = record.attempts if record is not None else 0
        remaining = self.retry_policy.max_attempts - used

        async def invoke() -> BaseModel:
            return await self.executor.execute(
                run_id,
                step.name,
                lambda: step.fn(ctx),
                step.result_type,
                step_index=index,
            )

        with tracer.start_as_current_span(f"workflow.step.{step.name}") as span:
            span.set_attribute("workflow.run_id", run_id)
            span.set_attribute("workflow.step_index", index)

            if record is not None and record.status != StepStatus.RUNNING.value:
                # Completed steps replay, failed steps re-raise their fatal error
                return await invoke()

            if remaining <= 0:
                # Attempt budget was spent on an earlier drive of this run
                raise FatalError(
                    record.error or f"Step {step.name} exhausted {used} attempts"
                )

            retrying = AsyncRetrying(
                sleep=self._sleep,
                stop=stop_after_attempt(remaining),
                wait=self._wait,
                retry=retry_if_exception_type(TransientError),
                reraise=True,
                before_sleep=before_sleep_log(logger, logging.WARNING),
            )
            async for attempt in retrying:
                with attempt:
                    result = await invoke()

        return result

    def _wait(self, retry_state: RetryCallState) -> float:
        exc = retry_state.outcome.exception() if retry_state.outcome else None
        if isinstance(exc, TransientError) and exc.retry_after is not None:
            return min(max(exc.retry_after, 0.0), self.retry_policy.max_delay)
        return self._backoff(retry_state)

    async def _load_run(self, run_id: str, workflow_name: str) -> WorkflowRun:
        async with self._session_factory() as session:
            run = await session.get(WorkflowRun, run_id)
            if run is None:
                run = WorkflowRun(
                    run_id=run_id,
                    workflow_name=workflow_name,
                    status=RunStatus.NOT_STARTED.value,
                    next_step_index=0,
                )
                session.add(run)
                await session.commit()
            return run

    async def _set_status(
        self,
        run_id: str,
        status: RunStatus,
        error: str | None = None,
        failed_step: str | None = None,
    ) -> None:
        async with self._session_factory() as session:
            run = await session.get(WorkflowRun, run_id)
            run.status = status.value
            run.error = error
            run.failed_step = failed_step
            await session.commit()

    async def _advance(self, run_id: str, next_index: int) -> None:
        async with self._session_factory() as session:
            run = await session.get(WorkflowRun, run_id)
            run.next_step_index = max(run.next_step_index or 0, next_index)
            await session.commit()

    async def get_run(self, run_id: str) -> WorkflowRun | None:
        async with self._session_factory() as session:
            return await session.get(WorkflowRun, run_id)
