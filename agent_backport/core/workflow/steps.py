"""
Step executor - durable, replayable units of work.

Each ``(run_id, step_name)`` pair is backed by one ``workflow_steps`` row.
The first successful execution stores the step's return value; any later
execution of the same key returns that stored value without calling the
step body again, because step side effects are assumed non-idempotent.
"""

import logging
from collections.abc import Awaitable, Callable
from typing import TypeVar

from pydantic import BaseModel
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from agent_backport.core.errors import FatalError, StepFailedError, TransientError
from agent_backport.models.enums import ErrorKind, StepStatus
from agent_backport.models.workflow import WorkflowStep

logger = logging.getLogger(__name__)

T = TypeVar("T", bound=BaseModel)


class StepExecutor:
    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self._session_factory = session_factory

    async def execute(
        self,
        run_id: str,
        step_name: str,
        fn: Callable[[], Awaitable[T]],
        result_type: type[T],
        step_index: int | None = None,
    ) -> T:
        """
        Run ``fn`` once for ``(run_id, step_name)`` and record its result.

        Args:
            run_id: Workflow run the step belongs to
            step_name: Name of the step, unique within the run
            fn: Zero-argument coroutine factory performing the step
            result_type: Pydantic model the result is validated into
            step_index: Position of the step in its workflow, for inspection

        Returns:
            The step result, freshly computed or replayed from the record

        Raises:
            FatalError: The step failed permanently, now or on a previous run
            TransientError: The attempt failed but may be retried
            StepFailedError: An unclassified exception escaped the step body
        """
        record = await self._begin_attempt(run_id, step_name, step_index)

        if record.status == StepStatus.COMPLETED.value:
            logger.debug(f"Replaying recorded result for {run_id}/{step_name}")
            return result_type.model_validate(record.result)

        if record.status == StepStatus.FAILED.value:
            if record.error_kind == ErrorKind.INTERNAL.value or not record.error:
                raise FatalError(f"Internal error during {step_name}")
            raise FatalError(record.error)

        try:
            value = result_type.model_validate(await fn())
        except FatalError as exc:
            await self._record_failure(
                run_id, step_name, ErrorKind.FATAL, exc.message, terminal=True
            )
            raise
        except TransientError as exc:
            await self._record_failure(
                run_id, step_name, ErrorKind.TRANSIENT, exc.message, terminal=False
            )
            raise
        except Exception as exc:
            logger.exception(f"Unclassified error in step {run_id}/{step_name}")
            wrapped = StepFailedError(step_name, exc)
            await self._record_failure(
                run_id,
                step_name,
                ErrorKind.INTERNAL,
                f"{wrapped.message}: {exc!r}",
                terminal=True,
            )
            raise wrapped from exc

        await self._record_success(run_id, step_name, value)
        return value

    async def get_record(self, run_id: str, step_name: str) -> WorkflowStep | None:
        async with self._session_factory() as session:
            return await session.get(WorkflowStep, (run_id, step_name))

    async def attempts(self, run_id: str, step_name: str) -> int:
        record = await self.get_record(run_id, step_name)
        return record.attempts if record else 0

    async def recorded_steps(self, run_id: str) -> list[WorkflowStep]:
        async with self._session_factory() as session:
            result = await session.execute(
                select(WorkflowStep)
                .where(WorkflowStep.run_id == run_id)
                .order_by(WorkflowStep.step_index, WorkflowStep.created_at)
            )
            return list(result.scalars().all())

    async def _begin_attempt(
        self, run_id: str, step_name: str, step_index: int | None
    ) -> WorkflowStep:
        """Load the step record, counting a new attempt when the step must run."""
        async with self._session_factory() as session:
            record = await session.get(WorkflowStep, (run_id, step_name))
            if record is None:
                record = WorkflowStep(
                    run_id=run_id,
                    step_name=step_name,
                    step_index=step_index,
                    status=StepStatus.RUNNING.value,
                    attempts=0,
                )
                session.add(record)
            elif record.status != StepStatus.RUNNING.value:
                return record

            record.attempts = (record.attempts or 0) + 1
            await session.commit()
            return record

    async def _record_success(self, run_id: str, step_name: str, value: BaseModel):
        async with self._session_factory() as session:
            record = await session.get(WorkflowStep, (run_id, step_name))
            record.status = StepStatus.COMPLETED.value
            record.result = value.model_dump(mode="json")
            record.error = None
            record.error_kind = None
            await session.commit()

    async def _record_failure(
        self,
        run_id: str,
        step_name: str,
        kind: ErrorKind,
        message: str,
        terminal: bool,
    ):
        async with self._session_factory() as session:
            record = await session.get(WorkflowStep, (run_id, step_name))
            if terminal:
                record.status = StepStatus.FAILED.value
            record.error = message
            record.error_kind = kind.value
            await session.commit()
        logger.warning(f"Step {run_id}/{step_name} failed ({kind.value}): {message}")
