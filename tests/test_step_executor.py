"""
Tests for core/workflow/steps: durable step execution.

Covers:
  - a completed step replays its recorded result without re-invoking the body
  - fatal failures are persisted and re-raised on every later execution
  - transient failures count attempts and leave the step retryable
  - unclassified exceptions are recorded as internal and wrapped
"""

import pytest
from pydantic import BaseModel

from agent_backport.core.errors import FatalError, StepFailedError, TransientError
from agent_backport.core.workflow import StepExecutor


class Tally(BaseModel):
    value: int
    labels: tuple[str, ...] = ()


def counting(result=None, exc: BaseException | None = None):
    """Step body that counts invocations and returns ``result`` or raises ``exc``."""
    calls = {"count": 0}

    async def _fn():
        calls["count"] += 1
        if exc is not None:
            raise exc
        return result

    _fn.calls = calls
    return _fn


@pytest.fixture()
def executor(session_factory):
    return StepExecutor(session_factory)


@pytest.mark.asyncio
async def test_completed_step_is_replayed(executor):
    fn = counting(Tally(value=3, labels=("a", "b")))

    first = await executor.execute("run-1", "count", fn, Tally, step_index=0)
    second = await executor.execute("run-1", "count", fn, Tally, step_index=0)

    assert first == second == Tally(value=3, labels=("a", "b"))
    assert fn.calls["count"] == 1
    assert await executor.attempts("run-1", "count") == 1

    record = await executor.get_record("run-1", "count")
    assert record.status == "completed"
    assert record.result == {"value": 3, "labels": ["a", "b"]}


@pytest.mark.asyncio
async def test_step_keys_are_scoped_by_run(executor):
    fn = counting(Tally(value=1))

    await executor.execute("run-1", "count", fn, Tally)
    await executor.execute("run-2", "count", fn, Tally)

    assert fn.calls["count"] == 2


@pytest.mark.asyncio
async def test_plain_dict_results_are_validated(executor):
    fn = counting({"value": 9})

    result = await executor.execute("run-1", "count", fn, Tally)

    assert isinstance(result, Tally)
    assert result.value == 9


@pytest.mark.asyncio
async def test_fatal_failure_is_persisted_and_replayed(executor):
    fn = counting(exc=FatalError("Target branch 'release-1.2' does not exist"))

    with pytest.raises(FatalError, match="release-1.2"):
        await executor.execute("run-1", "validate", fn, Tally)
    with pytest.raises(FatalError, match="release-1.2"):
        await executor.execute("run-1", "validate", fn, Tally)

    assert fn.calls["count"] == 1
    record = await executor.get_record("run-1", "validate")
    assert record.status == "failed"
    assert record.error_kind == "fatal"
    assert record.attempts == 1


@pytest.mark.asyncio
async def test_transient_failure_counts_attempts(executor):
    outcomes = [TransientError("HTTP 502"), TransientError("HTTP 502"), None]

    async def flaky():
        exc = outcomes.pop(0)
        if exc is not None:
            raise exc
        return Tally(value=1)

    for _ in range(2):
        with pytest.raises(TransientError):
            await executor.execute("run-1", "branch", flaky, Tally)

        record = await executor.get_record("run-1", "branch")
        assert record.status == "running"
        assert record.error_kind == "transient"
        assert record.error == "HTTP 502"

    result = await executor.execute("run-1", "branch", flaky, Tally)

    assert result.value == 1
    record = await executor.get_record("run-1", "branch")
    assert record.attempts == 3
    assert record.status == "completed"
    assert record.error is None


@pytest.mark.asyncio
async def test_unclassified_exception_is_wrapped_as_internal(executor):
    fn = counting(exc=KeyError("secret detail"))

    with pytest.raises(StepFailedError) as exc_info:
        await executor.execute("run-1", "analyze", fn, Tally)

    assert exc_info.value.message == "Internal error during analyze"
    assert isinstance(exc_info.value.cause, KeyError)

    record = await executor.get_record("run-1", "analyze")
    assert record.status == "failed"
    assert record.error_kind == "internal"

    # Replays report the generic message, never the raw exception text
    with pytest.raises(FatalError) as replayed:
        await executor.execute("run-1", "analyze", fn, Tally)
    assert replayed.value.message == "Internal error during analyze"
    assert fn.calls["count"] == 1


@pytest.mark.asyncio
async def test_invalid_result_is_an_internal_error(executor):
    fn = counting({"unexpected": True})

    with pytest.raises(StepFailedError):
        await executor.execute("run-1", "count", fn, Tally)


@pytest.mark.asyncio
async def test_recorded_steps_in_step_order(executor):
    await executor.execute("run-1", "second", counting(Tally(value=2)), Tally, step_index=1)
    await executor.execute("run-1", "first", counting(Tally(value=1)), Tally, step_index=0)

    steps = await executor.recorded_steps("run-1")

    assert [s.step_name for s in steps] == ["first", "second"]
