"""Operator actions on running and failed tasks."""

from datetime import timedelta

import pytest

from fixtures.handlers import (
    EchoHandler,
    ExecutionLog,
    FlakyHandler,
    PermanentFailureHandler,
    build_template,
)
from taskwright.config import ExecutionConfig
from taskwright.constants import EntityType, StepStatus, TaskStatus
from taskwright.coordinator import Coordinator
from taskwright.dispatch import TaskDispatcher
from taskwright.errors import IllegalTransitionError, TaskNotFoundError
from taskwright.persistence.models import utcnow


@pytest.fixture
def coordinator(repository, registry, sink, fast_config):
    return Coordinator(repository=repository, registry=registry, sink=sink, config=fast_config)


@pytest.fixture
def dispatcher(repository, registry, sink):
    return TaskDispatcher(repository, registry, sink)


async def _steps_by_name(repository, task_id):
    return {s.name: s for s in await repository.get_steps(task_id)}


@pytest.mark.asyncio
async def test_resolving_failed_step_lets_dependents_run(
    repository, registry, coordinator, dispatcher
):
    log = ExecutionLog()
    registry.register(
        build_template(
            "orders", [("charge", [], PermanentFailureHandler()), ("ship", ["charge"], log.handler())]
        )
    )
    task = await dispatcher.submit("orders", context={"order": 1})
    failed = await coordinator.run(task.task_id)
    assert failed.status == TaskStatus.ERROR

    steps = await _steps_by_name(repository, task.task_id)
    resolved = await coordinator.resolve_step(steps["charge"].step_id, reason="charged offline")
    assert resolved.status == StepStatus.RESOLVED_MANUALLY

    reopened = await coordinator.retry_task(task.task_id)
    assert reopened.status == TaskStatus.PENDING
    final = await coordinator.run(task.task_id)

    assert final.status == TaskStatus.COMPLETE
    assert log.seen_dependencies["ship"] == {"charge": None}
    history = await repository.get_transitions(EntityType.TASK, task.task_id)
    assert [t.to_state for t in history] == [
        "pending", "in_progress", "error", "pending", "in_progress", "complete",
    ]


@pytest.mark.asyncio
async def test_retry_task_with_nothing_left_to_run_completes(
    repository, registry, coordinator, dispatcher
):
    registry.register(build_template("single", [("only", [], PermanentFailureHandler())]))
    task = await dispatcher.submit("single")
    await coordinator.run(task.task_id)

    steps = await _steps_by_name(repository, task.task_id)
    await coordinator.resolve_step(steps["only"].step_id)
    await coordinator.retry_task(task.task_id)
    final = await coordinator.run(task.task_id)

    assert final.status == TaskStatus.COMPLETE
    history = await repository.get_transitions(EntityType.TASK, task.task_id)
    assert history[-2].to_state == "in_progress"
    assert history[-2].metadata == {"reason": "resumed"}


@pytest.mark.asyncio
async def test_retry_task_gives_failed_steps_a_fresh_budget(
    repository, registry, coordinator, dispatcher
):
    flaky = FlakyHandler(failures=3)
    registry.register(build_template("fetch", [("download", [], flaky)]))
    task = await dispatcher.submit("fetch")
    assert (await coordinator.run(task.task_id)).status == TaskStatus.ERROR
    assert flaky.calls == 3

    await coordinator.retry_task(task.task_id, reason="upstream fixed")
    steps = await _steps_by_name(repository, task.task_id)
    assert steps["download"].status == StepStatus.PENDING
    assert steps["download"].attempts == 0

    final = await coordinator.run(task.task_id)
    assert final.status == TaskStatus.COMPLETE
    assert flaky.calls == 4
    steps = await _steps_by_name(repository, task.task_id)
    assert steps["download"].attempts == 1
    assert steps["download"].results == {"calls": 4}


@pytest.mark.asyncio
async def test_resolve_task_closes_failed_task(repository, registry, coordinator, dispatcher):
    registry.register(build_template("closing", [("only", [], PermanentFailureHandler())]))
    task = await dispatcher.submit("closing")
    await coordinator.run(task.task_id)

    resolved = await coordinator.resolve_task(task.task_id, reason="refunded")
    assert resolved.status == TaskStatus.RESOLVED_MANUALLY
    current = await repository.get_current_transition(EntityType.TASK, task.task_id)
    assert current.metadata == {"reason": "refunded"}

    with pytest.raises(IllegalTransitionError):
        await coordinator.retry_task(task.task_id)


@pytest.mark.asyncio
async def test_cancel_pending_task(repository, registry, sink, coordinator, dispatcher):
    registry.register(build_template("cancel-me", [("a", [], EchoHandler), ("b", ["a"], EchoHandler)]))
    task = await dispatcher.submit("cancel-me")

    cancelled = await coordinator.cancel(task.task_id, reason="duplicate order")
    assert cancelled.status == TaskStatus.CANCELLED
    steps = await _steps_by_name(repository, task.task_id)
    assert {s.status for s in steps.values()} == {StepStatus.CANCELLED}
    assert len(sink.named("step.cancelled")) == 2

    # running a cancelled task does nothing
    final = await coordinator.run(task.task_id)
    assert final.status == TaskStatus.CANCELLED


@pytest.mark.asyncio
async def test_cancel_finished_task_is_rejected(registry, coordinator, dispatcher):
    registry.register(build_template("finished", [("a", [], EchoHandler)]))
    task = await dispatcher.submit("finished")
    await coordinator.run(task.task_id)

    with pytest.raises(IllegalTransitionError):
        await coordinator.cancel(task.task_id)
    with pytest.raises(IllegalTransitionError):
        await coordinator.resolve_task(task.task_id)


@pytest.mark.asyncio
async def test_resolving_completed_step_is_rejected(repository, registry, coordinator, dispatcher):
    registry.register(build_template("done", [("a", [], EchoHandler)]))
    task = await dispatcher.submit("done")
    await coordinator.run(task.task_id)
    steps = await _steps_by_name(repository, task.task_id)

    with pytest.raises(IllegalTransitionError):
        await coordinator.resolve_step(steps["a"].step_id)


@pytest.mark.asyncio
async def test_unknown_task_raises(coordinator):
    with pytest.raises(TaskNotFoundError):
        await coordinator.run("missing")
    with pytest.raises(TaskNotFoundError):
        await coordinator.cancel("missing")
    with pytest.raises(LookupError):
        await coordinator.status("missing")


@pytest.mark.asyncio
async def test_status_reports_summary(repository, registry, coordinator, dispatcher):
    registry.register(build_template("summary", [("a", [], EchoHandler), ("b", ["a"], EchoHandler)]))
    task = await dispatcher.submit("summary")

    summary = await coordinator.status(task.task_id)
    assert summary.total_steps == 2
    assert summary.recommended_action == "execute_ready_steps"
    assert len(summary.ready) == 1
    assert len(summary.waiting_on_dependencies) == 1


@pytest.mark.asyncio
async def test_stale_claims_are_recovered(repository, registry, sink, fast_config, dispatcher):
    registry.register(build_template("stale", [("a", [], EchoHandler)]))
    task = await dispatcher.submit("stale")
    (step,) = await repository.get_steps(task.task_id)
    # a worker claimed the step and then disappeared
    await repository.transition_step(
        step.step_id,
        StepStatus.PENDING,
        StepStatus.IN_PROGRESS,
        {"attempt": 1},
        changes={"last_attempted_at": utcnow() - timedelta(minutes=5)},
    )

    config = fast_config.model_copy(
        update={
            "execution": ExecutionConfig(
                max_concurrent_steps=3, poll_interval_seconds=0.01, stale_step_timeout_seconds=60
            )
        }
    )
    coordinator = Coordinator(repository=repository, registry=registry, sink=sink, config=config)
    final = await coordinator.run(task.task_id)

    assert final.status == TaskStatus.COMPLETE
    (step,) = await repository.get_steps(task.task_id)
    assert step.attempts == 2
    history = await repository.get_transitions(EntityType.STEP, step.step_id)
    recovered = next(t for t in history if t.to_state == "error")
    assert recovered.metadata["reason"] == "stale_claim"
    assert recovered.metadata["classification"] == "retryable"


@pytest.mark.asyncio
async def test_duplicate_submission_reuses_live_task(registry, coordinator, dispatcher):
    registry.register(build_template("dedup", [("a", [], EchoHandler)]))
    first = await dispatcher.submit("dedup", context={"order": 7})
    second = await dispatcher.submit("dedup", context={"order": 7})
    other = await dispatcher.submit("dedup", context={"order": 8})

    assert second.task_id == first.task_id
    assert other.task_id != first.task_id

    await coordinator.run(first.task_id)
    again = await dispatcher.submit("dedup", context={"order": 7})
    assert again.task_id != first.task_id
    assert again.status == TaskStatus.PENDING
