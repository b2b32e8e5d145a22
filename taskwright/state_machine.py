"""Task and step state machines.

Each machine owns the table of legal transitions for its entity, checks the
guards that depend on sibling step state, performs the transition as a
compare-and-set through the repository and publishes a lifecycle event once
the new state is durable.
"""

from __future__ import annotations

import logging
from typing import Any, Dict, List, Mapping, Optional, Sequence

from .constants import EntityType, StepStatus, TaskStatus
from .contracts import LifecycleEvent
from .errors import GuardFailedError, IllegalTransitionError
from .events.base import BaseEventSink
from .persistence.models import TaskRecord, WorkflowStep, utcnow
from .persistence.repository import TaskRepository
from .readiness import backoff_elapsed, dependencies_satisfied, summarize

logger = logging.getLogger(__name__)


TASK_TRANSITIONS: Dict[TaskStatus, frozenset[TaskStatus]] = {
    TaskStatus.PENDING: frozenset(
        {TaskStatus.IN_PROGRESS, TaskStatus.CANCELLED, TaskStatus.COMPLETE}
    ),
    TaskStatus.IN_PROGRESS: frozenset(
        {TaskStatus.COMPLETE, TaskStatus.ERROR, TaskStatus.CANCELLED}
    ),
    TaskStatus.ERROR: frozenset({TaskStatus.PENDING, TaskStatus.RESOLVED_MANUALLY}),
    TaskStatus.COMPLETE: frozenset(),
    TaskStatus.CANCELLED: frozenset(),
    TaskStatus.RESOLVED_MANUALLY: frozenset(),
}

STEP_TRANSITIONS: Dict[StepStatus, frozenset[StepStatus]] = {
    StepStatus.PENDING: frozenset(
        {StepStatus.IN_PROGRESS, StepStatus.CANCELLED, StepStatus.RESOLVED_MANUALLY}
    ),
    StepStatus.IN_PROGRESS: frozenset(
        {StepStatus.COMPLETE, StepStatus.ERROR, StepStatus.SKIPPED, StepStatus.CANCELLED}
    ),
    StepStatus.ERROR: frozenset({StepStatus.PENDING, StepStatus.RESOLVED_MANUALLY}),
    StepStatus.COMPLETE: frozenset(),
    StepStatus.SKIPPED: frozenset(),
    StepStatus.CANCELLED: frozenset(),
    StepStatus.RESOLVED_MANUALLY: frozenset(),
}

TASK_EVENTS: Dict[TaskStatus, str] = {
    TaskStatus.PENDING: "task.retry_requested",
    TaskStatus.IN_PROGRESS: "task.start_requested",
    TaskStatus.COMPLETE: "task.completed",
    TaskStatus.ERROR: "task.failed",
    TaskStatus.CANCELLED: "task.cancelled",
    TaskStatus.RESOLVED_MANUALLY: "task.resolved_manually",
}

STEP_EVENTS: Dict[StepStatus, str] = {
    StepStatus.PENDING: "step.retry_requested",
    StepStatus.IN_PROGRESS: "step.execution_requested",
    StepStatus.COMPLETE: "step.completed",
    StepStatus.ERROR: "step.failed",
    StepStatus.SKIPPED: "step.skipped",
    StepStatus.CANCELLED: "step.cancelled",
    StepStatus.RESOLVED_MANUALLY: "step.resolved_manually",
}

TASK_INITIALIZED = "task.initialize_requested"
STEP_INITIALIZED = "step.initialize_requested"
STEP_BACKOFF = "step.backoff"


def can_transition_task(from_state: TaskStatus, to_state: TaskStatus) -> bool:
    return to_state in TASK_TRANSITIONS.get(from_state, frozenset())


def can_transition_step(from_state: StepStatus, to_state: StepStatus) -> bool:
    return to_state in STEP_TRANSITIONS.get(from_state, frozenset())


async def emit(sink: Optional[BaseEventSink], event: LifecycleEvent) -> None:
    """Publish ``event``; sink failures never affect orchestration."""
    if sink is None:
        return
    try:
        await sink.publish(event)
    except Exception as exc:
        logger.warning(f"Failed to publish {event.name} for {event.entity_id}: {exc}")


class _StateMachine:
    def __init__(self, repository: TaskRepository, sink: Optional[BaseEventSink] = None) -> None:
        self.repository = repository
        self.sink = sink

    async def _emit(
        self,
        name: str,
        entity_type: EntityType,
        entity_id: str,
        task_id: str,
        from_state: Optional[str],
        to_state: str,
        metadata: Optional[Mapping[str, Any]] = None,
    ) -> None:
        await emit(
            self.sink,
            LifecycleEvent(
                name=name,
                entity_type=entity_type.value,
                entity_id=entity_id,
                task_id=task_id,
                from_state=from_state,
                to_state=to_state,
                metadata=dict(metadata or {}),
            ),
        )


class TaskStateMachine(_StateMachine):
    """Legal transitions and guards for tasks."""

    async def announce(self, task: TaskRecord, steps: Sequence[WorkflowStep]) -> None:
        """Emit initialization events for a freshly created task and its steps."""
        await self._emit(
            TASK_INITIALIZED, EntityType.TASK, task.task_id, task.task_id, None,
            task.status.value, {"name": task.name, "namespace": task.namespace},
        )
        for step in steps:
            await self._emit(
                STEP_INITIALIZED, EntityType.STEP, step.step_id, task.task_id, None,
                step.status.value, {"name": step.name},
            )

    def check_guard(
        self, task: TaskRecord, to_state: TaskStatus, steps: Sequence[WorkflowStep]
    ) -> None:
        """Raise :class:`GuardFailedError` when ``to_state`` is not yet justified."""
        if to_state == TaskStatus.IN_PROGRESS and task.status == TaskStatus.PENDING:
            if not any(s.status != StepStatus.PENDING or s.attempts for s in steps):
                raise GuardFailedError("task", to_state.value, "no step has started")
        elif to_state == TaskStatus.COMPLETE:
            if task.status == TaskStatus.PENDING and steps:
                raise GuardFailedError("task", to_state.value, "task has steps but never started")
            summary = summarize(steps)
            if not summary.all_satisfied:
                raise GuardFailedError("task", to_state.value, "not every step is satisfied")
        elif to_state == TaskStatus.ERROR:
            summary = summarize(steps)
            if not summary.failed:
                raise GuardFailedError("task", to_state.value, "no step has failed")
            if summary.can_progress:
                raise GuardFailedError("task", to_state.value, "steps can still make progress")

    async def transition(
        self,
        task: TaskRecord,
        to_state: TaskStatus,
        metadata: Optional[Dict[str, Any]] = None,
        steps: Optional[Sequence[WorkflowStep]] = None,
    ) -> TaskRecord | None:
        """Move ``task`` from its current status to ``to_state``.

        Returns the updated record, or ``None`` when another actor changed the
        task's status first.

        Raises:
            IllegalTransitionError: ``to_state`` is not reachable from the
                task's current status.
            GuardFailedError: The step states do not allow the transition.
        """
        from_state = task.status
        if not can_transition_task(from_state, to_state):
            raise IllegalTransitionError("task", from_state.value, to_state.value)
        if steps is None:
            steps = await self.repository.get_steps(task.task_id)
        self.check_guard(task, to_state, steps)

        updated = await self.repository.transition_task(
            task.task_id, from_state, to_state, metadata
        )
        if updated is None:
            logger.debug(
                f"Task {task.task_id} transition {from_state.value}->{to_state.value} lost a race"
            )
            return None
        logger.info(f"Task {task.task_id} {from_state.value} -> {to_state.value}")
        await self._emit(
            TASK_EVENTS[to_state], EntityType.TASK, task.task_id, task.task_id,
            from_state.value, to_state.value, metadata,
        )
        return updated


class StepStateMachine(_StateMachine):
    """Legal transitions and guards for workflow steps."""

    def check_guard(
        self, step: WorkflowStep, to_state: StepStatus, siblings: Sequence[WorkflowStep]
    ) -> None:
        if to_state == StepStatus.IN_PROGRESS:
            by_id = {s.step_id: s for s in siblings}
            if not dependencies_satisfied(step, by_id):
                raise GuardFailedError("step", to_state.value, "dependencies are not satisfied")
            if not backoff_elapsed(step, utcnow()):
                raise GuardFailedError("step", to_state.value, "backoff has not elapsed")

    async def transition(
        self,
        step: WorkflowStep,
        to_state: StepStatus,
        metadata: Optional[Dict[str, Any]] = None,
        changes: Optional[Dict[str, Any]] = None,
        siblings: Optional[List[WorkflowStep]] = None,
    ) -> WorkflowStep | None:
        """Move ``step`` from its current status to ``to_state``.

        ``changes`` are applied to the step row in the same atomic update.
        Returns ``None`` when the step was no longer in the expected status,
        which is how a lost claim shows up.
        """
        from_state = step.status
        if not can_transition_step(from_state, to_state):
            raise IllegalTransitionError("step", from_state.value, to_state.value)
        if to_state == StepStatus.IN_PROGRESS:
            if siblings is None:
                siblings = await self.repository.get_steps(step.task_id)
            self.check_guard(step, to_state, siblings)

        updated = await self.repository.transition_step(
            step.step_id, from_state, to_state, metadata, changes
        )
        if updated is None:
            logger.debug(
                f"Step {step.name} ({step.step_id}) transition "
                f"{from_state.value}->{to_state.value} lost a race"
            )
            return None
        logger.debug(f"Step {step.name} ({step.step_id}) {from_state.value} -> {to_state.value}")
        await self._emit(
            STEP_EVENTS[to_state], EntityType.STEP, step.step_id, step.task_id,
            from_state.value, to_state.value, metadata,
        )
        if to_state == StepStatus.PENDING and updated.backoff_until is not None:
            await self._emit(
                STEP_BACKOFF, EntityType.STEP, step.step_id, step.task_id,
                from_state.value, to_state.value,
                {"backoff_until": updated.backoff_until.isoformat()},
            )
        return updated
