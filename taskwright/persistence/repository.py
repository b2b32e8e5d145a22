"""Repository abstraction for task and step state persistence."""

from __future__ import annotations

from typing import Any, Optional, Protocol, Sequence

from ..constants import EntityType, StepStatus, TaskStatus
from .models import TaskRecord, TransitionRecord, WorkflowStep


class TaskRepository(Protocol):
    """Protocol for durable orchestration state backends.

    ``transition_task`` and ``transition_step`` are compare-and-set operations:
    the status changes only when the stored status equals ``from_state``. The
    status update, the field ``changes`` and the audit record are written
    atomically, and ``None`` is returned when another writer got there first.
    """

    async def create_task(
        self, task: TaskRecord, steps: Sequence[WorkflowStep]
    ) -> tuple[TaskRecord, bool]:
        """Persist a task with its steps and initial transitions.

        When a non-terminal task with the same ``identity_hash`` exists, it is
        returned instead and the second element is ``False``.
        """

    async def get_task(self, task_id: str) -> TaskRecord | None:
        """Retrieve a task by id."""

    async def list_tasks(self, status: Optional[TaskStatus] = None) -> list[TaskRecord]:
        """Return tasks, optionally filtered by status."""

    async def get_steps(self, task_id: str) -> list[WorkflowStep]:
        """Return a task's steps in declaration order."""

    async def get_step(self, step_id: str) -> WorkflowStep | None:
        """Retrieve a single step."""

    async def transition_task(
        self,
        task_id: str,
        from_state: TaskStatus,
        to_state: TaskStatus,
        metadata: dict[str, Any] | None = None,
    ) -> TaskRecord | None:
        """Conditionally move a task to ``to_state``."""

    async def transition_step(
        self,
        step_id: str,
        from_state: StepStatus,
        to_state: StepStatus,
        metadata: dict[str, Any] | None = None,
        changes: dict[str, Any] | None = None,
    ) -> WorkflowStep | None:
        """Conditionally move a step to ``to_state`` and apply ``changes``."""

    async def get_transitions(
        self, entity_type: EntityType, entity_id: str
    ) -> list[TransitionRecord]:
        """Return the audit trail of an entity ordered by sort key."""

    async def get_current_transition(
        self, entity_type: EntityType, entity_id: str
    ) -> TransitionRecord | None:
        """Return the ``most_recent`` transition of an entity."""
