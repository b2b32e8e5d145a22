"""In-memory implementation of the task repository."""

from __future__ import annotations

import asyncio
from typing import Any, Dict, List, Optional, Sequence

from ..constants import SORT_KEY_INCREMENT, TERMINAL_TASK_STATUSES, EntityType, StepStatus, TaskStatus
from .models import STEP_MUTABLE_FIELDS, TaskRecord, TransitionRecord, WorkflowStep, utcnow
from .repository import TaskRepository


class InMemoryTaskRepository(TaskRepository):
    """Store orchestration state in local memory.

    Useful for tests or when no database is configured. Data is not
    persisted across process restarts. Records are copied on the way in and
    out so callers never share mutable state with the store.
    """

    def __init__(self) -> None:
        self._tasks: Dict[str, TaskRecord] = {}
        self._steps: Dict[str, WorkflowStep] = {}
        self._task_steps: Dict[str, List[str]] = {}
        self._transitions: Dict[tuple[str, str], List[TransitionRecord]] = {}
        self._transition_id = 0
        self._lock = asyncio.Lock()

    # ------------------------------------------------------------------
    def _append_transition(
        self,
        entity_type: EntityType,
        entity_id: str,
        task_id: str,
        from_state: Optional[str],
        to_state: str,
        metadata: dict[str, Any] | None,
    ) -> None:
        history = self._transitions.setdefault((entity_type.value, entity_id), [])
        for record in history:
            record.most_recent = False
        sort_key = history[-1].sort_key + SORT_KEY_INCREMENT if history else 0
        self._transition_id += 1
        history.append(
            TransitionRecord(
                id=self._transition_id,
                entity_type=entity_type.value,
                entity_id=entity_id,
                task_id=task_id,
                from_state=from_state,
                to_state=to_state,
                metadata=metadata or {},
                sort_key=sort_key,
                most_recent=True,
            )
        )

    # ------------------------------------------------------------------
    async def create_task(
        self, task: TaskRecord, steps: Sequence[WorkflowStep]
    ) -> tuple[TaskRecord, bool]:
        async with self._lock:
            for existing in self._tasks.values():
                if (
                    existing.identity_hash == task.identity_hash
                    and existing.status not in TERMINAL_TASK_STATUSES
                ):
                    return existing.model_copy(deep=True), False

            self._tasks[task.task_id] = task.model_copy(deep=True)
            self._task_steps[task.task_id] = [s.step_id for s in steps]
            self._append_transition(
                EntityType.TASK, task.task_id, task.task_id, None, task.status.value,
                {"initialized_by": "submission"},
            )
            for step in steps:
                self._steps[step.step_id] = step.model_copy(deep=True)
                self._append_transition(
                    EntityType.STEP, step.step_id, task.task_id, None, step.status.value,
                    {"initialized_by": "submission"},
                )
            return task.model_copy(deep=True), True

    async def get_task(self, task_id: str) -> TaskRecord | None:
        task = self._tasks.get(task_id)
        return task.model_copy(deep=True) if task else None

    async def list_tasks(self, status: Optional[TaskStatus] = None) -> list[TaskRecord]:
        return [
            t.model_copy(deep=True)
            for t in self._tasks.values()
            if status is None or t.status == status
        ]

    async def get_steps(self, task_id: str) -> list[WorkflowStep]:
        return [
            self._steps[step_id].model_copy(deep=True)
            for step_id in self._task_steps.get(task_id, [])
        ]

    async def get_step(self, step_id: str) -> WorkflowStep | None:
        step = self._steps.get(step_id)
        return step.model_copy(deep=True) if step else None

    async def transition_task(
        self,
        task_id: str,
        from_state: TaskStatus,
        to_state: TaskStatus,
        metadata: dict[str, Any] | None = None,
    ) -> TaskRecord | None:
        async with self._lock:
            task = self._tasks.get(task_id)
            if task is None or task.status != from_state:
                return None
            task.status = to_state
            task.updated_at = utcnow()
            self._append_transition(
                EntityType.TASK, task_id, task_id, from_state.value, to_state.value, metadata
            )
            return task.model_copy(deep=True)

    async def transition_step(
        self,
        step_id: str,
        from_state: StepStatus,
        to_state: StepStatus,
        metadata: dict[str, Any] | None = None,
        changes: dict[str, Any] | None = None,
    ) -> WorkflowStep | None:
        changes = changes or {}
        unknown = set(changes) - STEP_MUTABLE_FIELDS
        if unknown:
            raise ValueError(f"Cannot update step fields: {sorted(unknown)}")
        async with self._lock:
            step = self._steps.get(step_id)
            if step is None or step.status != from_state:
                return None
            for key, value in changes.items():
                setattr(step, key, value)
            step.status = to_state
            step.updated_at = utcnow()
            self._append_transition(
                EntityType.STEP, step_id, step.task_id, from_state.value, to_state.value, metadata
            )
            return step.model_copy(deep=True)

    async def get_transitions(
        self, entity_type: EntityType, entity_id: str
    ) -> list[TransitionRecord]:
        return [
            t.model_copy(deep=True)
            for t in self._transitions.get((entity_type.value, entity_id), [])
        ]

    async def get_current_transition(
        self, entity_type: EntityType, entity_id: str
    ) -> TransitionRecord | None:
        for record in self._transitions.get((entity_type.value, entity_id), []):
            if record.most_recent:
                return record.model_copy(deep=True)
        return None
