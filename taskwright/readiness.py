"""Step readiness evaluation.

Computes, for the steps of one task, which are ready to dispatch, which are
waiting on backoff, which can never run because an upstream step failed, and
what the coordinator should do next.
"""

from __future__ import annotations

from datetime import datetime
from typing import Dict, Iterable, List, Mapping, Optional

from pydantic import BaseModel, Field

from .constants import SATISFIED_STEP_STATUSES, StepStatus
from .persistence.models import WorkflowStep, utcnow

FAILED_STEP_STATUSES = frozenset({StepStatus.ERROR, StepStatus.CANCELLED})

EXECUTE_READY_STEPS = "execute_ready_steps"
WAIT_FOR_COMPLETION = "wait_for_completion"
WAIT_FOR_BACKOFF = "wait_for_backoff"
FINALIZE_COMPLETE = "finalize_complete"
FINALIZE_ERROR = "finalize_error"


def dependencies_satisfied(step: WorkflowStep, steps_by_id: Mapping[str, WorkflowStep]) -> bool:
    """True when every dependency is complete, skipped or manually resolved."""
    return all(
        dep_id in steps_by_id and steps_by_id[dep_id].status in SATISFIED_STEP_STATUSES
        for dep_id in step.dependencies
    )


def backoff_elapsed(step: WorkflowStep, now: Optional[datetime] = None) -> bool:
    return step.backoff_until is None or step.backoff_until <= (now or utcnow())


def is_ready(
    step: WorkflowStep,
    steps_by_id: Mapping[str, WorkflowStep],
    now: Optional[datetime] = None,
) -> bool:
    return (
        step.status == StepStatus.PENDING
        and dependencies_satisfied(step, steps_by_id)
        and backoff_elapsed(step, now)
    )


class ExecutionSummary(BaseModel):
    """Snapshot of a task's steps as seen by the coordinator."""

    total_steps: int = 0
    status_counts: Dict[str, int] = Field(default_factory=dict)
    ready: List[str] = Field(default_factory=list)
    waiting_on_dependencies: List[str] = Field(default_factory=list)
    backoff: List[str] = Field(default_factory=list)
    blocked: List[str] = Field(default_factory=list)
    in_progress: List[str] = Field(default_factory=list)
    failed: List[str] = Field(default_factory=list)
    next_wakeup: Optional[datetime] = None
    recommended_action: str = FINALIZE_COMPLETE

    @property
    def all_satisfied(self) -> bool:
        satisfied = sum(self.status_counts.get(s.value, 0) for s in SATISFIED_STEP_STATUSES)
        return satisfied == self.total_steps

    @property
    def can_progress(self) -> bool:
        return bool(self.ready or self.backoff or self.in_progress or self.waiting_on_dependencies)


def _blocked_ids(steps_by_id: Mapping[str, WorkflowStep]) -> set[str]:
    """Pending steps that transitively depend on a failed or missing step."""
    memo: Dict[str, bool] = {}
    visiting: set[str] = set()

    for start in steps_by_id:
        stack = [start]
        while stack:
            step_id = stack[-1]
            if step_id in memo:
                stack.pop()
                continue
            step = steps_by_id.get(step_id)
            if step is None or step.status in FAILED_STEP_STATUSES:
                memo[step_id] = True
            elif step.status != StepStatus.PENDING:
                memo[step_id] = False
            elif step_id in visiting:
                # dependencies are resolved, or sit on a cycle and count as unblocked
                visiting.discard(step_id)
                memo[step_id] = any(memo.get(dep, False) for dep in step.dependencies)
            else:
                visiting.add(step_id)
                stack.extend(
                    dep for dep in step.dependencies if dep not in memo and dep not in visiting
                )
                continue
            stack.pop()

    return {
        step_id
        for step_id, step in steps_by_id.items()
        if step.status == StepStatus.PENDING and memo[step_id]
    }


def summarize(steps: Iterable[WorkflowStep], now: Optional[datetime] = None) -> ExecutionSummary:
    """Classify every step of a task and recommend the next action."""
    now = now or utcnow()
    ordered = sorted(steps, key=lambda s: s.position)
    by_id = {s.step_id: s for s in ordered}
    blocked = _blocked_ids(by_id)
    summary = ExecutionSummary(total_steps=len(ordered))

    for step in ordered:
        summary.status_counts[step.status.value] = summary.status_counts.get(step.status.value, 0) + 1
        if step.status == StepStatus.IN_PROGRESS:
            summary.in_progress.append(step.step_id)
        elif step.status in FAILED_STEP_STATUSES:
            summary.failed.append(step.step_id)
        elif step.status == StepStatus.PENDING:
            if step.step_id in blocked:
                summary.blocked.append(step.step_id)
            elif not dependencies_satisfied(step, by_id):
                summary.waiting_on_dependencies.append(step.step_id)
            elif not backoff_elapsed(step, now):
                summary.backoff.append(step.step_id)
                if summary.next_wakeup is None or step.backoff_until < summary.next_wakeup:
                    summary.next_wakeup = step.backoff_until
            else:
                summary.ready.append(step.step_id)

    if summary.ready:
        summary.recommended_action = EXECUTE_READY_STEPS
    elif summary.in_progress:
        summary.recommended_action = WAIT_FOR_COMPLETION
    elif summary.backoff:
        summary.recommended_action = WAIT_FOR_BACKOFF
    elif summary.all_satisfied:
        summary.recommended_action = FINALIZE_COMPLETE
    else:
        summary.recommended_action = FINALIZE_ERROR
    return summary


def ready_steps(steps: Iterable[WorkflowStep], now: Optional[datetime] = None) -> List[WorkflowStep]:
    """Pending steps whose dependencies are satisfied and backoff has elapsed."""
    ordered = sorted(steps, key=lambda s: s.position)
    by_id = {s.step_id: s for s in ordered}
    return [s for s in ordered if is_ready(s, by_id, now)]
