"""Orchestration coordinator driving one task to a terminal state."""

from __future__ import annotations

import asyncio
import copy
import logging
from datetime import datetime, timedelta
from functools import partial
from types import MappingProxyType
from typing import Any, Dict, List, Optional

from pydantic import BaseModel

from .backoff import RetryPolicy
from .config import TaskwrightConfig
from .constants import (
    SATISFIED_STEP_STATUSES,
    STOPPED_TASK_STATUSES,
    EntityType,
    StepStatus,
    TaskStatus,
)
from .contracts import ErrorClassification, OutcomeKind, SkipStep, StepFailure, StepOutcome
from .errors import GuardFailedError, IllegalTransitionError, StepNotFoundError, TaskNotFoundError
from .events.base import BaseEventSink
from .executor import ConcurrencyExecutor, StepScope
from .persistence import get_repository
from .persistence.models import TaskRecord, WorkflowStep, utcnow
from .persistence.repository import TaskRepository
from .readiness import (
    EXECUTE_READY_STEPS,
    FINALIZE_COMPLETE,
    WAIT_FOR_BACKOFF,
    WAIT_FOR_COMPLETION,
    ExecutionSummary,
    summarize,
)
from .registry import REGISTRY, RegisteredTask, TemplateRegistry
from .state_machine import StepStateMachine, TaskStateMachine

logger = logging.getLogger(__name__)


def _as_results(value: Any) -> Optional[Dict[str, Any]]:
    """Normalize a handler return value into the stored results mapping."""
    if value is None:
        return None
    if isinstance(value, BaseModel):
        return value.model_dump(mode="json")
    if isinstance(value, dict):
        return value
    return {"result": value}


class Coordinator:
    """Control loop that drives tasks through their step DAG.

    One ``run`` call drives one task. Independent tasks may be run
    concurrently by the same coordinator; the durable store is the only state
    they share.
    """

    def __init__(
        self,
        repository: TaskRepository | None = None,
        registry: Optional[TemplateRegistry] = None,
        sink: Optional[BaseEventSink] = None,
        config: Optional[TaskwrightConfig] = None,
        retry_policy: Optional[RetryPolicy] = None,
        step_scope: Optional[StepScope] = None,
    ) -> None:
        self.repository = repository or get_repository()
        self.registry = registry if registry is not None else REGISTRY
        self.config = config or TaskwrightConfig()
        self.retry_policy = retry_policy or RetryPolicy(self.config.backoff)
        self.step_scope = step_scope
        self.tasks = TaskStateMachine(self.repository, sink)
        self.steps = StepStateMachine(self.repository, sink)
        self._cancel_events: Dict[str, asyncio.Event] = {}
        self._start_locks: Dict[str, asyncio.Lock] = {}

    # ------------------------------------------------------------------
    async def _load_task(self, task_id: str) -> TaskRecord:
        task = await self.repository.get_task(task_id)
        if task is None:
            raise TaskNotFoundError(f"Task {task_id} not found")
        return task

    async def _load_step(self, step_id: str) -> WorkflowStep:
        step = await self.repository.get_step(step_id)
        if step is None:
            raise StepNotFoundError(f"Step {step_id} not found")
        return step

    async def status(self, task_id: str) -> ExecutionSummary:
        """Summarize the current state of a task's steps."""
        await self._load_task(task_id)
        return summarize(await self.repository.get_steps(task_id))

    # ------------------------------------------------------------------
    async def run(self, task_id: str) -> TaskRecord:
        """Drive ``task_id`` until it is complete, failed or cancelled.

        Returns the final task record. Step failures are absorbed into step
        state; storage errors raised while persisting outcomes propagate once
        the batch that hit them has settled.
        """
        task = await self._load_task(task_id)
        entry = self.registry.get(task.name, task.namespace, task.version)
        order = entry.topology_index
        concurrency = (
            self.config.execution.max_concurrent_steps if entry.template.concurrent else 1
        )
        executor = ConcurrencyExecutor(concurrency, self.step_scope)
        cancel_event = self._cancel_events.setdefault(task_id, asyncio.Event())

        try:
            if task.status not in STOPPED_TASK_STATUSES:
                await self._recover_stale_claims(task_id)
                await self._recover_interrupted_retries(task_id)
            while True:
                task = await self._load_task(task_id)
                if task.status == TaskStatus.CANCELLED:
                    await self._cancel_pending_steps(task_id)
                    return task
                if task.status in STOPPED_TASK_STATUSES:
                    return task

                steps = await self.repository.get_steps(task_id)
                summary = summarize(steps)
                action = summary.recommended_action

                if action == EXECUTE_READY_STEPS:
                    by_id = {s.step_id: s for s in steps}
                    ready = sorted(
                        (by_id[step_id] for step_id in summary.ready),
                        key=lambda s: (order.get(s.name, s.position), s.position),
                    )
                    outcomes = await executor.run(
                        ready, partial(self._run_step, task, entry, cancel_event)
                    )
                    logger.debug(
                        f"Task {task_id} batch settled: "
                        f"{sum(1 for _, o in outcomes if o.executed)}/{len(outcomes)} executed"
                    )
                    crashed = [o for _, o in outcomes if o.kind == OutcomeKind.CRASHED]
                    if crashed:
                        raise crashed[0].exception
                elif action in (WAIT_FOR_COMPLETION, WAIT_FOR_BACKOFF):
                    await self._wait(cancel_event, summary)
                else:
                    await self._finalize(task, steps, summary, action)
        finally:
            self._cancel_events.pop(task_id, None)
            self._start_locks.pop(task_id, None)

    async def _wait(self, cancel_event: asyncio.Event, summary: ExecutionSummary) -> None:
        timeout = self.config.execution.poll_interval_seconds
        if summary.next_wakeup is not None:
            until_wakeup = (summary.next_wakeup - utcnow()).total_seconds()
            timeout = min(timeout, max(until_wakeup, 0.0))
        logger.debug(
            f"Waiting {timeout:.3f}s: {len(summary.in_progress)} in progress, "
            f"{len(summary.backoff)} in backoff"
        )
        try:
            await asyncio.wait_for(cancel_event.wait(), timeout)
        except asyncio.TimeoutError:
            pass

    async def _finalize(
        self,
        task: TaskRecord,
        steps: List[WorkflowStep],
        summary: ExecutionSummary,
        action: str,
    ) -> None:
        """Move the task to its terminal state once no step can progress."""
        if action == FINALIZE_COMPLETE:
            target = TaskStatus.COMPLETE
            metadata: Dict[str, Any] = {"steps": summary.total_steps}
        else:
            target = TaskStatus.ERROR
            metadata = await self._failure_report(steps, summary)

        try:
            if task.status == TaskStatus.PENDING and steps:
                # Resumed after retry_task with nothing left to claim.
                task = await self.tasks.transition(
                    task, TaskStatus.IN_PROGRESS, {"reason": "resumed"}, steps
                )
                if task is None:
                    return
            updated = await self.tasks.transition(task, target, metadata, steps)
        except GuardFailedError as e:
            logger.debug(f"Task {task.task_id} not finalized yet: {e}")
            await asyncio.sleep(self.config.execution.poll_interval_seconds)
            return
        if updated is None:
            return
        if target == TaskStatus.COMPLETE:
            logger.info(f"Task {task.task_id} complete")
        else:
            logger.info(
                f"Task {task.task_id} failed: "
                f"{', '.join(f['name'] for f in metadata['failed_steps'])}"
            )

    async def _failure_report(
        self, steps: List[WorkflowStep], summary: ExecutionSummary
    ) -> Dict[str, Any]:
        by_id = {s.step_id: s for s in steps}
        failed = []
        for step_id in summary.failed:
            step = by_id[step_id]
            current = await self.repository.get_current_transition(EntityType.STEP, step_id)
            details = current.metadata if current else {}
            failed.append(
                {
                    "step_id": step_id,
                    "name": step.name,
                    "status": step.status.value,
                    "attempts": step.attempts,
                    "classification": details.get("classification"),
                    "retry_exhausted": details.get("retry_exhausted", False),
                    "error": details.get("error"),
                }
            )
        return {
            "failed_steps": failed,
            "blocked_steps": [by_id[step_id].name for step_id in summary.blocked],
        }

    # ------------------------------------------------------------------
    async def _run_step(
        self,
        task: TaskRecord,
        entry: RegisteredTask,
        cancel_event: asyncio.Event,
        step: WorkflowStep,
    ) -> StepOutcome:
        """Claim one ready step, invoke its handler and persist the outcome."""
        if cancel_event.is_set():
            return StepOutcome(step.step_id, OutcomeKind.NOT_STARTED)
        current_task = await self._load_task(task.task_id)
        if current_task.status in STOPPED_TASK_STATUSES:
            return StepOutcome(step.step_id, OutcomeKind.NOT_STARTED)

        siblings = await self.repository.get_steps(task.task_id)
        by_id = {s.step_id: s for s in siblings}
        step = by_id.get(step.step_id, step)
        inputs = {
            by_id[dep_id].name: copy.deepcopy(by_id[dep_id].results)
            for dep_id in step.dependencies
            if dep_id in by_id
        }
        try:
            claimed = await self.steps.transition(
                step,
                StepStatus.IN_PROGRESS,
                {"attempt": step.attempts + 1},
                changes={"inputs": inputs, "last_attempted_at": utcnow()},
                siblings=siblings,
            )
        except (GuardFailedError, IllegalTransitionError) as e:
            logger.debug(f"Step {step.name} ({step.step_id}) not claimable: {e}")
            return StepOutcome(step.step_id, OutcomeKind.CONFLICT)
        if claimed is None:
            return StepOutcome(step.step_id, OutcomeKind.CONFLICT)

        # The claim only compares the step's status; a cancel may have landed since.
        current_task = await self._load_task(task.task_id)
        if current_task.status in STOPPED_TASK_STATUSES:
            await self.steps.transition(
                claimed, StepStatus.CANCELLED, {"reason": f"task_{current_task.status.value}"}
            )
            logger.info(
                f"Step {claimed.name} ({claimed.step_id}) released: task is "
                f"{current_task.status.value}"
            )
            return StepOutcome(claimed.step_id, OutcomeKind.NOT_STARTED)

        await self._ensure_started(task.task_id)

        if claimed.skippable and claimed.name in current_task.bypass_steps:
            return await self._skip_step(claimed, "bypassed")

        handler = entry.handlers[claimed.name]
        dependency_results = MappingProxyType(
            {
                s.name: copy.deepcopy(s.results)
                for s in siblings
                if s.status in SATISFIED_STEP_STATUSES
            }
        )
        try:
            result = await handler.handle(
                current_task.model_copy(deep=True),
                claimed.model_copy(deep=True),
                dependency_results,
            )
        except Exception as exc:
            return await self._fail_step(claimed, exc)

        if isinstance(result, SkipStep):
            if not claimed.skippable:
                return await self._fail_step(
                    claimed,
                    StepFailure.permanent(f"step is not skippable: {result.reason}"),
                )
            return await self._skip_step(claimed, result.reason)

        results = _as_results(result)
        now = utcnow()
        completed = await self.steps.transition(
            claimed,
            StepStatus.COMPLETE,
            {"attempts": claimed.attempts + 1},
            changes={
                "results": results,
                "processed": True,
                "processed_at": now,
                "attempts": claimed.attempts + 1,
                "backoff_until": None,
            },
        )
        if completed is None:
            return StepOutcome(claimed.step_id, OutcomeKind.CONFLICT)
        return StepOutcome(claimed.step_id, OutcomeKind.COMPLETED, result=results)

    async def _ensure_started(self, task_id: str) -> None:
        lock = self._start_locks.setdefault(task_id, asyncio.Lock())
        async with lock:
            task = await self._load_task(task_id)
            if task.status != TaskStatus.PENDING:
                return
            try:
                await self.tasks.transition(
                    task, TaskStatus.IN_PROGRESS, {"reason": "first_step_claimed"}
                )
            except GuardFailedError as e:
                logger.debug(f"Task {task_id} not started: {e}")

    async def _skip_step(self, step: WorkflowStep, reason: str) -> StepOutcome:
        skipped = await self.steps.transition(
            step,
            StepStatus.SKIPPED,
            {"reason": reason},
            changes={"processed": True, "processed_at": utcnow()},
        )
        if skipped is None:
            return StepOutcome(step.step_id, OutcomeKind.CONFLICT)
        logger.info(f"Step {step.name} ({step.step_id}) skipped: {reason}")
        return StepOutcome(step.step_id, OutcomeKind.SKIPPED)

    async def _fail_step(
        self,
        step: WorkflowStep,
        error: BaseException,
        extra: Optional[Dict[str, Any]] = None,
    ) -> StepOutcome:
        """Record a failed attempt and schedule the retry when one is due."""
        decision = self.retry_policy.decide(step, error)
        metadata = {**decision.metadata(), **(extra or {})}
        if isinstance(error, StepFailure) and error.details:
            metadata["details"] = error.details
        failed = await self.steps.transition(
            step,
            StepStatus.ERROR,
            metadata,
            changes={"attempts": decision.attempts, "processed": False},
        )
        if failed is None:
            return StepOutcome(step.step_id, OutcomeKind.CONFLICT)

        if decision.retry:
            logger.info(
                f"Step {step.name} ({step.step_id}) attempt {decision.attempts}/"
                f"{step.retry_limit} failed, retrying in {decision.delay_seconds:.3f}s"
            )
            await self.steps.transition(
                failed,
                StepStatus.PENDING,
                {
                    "reason": "retry",
                    "backoff_type": decision.backoff_type,
                    "backoff_seconds": decision.delay_seconds,
                },
                changes={"backoff_until": decision.backoff_until},
            )
        else:
            logger.info(
                f"Step {step.name} ({step.step_id}) failed "
                f"({decision.classification.value}, exhausted={decision.exhausted}): "
                f"{decision.error}"
            )
        return StepOutcome(
            step.step_id,
            OutcomeKind.FAILED,
            classification=decision.classification,
            error=decision.error,
            exception=error,
        )

    async def _recover_stale_claims(self, task_id: str) -> None:
        timeout = self.config.execution.stale_step_timeout_seconds
        if timeout is None:
            return
        cutoff = utcnow() - timedelta(seconds=timeout)
        for step in await self.repository.get_steps(task_id):
            if step.status != StepStatus.IN_PROGRESS:
                continue
            if step.last_attempted_at is not None and step.last_attempted_at > cutoff:
                continue
            logger.warning(
                f"Recovering stale claim on step {step.name} ({step.step_id}) "
                f"last attempted at {step.last_attempted_at}"
            )
            await self._fail_step(
                step,
                StepFailure.retryable("step claim went stale"),
                {"reason": "stale_claim"},
            )

    async def _recover_interrupted_retries(self, task_id: str) -> None:
        """Re-enqueue retryable failures whose ``error -> pending`` write never landed."""
        for step in await self.repository.get_steps(task_id):
            if step.status != StepStatus.ERROR:
                continue
            current = await self.repository.get_current_transition(EntityType.STEP, step.step_id)
            details = current.metadata if current else {}
            if details.get("classification") != ErrorClassification.RETRYABLE.value:
                continue
            if details.get("retry_exhausted", True):
                continue
            backoff_until = details.get("backoff_until")
            logger.warning(
                f"Re-enqueueing step {step.name} ({step.step_id}) whose retry was not scheduled"
            )
            await self.steps.transition(
                step,
                StepStatus.PENDING,
                {
                    "reason": "retry",
                    "recovered": True,
                    "backoff_type": details.get("backoff_type"),
                    "backoff_seconds": details.get("backoff_seconds"),
                },
                changes={
                    "backoff_until": datetime.fromisoformat(backoff_until) if backoff_until else None
                },
            )

    async def _cancel_pending_steps(self, task_id: str) -> None:
        for step in await self.repository.get_steps(task_id):
            if step.status == StepStatus.PENDING:
                await self.steps.transition(
                    step, StepStatus.CANCELLED, {"reason": "task_cancelled"}
                )

    # ------------------------------------------------------------------
    async def cancel(self, task_id: str, reason: str = "requested") -> TaskRecord:
        """Cancel a task.

        No new step is dispatched afterwards. Steps already in progress run
        to completion and their outcomes are recorded; pending steps move to
        ``cancelled``.

        Raises:
            IllegalTransitionError: The task already failed or finished.
        """
        while True:
            task = await self._load_task(task_id)
            if task.status == TaskStatus.CANCELLED:
                break
            updated = await self.tasks.transition(
                task, TaskStatus.CANCELLED, {"reason": reason}
            )
            if updated is not None:
                task = updated
                logger.info(f"Task {task_id} cancelled: {reason}")
                break
        event = self._cancel_events.get(task_id)
        if event is not None:
            event.set()
        await self._cancel_pending_steps(task_id)
        return task

    async def resolve_step(self, step_id: str, reason: str = "operator") -> WorkflowStep:
        """Mark a pending or failed step as manually resolved.

        A manually resolved step satisfies its dependents like a completed one.
        """
        step = await self._load_step(step_id)
        resolved = await self.steps.transition(
            step, StepStatus.RESOLVED_MANUALLY, {"reason": reason}
        )
        if resolved is None:
            raise IllegalTransitionError(
                "step", (await self._load_step(step_id)).status.value,
                StepStatus.RESOLVED_MANUALLY.value,
            )
        logger.info(f"Step {step.name} ({step_id}) resolved manually")
        return resolved

    async def resolve_task(self, task_id: str, reason: str = "operator") -> TaskRecord:
        """Close a failed task without re-running it."""
        task = await self._load_task(task_id)
        resolved = await self.tasks.transition(
            task, TaskStatus.RESOLVED_MANUALLY, {"reason": reason}
        )
        if resolved is None:
            raise IllegalTransitionError(
                "task", (await self._load_task(task_id)).status.value,
                TaskStatus.RESOLVED_MANUALLY.value,
            )
        logger.info(f"Task {task_id} resolved manually")
        return resolved

    async def retry_task(self, task_id: str, reason: str = "operator") -> TaskRecord:
        """Re-open a failed task so that ``run`` resumes it.

        Failed steps return to ``pending`` with a fresh attempt budget; steps
        that already succeeded are not re-run.
        """
        task = await self._load_task(task_id)
        reopened = await self.tasks.transition(task, TaskStatus.PENDING, {"reason": reason})
        if reopened is None:
            raise IllegalTransitionError(
                "task", (await self._load_task(task_id)).status.value,
                TaskStatus.PENDING.value,
            )
        for step in await self.repository.get_steps(task_id):
            if step.status == StepStatus.ERROR:
                await self.steps.transition(
                    step,
                    StepStatus.PENDING,
                    {"reason": reason, "previous_attempts": step.attempts},
                    changes={"attempts": 0, "backoff_until": None},
                )
        logger.info(f"Task {task_id} re-opened for retry")
        return reopened
