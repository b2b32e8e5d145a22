"""Bounded-concurrency execution of ready steps."""

from __future__ import annotations

import asyncio
import logging
from contextlib import AbstractAsyncContextManager
from typing import Awaitable, Callable, List, Optional, Sequence, Tuple

from .constants import DEFAULT_MAX_CONCURRENT_STEPS
from .contracts import OutcomeKind, StepOutcome
from .persistence.models import WorkflowStep

logger = logging.getLogger(__name__)

StepRunner = Callable[[WorkflowStep], Awaitable[StepOutcome]]
StepScope = Callable[[WorkflowStep], AbstractAsyncContextManager]


class ConcurrencyExecutor:
    """Runs a batch of steps with at most ``max_concurrent`` in flight.

    Excess steps wait for a free slot. Every input step yields exactly one
    ``(step, outcome)`` pair, in input order. An exception escaping the runner
    for one step is captured as a ``CRASHED`` outcome and does not affect the
    other steps.

    ``step_scope`` optionally wraps each execution in an async context
    manager, for resources such as a borrowed database connection. It is
    entered after a slot is acquired and exited on every path.
    """

    def __init__(
        self,
        max_concurrent: int = DEFAULT_MAX_CONCURRENT_STEPS,
        step_scope: Optional[StepScope] = None,
    ) -> None:
        if max_concurrent <= 0:
            raise ValueError(f"max_concurrent must be positive (got: {max_concurrent})")
        self.max_concurrent = max_concurrent
        self.step_scope = step_scope
        self.in_flight = 0
        self.peak_in_flight = 0
        self._semaphore = asyncio.Semaphore(max_concurrent)

    async def _run_one(
        self, step: WorkflowStep, runner: StepRunner
    ) -> Tuple[WorkflowStep, StepOutcome]:
        async with self._semaphore:
            self.in_flight += 1
            self.peak_in_flight = max(self.peak_in_flight, self.in_flight)
            try:
                if self.step_scope is not None:
                    async with self.step_scope(step):
                        outcome = await runner(step)
                else:
                    outcome = await runner(step)
            except Exception as exc:
                logger.error(f"Step {step.name} ({step.step_id}) crashed: {exc}")
                outcome = StepOutcome(
                    step_id=step.step_id,
                    kind=OutcomeKind.CRASHED,
                    error=f"{type(exc).__name__}: {exc}",
                    exception=exc,
                )
            finally:
                self.in_flight -= 1
        return step, outcome

    async def run(
        self, steps: Sequence[WorkflowStep], runner: StepRunner
    ) -> List[Tuple[WorkflowStep, StepOutcome]]:
        """Execute ``runner`` for each step and wait for all of them to settle."""
        if not steps:
            return []
        logger.debug(
            f"Dispatching {len(steps)} steps with max_concurrent={self.max_concurrent}"
        )
        return list(await asyncio.gather(*(self._run_one(step, runner) for step in steps)))
