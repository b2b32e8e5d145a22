"""Step handlers and template builders shared by the test suite."""

import asyncio
from typing import Any, Dict, Iterable, List, Optional, Tuple

from taskwright.contracts import SkipStep, StepFailure, StepHandler, StepTemplate, TaskTemplate


class EchoHandler(StepHandler):
    """Returns its step name, the inputs it received and its config."""

    async def handle(self, task, step, dependency_results):
        return {"step": step.name, "inputs": step.inputs, **self.config}


class ExecutionLog:
    """Records when each step starts and ends, and the peak overlap."""

    def __init__(self) -> None:
        self.entries: List[Tuple[str, str]] = []
        self.active = 0
        self.peak = 0
        self.seen_dependencies: Dict[str, Dict[str, Any]] = {}

    def handler(self, delay: float = 0.0, result: Optional[Dict[str, Any]] = None) -> StepHandler:
        log = self

        class LoggedHandler(StepHandler):
            async def handle(self, task, step, dependency_results):
                log.entries.append((step.name, "start"))
                log.seen_dependencies[step.name] = dict(dependency_results)
                log.active += 1
                log.peak = max(log.peak, log.active)
                try:
                    await asyncio.sleep(delay)
                finally:
                    log.active -= 1
                log.entries.append((step.name, "end"))
                return result if result is not None else {"step": step.name}

        return LoggedHandler()

    def index(self, name: str, event: str) -> int:
        return self.entries.index((name, event))

    def started(self) -> List[str]:
        return [name for name, event in self.entries if event == "start"]


class FlakyHandler(StepHandler):
    """Fails ``failures`` times with ``error`` and then succeeds."""

    def __init__(self, failures: int, error: Optional[BaseException] = None) -> None:
        super().__init__()
        self.failures = failures
        self.error = error or ConnectionError("connection reset")
        self.calls = 0

    async def handle(self, task, step, dependency_results):
        self.calls += 1
        if self.calls <= self.failures:
            raise self.error
        return {"calls": self.calls}


class BlockingHandler(StepHandler):
    """Waits until released; signals once it has started."""

    def __init__(self) -> None:
        super().__init__()
        self.started = asyncio.Event()
        self.release = asyncio.Event()
        self.calls = 0

    async def handle(self, task, step, dependency_results):
        self.calls += 1
        self.started.set()
        await self.release.wait()
        return {"released": True}


class SkippingHandler(StepHandler):
    async def handle(self, task, step, dependency_results):
        return SkipStep(reason="nothing to do")


class PermanentFailureHandler(StepHandler):
    def __init__(self) -> None:
        super().__init__()
        self.calls = 0

    async def handle(self, task, step, dependency_results):
        self.calls += 1
        raise StepFailure.permanent("card declined", code="declined")


def double_value(task, step, dependency_results):
    """Synchronous handler used through a ``module:attr`` reference."""
    return {"value": task.context.get("value", 0) * 2}


async def add_one(task, step, dependency_results):
    previous = step.inputs["double"]["value"]
    return {"value": previous + 1}


def build_template(
    name: str,
    steps: Iterable[Tuple[str, List[str], Any]],
    namespace: str = "default",
    version: str = "0.1.0",
    concurrent: bool = True,
    **step_options: Dict[str, Any],
) -> TaskTemplate:
    """Build a template from ``(name, dependencies, handler)`` triples.

    ``step_options`` maps a step name to extra ``StepTemplate`` fields.
    """
    return TaskTemplate(
        name=name,
        namespace=namespace,
        version=version,
        concurrent=concurrent,
        step_templates=[
            StepTemplate(
                name=step_name,
                depends_on_steps=list(deps),
                handler=handler,
                **step_options.get(step_name, {}),
            )
            for step_name, deps, handler in steps
        ],
    )
