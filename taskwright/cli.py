"""Command line interface for inspecting and operating taskwright tasks."""

from __future__ import annotations

import asyncio
import json
import logging
from pathlib import Path
from typing import Any, Awaitable, Callable, List, Optional

import typer

from taskwright import TaskStatus, get_event_sink, get_repository, load_config
from taskwright.analysis import TemplateGraphAnalyzer
from taskwright.constants import EntityType
from taskwright.coordinator import Coordinator
from taskwright.dispatch import TaskDispatcher
from taskwright.errors import TaskwrightError
from taskwright.identity import get_identity_strategy
from taskwright.registry import REGISTRY, load_task_template, resolve_handler

app = typer.Typer(help="CLI for taskwright workflows")

# Command groups
task_app = typer.Typer(help="Commands for inspecting and operating tasks")
step_app = typer.Typer(help="Commands for operating individual steps")
template_app = typer.Typer(help="Commands for task templates")

app.add_typer(task_app, name="task")
app.add_typer(step_app, name="step")
app.add_typer(template_app, name="template")


@app.callback()
def main(
    log_level: Optional[str] = typer.Option(None, help="Override the configured log level"),
) -> None:
    """Taskwright CLI entry point."""
    config = load_config()
    logging.basicConfig(
        level=(log_level or config.log_level).upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


async def _operate(action: Callable[[Coordinator], Awaitable[Any]]) -> Any:
    """Run one operator action against a fresh coordinator, then close its sink."""
    config = load_config()
    sink = get_event_sink(config=config)
    try:
        return await action(Coordinator(repository=get_repository(), sink=sink, config=config))
    finally:
        await sink.disconnect()


def _fail(message: str) -> None:
    typer.secho(message, fg=typer.colors.RED)
    raise typer.Exit(code=1)


@task_app.command("list")
def task_list(
    status: Optional[TaskStatus] = typer.Option(None, help="Only show tasks in this status"),
) -> None:
    """
    List tasks with their current status.

    Example:
        taskwright task list
        taskwright task list --status error
    """
    repo = get_repository()
    tasks = asyncio.run(repo.list_tasks(status))
    if not tasks:
        typer.echo("No tasks found")
        return
    for task in tasks:
        typer.echo(f"{task.task_id}\t{task.namespace}/{task.name}\t{task.status.value}")


@task_app.command("show")
def task_show(task_id: str) -> None:
    """
    Show a task, its steps and the task's transition history.

    Args:
        task_id: Task ID to inspect (get from 'task list')
    """
    repo = get_repository()

    async def _load():
        task = await repo.get_task(task_id)
        if task is None:
            return None, [], []
        steps = await repo.get_steps(task_id)
        transitions = await repo.get_transitions(EntityType.TASK, task_id)
        return task, steps, transitions

    task, steps, transitions = asyncio.run(_load())
    if task is None:
        _fail("Task not found")

    typer.echo(f"Task: {task.task_id}")
    typer.echo(f"Type: {task.namespace}/{task.name}@{task.version}")
    typer.echo(f"Status: {task.status.value}")
    typer.echo(f"Context: {json.dumps(task.context, default=str)}")
    if steps:
        typer.echo("Steps:")
        for step in steps:
            typer.echo(
                f"  {step.name}\t{step.status.value}\tattempts={step.attempts}/{step.retry_limit}"
                f"\t{step.step_id}"
            )
    if transitions:
        typer.echo("Transitions:")
        for t in transitions:
            typer.echo(
                f"  {t.sort_key}\t{t.from_state or '-'} -> {t.to_state}\t"
                f"{t.created_at.isoformat()}\t{json.dumps(t.metadata, default=str)}"
            )


@task_app.command("submit")
def task_submit(
    template_file: Path,
    context: str = typer.Option("{}", help="Task context as a JSON object"),
    bypass: List[str] = typer.Option([], help="Skippable step to bypass (repeatable)"),
    run: bool = typer.Option(True, help="Drive the task to completion in this process"),
) -> None:
    """
    Register a YAML task template, submit a task of that type and run it.

    Example:
        taskwright task submit order.yaml --context '{"order_id": 42}'
    """
    config = load_config()
    try:
        template = load_task_template(str(template_file))
        REGISTRY.register(template, replace=True)
        payload = json.loads(context)
    except (TaskwrightError, json.JSONDecodeError) as e:
        _fail(str(e))

    repo = get_repository()
    sink = get_event_sink(config=config)
    dispatcher = TaskDispatcher(
        repo, sink=sink, identity_strategy=get_identity_strategy(config.identity_strategy)
    )

    async def _submit_and_run():
        try:
            task = await dispatcher.submit(
                template.name,
                namespace=template.namespace,
                version=template.version,
                context=payload,
                bypass_steps=bypass,
            )
            if run:
                coordinator = Coordinator(repository=repo, sink=sink, config=config)
                task = await coordinator.run(task.task_id)
            return task
        finally:
            await sink.disconnect()

    try:
        task = asyncio.run(_submit_and_run())
    except TaskwrightError as e:
        _fail(str(e))
    typer.echo(f"{task.task_id}\t{task.status.value}")


@task_app.command("cancel")
def task_cancel(task_id: str, reason: str = typer.Option("requested")) -> None:
    """Cancel a pending or running task."""
    try:
        task = asyncio.run(_operate(lambda c: c.cancel(task_id, reason=reason)))
    except TaskwrightError as e:
        _fail(str(e))
    typer.echo(f"Cancelled task {task.task_id}")


@task_app.command("resolve")
def task_resolve(task_id: str, reason: str = typer.Option("operator")) -> None:
    """Mark a failed task as manually resolved."""
    try:
        task = asyncio.run(_operate(lambda c: c.resolve_task(task_id, reason=reason)))
    except TaskwrightError as e:
        _fail(str(e))
    typer.echo(f"Resolved task {task.task_id}")


@task_app.command("retry")
def task_retry(task_id: str, reason: str = typer.Option("operator")) -> None:
    """
    Re-open a failed task; its failed steps get a fresh attempt budget.

    The task resumes the next time a coordinator runs it.
    """
    try:
        task = asyncio.run(_operate(lambda c: c.retry_task(task_id, reason=reason)))
    except TaskwrightError as e:
        _fail(str(e))
    typer.echo(f"Task {task.task_id} re-opened ({task.status.value})")


@step_app.command("resolve")
def step_resolve(step_id: str, reason: str = typer.Option("operator")) -> None:
    """Mark a failed or pending step as manually resolved."""
    try:
        step = asyncio.run(_operate(lambda c: c.resolve_step(step_id, reason=reason)))
    except TaskwrightError as e:
        _fail(str(e))
    typer.echo(f"Resolved step {step.name} ({step.step_id})")


@template_app.command("check")
def template_check(
    template_file: Path,
    resolve_handlers: bool = typer.Option(
        False, help="Also import every step handler"
    ),
) -> None:
    """
    Validate a YAML task template and print its dependency structure.

    Example:
        taskwright template check order.yaml
    """
    try:
        template = load_task_template(str(template_file))
        analysis = TemplateGraphAnalyzer(template.step_templates).validate()
        if resolve_handlers:
            for step_template in template.step_templates:
                resolve_handler(step_template)
    except TaskwrightError as e:
        _fail(f"Invalid template: {e}")

    typer.echo(f"Template: {template.namespace}/{template.name}@{template.version}")
    typer.echo(f"Topology: {' -> '.join(analysis.topology)}")
    typer.echo(f"Roots: {', '.join(analysis.roots)}")
    typer.echo(f"Leaves: {', '.join(analysis.leaves)}")
    for name in analysis.topology:
        typer.echo(f"  level {analysis.levels[name]}\t{name}")
    typer.echo(
        f"Steps: {analysis.summary.total_steps}, dependencies: "
        f"{analysis.summary.total_dependencies}, max depth: {analysis.summary.max_depth}, "
        f"parallel branches: {analysis.summary.parallel_branches}"
    )


if __name__ == "__main__":  # pragma: no cover - manual invocation
    app()
