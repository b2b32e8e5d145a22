"""Task submission for taskwright."""

from __future__ import annotations

import logging
import uuid
from typing import Any, Dict, Iterable, List, Optional

from .constants import DEFAULT_NAMESPACE
from .errors import InvalidSubmissionError
from .events.base import BaseEventSink
from .identity import HashIdentityStrategy, IdentityStrategy
from .persistence.models import TaskRecord, WorkflowStep
from .persistence.repository import TaskRepository
from .registry import REGISTRY, RegisteredTask, TemplateRegistry
from .state_machine import TaskStateMachine

logger = logging.getLogger(__name__)


def materialize_steps(entry: RegisteredTask, task_id: str) -> List[WorkflowStep]:
    """Create one ``WorkflowStep`` per step template of ``entry``.

    Dependency names are replaced by the ids of the sibling steps created
    here, so every edge stays within the task.
    """
    ids = {t.name: str(uuid.uuid4()) for t in entry.template.step_templates}
    return [
        WorkflowStep(
            step_id=ids[t.name],
            task_id=task_id,
            name=t.name,
            position=position,
            dependencies=[ids[name] for name in t.all_dependencies],
            retry_limit=t.default_retry_limit,
            retryable=t.default_retryable,
            skippable=t.skippable,
        )
        for position, t in enumerate(entry.template.step_templates)
    ]


class TaskDispatcher:
    """Service responsible for submitting new tasks."""

    def __init__(
        self,
        repository: TaskRepository,
        registry: Optional[TemplateRegistry] = None,
        sink: Optional[BaseEventSink] = None,
        identity_strategy: Optional[IdentityStrategy] = None,
    ) -> None:
        self.repository = repository
        self.registry = registry if registry is not None else REGISTRY
        self.identity_strategy = identity_strategy or HashIdentityStrategy()
        self._machine = TaskStateMachine(repository, sink)

    async def submit(
        self,
        name: str,
        namespace: str = DEFAULT_NAMESPACE,
        version: Optional[str] = None,
        context: Optional[Dict[str, Any]] = None,
        bypass_steps: Optional[Iterable[str]] = None,
    ) -> TaskRecord:
        """Create a task of a registered type, or return the live duplicate.

        Args:
            name: Registered task template name.
            namespace: Template namespace.
            version: Template version; the latest registration when omitted.
            context: Arbitrary JSON-serializable task input.
            bypass_steps: Names of skippable steps to skip without running.

        Returns:
            The new task, or the existing non-terminal task with the same
            identity.
        """
        entry = self.registry.get(name, namespace, version)
        template = entry.template
        context = dict(context or {})
        bypass = list(dict.fromkeys(bypass_steps or []))

        by_name = {t.name: t for t in template.step_templates}
        unknown = [s for s in bypass if s not in by_name]
        if unknown:
            raise InvalidSubmissionError(f"Unknown bypass steps: {', '.join(unknown)}")
        not_skippable = [s for s in bypass if not by_name[s].skippable]
        if not_skippable:
            raise InvalidSubmissionError(
                f"Steps are not skippable: {', '.join(not_skippable)}"
            )

        task_id = str(uuid.uuid4())
        task = TaskRecord(
            task_id=task_id,
            name=template.name,
            namespace=template.namespace,
            version=template.version,
            context=context,
            identity_hash=self.identity_strategy.identity(
                template.name, template.namespace, context
            ),
            bypass_steps=bypass,
        )
        steps = materialize_steps(entry, task_id)
        stored, created = await self.repository.create_task(task, steps)
        if not created:
            logger.info(
                f"Duplicate submission of {template.namespace}/{template.name}; "
                f"returning task_id={stored.task_id}"
            )
            return stored

        logger.info(
            f"Submitted task_id={task_id} {template.namespace}/{template.name}"
            f"@{template.version} with {len(steps)} steps"
        )
        await self._machine.announce(stored, steps)
        return stored
