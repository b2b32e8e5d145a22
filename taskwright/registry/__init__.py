"""Task template registry.

Templates are validated and their handlers resolved once, when they are
registered. Lookups afterwards are plain dictionary reads.
"""

from __future__ import annotations

import logging
from typing import Dict, List, Optional

from ..analysis import TemplateGraphAnalyzer
from ..constants import DEFAULT_NAMESPACE
from ..contracts import StepHandler, TaskTemplate
from ..errors import HandlerNotFoundError, TemplateNotFoundError, TaskwrightError
from .loader import FunctionStepHandler, import_string, load_task_template, resolve_handler
from .models import RegisteredTask

logger = logging.getLogger(__name__)


class TemplateRegistry:
    """Registered task templates keyed by ``(namespace, name, version)``."""

    def __init__(self) -> None:
        self._entries: Dict[tuple[str, str, str], RegisteredTask] = {}

    def register(self, template: TaskTemplate, replace: bool = False) -> RegisteredTask:
        """Validate ``template`` and make it available for submission.

        Raises:
            GraphValidationError: The step graph has duplicates, unknown
                dependencies or a cycle.
            HandlerNotFoundError: A step handler cannot be resolved.
            TaskwrightError: The key is already registered and ``replace``
                is false.
        """
        if template.key in self._entries and not replace:
            namespace, name, version = template.key
            raise TaskwrightError(
                f"Template {namespace}/{name}@{version} is already registered"
            )
        analysis = TemplateGraphAnalyzer(template.step_templates).validate()
        handlers = {t.name: resolve_handler(t) for t in template.step_templates}
        entry = RegisteredTask(template=template, analysis=analysis, handlers=handlers)
        self._entries[template.key] = entry
        logger.info(
            f"Registered template {template.namespace}/{template.name}@{template.version} "
            f"with {len(handlers)} steps"
        )
        return entry

    def get(
        self, name: str, namespace: str = DEFAULT_NAMESPACE, version: Optional[str] = None
    ) -> RegisteredTask:
        """Look up a template; without ``version`` the newest registration wins."""
        if version is not None:
            entry = self._entries.get((namespace, name, version))
            if entry is None:
                raise TemplateNotFoundError(f"No template {namespace}/{name}@{version}")
            return entry
        candidates = [
            e for (ns, n, _), e in self._entries.items() if ns == namespace and n == name
        ]
        if not candidates:
            raise TemplateNotFoundError(f"No template {namespace}/{name}")
        return sorted(candidates, key=lambda e: e.registered_at)[-1]

    def handler_for(
        self, name: str, namespace: str, version: str, step_name: str
    ) -> StepHandler:
        entry = self.get(name, namespace, version)
        try:
            return entry.handlers[step_name]
        except KeyError:
            raise HandlerNotFoundError(
                f"No handler for step '{step_name}' in {namespace}/{name}@{version}"
            ) from None

    def list_templates(self) -> List[TaskTemplate]:
        return [e.template for e in self._entries.values()]

    def __contains__(self, key: tuple[str, str, str]) -> bool:
        return key in self._entries

    def __len__(self) -> int:
        return len(self._entries)

    def clear(self) -> None:
        self._entries.clear()


# Process-wide registry used by ``register_task`` and the CLI.
REGISTRY = TemplateRegistry()


def register_task(template: TaskTemplate, replace: bool = False) -> RegisteredTask:
    """Add ``template`` to ``REGISTRY``."""
    return REGISTRY.register(template, replace=replace)


__all__ = [
    "FunctionStepHandler",
    "REGISTRY",
    "RegisteredTask",
    "TemplateRegistry",
    "import_string",
    "load_task_template",
    "register_task",
    "resolve_handler",
]
