"""Resolve step handlers and load task templates from YAML files."""

from __future__ import annotations

import asyncio
import importlib
import inspect
import logging
import os
from typing import Any, Callable, Dict, Mapping, Optional

import yaml

from ..contracts import StepHandler, StepTemplate, TaskTemplate
from ..errors import ConfigurationError, HandlerNotFoundError

logger = logging.getLogger(__name__)


def import_string(path: str) -> Any:
    """Import ``module:attr`` (or ``module.attr``) and return the attribute."""
    if ":" in path:
        module_name, _, attr = path.partition(":")
    else:
        module_name, _, attr = path.rpartition(".")
    if not module_name or not attr:
        raise HandlerNotFoundError(f"Invalid handler reference '{path}'")
    try:
        module = importlib.import_module(module_name)
    except ImportError as e:
        raise HandlerNotFoundError(f"Cannot import module '{module_name}': {e}") from e
    obj: Any = module
    for part in attr.split("."):
        try:
            obj = getattr(obj, part)
        except AttributeError as e:
            raise HandlerNotFoundError(f"'{module_name}' has no attribute '{attr}'") from e
    return obj


class FunctionStepHandler(StepHandler):
    """Adapts a plain callable to the :class:`StepHandler` interface.

    Coroutine functions are awaited; regular functions run in a worker thread
    so they never block the event loop.
    """

    def __init__(
        self, func: Callable[..., Any], config: Optional[Dict[str, Any]] = None
    ) -> None:
        super().__init__(config)
        self.func = func
        self.__name__ = getattr(func, "__name__", type(func).__name__)

    async def handle(self, task, step, dependency_results: Mapping[str, Any]) -> Any:
        if inspect.iscoroutinefunction(self.func):
            return await self.func(task, step, dependency_results)
        return await asyncio.to_thread(self.func, task, step, dependency_results)


def resolve_handler(template: StepTemplate) -> StepHandler:
    """Turn the ``handler`` declared on ``template`` into a handler instance."""
    handler = template.handler
    if handler is None:
        raise HandlerNotFoundError(f"Step '{template.name}' has no handler")
    if isinstance(handler, str):
        handler = import_string(handler)
    if isinstance(handler, StepHandler):
        return handler
    if inspect.isclass(handler):
        if issubclass(handler, StepHandler):
            return handler(template.handler_config)
        raise HandlerNotFoundError(
            f"Handler class {handler.__name__} for step '{template.name}' is not a StepHandler"
        )
    if callable(handler):
        return FunctionStepHandler(handler, template.handler_config)
    raise HandlerNotFoundError(
        f"Handler for step '{template.name}' is not callable: {handler!r}"
    )


def load_task_template(path: str) -> TaskTemplate:
    """Read a task template definition from a YAML file.

    Handler references are kept as ``module:attr`` strings; they are imported
    when the template is registered.
    """
    if not os.path.exists(path):
        raise ConfigurationError(f"Template file not found: {path}")
    with open(path) as f:
        data = yaml.safe_load(f) or {}
    if not isinstance(data, dict):
        raise ConfigurationError(f"Template file {path} must contain a mapping")
    try:
        template = TaskTemplate.model_validate(data)
    except ValueError as e:
        raise ConfigurationError(f"Invalid template in {path}: {e}") from e
    logger.debug(f"Loaded template {template.namespace}/{template.name} from {path}")
    return template
