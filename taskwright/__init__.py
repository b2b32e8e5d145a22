"""Taskwright: durable DAG workflow orchestration."""

from .analysis import GraphAnalysis, TemplateGraphAnalyzer, analyze_dependencies
from .backoff import RetryPolicy, compute_backoff
from .config import TaskwrightConfig, load_config
from .constants import StepStatus, TaskStatus
from .contracts import (
    ErrorClassification,
    LifecycleEvent,
    SkipStep,
    StepFailure,
    StepHandler,
    StepTemplate,
    TaskTemplate,
)
from .coordinator import Coordinator
from .dispatch import TaskDispatcher
from .events import get_event_sink
from .executor import ConcurrencyExecutor
from .identity import get_identity_strategy
from .persistence import get_repository
from .registry import REGISTRY, TemplateRegistry, register_task

__version__ = "0.1.0"
__all__ = [
    "ConcurrencyExecutor",
    "Coordinator",
    "ErrorClassification",
    "GraphAnalysis",
    "LifecycleEvent",
    "REGISTRY",
    "RetryPolicy",
    "SkipStep",
    "StepFailure",
    "StepHandler",
    "StepStatus",
    "StepTemplate",
    "TaskDispatcher",
    "TaskStatus",
    "TaskTemplate",
    "TaskwrightConfig",
    "TemplateGraphAnalyzer",
    "TemplateRegistry",
    "analyze_dependencies",
    "compute_backoff",
    "get_event_sink",
    "get_identity_strategy",
    "get_repository",
    "load_config",
    "register_task",
]
