"""Status values, status groupings and defaults shared across taskwright."""

from __future__ import annotations

from enum import Enum


class TaskStatus(str, Enum):
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    COMPLETE = "complete"
    ERROR = "error"
    CANCELLED = "cancelled"
    RESOLVED_MANUALLY = "resolved_manually"


class StepStatus(str, Enum):
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    COMPLETE = "complete"
    ERROR = "error"
    SKIPPED = "skipped"
    CANCELLED = "cancelled"
    RESOLVED_MANUALLY = "resolved_manually"


class EntityType(str, Enum):
    TASK = "task"
    STEP = "step"


# Terminal states are final; the coordinator loop also stops on ERROR, which an
# operator may retry or resolve.
TERMINAL_TASK_STATUSES = frozenset(
    {TaskStatus.COMPLETE, TaskStatus.CANCELLED, TaskStatus.RESOLVED_MANUALLY}
)
STOPPED_TASK_STATUSES = TERMINAL_TASK_STATUSES | {TaskStatus.ERROR}

# Dependency edges are satisfied by these step states.
SATISFIED_STEP_STATUSES = frozenset(
    {StepStatus.COMPLETE, StepStatus.SKIPPED, StepStatus.RESOLVED_MANUALLY}
)

DEFAULT_NAMESPACE = "default"
DEFAULT_VERSION = "0.1.0"
DEFAULT_RETRY_LIMIT = 3
DEFAULT_MAX_CONCURRENT_STEPS = 3
SORT_KEY_INCREMENT = 10
