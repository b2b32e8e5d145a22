"""Data models for persisted task, step and transition state."""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Optional

from pydantic import BaseModel, Field

from ..constants import DEFAULT_NAMESPACE, DEFAULT_RETRY_LIMIT, DEFAULT_VERSION, StepStatus, TaskStatus


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class TaskRecord(BaseModel):
    """One instantiation of a registered task template."""

    task_id: str
    name: str
    namespace: str = DEFAULT_NAMESPACE
    version: str = DEFAULT_VERSION
    context: dict[str, Any] = Field(default_factory=dict)
    status: TaskStatus = TaskStatus.PENDING
    identity_hash: str
    bypass_steps: list[str] = Field(default_factory=list)
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)


class WorkflowStep(BaseModel):
    """One node of a task's realized DAG.

    ``dependencies`` holds the ids of the steps this one waits on, all within
    the same task.
    """

    step_id: str
    task_id: str
    name: str
    position: int
    dependencies: list[str] = Field(default_factory=list)
    status: StepStatus = StepStatus.PENDING
    attempts: int = 0
    retry_limit: int = DEFAULT_RETRY_LIMIT
    retryable: bool = True
    skippable: bool = False
    inputs: Optional[dict[str, Any]] = None
    results: Optional[dict[str, Any]] = None
    processed: bool = False
    processed_at: Optional[datetime] = None
    last_attempted_at: Optional[datetime] = None
    backoff_until: Optional[datetime] = None
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)


class TransitionRecord(BaseModel):
    """Append-only audit entry; the ``most_recent`` row is the live state."""

    id: Optional[int] = None
    entity_type: str
    entity_id: str
    task_id: str
    from_state: Optional[str] = None
    to_state: str
    metadata: dict[str, Any] = Field(default_factory=dict)
    sort_key: int = 0
    most_recent: bool = True
    created_at: datetime = Field(default_factory=utcnow)


# Columns a transition may update on the step row alongside the status change.
STEP_MUTABLE_FIELDS = frozenset(
    {
        "attempts",
        "retryable",
        "inputs",
        "results",
        "processed",
        "processed_at",
        "last_attempted_at",
        "backoff_until",
    }
)
