"""Core contracts: templates, the step handler interface and lifecycle events."""

from __future__ import annotations

import abc
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import TYPE_CHECKING, Any, Dict, List, Mapping, Optional

from pydantic import BaseModel, ConfigDict, Field

from .constants import DEFAULT_NAMESPACE, DEFAULT_RETRY_LIMIT, DEFAULT_VERSION

if TYPE_CHECKING:
    from .persistence.models import TaskRecord, WorkflowStep


class ErrorClassification(str, Enum):
    RETRYABLE = "retryable"
    PERMANENT = "permanent"


class StepFailure(Exception):
    """Failure raised by a step handler, tagged with its classification.

    Handlers raise this to say whether the failure is worth retrying. Any other
    exception escaping a handler is treated as ``RETRYABLE``.
    """

    def __init__(
        self,
        message: str,
        classification: ErrorClassification = ErrorClassification.RETRYABLE,
        retry_after: Optional[float] = None,
        details: Optional[Dict[str, Any]] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.classification = ErrorClassification(classification)
        self.retry_after = retry_after
        self.details = details or {}

    @classmethod
    def permanent(cls, message: str, **details: Any) -> "StepFailure":
        return cls(message, ErrorClassification.PERMANENT, details=details)

    @classmethod
    def retryable(
        cls, message: str, retry_after: Optional[float] = None, **details: Any
    ) -> "StepFailure":
        return cls(message, ErrorClassification.RETRYABLE, retry_after, details)


class SkipStep(BaseModel):
    """Returned by a handler of a skippable step to mark it skipped."""

    reason: str = "skipped by handler"


class StepTemplate(BaseModel):
    """Type-level declaration of one step and its dependency edges."""

    model_config = ConfigDict(frozen=True, arbitrary_types_allowed=True)

    name: str
    description: Optional[str] = None
    handler: Any = None
    handler_config: Optional[Dict[str, Any]] = None
    depends_on_step: Optional[str] = None
    depends_on_steps: List[str] = Field(default_factory=list)
    default_retryable: bool = True
    default_retry_limit: int = Field(default=DEFAULT_RETRY_LIMIT, ge=0)
    skippable: bool = False

    @property
    def all_dependencies(self) -> List[str]:
        """Single and multiple dependency names, de-duplicated in order."""
        names = [self.depends_on_step, *self.depends_on_steps]
        seen: List[str] = []
        for name in names:
            if name and name not in seen:
                seen.append(name)
        return seen


class TaskTemplate(BaseModel):
    """An ordered set of step templates registered under one task type."""

    model_config = ConfigDict(frozen=True, arbitrary_types_allowed=True)

    name: str
    namespace: str = DEFAULT_NAMESPACE
    version: str = DEFAULT_VERSION
    description: Optional[str] = None
    concurrent: bool = True
    step_templates: List[StepTemplate] = Field(default_factory=list)

    @property
    def key(self) -> tuple[str, str, str]:
        return (self.namespace, self.name, self.version)

    @property
    def step_names(self) -> List[str]:
        return [t.name for t in self.step_templates]


class StepHandler(abc.ABC):
    """Interface implemented by user-defined step handlers.

    Handlers must tolerate re-invocation: a crash between claiming a step and
    persisting its result causes the step to run again.
    """

    def __init__(self, config: Optional[Dict[str, Any]] = None) -> None:
        self.config = config or {}

    @abc.abstractmethod
    async def handle(
        self,
        task: "TaskRecord",
        step: "WorkflowStep",
        dependency_results: Mapping[str, Any],
    ) -> Any:
        """Run the step and return its result payload.

        Args:
            task: Snapshot of the owning task (id, context).
            step: Snapshot of the step, with ``inputs`` holding the results of
                its direct dependencies keyed by step name.
            dependency_results: Read-only mapping of every already finished
                sibling step name to its results.

        Raises:
            StepFailure: To report a classified failure.
        """


class LifecycleEvent(BaseModel):
    """Notification emitted after every task or step transition."""

    event_id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    name: str
    entity_type: str
    entity_id: str
    task_id: str
    from_state: Optional[str] = None
    to_state: str
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    metadata: Dict[str, Any] = Field(default_factory=dict)

    def to_json(self) -> str:
        return self.model_dump_json()

    @classmethod
    def from_json(cls, data: str) -> "LifecycleEvent":
        return cls.model_validate_json(data)


class OutcomeKind(str, Enum):
    COMPLETED = "completed"
    SKIPPED = "skipped"
    FAILED = "failed"
    CONFLICT = "conflict"
    NOT_STARTED = "not_started"
    CRASHED = "crashed"


@dataclass
class StepOutcome:
    """What happened to one dispatched step."""

    step_id: str
    kind: OutcomeKind
    result: Any = None
    classification: Optional[ErrorClassification] = None
    error: Optional[str] = None
    exception: Optional[BaseException] = field(default=None, repr=False)

    @property
    def executed(self) -> bool:
        return self.kind in (OutcomeKind.COMPLETED, OutcomeKind.FAILED, OutcomeKind.SKIPPED)
