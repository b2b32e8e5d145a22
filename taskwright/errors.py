"""Exception taxonomy for taskwright.

Step failures raised by handlers are not part of this hierarchy; they use
:class:`taskwright.contracts.StepFailure`, which carries a classification.
"""

from __future__ import annotations

from typing import Iterable, Optional


class TaskwrightError(Exception):
    """Base class for orchestrator errors."""


class ConfigurationError(TaskwrightError):
    pass


class GraphValidationError(TaskwrightError):
    """Raised when a task template's step graph cannot be used."""

    def __init__(
        self,
        message: str,
        cycles: Optional[Iterable[list[str]]] = None,
        missing: Optional[Iterable[str]] = None,
    ) -> None:
        super().__init__(message)
        self.cycles = [list(c) for c in cycles or []]
        self.missing = sorted(set(missing or []))


class TemplateNotFoundError(TaskwrightError, LookupError):
    pass


class HandlerNotFoundError(TaskwrightError, LookupError):
    pass


class TaskNotFoundError(TaskwrightError, LookupError):
    pass


class StepNotFoundError(TaskwrightError, LookupError):
    pass


class IllegalTransitionError(TaskwrightError, ValueError):
    """The requested state change is not in the transition table."""

    def __init__(self, entity: str, from_state: str, to_state: str) -> None:
        super().__init__(f"{entity}: illegal transition {from_state} -> {to_state}")
        self.from_state = from_state
        self.to_state = to_state


class GuardFailedError(TaskwrightError):
    """The transition is legal but its guard condition does not hold."""

    def __init__(self, entity: str, to_state: str, reason: str) -> None:
        super().__init__(f"{entity}: cannot transition to {to_state}: {reason}")
        self.to_state = to_state
        self.reason = reason


class InvalidSubmissionError(TaskwrightError, ValueError):
    pass
