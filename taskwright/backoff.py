"""Retry classification and exponential backoff for failed steps."""

from __future__ import annotations

import logging
import random
from datetime import datetime, timedelta
from typing import Optional

from pydantic import BaseModel

from .config import BackoffConfig
from .contracts import ErrorClassification, StepFailure
from .persistence.models import WorkflowStep, utcnow

logger = logging.getLogger(__name__)


def compute_backoff(
    attempt: int,
    base: float = 1.0,
    multiplier: float = 2.0,
    max_delay: float = 300.0,
    jitter: float = 0.1,
    rng: Optional[random.Random] = None,
) -> float:
    """Compute exponential backoff with jitter.

    ``attempt`` is the number of attempts already made before the failing
    one, so the first retry waits roughly ``base`` seconds. Jitter spreads the
    delay by up to ``jitter`` of its value in either direction and the result
    never exceeds ``max_delay``.
    """
    delay = min(base * multiplier ** max(attempt, 0), max_delay)
    if jitter:
        spread = delay * jitter
        delay += (rng or random).uniform(-spread, spread)
    return max(0.0, min(delay, max_delay))


class RetryDecision(BaseModel):
    """Outcome of applying the retry policy to one failed attempt."""

    classification: ErrorClassification
    attempts: int
    retry: bool
    exhausted: bool = False
    delay_seconds: Optional[float] = None
    backoff_until: Optional[datetime] = None
    backoff_type: Optional[str] = None
    error: str = ""

    def metadata(self) -> dict:
        data = {
            "classification": self.classification.value,
            "attempts": self.attempts,
            "retry_exhausted": self.exhausted,
            "error": self.error,
        }
        if self.retry:
            data.update(
                backoff_seconds=self.delay_seconds,
                backoff_type=self.backoff_type,
                backoff_until=self.backoff_until.isoformat() if self.backoff_until else None,
            )
        return data


class RetryPolicy:
    """Decide whether a failed step is retried, and when."""

    def __init__(
        self, config: Optional[BackoffConfig] = None, rng: Optional[random.Random] = None
    ) -> None:
        self.config = config or BackoffConfig()
        self._rng = rng

    @staticmethod
    def classify(error: BaseException) -> tuple[ErrorClassification, Optional[float]]:
        """Return the classification and any server-requested delay.

        Unclassified exceptions are retryable.
        """
        if isinstance(error, StepFailure):
            return error.classification, error.retry_after
        return ErrorClassification.RETRYABLE, None

    def decide(
        self,
        step: WorkflowStep,
        error: BaseException,
        now: Optional[datetime] = None,
    ) -> RetryDecision:
        classification, retry_after = self.classify(error)
        attempts = step.attempts + 1
        message = f"{type(error).__name__}: {error}"

        if classification == ErrorClassification.PERMANENT or not step.retryable:
            return RetryDecision(
                classification=ErrorClassification.PERMANENT,
                attempts=attempts,
                retry=False,
                error=message,
            )

        if attempts >= step.retry_limit:
            logger.info(
                f"Step {step.name} ({step.step_id}) exhausted {attempts}/{step.retry_limit} attempts"
            )
            return RetryDecision(
                classification=classification,
                attempts=attempts,
                retry=False,
                exhausted=True,
                error=message,
            )

        if retry_after is not None:
            delay = max(0.0, min(float(retry_after), self.config.max_delay_seconds))
            backoff_type = "server_requested"
        else:
            delay = compute_backoff(
                step.attempts,
                base=self.config.base_delay_seconds,
                multiplier=self.config.multiplier,
                max_delay=self.config.max_delay_seconds,
                jitter=self.config.jitter_ratio,
                rng=self._rng,
            )
            backoff_type = "exponential"

        now = now or utcnow()
        return RetryDecision(
            classification=classification,
            attempts=attempts,
            retry=True,
            delay_seconds=delay,
            backoff_until=now + timedelta(seconds=delay),
            backoff_type=backoff_type,
            error=message,
        )
