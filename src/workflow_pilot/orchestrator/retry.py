"""Retry loop driven by the failure classifier."""

from __future__ import annotations

import logging
import random
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import TypeVar

from workflow_pilot.orchestrator.errors import StepFailure
from workflow_pilot.orchestrator.failure_classifier import (
    DEFAULT_BASE_SECONDS,
    DEFAULT_MAX_ATTEMPTS,
    DEFAULT_MAX_SECONDS,
    DEFAULT_MULTIPLIER,
    backoff_schedule,
    classify,
)
from workflow_pilot.orchestrator.models import Disposition

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass(slots=True)
class RetryPolicy:
    """Exponential backoff with a fixed attempt budget."""

    max_attempts: int = DEFAULT_MAX_ATTEMPTS
    base_seconds: float = DEFAULT_BASE_SECONDS
    multiplier: float = DEFAULT_MULTIPLIER
    max_seconds: float = DEFAULT_MAX_SECONDS
    jitter: bool = False
    rng: random.Random = field(default_factory=random.Random)

    def delay_for(self, attempt: int) -> float:
        return backoff_schedule(
            attempt,
            base_seconds=self.base_seconds,
            multiplier=self.multiplier,
            max_seconds=self.max_seconds,
            jitter=self.jitter,
            rng=self.rng,
        )

    def schedule(self) -> list[float]:
        """Delays slept between attempts when every attempt fails transiently."""

        return [self.delay_for(attempt) for attempt in range(1, self.max_attempts)]


def call_with_retry(
    operation: Callable[[int], T],
    *,
    policy: RetryPolicy,
    sleep: Callable[[float], None] = time.sleep,
    should_stop: Callable[[], bool] | None = None,
    description: str = "operation",
) -> T:
    """Run `operation(attempt)` until it succeeds or the classifier gives up.

    Raises StepFailure carrying the final classification; the original error is chained.
    A stop request is honored between attempts, never mid-call.
    """

    attempt = 1
    while True:
        try:
            return operation(attempt)
        except Exception as error:  # noqa: BLE001
            classification = classify(error, attempt=attempt, max_attempts=policy.max_attempts)
            stop_requested = should_stop is not None and should_stop()
            if classification.disposition is not Disposition.RETRYABLE or stop_requested:
                raise StepFailure(
                    error,
                    classification=classification,
                    attempts=attempt,
                ) from error
            delay = policy.delay_for(attempt)
            logger.warning(
                "%s failed on attempt %d/%d (%s); retrying in %.2fs",
                description,
                attempt,
                policy.max_attempts,
                classification.matched_rule,
                delay,
            )
            sleep(delay)
            attempt += 1
