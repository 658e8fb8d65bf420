"""Bounded retry and polling helpers.

``retry_call`` is the one retry loop in the builder: the image cache uses it
for every network operation.  ``poll_until`` is its polling counterpart,
used by the validator to wait for a runtime to report ready.
"""

from __future__ import annotations

import logging
import time
from collections.abc import Callable
from typing import TypeVar

from pydantic import BaseModel, ConfigDict, Field

logger = logging.getLogger(__name__)

T = TypeVar("T")


class RetryExhaustedError(RuntimeError):
    """Raised when every attempt of a retried call has failed.

    ``last_error`` is the exception raised by the final attempt.
    """

    def __init__(self, message: str, attempts: int, last_error: BaseException) -> None:
        super().__init__(message)
        self.attempts = attempts
        self.last_error = last_error


class RetryPolicy(BaseModel):
    """Fixed-count retry policy with an optional multiplicative backoff."""

    model_config = ConfigDict(frozen=True)

    attempts: int = Field(default=3, ge=1)
    delay: float = Field(default=5.0, ge=0.0)
    backoff: float = Field(default=1.0, ge=1.0)

    def delay_for(self, attempt: int) -> float:
        """Delay to wait after the given 1-based *attempt* failed."""
        return self.delay * (self.backoff ** (attempt - 1))


def retry_call(
    fn: Callable[[], T],
    policy: RetryPolicy,
    *,
    retry_on: tuple[type[BaseException], ...] = (Exception,),
    description: str = "operation",
    sleep: Callable[[float], None] = time.sleep,
) -> T:
    """Call *fn* until it succeeds or the policy is exhausted.

    Only exceptions matching *retry_on* are retried; anything else
    propagates immediately.

    Raises
    ------
    RetryExhaustedError
        When every attempt raised a retryable exception.
    """
    last_error: BaseException | None = None
    for attempt in range(1, policy.attempts + 1):
        try:
            return fn()
        except retry_on as exc:
            last_error = exc
            if attempt == policy.attempts:
                break
            wait = policy.delay_for(attempt)
            logger.warning(
                "%s failed (attempt %d/%d): %s; retrying in %.1fs",
                description,
                attempt,
                policy.attempts,
                exc,
                wait,
            )
            sleep(wait)

    assert last_error is not None
    logger.error(
        "%s failed after %d attempts: %s", description, policy.attempts, last_error
    )
    raise RetryExhaustedError(
        f"{description} failed after {policy.attempts} attempts: {last_error}",
        attempts=policy.attempts,
        last_error=last_error,
    )


def poll_until(
    predicate: Callable[[], bool],
    *,
    attempts: int,
    interval: float,
    timeout: float | None = None,
    sleep: Callable[[float], None] = time.sleep,
    clock: Callable[[], float] = time.monotonic,
) -> bool:
    """Evaluate *predicate* until it returns True.

    Stops after *attempts* evaluations or once *timeout* seconds have
    elapsed, whichever comes first.  Returns whether the predicate held.
    """
    deadline = clock() + timeout if timeout is not None else None
    for attempt in range(1, attempts + 1):
        if predicate():
            return True
        if attempt == attempts:
            break
        if deadline is not None and clock() + interval > deadline:
            logger.debug("poll deadline reached after %d attempts", attempt)
            break
        sleep(interval)
    return False
