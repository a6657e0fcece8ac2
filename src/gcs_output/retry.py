"""
Bounded retry with exponential backoff.

The executor is an explicit loop with an attempt counter. It returns a tagged
``RetryResult`` and never relies on hook side effects for control flow:

    result = attempt_with_retry(op, RetryPolicy(retry_limit=3))
    if result.ok:
        use(result.value)

    value = run_with_retry(op, policy)   # raises RetryExhausted / NonRetryable
"""

from __future__ import annotations

import random
import threading
import time
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Generic, Optional, TypeVar

from google.auth import exceptions as auth_exceptions
from loguru import logger

from .errors import (
    CancellationError,
    ConfigurationError,
    LocalResourceError,
    NonRetryable,
    RetryExhausted,
    is_client_error,
    status_code_of,
)
from .metrics import RETRIES_TOTAL

T = TypeVar("T")

# 4xx answers that the store documents as "try again later"
RETRYABLE_CLIENT_STATUSES = frozenset({408, 429})


class Verdict(str, Enum):
    """Failure classification."""

    RETRYABLE = "retryable"
    FATAL = "fatal"


Classifier = Callable[[BaseException], Verdict]
RetryObserver = Callable[[BaseException, int, int, int], None]


def default_retry_classifier(exc: BaseException) -> Verdict:
    """4xx-class failures are fatal; network errors, 5xx and timeouts are retryable."""
    if isinstance(exc, (ConfigurationError, LocalResourceError, CancellationError)):
        return Verdict.FATAL

    if isinstance(exc, auth_exceptions.RefreshError):
        # invalid_grant, bad key, unknown account: retrying does not help
        return Verdict.RETRYABLE if getattr(exc, "retryable", False) else Verdict.FATAL

    if is_client_error(exc):
        if status_code_of(exc) in RETRYABLE_CLIENT_STATUSES:
            return Verdict.RETRYABLE
        return Verdict.FATAL

    return Verdict.RETRYABLE


@dataclass(frozen=True)
class RetryPolicy:
    """Retry limit and wait bounds.

    ``retry_limit`` counts retries, so at most ``retry_limit + 1`` attempts run.
    """

    retry_limit: int = 10
    initial_wait_ms: int = 500
    max_wait_ms: int = 30_000
    backoff_multiplier: float = 2.0
    jitter: bool = False

    def __post_init__(self) -> None:
        if self.retry_limit < 0:
            raise ValueError("retry_limit must be >= 0")
        if self.initial_wait_ms < 0 or self.max_wait_ms < 0:
            raise ValueError("retry waits must be >= 0")
        if self.backoff_multiplier < 1.0:
            raise ValueError("backoff_multiplier must be >= 1.0")

    @property
    def max_attempts(self) -> int:
        return self.retry_limit + 1

    def next_backoff_ms(self, retry_count: int) -> int:
        """Wait before retry number ``retry_count`` (1-based), capped at ``max_wait_ms``."""
        exp = max(0, retry_count - 1)
        delay = min(self.initial_wait_ms * (self.backoff_multiplier**exp), self.max_wait_ms)
        if self.jitter:
            delay = random.uniform(delay * 0.5, delay)
        return int(max(0, delay))


@dataclass(frozen=True)
class RetryResult(Generic[T]):
    """Tagged outcome of a retried operation."""

    value: Optional[T] = None
    error: Optional[BaseException] = None
    attempts: int = 0

    @property
    def ok(self) -> bool:
        return self.error is None

    def unwrap(self) -> T:
        if self.error is not None:
            raise self.error
        return self.value  # type: ignore[return-value]


def log_retry(label: str) -> RetryObserver:
    """Default observer: warn on every retry, attach the traceback every third one."""

    def _observer(exc: BaseException, retry_count: int, retry_limit: int, wait_ms: int) -> None:
        message = (
            f"{label} failed. Retrying {retry_count}/{retry_limit} after {wait_ms / 1000:.1f} seconds. "
            f"Message: {type(exc).__name__}: {exc}"
        )
        if retry_count % 3 == 0:
            logger.opt(exception=exc).warning(message)
        else:
            logger.warning(message)

    return _observer


def _sleep(wait_ms: int, cancel_event: Optional[threading.Event]) -> None:
    if cancel_event is None:
        time.sleep(wait_ms / 1000.0)
        return
    if cancel_event.wait(wait_ms / 1000.0):
        raise CancellationError("cancelled while waiting to retry")


def attempt_with_retry(
    operation: Callable[[], T],
    policy: RetryPolicy,
    classify: Classifier = default_retry_classifier,
    on_retry: Optional[RetryObserver] = None,
    cancel_event: Optional[threading.Event] = None,
    label: str = "GCS request",
) -> RetryResult[T]:
    """Run ``operation`` up to ``policy.retry_limit + 1`` times.

    Returns a RetryResult whose ``error`` is one of:
        NonRetryable(error)      - classified fatal, no further attempts
        RetryExhausted(error)    - retry budget spent
        CancellationError        - ``cancel_event`` was set
    """
    observer = on_retry or log_retry(label)
    attempts = 0
    last_wait_ms = 0

    while True:
        if cancel_event is not None and cancel_event.is_set():
            return RetryResult(error=CancellationError(f"{label} cancelled"), attempts=attempts)

        attempts += 1
        try:
            return RetryResult(value=operation(), attempts=attempts)
        except CancellationError as cancel:
            return RetryResult(error=cancel, attempts=attempts)
        except Exception as exc:
            if classify(exc) is Verdict.FATAL:
                return RetryResult(error=NonRetryable(exc, attempts), attempts=attempts)
            if attempts > policy.retry_limit:
                return RetryResult(error=RetryExhausted(exc, attempts), attempts=attempts)

            retry_count = attempts
            wait_ms = max(last_wait_ms, policy.next_backoff_ms(retry_count))
            last_wait_ms = wait_ms
            RETRIES_TOTAL.labels(operation=label).inc()

            try:
                observer(exc, retry_count, policy.retry_limit, wait_ms)
            except Exception as hook_exc:
                logger.debug(f"Retry observer error (ignored): {type(hook_exc).__name__}: {hook_exc}")

            try:
                _sleep(wait_ms, cancel_event)
            except CancellationError as cancel:
                return RetryResult(error=cancel, attempts=attempts)


def run_with_retry(
    operation: Callable[[], T],
    policy: RetryPolicy,
    classify: Classifier = default_retry_classifier,
    on_retry: Optional[RetryObserver] = None,
    cancel_event: Optional[threading.Event] = None,
    label: str = "GCS request",
) -> T:
    """Like attempt_with_retry(), but returns the value or raises the tagged error."""
    return attempt_with_retry(
        operation,
        policy,
        classify=classify,
        on_retry=on_retry,
        cancel_event=cancel_event,
        label=label,
    ).unwrap()
