"""
Custom exceptions for the GCS file output.

Provides structured error handling with retry classification and observability.
"""

from __future__ import annotations

from typing import Optional


class GcsOutputError(Exception):
    """Base error for the GCS file output."""

    pass


class ConfigurationError(GcsOutputError):
    """Invalid, missing or conflicting configuration; never retried."""

    pass


class TransientIOError(GcsOutputError):
    """Temporary errors that should be retried with backoff."""

    pass


class ChecksumMismatch(TransientIOError):
    """Local and remote content hashes disagree after an upload."""

    def __init__(self, name: str, local_hash: str, remote_hash: Optional[str], algorithm: str):
        self.name = name
        self.local_hash = local_hash
        self.remote_hash = remote_hash
        self.algorithm = algorithm
        super().__init__(
            f"{algorithm} mismatch for '{name}': local={local_hash} remote={remote_hash}"
        )


class RetryExhausted(GcsOutputError):
    """A retryable failure whose retry budget has been spent."""

    def __init__(self, last_error: BaseException, attempts: int):
        self.last_error = last_error
        self.attempts = attempts
        super().__init__(
            f"Gave up after {attempts} attempt(s): {type(last_error).__name__}: {last_error}"
        )
        self.__cause__ = last_error


class NonRetryable(GcsOutputError):
    """A failure classified as fatal; no further attempts were made."""

    def __init__(self, error: BaseException, attempts: int = 1):
        self.error = error
        self.attempts = attempts
        super().__init__(f"{type(error).__name__}: {error}")
        self.__cause__ = error


class LocalResourceError(GcsOutputError):
    """Local disk or staging failure (space exhaustion, permission)."""

    pass


class CancellationError(GcsOutputError):
    """Cooperative cancellation observed during a retry wait."""

    pass


def status_code_of(exc: BaseException) -> Optional[int]:
    """Best-effort HTTP status of a google-api-core / google-auth / requests error."""
    code = getattr(exc, "code", None)
    if isinstance(code, int):
        return code

    response = getattr(exc, "response", None)
    status = getattr(response, "status_code", None) or getattr(response, "status", None)
    if isinstance(status, int):
        return status
    return None


def is_client_error(exc: BaseException) -> bool:
    """True for 4xx-class responses from the store or the token endpoint."""
    code = status_code_of(exc)
    return code is not None and code // 100 == 4


def root_cause(exc: BaseException) -> BaseException:
    """Unwrap RetryExhausted / NonRetryable to the triggering error."""
    while isinstance(exc, (RetryExhausted, NonRetryable)) and exc.__cause__ is not None:
        exc = exc.__cause__
    return exc
