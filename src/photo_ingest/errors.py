"""Exception taxonomy shared by the queue, the pipeline, and the worker pool."""

from __future__ import annotations


class PipelineError(Exception):
    """Base class for failures raised while processing a task."""

    retryable: bool = True


class TransientResourceError(PipelineError):
    """Memory pressure, timeouts, or incomplete decoder output; worth retrying."""


class MalformedInputError(PipelineError):
    """Corrupt or unsupported media; retrying cannot help."""

    retryable = False


class ExternalServiceError(PipelineError):
    """The metadata tool or the geocoder is unavailable or misbehaving."""


class NotFoundError(PipelineError):
    """A referenced storage object does not exist."""

    retryable = False


class RetryExhausted(PipelineError):
    """Raised by the retry executor once its policy gives up.

    The ``last_error`` attribute holds the final underlying exception, and the
    retryability of the task follows that error rather than this wrapper.
    """

    def __init__(self, operation: str, attempts: int, last_error: BaseException) -> None:
        super().__init__(f"{operation} failed after {attempts} attempt(s): {last_error}")
        self.operation = operation
        self.attempts = attempts
        self.last_error = last_error

    @property
    def retryable(self) -> bool:  # type: ignore[override]
        return is_retryable(self.last_error)


class InvalidPayloadError(ValueError):
    """A task payload or enqueue option failed validation."""


def root_cause(exc: BaseException) -> BaseException:
    """Unwrap nested :class:`RetryExhausted` errors to the underlying failure."""

    current = exc
    while isinstance(current, RetryExhausted):
        current = current.last_error
    return current


def is_retryable(exc: BaseException) -> bool:
    """Return ``False`` for deterministic failures that should skip queue retries."""

    cause = root_cause(exc)
    if isinstance(cause, PipelineError):
        return cause.retryable
    return True


def describe_error(exc: BaseException) -> str:
    """Render an exception as ``ClassName: message`` for the task error column."""

    cause = root_cause(exc)
    message = str(exc) or cause.__class__.__name__
    if cause is exc:
        return f"{exc.__class__.__name__}: {message}"
    return f"{exc.__class__.__name__}({cause.__class__.__name__}): {message}"


__all__ = [
    "PipelineError",
    "TransientResourceError",
    "MalformedInputError",
    "ExternalServiceError",
    "NotFoundError",
    "RetryExhausted",
    "InvalidPayloadError",
    "root_cause",
    "is_retryable",
    "describe_error",
]
