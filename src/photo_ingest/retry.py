"""Bounded retry with backoff and per-attempt timeouts for pipeline stages."""

from __future__ import annotations

import time
from collections.abc import Callable
from concurrent.futures import Future, ThreadPoolExecutor, wait
from concurrent.futures import TimeoutError as FutureTimeoutError
from dataclasses import dataclass, field, replace
from typing import TypeVar

from utils.logging import get_logger
from photo_ingest.config import RetryConfig, RetryPresetConfig
from photo_ingest.errors import (
    MalformedInputError,
    NotFoundError,
    RetryExhausted,
    TransientResourceError,
)

LOGGER = get_logger(__name__, extra={"component": "retry"})

T = TypeVar("T")

RetryCondition = Callable[[BaseException], bool]


def retry_unless_deterministic(exc: BaseException) -> bool:
    """Default condition: retry everything except corrupt input and missing objects."""

    return not isinstance(exc, (MalformedInputError, NotFoundError))


def retry_on_resource_errors(exc: BaseException) -> bool:
    """Retry only memory/timeout-like failures."""

    return isinstance(exc, (TransientResourceError, MemoryError, TimeoutError))


@dataclass(frozen=True)
class RetryPolicy:
    """Attempt budget, backoff shape, and timeout for one kind of operation."""

    max_attempts: int = 3
    base_delay: float = 0.5
    backoff: str = "linear"
    timeout: float | None = 10.0
    retry_condition: RetryCondition = field(default=retry_unless_deterministic, compare=False)

    def __post_init__(self) -> None:
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        if self.base_delay < 0:
            raise ValueError("base_delay cannot be negative")
        if self.backoff not in {"linear", "exponential"}:
            raise ValueError(f"unsupported backoff: {self.backoff!r}")

    def delay_for(self, attempt: int) -> float:
        """Return the pause after failed ``attempt`` (1-based); never decreases."""

        if self.backoff == "exponential":
            return self.base_delay * (2 ** (attempt - 1))
        return self.base_delay * attempt

    def with_condition(self, condition: RetryCondition) -> RetryPolicy:
        return replace(self, retry_condition=condition)

    @classmethod
    def from_config(cls, cfg: RetryPresetConfig) -> RetryPolicy:
        return cls(
            max_attempts=cfg.max_attempts,
            base_delay=cfg.base_delay,
            backoff=cfg.backoff,
            timeout=cfg.timeout,
        )


FAST = RetryPolicy(max_attempts=3, base_delay=0.5, backoff="linear", timeout=10.0)
SLOW = RetryPolicy(max_attempts=3, base_delay=1.0, backoff="exponential", timeout=30.0)


class RetryExecutor:
    """Run callables under a :class:`RetryPolicy`.

    Attempts with a timeout run on a short-lived helper thread. When the
    deadline passes the attempt is reported as a :class:`TransientResourceError`
    right away, but the thread cannot be interrupted, so the next attempt only
    starts once the timed-out one has returned. Attempts never overlap.
    """

    def __init__(
        self,
        presets: dict[str, RetryPolicy] | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self._presets = {"fast": FAST, "slow": SLOW}
        if presets:
            self._presets.update(presets)
        self._sleep = sleep

    @classmethod
    def from_config(cls, cfg: RetryConfig, sleep: Callable[[float], None] = time.sleep) -> RetryExecutor:
        return cls(
            presets={"fast": RetryPolicy.from_config(cfg.fast), "slow": RetryPolicy.from_config(cfg.slow)},
            sleep=sleep,
        )

    def preset(self, name: str) -> RetryPolicy:
        try:
            return self._presets[name]
        except KeyError as exc:
            raise ValueError(f"unknown retry preset: {name!r}") from exc

    def run(
        self,
        operation: Callable[[], T],
        policy: RetryPolicy | str = "fast",
        *,
        name: str | None = None,
        retry_condition: RetryCondition | None = None,
    ) -> T:
        """Invoke ``operation`` until it succeeds or the policy gives up.

        Raises:
            RetryExhausted: when attempts run out or ``retry_condition`` rejects
                an error; ``last_error`` carries the final exception.
        """

        resolved = self.preset(policy) if isinstance(policy, str) else policy
        condition = retry_condition or resolved.retry_condition
        op_name = name or getattr(operation, "__name__", "operation")

        last_error: BaseException | None = None
        timed_out: list[Future] = []
        for attempt in range(1, resolved.max_attempts + 1):
            if timed_out:
                LOGGER.warning("retry_waiting_for_timed_out_attempt", extra={"operation": op_name, "attempt": attempt})
                wait(timed_out)
                timed_out.clear()
            try:
                return self._attempt(operation, resolved.timeout, op_name, timed_out)
            except Exception as exc:
                last_error = exc
                if not condition(exc):
                    LOGGER.warning(
                        "retry_not_eligible",
                        extra={"operation": op_name, "attempt": attempt, "error": str(exc)},
                    )
                    raise RetryExhausted(op_name, attempt, exc) from exc

                if attempt >= resolved.max_attempts:
                    break

                delay = resolved.delay_for(attempt)
                LOGGER.warning(
                    "retry_attempt_failed",
                    extra={
                        "operation": op_name,
                        "attempt": attempt,
                        "max_attempts": resolved.max_attempts,
                        "delay": delay,
                        "error": str(exc),
                    },
                )
                if delay > 0:
                    self._sleep(delay)

        assert last_error is not None
        LOGGER.error(
            "retry_exhausted",
            extra={"operation": op_name, "attempts": resolved.max_attempts, "error": str(last_error)},
        )
        raise RetryExhausted(op_name, resolved.max_attempts, last_error) from last_error

    @staticmethod
    def _attempt(
        operation: Callable[[], T],
        timeout: float | None,
        op_name: str,
        timed_out: list[Future],
    ) -> T:
        if timeout is None:
            return operation()

        executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix=f"retry-{op_name}")
        try:
            future = executor.submit(operation)
            try:
                return future.result(timeout=timeout)
            except FutureTimeoutError as exc:
                if not future.cancel():
                    timed_out.append(future)
                raise TransientResourceError(f"{op_name} timed out after {timeout:.1f}s") from exc
        finally:
            executor.shutdown(wait=False)


__all__ = [
    "RetryPolicy",
    "RetryExecutor",
    "RetryCondition",
    "FAST",
    "SLOW",
    "retry_unless_deterministic",
    "retry_on_resource_errors",
]
