"""Bounded retry executor.

Runs an arbitrary unit of work up to ``max_attempts`` times. Each attempt
runs in a worker thread and is bounded by ``attempt_timeout``; a timeout is
recorded as a failed attempt rather than aborting the pipeline. The attempt
loop and backoff are driven by tenacity. Errors that declare themselves
non-retryable (``retryable = False``) propagate after the first attempt.
"""

from __future__ import annotations

import logging
import time
from collections.abc import Callable
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeoutError
from dataclasses import dataclass, field
from typing import Generic, TypeVar

from tenacity import RetryCallState, RetryError, Retrying, retry_if_exception, stop_after_attempt
from tenacity.wait import wait_base

from sdk_pipeline.errors import StageExhaustedError, StageTimeoutError
from sdk_pipeline.types import AttemptOutcome, AttemptRecord

logger = logging.getLogger(__name__)

T = TypeVar("T")

DEFAULT_BACKOFF_BASE = 1.0
DEFAULT_BACKOFF_MAX = 30.0


@dataclass(frozen=True)
class RetryPolicy:
    """Retry policy of a stage.

    Attributes:
        max_attempts: Maximum number of attempts (>= 1).
        attempt_timeout: Per-attempt timeout in seconds (None = unbounded).
        backoff_base: Delay before the second attempt; doubles afterwards.
        backoff_max: Upper bound of the delay between attempts.
    """

    max_attempts: int = 1
    attempt_timeout: float | None = None
    backoff_base: float = DEFAULT_BACKOFF_BASE
    backoff_max: float = DEFAULT_BACKOFF_MAX

    def __post_init__(self) -> None:
        """Validate the policy after initialization."""
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")
        if self.attempt_timeout is not None and self.attempt_timeout <= 0:
            raise ValueError("attempt_timeout must be positive")

    def delay(self, attempt: int) -> float:
        """Delay to wait after a failed ``attempt`` (1-based)."""
        return min(self.backoff_base * (2 ** (attempt - 1)), self.backoff_max)


@dataclass
class RetryOutcome(Generic[T]):
    """Successful result of a retried stage."""

    value: T
    attempts: list[AttemptRecord] = field(default_factory=list)

    @property
    def attempt_count(self) -> int:
        """Number of attempts made, including the successful one."""
        return len(self.attempts)


def _is_retryable(error: BaseException) -> bool:
    return bool(getattr(error, "retryable", True))


def _run_attempt(
    stage_name: str,
    attempt_fn: Callable[[], T],
    timeout: float | None,
) -> T:
    """Run one attempt, bounded by ``timeout``."""
    if timeout is None:
        return attempt_fn()

    executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix=f"stage-{stage_name}")
    future = executor.submit(attempt_fn)
    try:
        return future.result(timeout=timeout)
    except FutureTimeoutError:
        # The worker cannot be killed; commands enforce their own deadline.
        future.cancel()
        raise StageTimeoutError(stage_name, timeout) from None
    finally:
        executor.shutdown(wait=False, cancel_futures=True)


def run_with_retry(
    stage_name: str,
    attempt_fn: Callable[[], T],
    max_attempts: int = 1,
    attempt_timeout: float | None = None,
    backoff_base: float = DEFAULT_BACKOFF_BASE,
    backoff_max: float = DEFAULT_BACKOFF_MAX,
    sleep: Callable[[float], None] = time.sleep,
) -> RetryOutcome[T]:
    """Run ``attempt_fn`` with bounded attempts and a per-attempt timeout.

    Args:
        stage_name: Name used in logs and errors.
        attempt_fn: Unit of work; raising means the attempt failed.
        max_attempts: Maximum number of attempts.
        attempt_timeout: Per-attempt timeout in seconds (None = unbounded).
        backoff_base: Delay after the first failure; doubles afterwards.
        backoff_max: Upper bound of the delay between attempts.
        sleep: Sleep function (injectable for tests).

    Returns:
        RetryOutcome with the value of the first successful attempt.

    Raises:
        StageExhaustedError: If every attempt failed.
        Exception: Any non-retryable error raised by ``attempt_fn``.
    """
    policy = RetryPolicy(
        max_attempts=max_attempts,
        attempt_timeout=attempt_timeout,
        backoff_base=backoff_base,
        backoff_max=backoff_max,
    )
    return run_with_policy(stage_name, attempt_fn, policy, sleep=sleep)


class _PolicyBackoff(wait_base):
    """Exponential delay of a RetryPolicy, keyed by the failed attempt number."""

    def __init__(self, policy: RetryPolicy) -> None:
        self._policy = policy

    def __call__(self, retry_state: RetryCallState) -> float:
        return self._policy.delay(retry_state.attempt_number)


def run_with_policy(
    stage_name: str,
    attempt_fn: Callable[[], T],
    policy: RetryPolicy,
    sleep: Callable[[float], None] = time.sleep,
    on_attempt: Callable[[AttemptRecord], None] | None = None,
) -> RetryOutcome[T]:
    """Run ``attempt_fn`` under ``policy``. See :func:`run_with_retry`.

    ``on_attempt`` is called with each attempt record as soon as it is known,
    including the record of a non-retryable failure.
    """
    records: list[AttemptRecord] = []

    def _record(
        number: int,
        outcome: AttemptOutcome,
        started: float,
        error: BaseException | None = None,
    ) -> None:
        record = AttemptRecord(
            number=number,
            outcome=outcome,
            duration=time.monotonic() - started,
            error=str(error) if error is not None else None,
        )
        records.append(record)
        if on_attempt is not None:
            on_attempt(record)

    def _sleep(seconds: float) -> None:
        if seconds > 0:
            sleep(seconds)

    def _before_sleep(retry_state: RetryCallState) -> None:
        delay = retry_state.next_action.sleep if retry_state.next_action else 0
        logger.debug("Retrying stage %s in %.1fs", stage_name, delay)

    retrying = Retrying(
        stop=stop_after_attempt(policy.max_attempts),
        wait=_PolicyBackoff(policy),
        retry=retry_if_exception(_is_retryable),
        sleep=_sleep,
        before_sleep=_before_sleep,
    )

    try:
        for attempt in retrying:
            number = attempt.retry_state.attempt_number
            with attempt:
                started = time.monotonic()
                try:
                    value = _run_attempt(stage_name, attempt_fn, policy.attempt_timeout)
                except StageTimeoutError as e:
                    _record(number, AttemptOutcome.TIMEOUT, started, e)
                    logger.warning(
                        "Stage %s attempt %d/%d timed out after %ss",
                        stage_name,
                        number,
                        policy.max_attempts,
                        policy.attempt_timeout,
                    )
                    raise
                except Exception as e:
                    _record(number, AttemptOutcome.FAILED, started, e)
                    if not _is_retryable(e):
                        logger.error(
                            "Stage %s attempt %d failed with non-retryable error: %s",
                            stage_name,
                            number,
                            e,
                        )
                    else:
                        logger.warning(
                            "Stage %s attempt %d/%d failed: %s",
                            stage_name,
                            number,
                            policy.max_attempts,
                            e,
                        )
                    raise

                _record(number, AttemptOutcome.SUCCEEDED, started)
                logger.info(
                    "Stage %s succeeded on attempt %d/%d (%.1fs)",
                    stage_name,
                    number,
                    policy.max_attempts,
                    records[-1].duration,
                )
                return RetryOutcome(value=value, attempts=records)
    except RetryError as e:
        last_error = e.last_attempt.exception()
        logger.error("Stage %s exhausted %d attempt(s)", stage_name, policy.max_attempts)
        raise StageExhaustedError(
            stage_name, policy.max_attempts, last_error, records=records
        ) from last_error

    # Retrying always either yields a result or raises.
    raise AssertionError("unreachable")


__all__ = [
    "RetryOutcome",
    "RetryPolicy",
    "run_with_policy",
    "run_with_retry",
]
