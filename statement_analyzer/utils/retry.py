from __future__ import annotations

import logging
import random
import time
from typing import Callable, TypeVar

from tenacity import RetryCallState, Retrying, retry_if_exception, stop_after_attempt
from tenacity.wait import wait_base

from statement_analyzer.utils.error_taxonomy import is_rate_limited_exception

T = TypeVar("T")

logger = logging.getLogger(__name__)

OnRetry = Callable[[int, float, BaseException], None]


class ExponentialJitterWait(wait_base):
    """``base * 2**attempt_index`` plus up to ``jitter_ratio`` of that delay.

    When ``rate_limit_floor_seconds`` is set and the failure is rate limiting,
    the delay is raised to at least ``floor * (attempt_index + 1)``.
    """

    def __init__(
        self,
        *,
        base_delay_seconds: float,
        jitter_ratio: float,
        random_fn: Callable[[], float] = random.random,
        rate_limit_floor_seconds: float | None = None,
        is_rate_limited: Callable[[BaseException], bool] = is_rate_limited_exception,
    ) -> None:
        self.base_delay_seconds = base_delay_seconds
        self.jitter_ratio = jitter_ratio
        self.random_fn = random_fn
        self.rate_limit_floor_seconds = rate_limit_floor_seconds
        self.is_rate_limited = is_rate_limited

    def __call__(self, retry_state: RetryCallState) -> float:
        attempt_index = retry_state.attempt_number - 1
        delay = self.base_delay_seconds * (2**attempt_index)

        if self.rate_limit_floor_seconds is not None and retry_state.outcome is not None:
            error = retry_state.outcome.exception()
            if error is not None and self.is_rate_limited(error):
                delay = max(delay, self.rate_limit_floor_seconds * (attempt_index + 1))

        jitter = self.random_fn() * self.jitter_ratio * delay
        return delay + jitter


def run_with_retry(
    *,
    operation: Callable[[], T],
    max_attempts: int = 3,
    base_delay_seconds: float = 1.0,
    jitter_ratio: float = 0.1,
    should_retry: Callable[[BaseException], bool] | None = None,
    sleep_fn: Callable[[float], None] = time.sleep,
    random_fn: Callable[[], float] = random.random,
    on_retry: OnRetry | None = None,
) -> T:
    return _run(
        operation=operation,
        max_attempts=max_attempts,
        wait=ExponentialJitterWait(
            base_delay_seconds=base_delay_seconds,
            jitter_ratio=jitter_ratio,
            random_fn=random_fn,
        ),
        should_retry=should_retry,
        sleep_fn=sleep_fn,
        on_retry=on_retry,
        label="Operation",
    )


def run_with_rate_limit_retry(
    *,
    operation: Callable[[], T],
    max_attempts: int = 5,
    base_delay_seconds: float = 2.0,
    jitter_ratio: float = 0.2,
    rate_limit_floor_seconds: float = 5.0,
    is_rate_limited: Callable[[BaseException], bool] = is_rate_limited_exception,
    should_retry: Callable[[BaseException], bool] | None = None,
    sleep_fn: Callable[[float], None] = time.sleep,
    random_fn: Callable[[], float] = random.random,
    on_retry: OnRetry | None = None,
) -> T:
    return _run(
        operation=operation,
        max_attempts=max_attempts,
        wait=ExponentialJitterWait(
            base_delay_seconds=base_delay_seconds,
            jitter_ratio=jitter_ratio,
            random_fn=random_fn,
            rate_limit_floor_seconds=rate_limit_floor_seconds,
            is_rate_limited=is_rate_limited,
        ),
        should_retry=should_retry,
        sleep_fn=sleep_fn,
        on_retry=on_retry,
        label="Rate-limited operation",
    )


def _run(
    *,
    operation: Callable[[], T],
    max_attempts: int,
    wait: wait_base,
    should_retry: Callable[[BaseException], bool] | None,
    sleep_fn: Callable[[float], None],
    on_retry: OnRetry | None,
    label: str,
) -> T:
    if max_attempts < 1:
        raise ValueError(f"max_attempts must be >= 1, got {max_attempts}")

    predicate = should_retry or _is_exception

    def _before_sleep(retry_state: RetryCallState) -> None:
        error = retry_state.outcome.exception() if retry_state.outcome else None
        delay = retry_state.next_action.sleep if retry_state.next_action else 0.0
        logger.warning(
            "%s failed (attempt %d/%d), retrying in %.0fms: %s",
            label,
            retry_state.attempt_number,
            max_attempts,
            delay * 1000,
            error,
        )
        if on_retry is not None and error is not None:
            on_retry(retry_state.attempt_number, delay, error)

    retrying = Retrying(
        stop=stop_after_attempt(max_attempts),
        wait=wait,
        retry=retry_if_exception(lambda error: _is_exception(error) and predicate(error)),
        sleep=sleep_fn,
        before_sleep=_before_sleep,
        reraise=True,
    )

    try:
        return retrying(operation)
    except Exception as error:
        attempts = retrying.statistics.get("attempt_number", 1)
        logger.error("%s failed after %d attempt(s): %s", label, attempts, error)
        raise


def _is_exception(error: BaseException) -> bool:
    return isinstance(error, Exception)
