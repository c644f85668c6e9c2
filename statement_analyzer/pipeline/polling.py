from __future__ import annotations

import time
from typing import Callable

from statement_analyzer.storage.models import AnalysisJob


def poll_until_terminal(
    fetch_status: Callable[[], AnalysisJob],
    *,
    interval_seconds: float = 2.0,
    timeout_seconds: float = 300.0,
    sleep_fn: Callable[[float], None] = time.sleep,
    monotonic_fn: Callable[[], float] = time.monotonic,
    on_update: Callable[[AnalysisJob], None] | None = None,
) -> AnalysisJob:
    """Poll a job until it completes or fails.

    Raises the builtin ``TimeoutError`` once ``timeout_seconds`` elapse
    without a terminal status. Errors from ``fetch_status`` propagate.
    """
    deadline = monotonic_fn() + timeout_seconds

    while True:
        job = fetch_status()
        if on_update is not None:
            on_update(job)
        if job.is_terminal:
            return job

        remaining = deadline - monotonic_fn()
        if remaining <= 0:
            raise TimeoutError(
                f"Analysis {job.job_id} still {job.status} at {job.progress}% "
                f"after {timeout_seconds:.0f} seconds"
            )
        sleep_fn(min(interval_seconds, remaining))
