from __future__ import annotations

from concurrent.futures import Future
from typing import Any, Callable, Protocol


class JobExecutor(Protocol):
    def submit(self, fn: Callable[..., Any], /, *args: Any, **kwargs: Any) -> Future: ...

    def shutdown(self, wait: bool = True) -> None: ...


class InlineExecutor:
    """Runs each task immediately in the caller's thread."""

    def submit(self, fn: Callable[..., Any], /, *args: Any, **kwargs: Any) -> Future:
        future: Future = Future()
        _run_into(future, fn, args, kwargs)
        return future

    def shutdown(self, wait: bool = True) -> None:
        return None


class DeferredExecutor:
    """Queues tasks until ``run_pending`` so callers can observe in-flight state."""

    def __init__(self) -> None:
        self._pending: list[tuple[Future, Callable[..., Any], tuple, dict]] = []

    @property
    def pending_count(self) -> int:
        return len(self._pending)

    def submit(self, fn: Callable[..., Any], /, *args: Any, **kwargs: Any) -> Future:
        future: Future = Future()
        self._pending.append((future, fn, args, kwargs))
        return future

    def run_pending(self) -> int:
        pending, self._pending = self._pending, []
        for future, fn, args, kwargs in pending:
            _run_into(future, fn, args, kwargs)
        return len(pending)

    def shutdown(self, wait: bool = True) -> None:
        if wait:
            self.run_pending()


def _run_into(
    future: Future, fn: Callable[..., Any], args: tuple, kwargs: dict
) -> None:
    if not future.set_running_or_notify_cancel():
        return
    try:
        result = fn(*args, **kwargs)
    except BaseException as error:  # noqa: BLE001
        future.set_exception(error)
    else:
        future.set_result(result)
