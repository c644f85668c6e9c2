from __future__ import annotations

import threading
from queue import Empty, Queue
from typing import Callable, TypeVar

from statement_analyzer.utils.error_taxonomy import LLMAPIError, LLMTimeoutError

T = TypeVar("T")


def run_with_timeout(
    operation: Callable[[], T],
    *,
    timeout_seconds: float,
    name: str = "llm-call",
) -> T:
    """Run ``operation`` in a daemon thread and give up after ``timeout_seconds``.

    The worker thread is abandoned on timeout; the provider SDK owns its
    socket lifetime.
    """
    queue: Queue[tuple[str, object]] = Queue(maxsize=1)

    def _target() -> None:
        try:
            queue.put(("result", operation()))
        except BaseException as error:  # noqa: BLE001
            queue.put(("error", error))

    thread = threading.Thread(target=_target, name=name, daemon=True)
    thread.start()
    thread.join(timeout_seconds)

    if thread.is_alive():
        raise LLMTimeoutError(
            f"Analysis request timed out after {timeout_seconds:.1f} seconds"
        )

    try:
        kind, payload = queue.get_nowait()
    except Empty as error:
        raise LLMAPIError("AI call finished without returning a result") from error

    if kind == "error":
        raise payload if isinstance(payload, BaseException) else RuntimeError(payload)
    return payload  # type: ignore[return-value]
