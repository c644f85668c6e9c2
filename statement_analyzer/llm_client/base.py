from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Protocol, Sequence


@dataclass(frozen=True, slots=True)
class ContentPart:
    """One piece of request content: either text or inline binary data."""

    text: str | None = None
    data: bytes | None = None
    mime_type: str = "text/plain"
    name: str | None = None

    @property
    def is_binary(self) -> bool:
        return self.data is not None


@dataclass(frozen=True, slots=True)
class LLMResult:
    raw_text: str
    raw_response: dict[str, Any]
    usage_raw: dict[str, Any]
    usage_normalized: dict[str, int | None]
    timings: dict[str, float]


class LLMClient(Protocol):
    def generate(
        self,
        *,
        model: str,
        parts: Sequence[ContentPart],
        params: dict[str, Any],
    ) -> LLMResult: ...
