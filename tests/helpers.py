from __future__ import annotations

import threading
from pathlib import Path
from typing import Any, Sequence

from statement_analyzer.llm_client.base import ContentPart, LLMResult

PROMPTS_ROOT = Path(__file__).resolve().parents[1] / "statement_analyzer" / "prompts"

VALID_ANALYSIS: dict[str, Any] = {
    "totalIncome": 5000,
    "totalExpenses": "3500",
    "netCashFlow": 42,
    "categories": {
        "income": [{"category": "Salary", "amount": 5000, "percentage": 100}],
        "expenses": [{"name": "Housing", "amount": 3500, "percentage": 100}],
    },
    "monthlyTrends": [{"month": "2024-01", "income": 5000, "expenses": 3500}],
    "insights": [
        {"type": "spending", "description": "Housing dominates", "severity": "medium"}
    ],
    "recommendations": [
        {"category": "Housing", "suggestion": "Refinance", "potentialSavings": 200}
    ],
    "summary": "Healthy month",
}


class HttpError(RuntimeError):
    def __init__(self, status_code: int, message: str = "http error") -> None:
        super().__init__(message)
        self.status_code = status_code


class FakeLLMClient:
    """Replays scripted responses; the last one repeats, exceptions are raised."""

    def __init__(self, responses: Sequence[str | BaseException]) -> None:
        self._responses = list(responses)
        self._lock = threading.Lock()
        self.calls: list[dict[str, Any]] = []

    def generate(
        self,
        *,
        model: str,
        parts: Sequence[ContentPart],
        params: dict[str, Any],
    ) -> LLMResult:
        with self._lock:
            self.calls.append({"model": model, "parts": list(parts), "params": params})
            if len(self._responses) > 1:
                response = self._responses.pop(0)
            else:
                response = self._responses[0]

        if isinstance(response, BaseException):
            raise response
        return LLMResult(
            raw_text=response,
            raw_response={},
            usage_raw={"prompt_token_count": 12, "candidates_token_count": 8},
            usage_normalized={
                "prompt_tokens": 12,
                "completion_tokens": 8,
                "total_tokens": 20,
            },
            timings={"t_llm_total_ms": 1.0},
        )
