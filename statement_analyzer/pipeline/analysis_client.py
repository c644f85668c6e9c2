from __future__ import annotations

import json
import logging
import random
import time
from typing import Any, Callable, Literal, Sequence

from statement_analyzer.llm_client.base import ContentPart, LLMClient, LLMResult
from statement_analyzer.pipeline.normalize_output import (
    clean_json_response,
    normalize_analysis,
    parse_analysis_json,
)
from statement_analyzer.pipeline.pack_documents import (
    DocumentContent,
    build_content_parts,
    pack_text_documents,
)
from statement_analyzer.pipeline.placeholder import build_placeholder_analysis
from statement_analyzer.prompts.manager import PromptSet
from statement_analyzer.utils.error_taxonomy import (
    AnalysisError,
    EmptyInputError,
    LLMAPIError,
    is_retryable_llm_exception,
    to_llm_api_error,
)
from statement_analyzer.utils.pdf_text import extract_pdf_text
from statement_analyzer.utils.retry import run_with_rate_limit_retry
from statement_analyzer.utils.timeouts import run_with_timeout

logger = logging.getLogger(__name__)

CONNECTION_TEST_PROMPT = 'Respond with exactly: {"test": "success"}'

DEFAULT_TIMEOUT_SECONDS = 60.0
DEFAULT_MAX_ATTEMPTS: dict[str, int] = {"native": 5, "text": 3}

AnalysisMode = Literal["native", "text"]


class AnalysisClient:
    """Turns loaded documents into a validated analysis result.

    Without an LLM client the result is placeholder data derived from input
    size. Otherwise one request is sent per analysis, under a hard timeout,
    wrapped in rate-limit-aware retries. Parsing and normalization happen
    after the retry loop, so malformed output is surfaced, not retried.
    """

    def __init__(
        self,
        *,
        llm_client: LLMClient | None,
        model: str,
        prompt_set: PromptSet,
        mode: AnalysisMode = "native",
        timeout_seconds: float = DEFAULT_TIMEOUT_SECONDS,
        max_attempts: int | None = None,
        base_delay_seconds: float = 2.0,
        llm_params: dict[str, Any] | None = None,
        sleep_fn: Callable[[float], None] = time.sleep,
        random_fn: Callable[[], float] = random.random,
        pdf_text_extractor: Callable[[bytes], str] = extract_pdf_text,
    ) -> None:
        self._llm_client = llm_client
        self.model = model
        self.prompt_set = prompt_set
        self.mode = mode
        self.timeout_seconds = timeout_seconds
        self.max_attempts = max_attempts or DEFAULT_MAX_ATTEMPTS[mode]
        self.base_delay_seconds = base_delay_seconds
        self.llm_params = dict(llm_params or {})
        self.sleep_fn = sleep_fn
        self.random_fn = random_fn
        self.pdf_text_extractor = pdf_text_extractor

    @property
    def is_configured(self) -> bool:
        return self._llm_client is not None

    @property
    def model_name(self) -> str:
        return self.model if self.is_configured else "placeholder-demo"

    def analyze(self, documents: Sequence[DocumentContent]) -> dict[str, Any]:
        if not documents:
            raise EmptyInputError("No document content provided for analysis")

        if self._llm_client is None:
            logger.info(
                "AI provider not configured, returning placeholder analysis for %d document(s)",
                len(documents),
            )
            return build_placeholder_analysis(documents)

        parts = self._build_parts(documents)
        llm_result = run_with_rate_limit_retry(
            operation=lambda: self._generate(parts),
            max_attempts=self.max_attempts,
            base_delay_seconds=self.base_delay_seconds,
            should_retry=is_retryable_llm_exception,
            sleep_fn=self.sleep_fn,
            random_fn=self.random_fn,
        )
        logger.info(
            "Received AI response",
            extra={
                "duration_ms": round(llm_result.timings.get("t_llm_total_ms", 0.0), 1),
                "metrics": llm_result.usage_normalized,
            },
        )

        result = normalize_analysis(parse_analysis_json(llm_result.raw_text))
        metadata = dict(result.get("metadata") or {})
        metadata.update(
            {
                "modelUsed": self.model,
                "isPlaceholderData": False,
                "tokenUsage": llm_result.usage_normalized,
            }
        )
        result["metadata"] = metadata
        return result

    def test_connection(self) -> bool:
        if self._llm_client is None:
            logger.info("AI provider not configured, connection test skipped")
            return False

        try:
            llm_result = self._generate([ContentPart(text=CONNECTION_TEST_PROMPT)])
            data = json.loads(clean_json_response(llm_result.raw_text))
        except Exception as error:  # noqa: BLE001
            logger.warning("AI connection test failed: %s", error)
            return False

        return isinstance(data, dict) and data.get("test") == "success"

    def _build_parts(self, documents: Sequence[DocumentContent]) -> list[ContentPart]:
        prompt_text = self.prompt_set.system_prompt_text
        if self.mode == "text":
            return pack_text_documents(
                prompt_text=prompt_text,
                documents=documents,
                pdf_text_extractor=self.pdf_text_extractor,
            )
        return build_content_parts(prompt_text=prompt_text, documents=documents)

    def _generate(self, parts: Sequence[ContentPart]) -> LLMResult:
        llm_client = self._llm_client
        if llm_client is None:
            raise LLMAPIError("AI client not initialized", kind="UNCONFIGURED")

        try:
            llm_result = run_with_timeout(
                lambda: llm_client.generate(
                    model=self.model, parts=parts, params=self.llm_params
                ),
                timeout_seconds=self.timeout_seconds,
            )
        except AnalysisError:
            raise
        except Exception as error:  # noqa: BLE001
            raise to_llm_api_error(error) from error

        if not llm_result.raw_text.strip():
            raise LLMAPIError("Empty response received from AI provider")
        return llm_result
