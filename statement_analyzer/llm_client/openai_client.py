from __future__ import annotations

import base64
import time
from typing import Any, Protocol, Sequence

from statement_analyzer.llm_client.base import ContentPart, LLMResult
from statement_analyzer.llm_client.normalize_usage import normalize_openai_usage
from statement_analyzer.utils.error_taxonomy import LLMAPIError


class OpenAIResponsesService(Protocol):
    def create(self, **kwargs: Any) -> Any: ...


class OpenAILLMClient:
    def __init__(
        self,
        *,
        api_key: str | None = None,
        responses_service: OpenAIResponsesService | None = None,
        timeout_seconds: float | None = None,
    ) -> None:
        self._api_key = api_key
        self._timeout_seconds = timeout_seconds
        self._responses_service = responses_service

    def generate(
        self,
        *,
        model: str,
        parts: Sequence[ContentPart],
        params: dict[str, Any],
    ) -> LLMResult:
        service = self._resolve_service()
        payload = self.build_request_payload(model=model, parts=parts, params=params)

        start_time = time.perf_counter()
        response = service.create(**payload)
        elapsed_ms = (time.perf_counter() - start_time) * 1000

        response_payload = _to_dict(response)
        raw_text = _extract_openai_output_text(
            response=response, payload=response_payload
        )
        usage_raw = _extract_usage(response=response, payload=response_payload)

        return LLMResult(
            raw_text=raw_text,
            raw_response=response_payload,
            usage_raw=usage_raw,
            usage_normalized=normalize_openai_usage(usage_raw),
            timings={"t_llm_total_ms": elapsed_ms},
        )

    @staticmethod
    def build_request_payload(
        *,
        model: str,
        parts: Sequence[ContentPart],
        params: dict[str, Any],
    ) -> dict[str, Any]:
        messages: list[dict[str, Any]] = []
        system_prompt = params.get("system_prompt")
        if system_prompt:
            messages.append(
                {
                    "role": "system",
                    "content": [{"type": "input_text", "text": str(system_prompt)}],
                }
            )
        messages.append(
            {
                "role": "user",
                "content": [
                    _to_openai_content(part, index=index)
                    for index, part in enumerate(parts, start=1)
                ],
            }
        )

        payload: dict[str, Any] = {
            "model": model,
            "input": messages,
            "text": {"format": {"type": "json_object"}},
        }

        temperature = params.get("temperature")
        if temperature is not None:
            payload["temperature"] = temperature

        max_output_tokens = params.get("max_output_tokens")
        if max_output_tokens is not None:
            payload["max_output_tokens"] = int(max_output_tokens)

        return payload

    def _resolve_service(self) -> OpenAIResponsesService:
        if self._responses_service is not None:
            return self._responses_service

        if not self._api_key:
            raise ValueError("OpenAI API key is required when service is not injected")

        try:
            from openai import OpenAI
        except ImportError as error:
            raise RuntimeError("openai package is not installed") from error

        # Retried by AnalysisClient.
        client_kwargs: dict[str, Any] = {"api_key": self._api_key, "max_retries": 0}
        if self._timeout_seconds is not None:
            client_kwargs["timeout"] = self._timeout_seconds
        client = OpenAI(**client_kwargs)
        self._responses_service = client.responses
        return self._responses_service


def _to_openai_content(part: ContentPart, *, index: int) -> dict[str, Any]:
    if part.data is None:
        return {"type": "input_text", "text": part.text or ""}

    encoded = base64.b64encode(part.data).decode("ascii")
    return {
        "type": "input_file",
        "filename": part.name or f"document_{index}.pdf",
        "file_data": f"data:{part.mime_type};base64,{encoded}",
    }


def _extract_usage(*, response: Any, payload: dict[str, Any]) -> dict[str, Any]:
    usage = payload.get("usage")
    if isinstance(usage, dict):
        return usage

    response_usage = getattr(response, "usage", None)
    if response_usage is None:
        return {}

    return _to_dict(response_usage)


def _extract_openai_output_text(*, response: Any, payload: dict[str, Any]) -> str:
    output_text = getattr(response, "output_text", None)
    if isinstance(output_text, str) and output_text.strip():
        return output_text

    payload_text = payload.get("output_text")
    if isinstance(payload_text, str) and payload_text.strip():
        return payload_text

    output = payload.get("output")
    if isinstance(output, list):
        for item in output:
            if not isinstance(item, dict):
                continue
            content = item.get("content")
            if not isinstance(content, list):
                continue
            for content_item in content:
                if not isinstance(content_item, dict):
                    continue
                text = content_item.get("text")
                if isinstance(text, str) and text.strip():
                    return text

    raise LLMAPIError("OpenAI response does not contain output text")


def _to_dict(value: Any) -> dict[str, Any]:
    if isinstance(value, dict):
        return value

    model_dump = getattr(value, "model_dump", None)
    if callable(model_dump):
        dumped = model_dump()
        if isinstance(dumped, dict):
            return dumped

    return {}
