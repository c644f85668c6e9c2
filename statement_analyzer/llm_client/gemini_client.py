from __future__ import annotations

import time
from typing import Any, Protocol, Sequence

from statement_analyzer.llm_client.base import ContentPart, LLMResult
from statement_analyzer.llm_client.normalize_usage import normalize_gemini_usage
from statement_analyzer.utils.error_taxonomy import LLMAPIError


class GeminiGenerateService(Protocol):
    def generate_content(self, **kwargs: Any) -> Any: ...


class GeminiLLMClient:
    def __init__(
        self,
        *,
        api_key: str | None = None,
        generate_service: GeminiGenerateService | None = None,
        timeout_seconds: float | None = None,
    ) -> None:
        self._api_key = api_key
        self._timeout_seconds = timeout_seconds
        self._generate_service = generate_service

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
        response = service.generate_content(**payload)
        elapsed_ms = (time.perf_counter() - start_time) * 1000

        response_payload = _to_dict(response)
        raw_text = _extract_gemini_output_text(
            response=response, payload=response_payload
        )
        usage_raw = _extract_usage(response=response, payload=response_payload)

        return LLMResult(
            raw_text=raw_text,
            raw_response=response_payload,
            usage_raw=usage_raw,
            usage_normalized=normalize_gemini_usage(usage_raw),
            timings={"t_llm_total_ms": elapsed_ms},
        )

    @staticmethod
    def build_request_payload(
        *,
        model: str,
        parts: Sequence[ContentPart],
        params: dict[str, Any],
    ) -> dict[str, Any]:
        config: dict[str, Any] = {"response_mime_type": "application/json"}

        system_prompt = params.get("system_prompt")
        if system_prompt:
            config["system_instruction"] = str(system_prompt)

        temperature = params.get("temperature")
        if temperature is not None:
            config["temperature"] = temperature

        max_output_tokens = params.get("max_output_tokens")
        if max_output_tokens is not None:
            config["max_output_tokens"] = int(max_output_tokens)

        return {
            "model": model,
            "contents": [
                {"role": "user", "parts": [_to_gemini_part(part) for part in parts]}
            ],
            "config": config,
        }

    def _resolve_service(self) -> GeminiGenerateService:
        if self._generate_service is not None:
            return self._generate_service

        if not self._api_key:
            raise ValueError("Google API key is required when service is not injected")

        try:
            from google import genai
        except ImportError as error:
            raise RuntimeError("google-genai package is not installed") from error

        # The SDK closes its sockets when the client object is collected.
        client = getattr(self, "_genai_client", None)
        if client is None:
            http_options = None
            if self._timeout_seconds is not None:
                # milliseconds
                http_options = {"timeout": int(self._timeout_seconds * 1000)}
            client = genai.Client(api_key=self._api_key, http_options=http_options)
            self._genai_client = client

        self._generate_service = client.models
        return self._generate_service


def _to_gemini_part(part: ContentPart) -> dict[str, Any]:
    if part.data is not None:
        return {"inline_data": {"mime_type": part.mime_type, "data": part.data}}
    return {"text": part.text or ""}


def _extract_usage(*, response: Any, payload: dict[str, Any]) -> dict[str, Any]:
    usage = payload.get("usage_metadata")
    if isinstance(usage, dict):
        return usage

    usage_camel = payload.get("usageMetadata")
    if isinstance(usage_camel, dict):
        return usage_camel

    response_usage = getattr(response, "usage_metadata", None)
    if response_usage is not None:
        return _to_dict(response_usage)

    return {}


def _extract_gemini_output_text(*, response: Any, payload: dict[str, Any]) -> str:
    direct_text = getattr(response, "text", None)
    if isinstance(direct_text, str) and direct_text.strip():
        return direct_text

    candidates = payload.get("candidates")
    if isinstance(candidates, list):
        for candidate in candidates:
            if not isinstance(candidate, dict):
                continue
            content = candidate.get("content")
            if not isinstance(content, dict):
                continue
            content_parts = content.get("parts")
            if not isinstance(content_parts, list):
                continue
            for part in content_parts:
                if not isinstance(part, dict):
                    continue
                text = part.get("text")
                if isinstance(text, str) and text.strip():
                    return text

    raise LLMAPIError("Gemini response does not contain text output")


def _to_dict(value: Any) -> dict[str, Any]:
    if isinstance(value, dict):
        return value

    model_dump = getattr(value, "model_dump", None)
    if callable(model_dump):
        dumped = model_dump()
        if isinstance(dumped, dict):
            return dumped

    return {}
