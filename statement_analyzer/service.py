from __future__ import annotations

import logging

from statement_analyzer.config.settings import Settings, get_settings
from statement_analyzer.llm_client.base import LLMClient
from statement_analyzer.llm_client.gemini_client import GeminiLLMClient
from statement_analyzer.llm_client.openai_client import OpenAILLMClient
from statement_analyzer.pipeline.analysis_client import AnalysisClient
from statement_analyzer.pipeline.executors import JobExecutor
from statement_analyzer.pipeline.orchestrator import AnalysisOrchestrator
from statement_analyzer.prompts.manager import PromptManager
from statement_analyzer.storage.repo import StorageRepo

logger = logging.getLogger(__name__)


def build_llm_client(settings: Settings) -> LLMClient | None:
    api_key = settings.active_api_key
    if not api_key:
        logger.warning(
            "No API key configured for provider %s - AI analysis will use placeholder data",
            settings.llm_provider,
        )
        return None

    if settings.llm_provider == "openai":
        return OpenAILLMClient(
            api_key=api_key, timeout_seconds=settings.llm_timeout_seconds
        )
    return GeminiLLMClient(api_key=api_key, timeout_seconds=settings.llm_timeout_seconds)


def build_orchestrator(
    settings: Settings | None = None,
    *,
    llm_client: LLMClient | None = None,
    executor: JobExecutor | None = None,
    allow_paths: bool = False,
) -> AnalysisOrchestrator:
    """Wire storage, prompts, provider and executor from settings."""
    settings = settings or get_settings()

    prompt_set = PromptManager(settings.resolved_prompts_root).load_prompt_set(
        prompt_name=settings.prompt_name,
        version=settings.prompt_version,
    )
    repo = StorageRepo(settings.resolved_sqlite_path)
    uploads_dir = settings.resolved_uploads_dir
    uploads_dir.mkdir(parents=True, exist_ok=True)

    analysis_client = AnalysisClient(
        llm_client=llm_client if llm_client is not None else build_llm_client(settings),
        model=settings.active_model,
        prompt_set=prompt_set,
        mode=settings.analysis_mode,
        timeout_seconds=settings.llm_timeout_seconds,
        max_attempts=settings.llm_max_attempts,
        base_delay_seconds=settings.llm_retry_base_delay_seconds,
    )

    return AnalysisOrchestrator(
        repo=repo,
        analysis_client=analysis_client,
        identity_resolver=repo,
        uploads_dir=uploads_dir,
        result_schema=prompt_set.schema,
        executor=executor,
        max_workers=settings.worker_max_workers,
        allow_paths=allow_paths,
    )
