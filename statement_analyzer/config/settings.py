from __future__ import annotations

from functools import lru_cache
from pathlib import Path
from typing import Literal

from pydantic import AliasChoices, Field
from pydantic_settings import BaseSettings, SettingsConfigDict

LLMProvider = Literal["google", "openai"]
AnalysisMode = Literal["native", "text"]


class Settings(BaseSettings):
    """Application settings loaded from environment variables and .env."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        env_prefix="STATEMENT_ANALYZER_",
        extra="ignore",
    )

    environment: str = "local"
    data_dir: Path = Path("data")
    sqlite_path: Path = Path("data/statement_analyzer.sqlite3")
    uploads_dir: Path = Path("data/uploads")

    prompts_root: Path = Path("statement_analyzer/prompts")
    prompt_name: str = "financial_analysis"
    prompt_version: str = "v001"

    llm_provider: LLMProvider = "google"
    analysis_mode: AnalysisMode = "native"
    gemini_model: str = Field(
        default="gemini-2.5-flash",
        validation_alias=AliasChoices("STATEMENT_ANALYZER_GEMINI_MODEL", "GEMINI_MODEL"),
    )
    openai_model: str = Field(
        default="gpt-4.1-mini",
        validation_alias=AliasChoices("STATEMENT_ANALYZER_OPENAI_MODEL", "OPENAI_MODEL"),
    )

    llm_timeout_seconds: float = Field(default=60.0, gt=0)
    llm_max_attempts_text: int = Field(default=3, ge=1)
    llm_max_attempts_native: int = Field(default=5, ge=1)
    llm_retry_base_delay_seconds: float = Field(default=2.0, ge=0)

    worker_max_workers: int = Field(default=4, ge=1)
    status_poll_interval_seconds: float = Field(default=2.0, gt=0)
    status_poll_timeout_seconds: float = Field(default=300.0, gt=0)

    log_level: str = "INFO"
    log_file: Path | None = None

    gemini_api_key: str | None = Field(
        default=None,
        validation_alias=AliasChoices(
            "STATEMENT_ANALYZER_GEMINI_API_KEY",
            "GEMINI_API_KEY",
            "GOOGLE_API_KEY",
        ),
    )
    openai_api_key: str | None = Field(
        default=None,
        validation_alias=AliasChoices(
            "STATEMENT_ANALYZER_OPENAI_API_KEY", "OPENAI_API_KEY"
        ),
    )

    @property
    def project_root(self) -> Path:
        return Path(__file__).resolve().parents[2]

    @property
    def resolved_data_dir(self) -> Path:
        return self._resolve_path(self.data_dir)

    @property
    def resolved_sqlite_path(self) -> Path:
        return self._resolve_path(self.sqlite_path)

    @property
    def resolved_uploads_dir(self) -> Path:
        return self._resolve_path(self.uploads_dir)

    @property
    def resolved_prompts_root(self) -> Path:
        return self._resolve_path(self.prompts_root)

    @property
    def active_model(self) -> str:
        if self.llm_provider == "openai":
            return self.openai_model
        return self.gemini_model

    @property
    def active_api_key(self) -> str | None:
        if self.llm_provider == "openai":
            return self.openai_api_key
        return self.gemini_api_key

    @property
    def llm_max_attempts(self) -> int:
        if self.analysis_mode == "text":
            return self.llm_max_attempts_text
        return self.llm_max_attempts_native

    def _resolve_path(self, path: Path) -> Path:
        if path.is_absolute():
            return path
        return (self.project_root / path).resolve()


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    return Settings()
