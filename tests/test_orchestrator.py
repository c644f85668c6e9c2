from __future__ import annotations

import sqlite3
import threading
from concurrent.futures import ThreadPoolExecutor
from pathlib import Path
from typing import Any

import pytest

from statement_analyzer.pipeline.analysis_client import AnalysisClient
from statement_analyzer.pipeline.executors import DeferredExecutor, InlineExecutor
from statement_analyzer.llm_client.base import LLMResult
from statement_analyzer.pipeline.orchestrator import AnalysisOrchestrator
from statement_analyzer.prompts.manager import PromptSet
from statement_analyzer.storage.repo import StorageRepo
from statement_analyzer.utils.error_taxonomy import (
    AccessDeniedError,
    InvalidInputError,
    JobNotFoundError,
    MalformedResponseError,
    SchemaViolationError,
    TerminalStateError,
)
from tests.helpers import FakeLLMClient

MALFORMED = "Sorry, I cannot help with that."


class FlakyRepo(StorageRepo):
    """StorageRepo whose progress or failure writes can be made to fail."""

    def __init__(self, db_path: Path, *, fail_progress: bool = False, fail_failed: bool = False):
        super().__init__(db_path)
        self.fail_progress = fail_progress
        self.fail_failed = fail_failed

    def update_job(self, job_id: str, **kwargs: Any):
        if self.fail_progress and kwargs.get("status") is None:
            raise sqlite3.OperationalError("database is locked")
        if self.fail_failed and kwargs.get("status") == "failed":
            raise sqlite3.OperationalError("disk I/O error")
        return super().update_job(job_id, **kwargs)


@pytest.fixture
def uploads_dir(tmp_path: Path) -> Path:
    path = tmp_path / "uploads"
    path.mkdir()
    (path / "jan.txt").write_text("01/01 Salary +5000\n01/02 Rent -3500\n", encoding="utf-8")
    return path


@pytest.fixture
def repo(tmp_path: Path) -> StorageRepo:
    return StorageRepo(tmp_path / "analyses.sqlite3")


def _orchestrator(
    repo: StorageRepo,
    uploads_dir: Path,
    prompt_set: PromptSet,
    responses: list[Any] | None,
    *,
    executor: Any = None,
    result_schema: dict[str, Any] | None = None,
) -> AnalysisOrchestrator:
    llm_client = FakeLLMClient(responses) if responses is not None else None
    return AnalysisOrchestrator(
        repo=repo,
        analysis_client=AnalysisClient(
            llm_client=llm_client,
            model="gemini-test",
            prompt_set=prompt_set,
            sleep_fn=lambda seconds: None,
            random_fn=lambda: 0.0,
        ),
        identity_resolver=repo,
        uploads_dir=uploads_dir,
        result_schema=result_schema if result_schema is not None else prompt_set.schema,
        executor=executor or InlineExecutor(),
    )


def test_rejects_invalid_requests_without_creating_jobs(
    repo: StorageRepo, uploads_dir: Path, prompt_set: PromptSet
) -> None:
    orchestrator = _orchestrator(repo, uploads_dir, prompt_set, None)

    with pytest.raises(InvalidInputError):
        orchestrator.process_analysis("u1", [], "acct-1")
    with pytest.raises(InvalidInputError):
        orchestrator.process_analysis("u1", ["local://jan.txt"], "  ")
    with pytest.raises(InvalidInputError):
        orchestrator.process_analysis("u1", ["local://../secrets.txt"], "acct-1")
    with pytest.raises(InvalidInputError):
        orchestrator.process_analysis("u1", [str(uploads_dir / "jan.txt")], "acct-1")

    assert repo.count_jobs_by_owner("acct-1") == 0


def test_job_is_processing_until_worker_runs(
    repo: StorageRepo, uploads_dir: Path, prompt_set: PromptSet, valid_analysis_text: str
) -> None:
    executor = DeferredExecutor()
    orchestrator = _orchestrator(
        repo, uploads_dir, prompt_set, [valid_analysis_text], executor=executor
    )

    job_id = orchestrator.process_analysis("u1", ["local://jan.txt"], "acct-1", title="Jan")
    pending = orchestrator.get_status(job_id, "acct-1")

    assert pending.status == "processing"
    assert pending.progress in {0, 20}
    assert pending.title == "Jan"
    assert pending.upload_batch_id == "u1"

    assert executor.run_pending() == 1
    done = orchestrator.get_status(job_id, "acct-1")

    assert done.status == "completed"
    assert done.progress == 100
    assert done.completed_at is not None
    result = done.result or {}
    assert result["netCashFlow"] == result["totalIncome"] - result["totalExpenses"]
    assert result["metadata"]["filesProcessed"] == 1
    assert result["metadata"]["modelUsed"] == "gemini-test"
    assert result["metadata"]["isPlaceholderData"] is False
    assert result["metadata"]["processingTimeMs"] >= 0


def test_default_title_names_the_day(
    repo: StorageRepo, uploads_dir: Path, prompt_set: PromptSet
) -> None:
    orchestrator = _orchestrator(repo, uploads_dir, prompt_set, None)

    job_id = orchestrator.process_analysis(None, ["local://jan.txt"], "acct-1")

    assert orchestrator.get_status(job_id, "acct-1").title.startswith("Financial Analysis - ")


def test_placeholder_result_passes_schema(
    repo: StorageRepo, uploads_dir: Path, prompt_set: PromptSet
) -> None:
    orchestrator = _orchestrator(repo, uploads_dir, prompt_set, None)

    job_id = orchestrator.process_analysis(None, ["local://jan.txt"], "acct-1", wait=True)
    job = orchestrator.get_status(job_id, "acct-1")

    assert job.status == "completed"
    assert job.result is not None
    assert job.result["metadata"]["isPlaceholderData"] is True
    assert job.result["metadata"]["modelUsed"] == "placeholder-demo"


def test_failure_is_recorded_and_surfaced(
    repo: StorageRepo, uploads_dir: Path, prompt_set: PromptSet
) -> None:
    orchestrator = _orchestrator(repo, uploads_dir, prompt_set, [MALFORMED])

    job_id = orchestrator.process_analysis(None, ["local://jan.txt"], "acct-1")
    job = orchestrator.get_status(job_id, "acct-1")

    assert job.status == "failed"
    assert job.progress == 20
    assert job.result is not None
    assert job.result["errorType"] == "MALFORMED_RESPONSE"
    assert job.result["failedAt"] == job.completed_at
    assert orchestrator.wait_for(job_id).status == "failed"

    with pytest.raises(MalformedResponseError):
        orchestrator.process_analysis(None, ["local://jan.txt"], "acct-1", wait=True)


def test_terminal_jobs_stay_terminal(
    repo: StorageRepo, uploads_dir: Path, prompt_set: PromptSet, valid_analysis_text: str
) -> None:
    orchestrator = _orchestrator(repo, uploads_dir, prompt_set, [valid_analysis_text])
    job_id = orchestrator.process_analysis(None, ["local://jan.txt"], "acct-1")

    with pytest.raises(TerminalStateError):
        repo.update_job(job_id, status="failed", result={"error": "late"})

    assert orchestrator.get_status(job_id, "acct-1").status == "completed"


def test_failed_failure_write_still_raises_original_error(
    tmp_path: Path, uploads_dir: Path, prompt_set: PromptSet
) -> None:
    repo = FlakyRepo(tmp_path / "flaky.sqlite3", fail_failed=True)
    orchestrator = _orchestrator(repo, uploads_dir, prompt_set, [MALFORMED])

    with pytest.raises(MalformedResponseError):
        orchestrator.process_analysis(None, ["local://jan.txt"], "acct-1", wait=True)


def test_progress_write_failure_does_not_fail_job(
    tmp_path: Path, uploads_dir: Path, prompt_set: PromptSet, valid_analysis_text: str
) -> None:
    repo = FlakyRepo(tmp_path / "flaky.sqlite3", fail_progress=True)
    orchestrator = _orchestrator(repo, uploads_dir, prompt_set, [valid_analysis_text])

    job_id = orchestrator.process_analysis(None, ["local://jan.txt"], "acct-1", wait=True)

    assert orchestrator.get_status(job_id, "acct-1").status == "completed"


def test_strict_schema_marks_job_as_schema_violation(
    repo: StorageRepo, uploads_dir: Path, prompt_set: PromptSet, valid_analysis_text: str
) -> None:
    strict = {"type": "object", "required": ["riskScore"]}
    orchestrator = _orchestrator(
        repo, uploads_dir, prompt_set, [valid_analysis_text], result_schema=strict
    )

    with pytest.raises(SchemaViolationError) as exc_info:
        orchestrator.process_analysis(None, ["local://jan.txt"], "acct-1", wait=True)

    assert any("riskScore" in error for error in exc_info.value.errors)
    [job] = repo.list_jobs_by_owner("acct-1")
    assert job.status == "failed"
    assert job.result is not None
    assert job.result["errorType"] == "SCHEMA_VIOLATION"


def test_legacy_email_owner_resolves_to_account(
    repo: StorageRepo, uploads_dir: Path, prompt_set: PromptSet
) -> None:
    orchestrator = _orchestrator(repo, uploads_dir, prompt_set, None)
    ana = repo.create_user(email="ana@example.com")
    other = repo.create_user(email="bob@example.com")
    legacy = repo.create_job(owner="ana@example.com", title="old", source_document_count=1)

    assert orchestrator.get_status(legacy.job_id, ana.user_id).job_id == legacy.job_id
    with pytest.raises(AccessDeniedError):
        orchestrator.get_status(legacy.job_id, other.user_id)
    with pytest.raises(JobNotFoundError):
        orchestrator.get_status("missing", ana.user_id)


def test_new_jobs_are_stored_under_account_id(
    repo: StorageRepo, uploads_dir: Path, prompt_set: PromptSet
) -> None:
    orchestrator = _orchestrator(repo, uploads_dir, prompt_set, None)
    ana = repo.create_user(email="ana@example.com")
    legacy = repo.create_job(owner="ana@example.com", title="old", source_document_count=1)

    job_id = orchestrator.process_analysis(None, ["local://jan.txt"], "Ana@Example.com")

    assert orchestrator.get_status(job_id, ana.user_id).owner == ana.user_id
    listed = [job.job_id for job in orchestrator.list_analyses(ana.user_id)]
    assert listed == [job_id, legacy.job_id]


def test_delete_requires_ownership(
    repo: StorageRepo, uploads_dir: Path, prompt_set: PromptSet
) -> None:
    orchestrator = _orchestrator(repo, uploads_dir, prompt_set, None)
    job_id = orchestrator.process_analysis(None, ["local://jan.txt"], "acct-1")

    assert orchestrator.delete_analysis(job_id, "acct-2") is False
    assert orchestrator.delete_analysis(job_id, "acct-1") is True
    assert orchestrator.delete_analysis(job_id, "acct-1") is False


def test_check_health(
    repo: StorageRepo, uploads_dir: Path, prompt_set: PromptSet
) -> None:
    healthy = _orchestrator(repo, uploads_dir, prompt_set, ['{"test": "success"}'])
    unconfigured = _orchestrator(repo, uploads_dir, prompt_set, None)

    assert healthy.check_health() == {
        "llm_configured": True,
        "llm_connection": True,
        "database": True,
        "overall": True,
    }
    assert unconfigured.check_health()["overall"] is False
    assert unconfigured.check_health()["database"] is True


class _GatedLLMClient:
    """Answers with ``reply`` once ``release`` is set."""

    def __init__(self, reply: str) -> None:
        self.reply = reply
        self.release = threading.Event()

    def generate(self, *, model: str, parts: Any, params: dict[str, Any]) -> LLMResult:
        self.release.wait(5)
        return LLMResult(
            raw_text=self.reply,
            raw_response={},
            usage_raw={},
            usage_normalized={},
            timings={},
        )


def test_finished_jobs_are_not_kept_in_memory(
    repo: StorageRepo, uploads_dir: Path, prompt_set: PromptSet
) -> None:
    orchestrator = _orchestrator(
        repo, uploads_dir, prompt_set, None, executor=ThreadPoolExecutor(max_workers=4)
    )

    job_ids = [
        orchestrator.process_analysis(None, ["local://jan.txt"], "acct-1")
        for _ in range(20)
    ]
    for job_id in job_ids:
        assert orchestrator.wait_for(job_id, timeout=10).status == "completed"
    for job_id in job_ids:
        assert orchestrator.delete_analysis(job_id, "acct-1") is True
    orchestrator.shutdown()

    assert orchestrator.tracked_job_count == 0


def test_queued_jobs_are_tracked_until_they_finish(
    repo: StorageRepo, uploads_dir: Path, prompt_set: PromptSet
) -> None:
    executor = DeferredExecutor()
    orchestrator = _orchestrator(repo, uploads_dir, prompt_set, None, executor=executor)

    orchestrator.process_analysis(None, ["local://jan.txt"], "acct-1")
    orchestrator.process_analysis(None, ["local://jan.txt"], "acct-1")
    assert orchestrator.tracked_job_count == 2

    executor.run_pending()

    assert orchestrator.tracked_job_count == 0


def test_wait_for_running_job_raises_its_error(
    repo: StorageRepo, uploads_dir: Path, prompt_set: PromptSet
) -> None:
    gated = _GatedLLMClient(MALFORMED)
    orchestrator = AnalysisOrchestrator(
        repo=repo,
        analysis_client=AnalysisClient(
            llm_client=gated, model="gemini-test", prompt_set=prompt_set
        ),
        identity_resolver=repo,
        uploads_dir=uploads_dir,
        executor=ThreadPoolExecutor(max_workers=1),
    )
    job_id = orchestrator.process_analysis(None, ["local://jan.txt"], "acct-1")
    timer = threading.Timer(0.2, gated.release.set)
    timer.start()

    try:
        with pytest.raises(MalformedResponseError):
            orchestrator.wait_for(job_id, timeout=10)
    finally:
        gated.release.set()
        timer.cancel()
        orchestrator.shutdown()

    assert orchestrator.tracked_job_count == 0
    assert repo.get_job(job_id).status == "failed"
