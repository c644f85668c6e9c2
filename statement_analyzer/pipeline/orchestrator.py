from __future__ import annotations

import logging
import threading
import time
from concurrent.futures import Future, ThreadPoolExecutor
from datetime import date, datetime, timezone
from pathlib import Path
from typing import Any, Protocol, Sequence

from statement_analyzer.logging import clear_log_context, set_log_context
from statement_analyzer.pipeline.analysis_client import AnalysisClient
from statement_analyzer.pipeline.executors import JobExecutor
from statement_analyzer.pipeline.normalize_output import validate_output
from statement_analyzer.pipeline.ownership import (
    IdentityResolver,
    canonical_owner,
    is_owner,
    owner_aliases,
)
from statement_analyzer.pipeline.pack_documents import load_documents, resolve_document_ref
from statement_analyzer.storage.models import AnalysisJob, JobStatus
from statement_analyzer.utils.error_taxonomy import (
    AccessDeniedError,
    InvalidInputError,
    JobNotFoundError,
    SchemaViolationError,
    build_error_details,
    classify_llm_api_error,
)

logger = logging.getLogger(__name__)

PROGRESS_PROCESSING = 20
PROGRESS_SAVING = 80
PROGRESS_DONE = 100


class JobRepository(Protocol):
    def create_job(
        self,
        *,
        owner: str,
        title: str,
        source_document_count: int,
        upload_batch_id: str | None = None,
    ) -> AnalysisJob: ...

    def get_job(self, job_id: str) -> AnalysisJob | None: ...

    def update_job(
        self,
        job_id: str,
        *,
        status: JobStatus | None = None,
        progress: int | None = None,
        result: dict[str, Any] | None = None,
        completed_at: str | None = None,
    ) -> AnalysisJob: ...

    def list_jobs_by_owner(
        self, owners: Sequence[str] | str, *, limit: int = 50
    ) -> list[AnalysisJob]: ...

    def delete_job(self, job_id: str) -> bool: ...

    def ping(self) -> bool: ...


class AnalysisOrchestrator:
    """Owns the lifecycle of analysis jobs.

    Jobs are created synchronously and executed on ``executor``; callers
    learn the outcome by polling ``get_status`` or through ``wait_for``.
    """

    def __init__(
        self,
        *,
        repo: JobRepository,
        analysis_client: AnalysisClient,
        identity_resolver: IdentityResolver,
        uploads_dir: Path,
        result_schema: dict[str, Any] | None = None,
        executor: JobExecutor | None = None,
        max_workers: int = 4,
        allow_paths: bool = False,
    ) -> None:
        self.repo = repo
        self.analysis_client = analysis_client
        self.identity_resolver = identity_resolver
        self.uploads_dir = Path(uploads_dir)
        self.result_schema = result_schema
        self.allow_paths = allow_paths
        self.executor: JobExecutor = executor or ThreadPoolExecutor(
            max_workers=max_workers, thread_name_prefix="analysis-worker"
        )
        self._futures: dict[str, Future] = {}
        self._waiters: dict[str, int] = {}
        self._futures_lock = threading.Lock()

    def process_analysis(
        self,
        upload_batch_id: str | None,
        document_refs: Sequence[str],
        owner_id: str,
        *,
        title: str | None = None,
        wait: bool = False,
    ) -> str:
        refs = list(document_refs)
        if not refs:
            raise InvalidInputError("At least one document reference is required")
        if not owner_id or not owner_id.strip():
            raise InvalidInputError("Owner id is required")
        for ref in refs:
            resolve_document_ref(
                ref, uploads_dir=self.uploads_dir, allow_paths=self.allow_paths
            )

        owner = canonical_owner(owner_id.strip(), resolver=self.identity_resolver)
        job = self.repo.create_job(
            owner=owner,
            title=(title or "").strip() or _default_title(),
            source_document_count=len(refs),
            upload_batch_id=upload_batch_id,
        )
        logger.info(
            "Created analysis job for %d document(s)",
            len(refs),
            extra={"job_id": job.job_id, "owner": owner},
        )

        future = self.executor.submit(self._run_job, job.job_id, refs, owner)
        with self._futures_lock:
            self._futures[job.job_id] = future
        future.add_done_callback(lambda _: self._release_future(job.job_id))

        if wait:
            future.result()
        return job.job_id

    def wait_for(self, job_id: str, timeout: float | None = None) -> AnalysisJob:
        """Block until a job scheduled here finishes.

        Re-raises the job's error when the job was still running at the time
        of the call. Jobs that already finished are read back from the
        repository; their failure details live in the stored result.
        """
        with self._futures_lock:
            future = self._futures.get(job_id)
            if future is not None:
                self._waiters[job_id] = self._waiters.get(job_id, 0) + 1

        if future is not None:
            try:
                future.result(timeout=timeout)
            finally:
                self._release_waiter(job_id)

        job = self.repo.get_job(job_id)
        if job is None:
            raise JobNotFoundError(f"Analysis not found: {job_id}")
        return job

    def get_status(self, job_id: str, owner_id: str) -> AnalysisJob:
        job = self.repo.get_job(job_id)
        if job is None:
            raise JobNotFoundError(f"Analysis not found: {job_id}")

        if not is_owner(job.owner, owner_id, resolver=self.identity_resolver):
            logger.warning("Access denied to analysis", extra={"job_id": job_id})
            raise AccessDeniedError("Access denied: analysis belongs to a different user")
        return job

    def list_analyses(self, owner_id: str, *, limit: int = 50) -> list[AnalysisJob]:
        aliases = owner_aliases(owner_id, resolver=self.identity_resolver)
        return self.repo.list_jobs_by_owner(aliases, limit=limit)

    def delete_analysis(self, job_id: str, owner_id: str) -> bool:
        try:
            self.get_status(job_id, owner_id)
        except (JobNotFoundError, AccessDeniedError):
            return False
        with self._futures_lock:
            future = self._futures.get(job_id)
            if future is not None and future.done():
                self._futures.pop(job_id)
        return self.repo.delete_job(job_id)

    def check_health(self) -> dict[str, bool]:
        llm_configured = self.analysis_client.is_configured
        llm_connection = self.analysis_client.test_connection()

        try:
            database = bool(self.repo.ping())
        except Exception as error:  # noqa: BLE001
            logger.error("Database health check failed: %s", build_error_details(error))
            database = False

        return {
            "llm_configured": llm_configured,
            "llm_connection": llm_connection,
            "database": database,
            "overall": llm_connection and database,
        }

    def shutdown(self, wait: bool = True) -> None:
        self.executor.shutdown(wait=wait)

    @property
    def tracked_job_count(self) -> int:
        """Jobs whose outcome is still held in memory."""
        with self._futures_lock:
            return len(self._futures)

    def _release_future(self, job_id: str) -> None:
        with self._futures_lock:
            if not self._waiters.get(job_id):
                self._futures.pop(job_id, None)

    def _release_waiter(self, job_id: str) -> None:
        with self._futures_lock:
            remaining = self._waiters.get(job_id, 1) - 1
            if remaining > 0:
                self._waiters[job_id] = remaining
                return
            self._waiters.pop(job_id, None)
            future = self._futures.get(job_id)
            if future is not None and future.done():
                self._futures.pop(job_id, None)

    def _run_job(self, job_id: str, refs: list[str], owner: str) -> dict[str, Any]:
        set_log_context(job_id=job_id, owner=owner, stage="processing")
        started_at = time.perf_counter()
        try:
            self._safe_update_progress(job_id, PROGRESS_PROCESSING)
            documents = load_documents(
                refs, uploads_dir=self.uploads_dir, allow_paths=self.allow_paths
            )
            set_log_context(stage="analyzing")
            result = self.analysis_client.analyze(documents)

            set_log_context(stage="saving")
            self._safe_update_progress(job_id, PROGRESS_SAVING)
            merged = _merge_processing_metadata(
                result,
                processing_time_ms=_elapsed_ms(started_at),
                files_processed=len(documents),
                model_used=self.analysis_client.model_name,
            )
            self._validate_result(merged)

            self.repo.update_job(
                job_id,
                status="completed",
                progress=PROGRESS_DONE,
                result=merged,
                completed_at=_utc_now(),
            )
            logger.info(
                "Analysis completed",
                extra={"duration_ms": round(_elapsed_ms(started_at), 1)},
            )
            return merged
        except Exception as error:
            logger.error("Analysis failed: %s", build_error_details(error))
            self._safe_mark_failed(job_id, error)
            raise
        finally:
            clear_log_context()

    def _validate_result(self, result: dict[str, Any]) -> None:
        if self.result_schema is None:
            return

        validation = validate_output(result=result, schema=self.result_schema)
        if not validation.valid:
            raise SchemaViolationError(
                "Analysis result does not match the result schema",
                errors=validation.errors,
            )

    def _safe_update_progress(self, job_id: str, progress: int) -> None:
        try:
            self.repo.update_job(job_id, progress=progress)
        except Exception as error:  # noqa: BLE001
            logger.warning(
                "Failed to update progress to %d: %s", progress, build_error_details(error)
            )

    def _safe_mark_failed(self, job_id: str, error: Exception) -> None:
        failed_at = _utc_now()
        try:
            self.repo.update_job(
                job_id,
                status="failed",
                result={
                    "error": str(error),
                    "errorType": classify_llm_api_error(error),
                    "failedAt": failed_at,
                },
                completed_at=failed_at,
            )
        except Exception as write_error:  # noqa: BLE001
            logger.error(
                "Failed to mark analysis as failed: %s", build_error_details(write_error)
            )


def _merge_processing_metadata(
    result: dict[str, Any],
    *,
    processing_time_ms: float,
    files_processed: int,
    model_used: str,
) -> dict[str, Any]:
    metadata = dict(result.get("metadata") or {})
    metadata.update(
        {
            "processingTimeMs": round(processing_time_ms, 1),
            "filesProcessed": files_processed,
            "analysisTimestamp": _utc_now(),
            "modelUsed": str(metadata.get("modelUsed") or model_used),
            "isPlaceholderData": bool(metadata.get("isPlaceholderData", False)),
        }
    )
    return {**result, "metadata": metadata}


def _default_title() -> str:
    return f"Financial Analysis - {date.today().isoformat()}"


def _elapsed_ms(started_at: float) -> float:
    return (time.perf_counter() - started_at) * 1000


def _utc_now() -> str:
    return datetime.now(tz=timezone.utc).isoformat()
