from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Literal

JobStatus = Literal["processing", "completed", "failed"]

TERMINAL_STATUSES: frozenset[str] = frozenset({"completed", "failed"})


@dataclass(frozen=True, slots=True)
class AnalysisJob:
    job_id: str
    owner: str
    title: str
    source_document_count: int
    status: JobStatus
    progress: int
    created_at: str
    updated_at: str
    upload_batch_id: str | None = None
    result: dict[str, Any] | None = None
    completed_at: str | None = None

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    def to_status_payload(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "id": self.job_id,
            "uploadBatchId": self.upload_batch_id,
            "status": self.status,
            "progress": self.progress,
            "title": self.title,
            "sourceDocumentCount": self.source_document_count,
            "createdAt": self.created_at,
            "updatedAt": self.updated_at,
            "completedAt": self.completed_at,
        }
        if self.result is not None:
            payload["result"] = self.result
        return payload


@dataclass(frozen=True, slots=True)
class UserRecord:
    user_id: str
    email: str
    name: str
    created_at: str
