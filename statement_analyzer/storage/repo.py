from __future__ import annotations

import json
import sqlite3
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Sequence
from uuid import uuid4

from statement_analyzer.storage.db import connection, init_db
from statement_analyzer.storage.models import AnalysisJob, JobStatus, UserRecord
from statement_analyzer.utils.error_taxonomy import TerminalStateError

_JOB_COLUMNS = """
    job_id,
    owner,
    upload_batch_id,
    title,
    source_document_count,
    status,
    progress,
    result_json,
    created_at,
    updated_at,
    completed_at
"""


class StorageRepo:
    """SQLite-backed job repository and identity lookup."""

    def __init__(self, db_path: Path | str) -> None:
        self.db_path = Path(db_path)
        init_db(self.db_path)

    def create_job(
        self,
        *,
        owner: str,
        title: str,
        source_document_count: int,
        upload_batch_id: str | None = None,
        job_id: str | None = None,
        created_at: str | None = None,
    ) -> AnalysisJob:
        job_identifier = job_id or uuid4().hex
        created_timestamp = created_at or _utc_now()

        with connection(self.db_path) as conn:
            conn.execute(
                """
                INSERT INTO analysis_jobs (
                    job_id,
                    owner,
                    upload_batch_id,
                    title,
                    source_document_count,
                    status,
                    progress,
                    created_at,
                    updated_at
                )
                VALUES (?, ?, ?, ?, ?, 'processing', 0, ?, ?)
                """,
                (
                    job_identifier,
                    owner,
                    upload_batch_id,
                    title,
                    source_document_count,
                    created_timestamp,
                    created_timestamp,
                ),
            )

        job = self.get_job(job_identifier)
        if job is None:
            raise RuntimeError("Failed to create analysis job")

        return job

    def get_job(self, job_id: str) -> AnalysisJob | None:
        with connection(self.db_path) as conn:
            row = conn.execute(
                f"SELECT {_JOB_COLUMNS} FROM analysis_jobs WHERE job_id = ?",
                (job_id,),
            ).fetchone()

        if row is None:
            return None
        return _row_to_job(row)

    def update_job(
        self,
        job_id: str,
        *,
        status: JobStatus | None = None,
        progress: int | None = None,
        result: dict[str, Any] | None = None,
        completed_at: str | None = None,
    ) -> AnalysisJob:
        """Apply changes to a job that is still processing.

        Progress never moves backwards. Raises ``KeyError`` for unknown ids
        and ``TerminalStateError`` once the job is completed or failed.
        """
        assignments: list[str] = ["updated_at = ?"]
        values: list[Any] = [_utc_now()]

        if status is not None:
            assignments.append("status = ?")
            values.append(status)
        if progress is not None:
            assignments.append("progress = MAX(progress, ?)")
            values.append(max(0, min(100, int(progress))))
        if result is not None:
            assignments.append("result_json = ?")
            values.append(_to_json_text(result))
        if completed_at is not None:
            assignments.append("completed_at = ?")
            values.append(completed_at)

        with connection(self.db_path) as conn:
            updated = conn.execute(
                f"""
                UPDATE analysis_jobs
                SET {", ".join(assignments)}
                WHERE job_id = ? AND status = 'processing'
                """,
                (*values, job_id),
            )
            row = conn.execute(
                f"SELECT {_JOB_COLUMNS} FROM analysis_jobs WHERE job_id = ?",
                (job_id,),
            ).fetchone()

        if row is None:
            raise KeyError(f"Analysis job not found: {job_id}")
        job = _row_to_job(row)
        if updated.rowcount == 0:
            raise TerminalStateError(
                f"Analysis job {job_id} is already {job.status}; update rejected"
            )
        return job

    def list_jobs_by_owner(
        self,
        owners: Sequence[str] | str,
        *,
        limit: int = 50,
        status: JobStatus | None = None,
    ) -> list[AnalysisJob]:
        owner_values = [owners] if isinstance(owners, str) else list(owners)
        if not owner_values:
            return []

        placeholders = ", ".join("?" for _ in owner_values)
        query = (
            f"SELECT {_JOB_COLUMNS} FROM analysis_jobs "
            f"WHERE owner IN ({placeholders})"
        )
        params: list[Any] = list(owner_values)
        if status is not None:
            query += " AND status = ?"
            params.append(status)
        query += " ORDER BY created_at DESC, rowid DESC LIMIT ?"
        params.append(limit)

        with connection(self.db_path) as conn:
            rows = conn.execute(query, params).fetchall()

        return [_row_to_job(row) for row in rows]

    def count_jobs_by_owner(self, owner: str) -> int:
        with connection(self.db_path) as conn:
            row = conn.execute(
                "SELECT COUNT(*) AS total FROM analysis_jobs WHERE owner = ?",
                (owner,),
            ).fetchone()
        return int(row["total"]) if row is not None else 0

    def delete_job(self, job_id: str) -> bool:
        with connection(self.db_path) as conn:
            result = conn.execute(
                "DELETE FROM analysis_jobs WHERE job_id = ?",
                (job_id,),
            )
        return result.rowcount > 0

    def create_user(
        self,
        *,
        email: str,
        name: str = "",
        user_id: str | None = None,
    ) -> UserRecord:
        user_identifier = user_id or uuid4().hex
        with connection(self.db_path) as conn:
            conn.execute(
                """
                INSERT INTO users (user_id, email, name, created_at)
                VALUES (?, ?, ?, ?)
                """,
                (user_identifier, _normalize_email(email), name, _utc_now()),
            )

        user = self.find_user_by_id(user_identifier)
        if user is None:
            raise RuntimeError("Failed to create user")
        return user

    def find_user_by_id(self, user_id: str) -> UserRecord | None:
        with connection(self.db_path) as conn:
            row = conn.execute(
                "SELECT user_id, email, name, created_at FROM users WHERE user_id = ?",
                (user_id,),
            ).fetchone()
        return _row_to_user(row) if row is not None else None

    def find_user_by_email(self, email: str) -> UserRecord | None:
        with connection(self.db_path) as conn:
            row = conn.execute(
                "SELECT user_id, email, name, created_at FROM users WHERE email = ?",
                (_normalize_email(email),),
            ).fetchone()
        return _row_to_user(row) if row is not None else None

    def ping(self) -> bool:
        with connection(self.db_path) as conn:
            conn.execute("SELECT 1").fetchone()
        return True


def _row_to_job(row: sqlite3.Row) -> AnalysisJob:
    return AnalysisJob(
        job_id=str(row["job_id"]),
        owner=str(row["owner"]),
        upload_batch_id=row["upload_batch_id"],
        title=str(row["title"]),
        source_document_count=int(row["source_document_count"]),
        status=row["status"],
        progress=int(row["progress"]),
        result=_from_json_text(row["result_json"]),
        created_at=str(row["created_at"]),
        updated_at=str(row["updated_at"]),
        completed_at=row["completed_at"],
    )


def _row_to_user(row: sqlite3.Row) -> UserRecord:
    return UserRecord(
        user_id=str(row["user_id"]),
        email=str(row["email"]),
        name=str(row["name"]),
        created_at=str(row["created_at"]),
    )


def _normalize_email(email: str) -> str:
    return email.strip().lower()


def _to_json_text(payload: dict[str, Any]) -> str:
    return json.dumps(payload, ensure_ascii=False, sort_keys=True)


def _from_json_text(value: str | None) -> dict[str, Any] | None:
    if value is None or value == "":
        return None

    parsed = json.loads(value)
    if isinstance(parsed, dict):
        return parsed
    return None


def _utc_now() -> str:
    return datetime.now(tz=timezone.utc).isoformat()
