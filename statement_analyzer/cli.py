from __future__ import annotations

import argparse
import json
import sqlite3
import sys
from pathlib import Path
from typing import Any

from dotenv import load_dotenv

from statement_analyzer.config.settings import Settings
from statement_analyzer.logging import setup_logging
from statement_analyzer.pipeline.executors import InlineExecutor
from statement_analyzer.pipeline.orchestrator import AnalysisOrchestrator
from statement_analyzer.pipeline.polling import poll_until_terminal
from statement_analyzer.service import build_orchestrator
from statement_analyzer.storage.repo import StorageRepo
from statement_analyzer.utils.error_taxonomy import (
    ERROR_FRIENDLY_MESSAGES,
    AnalysisError,
)


def main(argv: list[str] | None = None) -> int:
    parser = _build_parser()
    args = parser.parse_args(argv)

    if Path(args.env_file).exists():
        load_dotenv(dotenv_path=args.env_file)

    settings = Settings()
    setup_logging(settings.log_level, settings.log_file)

    try:
        payload = _dispatch(args, settings)
    except AnalysisError as error:
        print(f"{error.kind}: {ERROR_FRIENDLY_MESSAGES[error.kind]} ({error})", file=sys.stderr)
        return 1
    except sqlite3.IntegrityError as error:
        print(f"INVALID_INPUT: {error}", file=sys.stderr)
        return 1
    except TimeoutError as error:
        print(f"TIMEOUT: {error}", file=sys.stderr)
        return 1

    print(_json_text(payload), end="")
    return 0


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="statement-analyzer",
        description="Analyze bank statements with an LLM and track analysis jobs.",
    )
    parser.add_argument("--env-file", default=".env", help="Path to .env file")
    subparsers = parser.add_subparsers(dest="command", required=True)

    p_analyze = subparsers.add_parser("analyze", help="Submit documents for analysis")
    p_analyze.add_argument("files", nargs="+", help="PDF, TXT or CSV files, or local:// refs")
    p_analyze.add_argument("--owner", required=True)
    p_analyze.add_argument("--title", default=None)
    p_analyze.add_argument("--batch-id", default=None)
    p_analyze.add_argument(
        "--no-wait",
        action="store_true",
        help="Print only the job id instead of the job status.",
    )

    p_status = subparsers.add_parser("status", help="Show one analysis job")
    p_status.add_argument("job_id")
    p_status.add_argument("--owner", required=True)
    p_status.add_argument(
        "--wait",
        action="store_true",
        help="Poll until the job completes or fails.",
    )

    p_list = subparsers.add_parser("list", help="List an owner's analyses")
    p_list.add_argument("--owner", required=True)
    p_list.add_argument("--limit", type=int, default=50)

    p_delete = subparsers.add_parser("delete", help="Delete an analysis job")
    p_delete.add_argument("job_id")
    p_delete.add_argument("--owner", required=True)

    p_user = subparsers.add_parser("create-user", help="Register an account")
    p_user.add_argument("--email", required=True)
    p_user.add_argument("--name", default="")

    subparsers.add_parser("health", help="Check AI provider and database")
    return parser


def _dispatch(args: argparse.Namespace, settings: Settings) -> dict[str, Any]:
    if args.command == "create-user":
        user = StorageRepo(settings.resolved_sqlite_path).create_user(
            email=args.email, name=args.name
        )
        return {"id": user.user_id, "email": user.email, "name": user.name}

    # A one-shot process has no later moment to run background work.
    orchestrator = build_orchestrator(
        settings, executor=InlineExecutor(), allow_paths=True
    )
    try:
        return _run_command(args, orchestrator, settings)
    finally:
        orchestrator.shutdown()


def _run_command(
    args: argparse.Namespace, orchestrator: AnalysisOrchestrator, settings: Settings
) -> dict[str, Any]:
    if args.command == "analyze":
        refs = [
            ref if ref.startswith("local://") else str(Path(ref).resolve())
            for ref in args.files
        ]
        job_id = orchestrator.process_analysis(
            args.batch_id, refs, args.owner, title=args.title
        )
        if args.no_wait:
            return {"id": job_id}
        return orchestrator.get_status(job_id, args.owner).to_status_payload()

    if args.command == "status":
        if not args.wait:
            return orchestrator.get_status(args.job_id, args.owner).to_status_payload()
        job = poll_until_terminal(
            lambda: orchestrator.get_status(args.job_id, args.owner),
            interval_seconds=settings.status_poll_interval_seconds,
            timeout_seconds=settings.status_poll_timeout_seconds,
        )
        return job.to_status_payload()

    if args.command == "list":
        jobs = orchestrator.list_analyses(args.owner, limit=args.limit)
        return {"analyses": [job.to_status_payload() for job in jobs]}

    if args.command == "delete":
        return {"deleted": orchestrator.delete_analysis(args.job_id, args.owner)}

    return orchestrator.check_health()


def _json_text(payload: dict[str, Any]) -> str:
    return f"{json.dumps(payload, ensure_ascii=False, indent=2, sort_keys=True)}\n"


if __name__ == "__main__":
    raise SystemExit(main())
