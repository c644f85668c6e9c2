from __future__ import annotations

import json
import re
from dataclasses import dataclass
from pathlib import Path
from typing import Any

import yaml
from jsonschema import Draft202012Validator
from jsonschema.exceptions import SchemaError

VERSION_RE = re.compile(r"^v(\d{3})$")

SYSTEM_PROMPT_FILE = "system_prompt.txt"
SCHEMA_FILE = "schema.json"
META_FILE = "meta.yaml"


@dataclass(frozen=True, slots=True)
class PromptSet:
    """Instruction prompt plus result schema for one prompt version."""

    prompt_name: str
    version: str
    system_prompt_text: str
    schema: dict[str, Any]
    meta: dict[str, Any]
    prompt_dir: Path


class PromptManager:
    """Reads ``<root>/<prompt_name>/vNNN/`` prompt sets."""

    def __init__(self, prompts_root: Path | str) -> None:
        self.prompts_root = Path(prompts_root)

    def list_versions(self, prompt_name: str) -> list[str]:
        prompt_dir = self.prompts_root / prompt_name
        if not prompt_dir.is_dir():
            return []

        versions = [
            child.name
            for child in prompt_dir.iterdir()
            if child.is_dir() and VERSION_RE.match(child.name)
        ]
        return sorted(versions, key=lambda name: int(name[1:]))

    def load_prompt_set(self, *, prompt_name: str, version: str) -> PromptSet:
        if not VERSION_RE.match(version):
            raise ValueError(f"Invalid prompt version format: {version}")

        available = self.list_versions(prompt_name)
        if version not in available:
            raise FileNotFoundError(
                f"prompt {prompt_name!r} has no version {version} in {self.prompts_root}"
                f" (available: {', '.join(available) or 'none'})"
            )

        prompt_dir = self.prompts_root / prompt_name / version
        system_prompt_path = prompt_dir / SYSTEM_PROMPT_FILE
        schema_path = prompt_dir / SCHEMA_FILE
        meta_path = prompt_dir / META_FILE

        if not system_prompt_path.exists():
            raise FileNotFoundError(f"system prompt not found: {system_prompt_path}")
        if not schema_path.exists():
            raise FileNotFoundError(f"schema not found: {schema_path}")

        schema = parse_result_schema(schema_path.read_text(encoding="utf-8"))

        meta: dict[str, Any] = {}
        if meta_path.exists():
            loaded = yaml.safe_load(meta_path.read_text(encoding="utf-8")) or {}
            if isinstance(loaded, dict):
                meta = loaded

        return PromptSet(
            prompt_name=prompt_name,
            version=version,
            system_prompt_text=system_prompt_path.read_text(encoding="utf-8").strip(),
            schema=schema,
            meta=meta,
            prompt_dir=prompt_dir,
        )


def parse_result_schema(schema_text: str) -> dict[str, Any]:
    try:
        parsed = json.loads(schema_text)
    except json.JSONDecodeError as error:
        raise ValueError(f"Invalid schema JSON: {error}") from error

    if not isinstance(parsed, dict):
        raise ValueError("Schema JSON root must be an object")

    try:
        Draft202012Validator.check_schema(parsed)
    except SchemaError as error:
        raise ValueError(f"Invalid JSON Schema: {error.message}") from error

    return parsed
