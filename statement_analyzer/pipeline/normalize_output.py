from __future__ import annotations

import json
import logging
import math
from dataclasses import dataclass
from typing import Any, Callable

from jsonschema import Draft202012Validator

from statement_analyzer.utils.error_taxonomy import (
    ERROR_FRIENDLY_MESSAGES,
    MalformedResponseError,
    SchemaViolationError,
)

logger = logging.getLogger(__name__)

REQUIRED_FIELDS: tuple[str, ...] = (
    "totalIncome",
    "totalExpenses",
    "categories",
    "insights",
    "recommendations",
    "summary",
)
SEVERITIES = frozenset({"low", "medium", "high"})


@dataclass(frozen=True, slots=True)
class ValidationResult:
    valid: bool
    errors: list[str]


def clean_json_response(text: str) -> str:
    """Strip code fences and, when prose surrounds the JSON, keep the first object."""
    cleaned = text.replace("```json", "").replace("```", "").strip()
    try:
        json.loads(cleaned)
    except json.JSONDecodeError:
        span = _first_balanced_object(cleaned)
        return span if span is not None else cleaned
    return cleaned


def parse_analysis_json(text: str) -> dict[str, Any]:
    cleaned = clean_json_response(text)
    try:
        parsed = json.loads(cleaned)
    except json.JSONDecodeError as error:
        logger.error("JSON parsing failed, raw response: %.500s", text)
        raise MalformedResponseError(ERROR_FRIENDLY_MESSAGES["MALFORMED_RESPONSE"]) from error

    if not isinstance(parsed, dict):
        raise MalformedResponseError("AI response is not a valid object")
    return parsed


def normalize_analysis(data: dict[str, Any]) -> dict[str, Any]:
    """Repair an untrusted AI payload into the analysis result shape.

    Missing required fields and a non-object ``categories`` raise
    ``SchemaViolationError``. Everything else is coerced: totals become
    non-negative numbers, ``netCashFlow`` is recomputed, absent lists become
    empty, malformed list entries are repaired or dropped. The input is not
    mutated.
    """
    missing_fields = [field for field in REQUIRED_FIELDS if field not in data]
    if missing_fields:
        raise SchemaViolationError(
            f"Missing required fields in AI response: {', '.join(missing_fields)}",
            missing_fields=missing_fields,
        )

    categories = data["categories"]
    if not isinstance(categories, dict):
        raise SchemaViolationError(
            "Categories field must be an object",
            errors=[f"categories: expected object, got {type(categories).__name__}"],
        )

    total_income = coerce_non_negative(data["totalIncome"], "totalIncome")
    total_expenses = coerce_non_negative(data["totalExpenses"], "totalExpenses")

    normalized: dict[str, Any] = {
        key: value for key, value in data.items() if key not in _REPAIRED_KEYS
    }
    normalized.update(
        {
            "totalIncome": total_income,
            "totalExpenses": total_expenses,
            "netCashFlow": total_income - total_expenses,
            "categories": {
                "income": _normalize_list(
                    categories.get("income"), "categories.income", _category_entry
                ),
                "expenses": _normalize_list(
                    categories.get("expenses"), "categories.expenses", _category_entry
                ),
            },
            "monthlyTrends": _normalize_list(
                data.get("monthlyTrends"), "monthlyTrends", _trend_entry
            ),
            "insights": _normalize_list(data["insights"], "insights", _insight_entry),
            "recommendations": _normalize_list(
                data["recommendations"], "recommendations", _recommendation_entry
            ),
            "summary": _coerce_summary(data["summary"]),
        }
    )

    metadata = data.get("metadata")
    if isinstance(metadata, dict):
        normalized["metadata"] = dict(metadata)
    else:
        normalized.pop("metadata", None)

    return normalized


def validate_output(
    *,
    result: dict[str, Any],
    schema: dict[str, Any],
) -> ValidationResult:
    validator = Draft202012Validator(schema)
    errors = sorted(validator.iter_errors(result), key=lambda item: list(item.path))

    messages: list[str] = []
    for error in errors:
        path = "/".join(str(item) for item in error.path)
        messages.append(f"{path}: {error.message}" if path else error.message)

    return ValidationResult(valid=not messages, errors=messages)


def coerce_non_negative(value: Any, field_name: str) -> float | int:
    number = _to_number(value)
    if number is None:
        logger.warning("Invalid %s value: %r, defaulting to 0", field_name, value)
        return 0
    return max(0, number)


_REPAIRED_KEYS = frozenset(
    {
        "totalIncome",
        "totalExpenses",
        "netCashFlow",
        "categories",
        "monthlyTrends",
        "insights",
        "recommendations",
        "summary",
    }
)


def _to_number(value: Any) -> float | int | None:
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        number: float | int = value
    elif isinstance(value, str):
        try:
            number = float(value.strip().replace(",", ""))
        except ValueError:
            return None
    else:
        return None

    if isinstance(number, float) and not math.isfinite(number):
        return None
    return number


def _normalize_list(
    value: Any,
    field_name: str,
    repair: Callable[[Any, str], dict[str, Any] | None],
) -> list[dict[str, Any]]:
    if not isinstance(value, list):
        if value is not None:
            logger.warning("%s is not a list, defaulting to []", field_name)
        return []

    entries: list[dict[str, Any]] = []
    for index, item in enumerate(value):
        entry = repair(item, f"{field_name}[{index}]")
        if entry is None:
            logger.warning("Dropping malformed %s[%d]: %r", field_name, index, item)
            continue
        entries.append(entry)
    return entries


def _category_entry(item: Any, path: str) -> dict[str, Any] | None:
    if not isinstance(item, dict):
        return None
    percentage = _to_number(item.get("percentage"))
    return {
        "category": str(item.get("category") or item.get("name") or "Other"),
        "amount": coerce_non_negative(item.get("amount"), f"{path}.amount"),
        "percentage": percentage if percentage is not None else 0,
    }


def _trend_entry(item: Any, path: str) -> dict[str, Any] | None:
    if not isinstance(item, dict):
        return None
    return {
        "month": str(item.get("month") or ""),
        "income": coerce_non_negative(item.get("income"), f"{path}.income"),
        "expenses": coerce_non_negative(item.get("expenses"), f"{path}.expenses"),
    }


def _insight_entry(item: Any, path: str) -> dict[str, Any] | None:
    if isinstance(item, str):
        return {"type": "general", "description": item, "severity": "low"}
    if not isinstance(item, dict):
        return None

    severity = str(item.get("severity") or "").strip().lower()
    return {
        "type": str(item.get("type") or "general"),
        "description": str(item.get("description") or ""),
        "severity": severity if severity in SEVERITIES else "low",
    }


def _recommendation_entry(item: Any, path: str) -> dict[str, Any] | None:
    if isinstance(item, str):
        return {"category": "general", "suggestion": item, "potentialSavings": 0}
    if not isinstance(item, dict):
        return None
    return {
        "category": str(item.get("category") or item.get("name") or "general"),
        "suggestion": str(item.get("suggestion") or ""),
        "potentialSavings": coerce_non_negative(
            item.get("potentialSavings", 0), f"{path}.potentialSavings"
        ),
    }


def _coerce_summary(value: Any) -> str:
    if isinstance(value, str):
        return value
    return str(value) if value else ""


def _first_balanced_object(text: str) -> str | None:
    start = text.find("{")
    while start != -1:
        depth = 0
        in_string = False
        escaped = False
        for index in range(start, len(text)):
            char = text[index]
            if in_string:
                if escaped:
                    escaped = False
                elif char == "\\":
                    escaped = True
                elif char == '"':
                    in_string = False
                continue
            if char == '"':
                in_string = True
            elif char == "{":
                depth += 1
            elif char == "}":
                depth -= 1
                if depth == 0:
                    return text[start : index + 1]
        start = text.find("{", start + 1)
    return None
