"""Schema validation for phase outputs and approval payloads.

Phase outputs are stored as schema-less JSON and validated at the boundary
where they are consumed. Each validator returns a normalized copy holding
only the known fields, or raises SchemaValidationError naming the offending
field.
"""
from __future__ import annotations

import json
import re
from typing import Any, Optional


class SchemaValidationError(Exception):
    """Raised when data doesn't conform to schema."""

    def __init__(self, field: str, message: str, value: Any = None):
        self.field = field
        self.message = message
        self.value = value
        super().__init__(f"Schema validation failed for '{field}': {message}")


CRITERIA = ("security", "bugs", "compatibility", "performance", "quality")
SEVERITIES = ("critical", "major", "minor")
VERDICTS = ("approved", "approved_with_conditions", "rejected")
GATE_NAMES = ("typecheck", "test", "lint", "build")
GATE_STATUSES = ("passed", "failed")
CHANGE_TYPES = ("added", "modified", "deleted")
COMPLEXITIES = ("low", "medium", "high")


# =============================================================================
# Field helpers
# =============================================================================


def _obj(value: Any, path: str) -> dict[str, Any]:
    if not isinstance(value, dict):
        raise SchemaValidationError(path, "must be an object", value)
    return value


def _str(data: dict[str, Any], key: str, path: str, min_length: int = 0) -> str:
    value = data.get(key)
    if not isinstance(value, str):
        raise SchemaValidationError(f"{path}{key}", "must be a string", value)
    if len(value) < min_length:
        raise SchemaValidationError(f"{path}{key}", "must not be empty", value)
    return value


def _optional_str(data: dict[str, Any], key: str, path: str) -> Optional[str]:
    if data.get(key) is None:
        return None
    return _str(data, key, path)


def _bool(data: dict[str, Any], key: str, path: str) -> bool:
    value = data.get(key)
    if not isinstance(value, bool):
        raise SchemaValidationError(f"{path}{key}", "must be a boolean", value)
    return value


def _int(data: dict[str, Any], key: str, path: str, minimum: Optional[int] = None) -> int:
    value = data.get(key)
    if not isinstance(value, int) or isinstance(value, bool):
        raise SchemaValidationError(f"{path}{key}", "must be an integer", value)
    if minimum is not None and value < minimum:
        raise SchemaValidationError(f"{path}{key}", f"must be >= {minimum}", value)
    return value


def _enum(data: dict[str, Any], key: str, path: str, allowed: tuple[str, ...]) -> str:
    value = data.get(key)
    if value not in allowed:
        raise SchemaValidationError(f"{path}{key}", f"must be one of {list(allowed)}", value)
    return value


def _list(data: dict[str, Any], key: str, path: str) -> list[Any]:
    value = data.get(key)
    if not isinstance(value, list):
        raise SchemaValidationError(f"{path}{key}", "must be an array", value)
    return value


def _str_list(data: dict[str, Any], key: str, path: str) -> list[str]:
    items = _list(data, key, path)
    for i, item in enumerate(items):
        if not isinstance(item, str):
            raise SchemaValidationError(f"{path}{key}[{i}]", "must be a string", item)
    return list(items)


# =============================================================================
# Phase outputs
# =============================================================================


def validate_analysis_output(data: Any) -> dict[str, Any]:
    """Validate the analysis phase output."""
    data = _obj(data, "analysis")
    codebase_map = []
    for i, entry in enumerate(_list(data, "codebaseMap", "")):
        path = f"codebaseMap[{i}]."
        entry = _obj(entry, path.rstrip("."))
        codebase_map.append({
            "path": _str(entry, "path", path),
            "purpose": _str(entry, "purpose", path),
            "relevance": _str(entry, "relevance", path),
        })
    return {
        "affectedSystems": _str_list(data, "affectedSystems", ""),
        "architecturalConstraints": _str_list(data, "architecturalConstraints", ""),
        "risks": _str_list(data, "risks", ""),
        "codebaseMap": codebase_map,
        "feasibilityAssessment": _str(data, "feasibilityAssessment", ""),
    }


def validate_approach(data: Any, path: str = "approach.") -> dict[str, Any]:
    """Validate a single approach entry."""
    data = _obj(data, path.rstrip("."))
    tradeoffs = _obj(data.get("tradeoffs"), f"{path}tradeoffs")
    assumptions = []
    for i, item in enumerate(_list(data, "assumptions", path)):
        item_path = f"{path}assumptions[{i}]."
        item = _obj(item, item_path.rstrip("."))
        assumptions.append({
            "claim": _str(item, "claim", item_path),
            "validated": _bool(item, "validated", item_path),
            "evidence": _str(item, "evidence", item_path),
        })
    return {
        "id": _str(data, "id", path, min_length=1),
        "title": _str(data, "title", path, min_length=1),
        "summary": _str(data, "summary", path),
        "rationale": _str(data, "rationale", path),
        "implementation": _str(data, "implementation", path),
        "affectedFiles": _str_list(data, "affectedFiles", path),
        "tradeoffs": {
            "pros": _str_list(tradeoffs, "pros", f"{path}tradeoffs."),
            "cons": _str_list(tradeoffs, "cons", f"{path}tradeoffs."),
        },
        "assumptions": assumptions,
        "estimatedComplexity": _enum(data, "estimatedComplexity", path, COMPLEXITIES),
    }


def validate_approaches_output(data: Any) -> dict[str, Any]:
    """
    Validate the approaches phase output.

    At least one approach is required; a lone approach must come with a
    singleApproachJustification. Approach ids must be unique so a human
    choice resolves to exactly one approach.
    """
    data = _obj(data, "approaches")
    raw = _list(data, "approaches", "")
    if not raw:
        raise SchemaValidationError("approaches", "at least one approach is required", raw)
    approaches = [validate_approach(a, f"approaches[{i}].") for i, a in enumerate(raw)]

    ids = [a["id"] for a in approaches]
    if len(set(ids)) != len(ids):
        raise SchemaValidationError("approaches", "approach ids must be unique", ids)

    justification = _optional_str(data, "singleApproachJustification", "")
    if len(approaches) == 1 and not (justification and justification.strip()):
        raise SchemaValidationError(
            "singleApproachJustification",
            "required when only one approach is produced",
        )

    result = {
        "approaches": approaches,
        "recommendation": _str(data, "recommendation", ""),
    }
    if justification is not None:
        result["singleApproachJustification"] = justification
    return result


def validate_finding(data: Any, path: str = "finding.") -> dict[str, Any]:
    """Validate one review finding."""
    data = _obj(data, path.rstrip("."))
    return {
        "criterion": _enum(data, "criterion", path, CRITERIA),
        "severity": _enum(data, "severity", path, SEVERITIES),
        "description": _str(data, "description", path),
        "recommendation": _str(data, "recommendation", path),
    }


def validate_judge_report(data: Any) -> dict[str, Any]:
    """Validate the raw report produced by the judge agent."""
    data = _obj(data, "judge")
    return {
        "findings": [
            validate_finding(f, f"findings[{i}].")
            for i, f in enumerate(_list(data, "findings", ""))
        ],
        "overallAssessment": _str(data, "overallAssessment", ""),
    }


def validate_judging_output(data: Any) -> dict[str, Any]:
    """Validate the judging phase output (report plus derived verdict)."""
    data = _obj(data, "judging")
    conditions = []
    for i, item in enumerate(_list(data, "conditions", "")):
        path = f"conditions[{i}]."
        item = _obj(item, path.rstrip("."))
        conditions.append({
            "description": _str(item, "description", path),
            "severity": _enum(item, "severity", path, SEVERITIES),
        })
    result = {
        "selectedApproachId": _str(data, "selectedApproachId", ""),
        "findings": [
            validate_finding(f, f"findings[{i}].")
            for i, f in enumerate(_list(data, "findings", ""))
        ],
        "overallVerdict": _enum(data, "overallVerdict", "", VERDICTS),
        "conditions": conditions,
        "overallAssessment": _str(data, "overallAssessment", ""),
    }
    rejection_reason = _optional_str(data, "rejectionReason", "")
    if rejection_reason is not None:
        result["rejectionReason"] = rejection_reason
    return result


def validate_gate_result(data: Any, path: str = "gate.") -> dict[str, Any]:
    """Validate one quality gate result."""
    data = _obj(data, path.rstrip("."))
    return {
        "gate": _enum(data, "gate", path, GATE_NAMES),
        "status": _enum(data, "status", path, GATE_STATUSES),
        "output": _str(data, "output", path),
    }


def validate_implementation_output(data: Any) -> dict[str, Any]:
    """Validate the implementation phase output."""
    data = _obj(data, "implementation")
    files = []
    for i, item in enumerate(_list(data, "filesChanged", "")):
        path = f"filesChanged[{i}]."
        item = _obj(item, path.rstrip("."))
        files.append({
            "path": _str(item, "path", path, min_length=1),
            "changeType": _enum(item, "changeType", path, CHANGE_TYPES),
        })
    return {
        "branch": _str(data, "branch", "", min_length=1),
        "filesChanged": files,
        "gateResults": [
            validate_gate_result(g, f"gateResults[{i}].")
            for i, g in enumerate(_list(data, "gateResults", ""))
        ],
        "totalCoderAttempts": _int(data, "totalCoderAttempts", "", minimum=1),
        "conditionsAddressed": _str_list(data, "conditionsAddressed", ""),
    }


def validate_pr_output(data: Any) -> dict[str, Any]:
    """Validate the pull request phase output."""
    data = _obj(data, "pr")
    return {
        "prUrl": _str(data, "prUrl", "", min_length=1),
        "prNumber": _int(data, "prNumber", "", minimum=1),
        "title": _str(data, "title", "", min_length=1),
        "body": _str(data, "body", ""),
    }


# =============================================================================
# Approval wire contract
# =============================================================================


def validate_choice_options(options: Any, path: str = "options") -> list[dict[str, str]]:
    """Validate a list of {id, label} choice options."""
    if not isinstance(options, list):
        raise SchemaValidationError(path, "must be an array", options)
    validated = []
    for i, option in enumerate(options):
        option_path = f"{path}[{i}]."
        option = _obj(option, option_path.rstrip("."))
        validated.append({
            "id": _str(option, "id", option_path, min_length=1),
            "label": _str(option, "label", option_path, min_length=1),
        })
    return validated


def validate_cta_request(data: Any) -> dict[str, Any]:
    """Validate an approval request event, discriminated by kind."""
    data = _obj(data, "cta")
    base = {
        "ctaId": _str(data, "ctaId", "", min_length=1),
        "runId": _str(data, "runId", "", min_length=1),
    }
    kind = _enum(data, "kind", "", ("approval", "text", "choice"))
    if kind == "approval":
        return {**base, "kind": kind, "message": _str(data, "message", "", min_length=1)}
    if kind == "text":
        result = {**base, "kind": kind, "prompt": _str(data, "prompt", "", min_length=1)}
        placeholder = _optional_str(data, "placeholder", "")
        if placeholder is not None:
            result["placeholder"] = placeholder
        return result
    options = validate_choice_options(data.get("options"))
    if len(options) < 2:
        raise SchemaValidationError("options", "a choice needs at least two options", options)
    return {
        **base,
        "kind": kind,
        "prompt": _str(data, "prompt", "", min_length=1),
        "options": options,
    }


def validate_cta_response(data: Any) -> dict[str, Any]:
    """Validate an approval response event, discriminated by kind."""
    data = _obj(data, "cta")
    base = {"ctaId": _str(data, "ctaId", "", min_length=1)}
    kind = _enum(data, "kind", "", ("approval", "text", "choice"))
    if kind == "approval":
        result = {**base, "kind": kind, "approved": _bool(data, "approved", "")}
        reason = _optional_str(data, "reason", "")
        if reason is not None:
            result["reason"] = reason
        return result
    if kind == "text":
        return {**base, "kind": kind, "text": _str(data, "text", "", min_length=1)}
    return {**base, "kind": kind, "selectedId": _str(data, "selectedId", "", min_length=1)}


# =============================================================================
# Model output parsing
# =============================================================================

_FENCE_PATTERN = re.compile(r"```(?:json)?\s*([\s\S]*?)```")


def extract_json_object(text: str) -> Any:
    """
    Extract the JSON object an agent produced as its final answer.

    Tries a fenced code block first, then the whole text, then the span
    between the first '{' and the last '}'.

    Raises:
        SchemaValidationError: If no JSON object can be parsed.
    """
    trimmed = text.strip()
    match = _FENCE_PATTERN.search(trimmed)
    candidate = match.group(1).strip() if match and match.group(1).strip() else trimmed

    try:
        return json.loads(candidate)
    except json.JSONDecodeError as e:
        first_error = e

    start = trimmed.find("{")
    end = trimmed.rfind("}")
    if start == -1 or end < start:
        raise SchemaValidationError("output", f"no JSON object found: {first_error}")
    try:
        return json.loads(trimmed[start:end + 1])
    except json.JSONDecodeError as e:
        raise SchemaValidationError("output", f"invalid JSON: {e}")
