"""Decode and validate model output against the agent artifact contract.

Model text is decoded into an untyped JSON value first and only becomes an
``AgentArtifact`` once ``validate_artifact`` accepts it. Both steps return
tagged results instead of raising so the gateway can feed every violation
into a single repair prompt.
"""

from __future__ import annotations

import json
from dataclasses import dataclass
from typing import Any, Union

from pydantic import ValidationError

from agentgate.domain.artifacts import AgentArtifact


NOT_VALID_JSON = "not valid JSON"
MANUAL_REVIEW_NOTICE = "Analysis could not be completed - manual review required"

_FENCE = "```"


@dataclass(frozen=True)
class Valid:
    artifact: AgentArtifact


@dataclass(frozen=True)
class Invalid:
    violations: tuple[str, ...]


ValidationResult = Union[Valid, Invalid]


@dataclass(frozen=True)
class Decoded:
    value: Any


DecodeResult = Union[Decoded, Invalid]


def strip_code_fence(raw: str) -> str:
    # Models often wrap JSON in ```json ... ``` despite instructions.
    text = raw.strip()
    if text.startswith(_FENCE + "json"):
        text = text[len(_FENCE) + 4 :]
    elif text.startswith(_FENCE):
        text = text[len(_FENCE) :]
    if text.endswith(_FENCE):
        text = text[: -len(_FENCE)]
    return text.strip()


def decode_model_output(raw: str) -> DecodeResult:
    try:
        return Decoded(json.loads(strip_code_fence(raw)))
    except (TypeError, ValueError, RecursionError):
        # Pathologically nested output is reported like any other undecodable text.
        return Invalid((NOT_VALID_JSON,))


def _format_location(loc: tuple[Any, ...]) -> str:
    # Render pydantic locations as actions[0].kind style paths.
    path = ""
    for part in loc:
        if isinstance(part, int):
            path += f"[{part}]"
        else:
            path += f".{part}" if path else str(part)
    return path or "artifact"


def _format_error(error: dict[str, Any]) -> str:
    location = _format_location(tuple(error.get("loc", ())))
    if error.get("type") == "missing":
        return f"{location}: required field is missing"
    return f"{location}: {error.get('msg', 'invalid value')}"


def _duplicate_action_ids(value: dict[str, Any]) -> list[str]:
    actions = value.get("actions")
    if not isinstance(actions, list):
        return []
    seen: set[str] = set()
    duplicates: list[str] = []
    for action in actions:
        if not isinstance(action, dict):
            continue
        action_id = action.get("id")
        if not isinstance(action_id, str):
            continue
        if action_id in seen and action_id not in duplicates:
            duplicates.append(action_id)
        seen.add(action_id)
    return [f"actions: duplicate action id {action_id!r}" for action_id in duplicates]


def _unknown_dependencies(value: dict[str, Any]) -> list[str]:
    # depends_on may only reference actions present in the same artifact.
    actions = value.get("actions")
    if not isinstance(actions, list):
        return []
    known = {action.get("id") for action in actions if isinstance(action, dict)}
    violations: list[str] = []
    for index, action in enumerate(actions):
        if not isinstance(action, dict) or not isinstance(action.get("depends_on"), list):
            continue
        for dependency in action["depends_on"]:
            if isinstance(dependency, str) and dependency not in known:
                violations.append(
                    f"actions[{index}].depends_on: unknown action id {dependency!r}"
                )
    return violations


def validate_artifact(value: Any) -> ValidationResult:
    """Check a decoded value against the artifact contract.

    Every violation is collected and returned together; a value with any
    violation is rejected as a whole.
    """
    if not isinstance(value, dict):
        return Invalid(("artifact: expected a JSON object",))

    violations: list[str] = []
    artifact: AgentArtifact | None = None
    try:
        artifact = AgentArtifact.model_validate(value)
    except ValidationError as exc:
        violations.extend(_format_error(error) for error in exc.errors())

    summary = value.get("summary")
    if isinstance(summary, str) and summary and not summary.strip():
        violations.append("summary: must not be blank")
    violations.extend(_duplicate_action_ids(value))
    violations.extend(_unknown_dependencies(value))

    if violations or artifact is None:
        return Invalid(tuple(violations))
    return Valid(artifact)


def parse_and_validate(raw: str) -> ValidationResult:
    decoded = decode_model_output(raw)
    if isinstance(decoded, Invalid):
        return decoded
    return validate_artifact(decoded.value)


def build_repair_instruction(original_user_text: str, violations: tuple[str, ...]) -> str:
    # Repair prompts always restate the original task, never the previous repair prompt.
    if violations == (NOT_VALID_JSON,):
        return (
            "Your previous response was not valid JSON. Please try again.\n\n"
            f"Original request: {original_user_text}\n\n"
            "Remember: Output ONLY a valid JSON object, no markdown, no explanations."
        )
    issues = "\n".join(f"- {violation}" for violation in violations)
    return (
        "Your previous response had schema errors:\n"
        f"{issues}\n\n"
        "Please fix these issues and try again. "
        f"Original request: {original_user_text}"
    )


def build_fallback_artifact(message: str) -> AgentArtifact:
    return AgentArtifact(
        summary=f"Analysis incomplete due to error: {message}",
        actions=[],
        risks=[MANUAL_REVIEW_NOTICE],
        dependencies=[],
        metrics_to_watch=[],
        requires_approval=True,
    )
