from __future__ import annotations

import json

from agentgate.services.artifacts import (
    MANUAL_REVIEW_NOTICE,
    NOT_VALID_JSON,
    Decoded,
    Invalid,
    Valid,
    build_fallback_artifact,
    build_repair_instruction,
    decode_model_output,
    parse_and_validate,
    strip_code_fence,
    validate_artifact,
)
from agentgate.tests.utils.builders import artifact_json, artifact_payload


def test_code_fences_are_stripped_before_decoding() -> None:
    raw = "```json\n" + artifact_json() + "\n```"
    assert strip_code_fence(raw) == artifact_json()
    assert isinstance(decode_model_output(raw), Decoded)
    assert isinstance(decode_model_output("```\n{}\n```"), Decoded)


def test_undecodable_output_is_a_single_violation() -> None:
    result = decode_model_output("Sure! Here is your analysis:")
    assert result == Invalid((NOT_VALID_JSON,))


def test_valid_artifact_round_trips_into_typed_model() -> None:
    result = parse_and_validate(artifact_json())
    assert isinstance(result, Valid)
    assert result.artifact.actions[1].depends_on == ["a1"]
    assert result.artifact.requires_approval is True


def test_legacy_action_keys_are_accepted_on_input() -> None:
    payload = artifact_payload()
    legacy = payload["actions"][0]
    payload["actions"][0] = {
        "id": legacy["id"],
        "title": legacy["title"],
        "type": legacy["kind"],
        "impact": legacy["impact"],
        "effort": legacy["effort"],
        "why": legacy["rationale"],
        "how": legacy["steps"],
    }
    result = validate_artifact(payload)
    assert isinstance(result, Valid)
    dumped = result.artifact.model_dump()
    assert dumped["actions"][0]["kind"] == "auto_safe"
    assert "type" not in dumped["actions"][0]


def test_all_violations_are_collected() -> None:
    payload = artifact_payload()
    del payload["risks"]
    payload["requires_approval"] = "yes"
    payload["actions"][0]["kind"] = "maybe"
    result = validate_artifact(payload)
    assert isinstance(result, Invalid)
    joined = "\n".join(result.violations)
    assert "risks: required field is missing" in joined
    assert "requires_approval:" in joined
    assert "actions[0].kind:" in joined
    assert len(result.violations) >= 3


def test_duplicate_action_ids_and_blank_summary_are_rejected() -> None:
    payload = artifact_payload(summary="   ")
    payload["actions"][1]["id"] = "a1"
    result = validate_artifact(payload)
    assert isinstance(result, Invalid)
    assert "summary: must not be blank" in result.violations
    assert "actions: duplicate action id 'a1'" in result.violations


def test_deeply_nested_output_is_not_valid_json() -> None:
    nested = "[" * 100_000 + "]" * 100_000
    assert parse_and_validate(nested) == Invalid((NOT_VALID_JSON,))


def test_dependencies_must_reference_known_actions() -> None:
    payload = artifact_payload()
    payload["actions"][1]["depends_on"] = ["a1", "a9"]
    result = validate_artifact(payload)
    assert result == Invalid(("actions[1].depends_on: unknown action id 'a9'",))


def test_non_object_output_is_invalid() -> None:
    assert isinstance(parse_and_validate(json.dumps([1, 2])), Invalid)


def test_repair_instruction_restates_original_task() -> None:
    json_repair = build_repair_instruction("Audit example.com", (NOT_VALID_JSON,))
    assert "not valid JSON" in json_repair
    assert "Original request: Audit example.com" in json_repair

    schema_repair = build_repair_instruction("Audit example.com", ("risks: required field is missing",))
    assert "- risks: required field is missing" in schema_repair
    assert "Original request: Audit example.com" in schema_repair


def test_fallback_artifact_requires_review() -> None:
    artifact = build_fallback_artifact("model endpoint returned 429")
    assert artifact.summary == "Analysis incomplete due to error: model endpoint returned 429"
    assert artifact.actions == []
    assert artifact.requires_approval is True
    assert MANUAL_REVIEW_NOTICE in artifact.risks
