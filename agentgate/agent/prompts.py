from __future__ import annotations

import hashlib
import json
from typing import Any

from agentgate.domain.artifacts import ARTIFACT_PROMPT_SCHEMA
from agentgate.domain.schemas import RunInstructions, RunRequest


def build_system_text(instructions: RunInstructions) -> str:
    # Append the artifact contract and any caller context to the agent's system prompt.
    system_prompt = (
        f"{instructions.system}\n\n"
        "You MUST respond with a single valid JSON object matching this schema:\n"
        f"{json.dumps(ARTIFACT_PROMPT_SCHEMA, indent=2)}\n\n"
        "Do not include markdown, code fences or explanations outside the JSON object."
    )
    if instructions.context:
        system_prompt += "\n\nContext:\n" + json.dumps(instructions.context, sort_keys=True, default=str)
    return system_prompt


def canonical_request(request: RunRequest) -> dict[str, Any]:
    return request.model_dump(mode="json")


def input_fingerprint(request: RunRequest) -> str:
    # Stable across key order and whitespace; used for audit grouping only.
    payload = json.dumps(canonical_request(request), sort_keys=True, separators=(",", ":"))
    return hashlib.sha256(payload.encode("utf-8")).hexdigest()
