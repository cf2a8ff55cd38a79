from __future__ import annotations

from typing import Literal

from pydantic import AliasChoices, BaseModel, Field, StrictBool, StrictStr


ActionKind = Literal["recommendation", "approval_required", "auto_safe"]
Level = Literal["high", "medium", "low"]

ACTION_KINDS: tuple[str, ...] = ("recommendation", "approval_required", "auto_safe")


class AgentAction(BaseModel):
    # Strict scalars keep "true"/1 from sneaking through as booleans or strings.
    id: StrictStr = Field(min_length=1)
    title: StrictStr = Field(min_length=1)
    # Older prompts used type/why/how; accept them on input only.
    kind: ActionKind = Field(validation_alias=AliasChoices("kind", "type"))
    impact: Level
    effort: Level
    rationale: StrictStr = Field(validation_alias=AliasChoices("rationale", "why"))
    steps: list[StrictStr] = Field(validation_alias=AliasChoices("steps", "how"))
    depends_on: list[StrictStr] | None = None
    risks: list[StrictStr] | None = None


class AgentArtifact(BaseModel):
    summary: StrictStr = Field(min_length=1)
    actions: list[AgentAction]
    risks: list[StrictStr]
    dependencies: list[StrictStr]
    metrics_to_watch: list[StrictStr]
    requires_approval: StrictBool


# JSON schema embedded in the system prompt so the model knows the contract.
ARTIFACT_PROMPT_SCHEMA: dict[str, object] = {
    "type": "object",
    "properties": {
        "summary": {"type": "string"},
        "actions": {
            "type": "array",
            "items": {
                "type": "object",
                "properties": {
                    "id": {"type": "string"},
                    "title": {"type": "string"},
                    "kind": {"type": "string", "enum": list(ACTION_KINDS)},
                    "impact": {"type": "string", "enum": ["high", "medium", "low"]},
                    "effort": {"type": "string", "enum": ["high", "medium", "low"]},
                    "rationale": {"type": "string"},
                    "steps": {"type": "array", "items": {"type": "string"}},
                    "depends_on": {"type": "array", "items": {"type": "string"}},
                    "risks": {"type": "array", "items": {"type": "string"}},
                },
                "required": ["id", "title", "kind", "impact", "effort", "rationale", "steps"],
            },
        },
        "risks": {"type": "array", "items": {"type": "string"}},
        "dependencies": {"type": "array", "items": {"type": "string"}},
        "metrics_to_watch": {"type": "array", "items": {"type": "string"}},
        "requires_approval": {"type": "boolean"},
    },
    "required": [
        "summary",
        "actions",
        "risks",
        "dependencies",
        "metrics_to_watch",
        "requires_approval",
    ],
}
