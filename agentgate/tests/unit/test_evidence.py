from __future__ import annotations

from datetime import datetime, timezone
from decimal import Decimal

import pytest

from agentgate.domain.records import RunRecord
from agentgate.services.artifacts import build_fallback_artifact
from agentgate.services.evidence import EvidenceRecorder, build_evidence_bundle, extract_metrics
from agentgate.services.runs import SqlRunStore
from agentgate.tests.utils.builders import artifact_payload


def _run(status: str = "success", output: dict | None = None, **overrides) -> RunRecord:
    fields = dict(
        id="run-1",
        workspace_id="ws-1",
        actor_id="user-1",
        agent_name="seo_audit",
        purpose="generic_analysis",
        model_identifier="openai/gpt-5-mini",
        input_fingerprint="abc",
        status=status,
        attempts=1,
        tokens_in=100,
        tokens_out=50,
        cost_estimate=Decimal("0.000125"),
        duration_ms=10,
        output=artifact_payload() if output is None else output,
    )
    fields.update(overrides)
    return RunRecord(**fields)


def test_metrics_are_extracted_from_structured_output() -> None:
    metrics = extract_metrics(artifact_payload())
    assert metrics == {
        "actions_total": 2,
        "high_impact_actions": 2,
        "approval_required_actions": 1,
        "auto_safe_actions": 1,
        "approval_rate": 0.5,
        "risks_flagged": 1,
        "dependencies_total": 1,
        "metrics_watched": 2,
    }


def test_zero_metrics_are_dropped_and_count_is_bounded() -> None:
    empty = artifact_payload(actions=[], risks=[], dependencies=[], metrics_to_watch=[])
    assert extract_metrics(empty) == {}
    assert list(extract_metrics(artifact_payload(), max_metrics=3)) == [
        "actions_total",
        "high_impact_actions",
        "approval_required_actions",
    ]


def test_confidence_follows_metric_presence() -> None:
    assert build_evidence_bundle(_run()).confidence == "medium"
    empty = artifact_payload(actions=[], risks=[], dependencies=[], metrics_to_watch=[])
    assert build_evidence_bundle(_run(output=empty)).confidence == "low"


def test_bundle_sources_and_trace() -> None:
    bundle = build_evidence_bundle(_run(status="retry", attempts=2))
    assert bundle.sources == ("run:run-1", "agent:seo_audit", "model:openai/gpt-5-mini")
    assert 1 <= len(bundle.reasoning_trace) <= 3
    assert "schema repair" in bundle.reasoning_trace[1]
    assert bundle.reasoning_trace[-1].startswith("Concluded (requires approval)")


def test_fallback_runs_mention_the_fallback() -> None:
    output = build_fallback_artifact("model endpoint returned 402").model_dump(mode="json")
    bundle = build_evidence_bundle(_run(status="fallback", output=output))
    assert bundle.key_metrics == {"risks_flagged": 1}
    assert any("fallback" in step for step in bundle.reasoning_trace)


def test_bundle_derivation_is_deterministic() -> None:
    generated_at = datetime(2026, 10, 1, tzinfo=timezone.utc)
    first = build_evidence_bundle(_run(), generated_at=generated_at)
    second = build_evidence_bundle(_run(), generated_at=generated_at)
    assert first == second


def test_pending_and_error_runs_are_not_eligible() -> None:
    with pytest.raises(ValueError):
        build_evidence_bundle(_run(status="pending"))


@pytest.mark.asyncio
async def test_recording_twice_replaces_the_bundle(run_store: SqlRunStore) -> None:
    run = _run()
    await run_store.create_pending(run)
    await run_store.complete(run)
    recorder = EvidenceRecorder(run_store)

    first = await recorder.record(run)
    second = await recorder.record(run)
    assert first.key_metrics == second.key_metrics
    assert first.confidence == second.confidence

    stored = await run_store.get_evidence(run.id)
    assert stored.key_metrics == second.key_metrics
    assert stored.confidence == "medium"


@pytest.mark.asyncio
async def test_error_runs_are_skipped(run_store: SqlRunStore) -> None:
    recorder = EvidenceRecorder(run_store)
    assert await recorder.record(_run(status="error")) is None
    assert await run_store.get_evidence("run-1") is None
