"""Derive auditable evidence bundles from completed runs.

A bundle is computed from a run's structured output and never feeds back into
the run record. Deriving twice from the same run yields the same metrics and
confidence, so re-recording simply replaces the stored bundle.
"""

from __future__ import annotations

from datetime import datetime, timezone
import logging
from typing import Any

from agentgate.core.errors import RunPersistenceError
from agentgate.domain.records import (
    EVIDENCE_STATUSES,
    RUN_STATUS_FALLBACK,
    RUN_STATUS_RETRY,
    EvidenceBundleData,
    RunRecord,
)
from agentgate.services.runs import RunStore
from agentgate.services.telemetry import increment_counter


logger = logging.getLogger(__name__)

DEFAULT_MAX_METRICS = 8
_SUMMARY_PREVIEW_CHARS = 200


def _as_list(value: Any) -> list[Any]:
    return value if isinstance(value, list) else []


def extract_metrics(output: dict[str, Any] | None, *, max_metrics: int = DEFAULT_MAX_METRICS) -> dict[str, float]:
    # Fixed metric order keeps the bounded selection deterministic.
    output = output or {}
    actions = [action for action in _as_list(output.get("actions")) if isinstance(action, dict)]
    total = len(actions)
    approval_required = sum(1 for action in actions if action.get("kind") == "approval_required")
    candidates: list[tuple[str, float]] = [
        ("actions_total", total),
        ("high_impact_actions", sum(1 for action in actions if action.get("impact") == "high")),
        ("approval_required_actions", approval_required),
        ("auto_safe_actions", sum(1 for action in actions if action.get("kind") == "auto_safe")),
        ("approval_rate", round(approval_required / total, 2) if total else 0),
        ("risks_flagged", len(_as_list(output.get("risks")))),
        ("dependencies_total", len(_as_list(output.get("dependencies")))),
        ("metrics_watched", len(_as_list(output.get("metrics_to_watch")))),
    ]
    metrics: dict[str, float] = {}
    for name, value in candidates:
        if not value:
            continue
        if len(metrics) >= max_metrics:
            break
        metrics[name] = value
    return metrics


def _reasoning_trace(run: RunRecord) -> tuple[str, ...]:
    output = run.output or {}
    actions = _as_list(output.get("actions"))
    steps = [
        f"Observed {len(actions)} action(s) and {len(_as_list(output.get('risks')))} risk(s) "
        f"in the {run.agent_name} output."
    ]
    if run.status == RUN_STATUS_RETRY:
        steps.append(f"Output validated after a schema repair ({run.attempts} attempts).")
    elif run.status == RUN_STATUS_FALLBACK:
        steps.append("Model output never validated; a fallback artifact was produced.")
    summary = str(output.get("summary") or "").strip()
    if len(summary) > _SUMMARY_PREVIEW_CHARS:
        summary = summary[: _SUMMARY_PREVIEW_CHARS - 3] + "..."
    approval = "requires approval" if output.get("requires_approval") else "no approval required"
    steps.append(f"Concluded ({approval}): {summary or 'no summary'}")
    return tuple(steps)


def build_evidence_bundle(
    run: RunRecord,
    *,
    max_metrics: int = DEFAULT_MAX_METRICS,
    generated_at: datetime | None = None,
) -> EvidenceBundleData:
    if run.status not in EVIDENCE_STATUSES:
        raise ValueError(f"evidence is not derived for {run.status} runs")
    metrics = extract_metrics(run.output, max_metrics=max_metrics)
    return EvidenceBundleData(
        run_id=run.id,
        workspace_id=run.workspace_id,
        key_metrics=metrics,
        confidence="medium" if metrics else "low",
        sources=(f"run:{run.id}", f"agent:{run.agent_name}", f"model:{run.model_identifier}"),
        reasoning_trace=_reasoning_trace(run),
        generated_at=generated_at or datetime.now(timezone.utc),
    )


class EvidenceRecorder:
    def __init__(self, store: RunStore, *, max_metrics: int = DEFAULT_MAX_METRICS) -> None:
        self._store = store
        self._max_metrics = max_metrics

    async def record(self, run: RunRecord, *, best_effort: bool = True) -> EvidenceBundleData | None:
        # Pending and error runs carry nothing worth attesting to.
        if run.status not in EVIDENCE_STATUSES:
            return None
        bundle = build_evidence_bundle(run, max_metrics=self._max_metrics)
        try:
            await self._store.replace_evidence(bundle)
        except RunPersistenceError as exc:
            if not best_effort:
                raise
            increment_counter("evidence_write_failures_total")
            logger.warning("evidence_write_failed run_id=%s", run.id, exc_info=exc)
            return None
        return bundle
