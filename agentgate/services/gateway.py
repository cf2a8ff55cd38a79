"""Orchestration gateway: admission, bounded repair loop, settlement.

A run is admitted against the workspace ledger, the routed model is called,
and its output is validated. Invalid output gets one repair attempt by
default; invoker failures go straight to a fallback artifact. Whatever
happens after admission, the ledger is settled exactly once, shielded from
cancellation.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, replace
from datetime import datetime, timezone
from decimal import Decimal
import logging
import time
from typing import Any, Callable
from uuid import uuid4

from agentgate.agent.prompts import build_system_text, canonical_request, input_fingerprint
from agentgate.core.errors import LedgerUnavailableError, ProviderConfigError, RunPersistenceError
from agentgate.domain.artifacts import AgentArtifact
from agentgate.domain.records import (
    RUN_STATUS_ERROR,
    RUN_STATUS_FALLBACK,
    RUN_STATUS_RETRY,
    RUN_STATUS_SUCCESS,
    RunRecord,
)
from agentgate.domain.schemas import RunRequest
from agentgate.providers.llm.base import InvokeFailed, ModelInvoker
from agentgate.services.artifacts import (
    Invalid,
    build_fallback_artifact,
    build_repair_instruction,
    parse_and_validate,
)
from agentgate.services.costs import meter_run
from agentgate.services.evidence import EvidenceRecorder
from agentgate.services.quota import AdmissionDecision, QuotaPolicy
from agentgate.services.routing import ModelRoutingTable
from agentgate.services.runs import RunStore
from agentgate.services.telemetry import increment_counter


logger = logging.getLogger(__name__)

STATUS_QUOTA_EXCEEDED = "quota_exceeded"
DEFAULT_MAX_ATTEMPTS = 2


@dataclass(frozen=True)
class AttemptContext:
    """State carried from one attempt to the next.

    The original request is never mutated; each repair derives a new context
    whose user text restates the original task plus the violations found.
    """

    attempt: int
    user_text: str
    violations: tuple[str, ...] = ()
    tokens_in: int = 0
    tokens_out: int = 0

    def begin_attempt(self) -> AttemptContext:
        return replace(self, attempt=self.attempt + 1)

    def add_usage(self, tokens_in: int, tokens_out: int) -> AttemptContext:
        return replace(
            self,
            tokens_in=self.tokens_in + max(tokens_in, 0),
            tokens_out=self.tokens_out + max(tokens_out, 0),
        )

    def repair(self, violations: tuple[str, ...], user_text: str) -> AttemptContext:
        return replace(self, user_text=user_text, violations=self.violations + violations)


@dataclass(frozen=True)
class GatewayResult:
    status: str
    run_id: str | None
    artifact: AgentArtifact | None
    attempts: int = 0
    tokens_in: int = 0
    tokens_out: int = 0
    cost_estimate: Decimal = Decimal("0")
    duration_ms: int = 0
    error: str | None = None
    reason: str | None = None
    degraded: bool = False

    @property
    def success(self) -> bool:
        # Fallback runs still deliver an artifact; only hard errors report failure.
        return self.status != RUN_STATUS_ERROR

    def to_response(self) -> dict[str, Any]:
        return {
            "success": self.success,
            "status": self.status,
            "run_id": self.run_id,
            "artifact": self.artifact.model_dump(mode="json") if self.artifact else None,
            "usage": {
                "tokens_in": self.tokens_in,
                "tokens_out": self.tokens_out,
                "cost_estimate": float(self.cost_estimate),
                "duration_ms": self.duration_ms,
            },
            "attempts": self.attempts,
            "error": self.error,
        }


@dataclass(frozen=True)
class _Terminal:
    status: str
    artifact: AgentArtifact
    error: str | None = None


class OrchestrationGateway:
    def __init__(
        self,
        *,
        routing: ModelRoutingTable,
        quota: QuotaPolicy,
        invoker: ModelInvoker,
        run_store: RunStore | None = None,
        evidence: EvidenceRecorder | None = None,
        max_attempts: int = DEFAULT_MAX_ATTEMPTS,
        clock: Callable[[], float] | None = None,
    ) -> None:
        if max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        self._routing = routing
        self._quota = quota
        self._invoker = invoker
        self._run_store = run_store
        self._evidence = evidence
        self._max_attempts = max_attempts
        # Allow injecting a monotonic clock for deterministic durations in tests.
        self._clock = clock or time.monotonic

    async def run(self, request: RunRequest) -> GatewayResult:
        started = self._clock()
        decision = await self._quota.admit(request.workspace_id)
        if not decision.allowed:
            increment_counter("gateway_runs_quota_exceeded_total")
            logger.info(
                "gateway_admission_denied workspace_id=%s reason=%s",
                request.workspace_id,
                decision.reason,
            )
            return GatewayResult(
                status=STATUS_QUOTA_EXCEEDED,
                run_id=None,
                artifact=None,
                error=decision.message,
                reason=decision.reason,
            )

        route = self._routing.resolve(request.purpose)
        record = RunRecord(
            id=str(uuid4()),
            workspace_id=request.workspace_id,
            actor_id=request.actor_id,
            agent_name=request.agent_name,
            purpose=request.purpose,
            model_identifier=route.model_identifier,
            input_fingerprint=input_fingerprint(request),
            input=canonical_request(request),
        )
        ctx = AttemptContext(attempt=0, user_text=request.instructions.user)
        terminal: _Terminal | None = None
        cost = Decimal("0")
        pending_written = False
        cancelled = False
        try:
            pending_written = await self._write_pending(record)
            system_text = build_system_text(request.instructions)
            while terminal is None:
                ctx = ctx.begin_attempt()
                result = await self._invoker.invoke(route, system_text, ctx.user_text)
                if isinstance(result, InvokeFailed):
                    logger.warning(
                        "gateway_invoke_failed run_id=%s attempt=%s kind=%s status_code=%s",
                        record.id,
                        ctx.attempt,
                        result.kind,
                        result.status_code,
                    )
                    terminal = _fallback(result.detail)
                    break
                ctx = ctx.add_usage(result.tokens_in, result.tokens_out)
                validation = parse_and_validate(result.raw_text)
                if not isinstance(validation, Invalid):
                    status = RUN_STATUS_SUCCESS if ctx.attempt == 1 else RUN_STATUS_RETRY
                    terminal = _Terminal(status=status, artifact=validation.artifact)
                    break
                logger.info(
                    "gateway_attempt_invalid run_id=%s attempt=%s violations=%s",
                    record.id,
                    ctx.attempt,
                    len(validation.violations),
                )
                if ctx.attempt >= self._max_attempts:
                    ctx = ctx.repair(validation.violations, ctx.user_text)
                    terminal = _fallback(
                        f"output failed schema validation after {ctx.attempt} attempts"
                    )
                    break
                ctx = ctx.repair(
                    validation.violations,
                    build_repair_instruction(request.instructions.user, validation.violations),
                )
        except ProviderConfigError as exc:
            logger.error("gateway_provider_config_error run_id=%s error=%s", record.id, exc)
            terminal = _error(str(exc))
        except asyncio.CancelledError:
            cancelled = True
            raise
        except Exception as exc:  # noqa: BLE001 - unexpected failures still settle and persist
            logger.exception("gateway_unexpected_error run_id=%s attempt=%s", record.id, ctx.attempt)
            message = f"unexpected error: {exc.__class__.__name__}"
            # Once a model call was attempted the run ends as a fallback, not an error.
            terminal = _fallback(message) if ctx.attempt >= 1 else _error(message)
        finally:
            cost = meter_run(route.model_identifier, ctx.tokens_in, ctx.tokens_out).cost_usd
            await asyncio.shield(self._settle(request.workspace_id, decision, cost))
            if cancelled:
                logger.warning("gateway_run_cancelled run_id=%s attempt=%s", record.id, ctx.attempt)
                cancelled_record = self._completed(record, _error("run cancelled"), ctx, cost, started)
                await asyncio.shield(
                    self._persist_terminal(cancelled_record, pending_written=pending_written)
                )
                increment_counter("gateway_runs_cancelled_total")

        completed = self._completed(record, terminal, ctx, cost, started)
        duration_ms = completed.duration_ms
        await self._persist_terminal(completed, pending_written=pending_written)

        increment_counter(f"gateway_runs_{terminal.status}_total")
        logger.info(
            "gateway_run_complete run_id=%s workspace_id=%s model=%s status=%s attempts=%s "
            "tokens_in=%s tokens_out=%s cost=%s duration_ms=%s degraded=%s",
            completed.id,
            completed.workspace_id,
            route.model_identifier,
            completed.status,
            completed.attempts,
            completed.tokens_in,
            completed.tokens_out,
            cost,
            duration_ms,
            decision.degraded,
        )
        return GatewayResult(
            status=terminal.status,
            run_id=record.id,
            artifact=terminal.artifact,
            attempts=ctx.attempt,
            tokens_in=ctx.tokens_in,
            tokens_out=ctx.tokens_out,
            cost_estimate=cost,
            duration_ms=duration_ms,
            error=terminal.error,
            degraded=decision.degraded,
        )

    def _completed(
        self,
        record: RunRecord,
        terminal: _Terminal,
        ctx: AttemptContext,
        cost: Decimal,
        started: float,
    ) -> RunRecord:
        return replace(
            record,
            status=terminal.status,
            attempts=ctx.attempt,
            tokens_in=ctx.tokens_in,
            tokens_out=ctx.tokens_out,
            cost_estimate=cost,
            duration_ms=int((self._clock() - started) * 1000),
            output=terminal.artifact.model_dump(mode="json"),
            error_message=terminal.error,
            completed_at=datetime.now(timezone.utc),
        )

    async def _settle(self, workspace_id: str, decision: AdmissionDecision, cost: Decimal) -> None:
        # Degraded admissions took no concurrency slot, so only the spend is recorded.
        if not decision.degraded:
            try:
                await self._quota.end(workspace_id)
            except LedgerUnavailableError as exc:
                increment_counter("ledger_settle_failures_total")
                logger.warning(
                    "ledger_settle_failed workspace_id=%s step=end", workspace_id, exc_info=exc
                )
        try:
            await self._quota.add_cost(workspace_id, cost)
        except LedgerUnavailableError as exc:
            increment_counter("ledger_settle_failures_total")
            logger.warning(
                "ledger_settle_failed workspace_id=%s step=add_cost cost=%s",
                workspace_id,
                cost,
                exc_info=exc,
            )

    async def _write_pending(self, record: RunRecord) -> bool:
        if self._run_store is None:
            return False
        try:
            await self._run_store.create_pending(record)
        except RunPersistenceError as exc:
            increment_counter("run_record_write_failures_total")
            logger.warning("run_record_write_failed run_id=%s step=pending", record.id, exc_info=exc)
            return False
        return True

    async def _persist_terminal(self, record: RunRecord, *, pending_written: bool) -> None:
        if self._run_store is None:
            return
        try:
            if not pending_written:
                # Retry the pending insert so the terminal transition still has a row to update.
                await self._run_store.create_pending(
                    replace(record, status="pending", completed_at=None)
                )
            updated = await self._run_store.complete(record)
        except RunPersistenceError as exc:
            increment_counter("run_record_write_failures_total")
            logger.warning("run_record_write_failed run_id=%s step=terminal", record.id, exc_info=exc)
            return
        if not updated:
            logger.warning("run_record_not_pending run_id=%s status=%s", record.id, record.status)
            return
        if self._evidence is not None:
            await self._evidence.record(record)


def _fallback(message: str) -> _Terminal:
    return _Terminal(
        status=RUN_STATUS_FALLBACK,
        artifact=build_fallback_artifact(message),
        error=message,
    )


def _error(message: str) -> _Terminal:
    return _Terminal(
        status=RUN_STATUS_ERROR,
        artifact=build_fallback_artifact(message),
        error=message,
    )
