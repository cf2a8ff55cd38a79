from __future__ import annotations

from datetime import datetime
from typing import Any

from sqlalchemy import JSON, DateTime, ForeignKey, Index, Integer, Numeric, String, Text, func
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


# Use JSONB on Postgres while keeping the models usable on SQLite for tests.
JsonType = JSON().with_variant(JSONB(), "postgresql")


class Base(DeclarativeBase):
    pass


class AgentRun(Base):
    __tablename__ = "agent_runs"
    __table_args__ = (
        Index("ix_agent_runs_workspace_created", "workspace_id", "created_at"),
    )

    id: Mapped[str] = mapped_column(String, primary_key=True)
    workspace_id: Mapped[str] = mapped_column(String, index=True)
    actor_id: Mapped[str | None] = mapped_column(String, nullable=True)
    agent_name: Mapped[str] = mapped_column(String)
    purpose: Mapped[str] = mapped_column(String)
    model_identifier: Mapped[str] = mapped_column(String)
    # Stable hash of the normalized request for audit grouping, never a cache key.
    input_fingerprint: Mapped[str] = mapped_column(String, index=True)
    # pending until the gateway loop ends; terminal statuses are never revisited.
    status: Mapped[str] = mapped_column(String, index=True, default="pending")
    attempts: Mapped[int] = mapped_column(Integer, default=0)
    tokens_in: Mapped[int] = mapped_column(Integer, default=0)
    tokens_out: Mapped[int] = mapped_column(Integer, default=0)
    cost_estimate: Mapped[float] = mapped_column(Numeric(12, 6), default=0)
    duration_ms: Mapped[int | None] = mapped_column(Integer, nullable=True)
    input_json: Mapped[dict[str, Any] | None] = mapped_column(JsonType, nullable=True)
    output_json: Mapped[dict[str, Any] | None] = mapped_column(JsonType, nullable=True)
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)


class RunEvidence(Base):
    __tablename__ = "run_evidence_bundles"

    # One bundle per run; re-recording replaces the row.
    run_id: Mapped[str] = mapped_column(String, ForeignKey("agent_runs.id"), primary_key=True)
    workspace_id: Mapped[str] = mapped_column(String, index=True)
    key_metrics_json: Mapped[dict[str, Any]] = mapped_column(JsonType)
    confidence: Mapped[str] = mapped_column(String)
    sources_json: Mapped[list[str]] = mapped_column(JsonType)
    reasoning_trace_json: Mapped[list[str]] = mapped_column(JsonType)
    generated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
