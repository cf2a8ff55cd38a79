"""agent runs and evidence bundles

Revision ID: 0001_agent_runs
Revises:
Create Date: 2026-10-18 09:00:00.000000
"""
from __future__ import annotations

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision = "0001_agent_runs"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "agent_runs",
        sa.Column("id", sa.String(), primary_key=True),
        # Avoid index=True here because we create explicit indexes below.
        sa.Column("workspace_id", sa.String(), nullable=False),
        sa.Column("actor_id", sa.String(), nullable=True),
        sa.Column("agent_name", sa.String(), nullable=False),
        sa.Column("purpose", sa.String(), nullable=False),
        sa.Column("model_identifier", sa.String(), nullable=False),
        sa.Column("input_fingerprint", sa.String(), nullable=False),
        sa.Column("status", sa.String(), nullable=False, server_default="pending"),
        sa.Column("attempts", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("tokens_in", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("tokens_out", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("cost_estimate", sa.Numeric(12, 6), nullable=False, server_default="0"),
        sa.Column("duration_ms", sa.Integer(), nullable=True),
        sa.Column("input_json", postgresql.JSONB(), nullable=True),
        sa.Column("output_json", postgresql.JSONB(), nullable=True),
        sa.Column("error_message", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.CheckConstraint(
            "status IN ('pending', 'success', 'retry', 'fallback', 'error')",
            name="ck_agent_runs_status",
        ),
    )
    op.create_index("ix_agent_runs_workspace_id", "agent_runs", ["workspace_id"])
    op.create_index("ix_agent_runs_input_fingerprint", "agent_runs", ["input_fingerprint"])
    op.create_index("ix_agent_runs_status", "agent_runs", ["status"])
    op.create_index(
        "ix_agent_runs_workspace_created", "agent_runs", ["workspace_id", "created_at"]
    )

    op.create_table(
        "run_evidence_bundles",
        sa.Column("run_id", sa.String(), sa.ForeignKey("agent_runs.id"), primary_key=True),
        sa.Column("workspace_id", sa.String(), nullable=False),
        sa.Column("key_metrics_json", postgresql.JSONB(), nullable=False),
        sa.Column("confidence", sa.String(), nullable=False),
        sa.Column("sources_json", postgresql.JSONB(), nullable=False),
        sa.Column("reasoning_trace_json", postgresql.JSONB(), nullable=False),
        sa.Column("generated_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )
    op.create_index(
        "ix_run_evidence_bundles_workspace_id", "run_evidence_bundles", ["workspace_id"]
    )


def downgrade() -> None:
    op.drop_index("ix_run_evidence_bundles_workspace_id", table_name="run_evidence_bundles")
    op.drop_table("run_evidence_bundles")
    op.drop_index("ix_agent_runs_workspace_created", table_name="agent_runs")
    op.drop_index("ix_agent_runs_status", table_name="agent_runs")
    op.drop_index("ix_agent_runs_input_fingerprint", table_name="agent_runs")
    op.drop_index("ix_agent_runs_workspace_id", table_name="agent_runs")
    op.drop_table("agent_runs")
