"""Workflow traces, executions and the used-topic ledger.

Revision ID: 001_orchestration_core
Revises:
Create Date: 2026-10-18
"""

from collections.abc import Sequence

import sqlalchemy as sa
from alembic import op
from sqlalchemy.dialects.postgresql import JSONB, UUID

# revision identifiers, used by Alembic.
revision: str = "001_orchestration_core"
down_revision: str | None = None
branch_labels: str | Sequence[str] | None = None
depends_on: str | Sequence[str] | None = None


def upgrade() -> None:
    """Create workflow_trace, workflow_execution and used_topic."""
    op.create_table(
        "workflow_trace",
        sa.Column("id", UUID(as_uuid=False), primary_key=True),
        sa.Column("trace_id", sa.String(64), nullable=False),
        sa.Column("execution_id", sa.String(36), nullable=True),
        sa.Column("attempt_number", sa.Integer(), nullable=False, server_default="1"),
        sa.Column("source_service", sa.String(50), nullable=False),
        sa.Column("destination_service", sa.String(50), nullable=False),
        sa.Column("workflow_id", sa.String(100), nullable=False),
        sa.Column("action", sa.String(200), nullable=False),
        sa.Column("user_id", sa.String(100), nullable=False, server_default="system"),
        sa.Column(
            "requested_at",
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.func.now(),
        ),
        sa.Column("responded_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("duration_ms", sa.Integer(), nullable=True),
        sa.Column("request_payload", JSONB(), nullable=False, server_default=sa.text("'{}'::jsonb")),
        sa.Column("response_payload", JSONB(), nullable=True),
        sa.Column("details", JSONB(), nullable=True),
        sa.Column("overall_status", sa.String(20), nullable=False, server_default="in_progress"),
        sa.Column("error_code", sa.String(100), nullable=True),
        sa.Column("error_detail", sa.Text(), nullable=True),
        sa.Column("external_execution_id", sa.String(100), nullable=True),
    )
    op.create_index("ix_workflow_trace_trace_id", "workflow_trace", ["trace_id"])
    op.create_index("ix_workflow_trace_execution_id", "workflow_trace", ["execution_id"])
    op.create_index("ix_workflow_trace_workflow_id", "workflow_trace", ["workflow_id"])
    op.create_index("ix_workflow_trace_trace_id_attempt", "workflow_trace", ["trace_id", "attempt_number"])
    op.create_index("ix_workflow_trace_requested_at", "workflow_trace", ["requested_at"])

    op.create_table(
        "workflow_execution",
        sa.Column("id", UUID(as_uuid=False), primary_key=True),
        sa.Column("workflow_id", sa.String(100), nullable=False),
        sa.Column("trigger_trace_id", sa.String(64), nullable=False),
        sa.Column("external_execution_id", sa.String(100), nullable=True),
        sa.Column("status", sa.String(20), nullable=False, server_default="running"),
        sa.Column(
            "started_at",
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.func.now(),
        ),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("final_output", JSONB(), nullable=True),
        sa.Column("user_id", sa.String(100), nullable=False, server_default="system"),
        sa.UniqueConstraint("trigger_trace_id", name="uq_workflow_execution_trigger_trace_id"),
    )
    op.create_index("ix_workflow_execution_workflow_id", "workflow_execution", ["workflow_id"])
    op.create_index(
        "ix_workflow_execution_workflow_started",
        "workflow_execution",
        ["workflow_id", "started_at"],
    )

    op.create_table(
        "used_topic",
        sa.Column("id", UUID(as_uuid=False), primary_key=True),
        sa.Column("workflow_id", sa.String(100), nullable=False),
        sa.Column("headline", sa.Text(), nullable=False),
        sa.Column("headline_hash", sa.String(16), nullable=False),
        sa.Column(
            "used_at",
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.func.now(),
        ),
        sa.Column("metadata", JSONB(), nullable=True),
    )
    op.create_index("ix_used_topic_workflow_id", "used_topic", ["workflow_id"])
    op.create_index("ix_used_topic_headline_hash", "used_topic", ["headline_hash"])
    op.create_index("ix_used_topic_used_at", "used_topic", ["used_at"])
    op.create_index("ix_used_topic_workflow_used_at", "used_topic", ["workflow_id", "used_at"])


def downgrade() -> None:
    """Drop the orchestration tables."""
    op.drop_index("ix_used_topic_workflow_used_at", table_name="used_topic")
    op.drop_index("ix_used_topic_used_at", table_name="used_topic")
    op.drop_index("ix_used_topic_headline_hash", table_name="used_topic")
    op.drop_index("ix_used_topic_workflow_id", table_name="used_topic")
    op.drop_table("used_topic")

    op.drop_index("ix_workflow_execution_workflow_started", table_name="workflow_execution")
    op.drop_index("ix_workflow_execution_workflow_id", table_name="workflow_execution")
    op.drop_table("workflow_execution")

    op.drop_index("ix_workflow_trace_requested_at", table_name="workflow_trace")
    op.drop_index("ix_workflow_trace_trace_id_attempt", table_name="workflow_trace")
    op.drop_index("ix_workflow_trace_workflow_id", table_name="workflow_trace")
    op.drop_index("ix_workflow_trace_execution_id", table_name="workflow_trace")
    op.drop_index("ix_workflow_trace_trace_id", table_name="workflow_trace")
    op.drop_table("workflow_trace")
