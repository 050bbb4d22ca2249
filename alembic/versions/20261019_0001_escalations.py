"""Create escalation queue and decision audit tables."""

from __future__ import annotations

import sqlalchemy as sa

from alembic import op

revision = "20261019_0001"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "escalations",
        sa.Column("escalation_id", sa.String(), nullable=False),
        sa.Column("run_id", sa.String(), nullable=False),
        sa.Column("workflow_name", sa.String(), nullable=False),
        sa.Column("step", sa.Integer(), nullable=False),
        sa.Column("question", sa.Text(), nullable=False),
        sa.Column("ai_answer", sa.Text(), nullable=False),
        sa.Column("ai_confidence", sa.Float(), nullable=False),
        sa.Column("ai_reasoning", sa.Text(), nullable=False),
        sa.Column("context", sa.Text(), nullable=False),
        sa.Column("status", sa.String(), nullable=False),
        sa.Column("response", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("responded_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("resolved_at", sa.DateTime(timezone=True), nullable=True),
        sa.PrimaryKeyConstraint("escalation_id"),
    )
    op.create_index("ix_escalations_run_id", "escalations", ["run_id"], unique=False)
    op.create_index(
        "ix_escalations_workflow_name",
        "escalations",
        ["workflow_name"],
        unique=False,
    )
    op.create_index(
        "idx_escalations_status_created",
        "escalations",
        ["status", "created_at"],
        unique=False,
    )
    op.create_index("idx_escalations_run", "escalations", ["run_id", "step"], unique=False)

    op.create_table(
        "decision_audit",
        sa.Column("audit_id", sa.Integer(), nullable=False),
        sa.Column("run_id", sa.String(), nullable=True),
        sa.Column("workflow_name", sa.String(), nullable=True),
        sa.Column("step", sa.Integer(), nullable=True),
        sa.Column("question", sa.Text(), nullable=False),
        sa.Column("answer", sa.Text(), nullable=False),
        sa.Column("confidence", sa.Float(), nullable=False),
        sa.Column("reasoning", sa.Text(), nullable=False),
        sa.Column("source", sa.String(), nullable=False),
        sa.Column("escalation_id", sa.String(), nullable=True),
        sa.Column("decided_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("audit_id"),
    )
    op.create_index("ix_decision_audit_run_id", "decision_audit", ["run_id"], unique=False)
    op.create_index("ix_decision_audit_source", "decision_audit", ["source"], unique=False)
    op.create_index(
        "idx_decision_audit_run_time",
        "decision_audit",
        ["run_id", "decided_at"],
        unique=False,
    )


def downgrade() -> None:
    op.drop_index("idx_decision_audit_run_time", table_name="decision_audit")
    op.drop_index("ix_decision_audit_source", table_name="decision_audit")
    op.drop_index("ix_decision_audit_run_id", table_name="decision_audit")
    op.drop_table("decision_audit")
    op.drop_index("idx_escalations_run", table_name="escalations")
    op.drop_index("idx_escalations_status_created", table_name="escalations")
    op.drop_index("ix_escalations_workflow_name", table_name="escalations")
    op.drop_index("ix_escalations_run_id", table_name="escalations")
    op.drop_table("escalations")
