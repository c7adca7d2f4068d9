"""add continuation attempts and follow-up sequences

Revision ID: 202610200001
Revises: 202610190001
Create Date: 2026-10-20 00:01:00
"""

from collections.abc import Sequence

from alembic import op
import sqlalchemy as sa


revision: str = "202610200001"
down_revision: str | None = "202610190001"
branch_labels: Sequence[str] | None = None
depends_on: Sequence[str] | None = None


def upgrade() -> None:
    op.add_column(
        "automation_continuation",
        sa.Column("attempts", sa.Integer(), nullable=False, server_default="0"),
    )

    op.create_table(
        "automation_follow_up_sequence",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("tenant_id", sa.String(length=128), nullable=False),
        sa.Column("lead_id", sa.String(length=128), nullable=False),
        sa.Column("status", sa.String(length=16), nullable=False, server_default="active"),
        sa.Column("current_step", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("steps_json", sa.JSON(), nullable=False),
        sa.Column("fields_json", sa.JSON(), nullable=False),
        sa.Column("next_step_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("started_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("paused_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("row_version", sa.Integer(), nullable=False, server_default="1"),
        sa.Column("correlation_id", sa.String(length=128), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(
        "ix_automation_follow_up_sequence_tenant_lead",
        "automation_follow_up_sequence",
        ["tenant_id", "lead_id"],
        unique=False,
    )
    op.create_index(
        "ix_automation_follow_up_sequence_status_next_step",
        "automation_follow_up_sequence",
        ["status", "next_step_at"],
        unique=False,
    )


def downgrade() -> None:
    op.drop_index("ix_automation_follow_up_sequence_status_next_step", table_name="automation_follow_up_sequence")
    op.drop_index("ix_automation_follow_up_sequence_tenant_lead", table_name="automation_follow_up_sequence")
    op.drop_table("automation_follow_up_sequence")
    op.drop_column("automation_continuation", "attempts")
