"""create automation tables

Revision ID: 202610190001
Revises:
Create Date: 2026-10-19 00:01:00
"""

from collections.abc import Sequence

from alembic import op
import sqlalchemy as sa


revision: str = "202610190001"
down_revision: str | None = None
branch_labels: Sequence[str] | None = None
depends_on: Sequence[str] | None = None


def upgrade() -> None:
    op.create_table(
        "automation_rule",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("tenant_id", sa.String(length=128), nullable=False),
        sa.Column("name", sa.Text(), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("is_test_mode", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("trigger_event", sa.String(length=128), nullable=False),
        sa.Column("conditions_json", sa.JSON(), nullable=False),
        sa.Column("actions_json", sa.JSON(), nullable=False),
        sa.Column("constraints_json", sa.JSON(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("deleted_at", sa.DateTime(timezone=True), nullable=True),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(
        "ix_automation_rule_tenant_trigger_active",
        "automation_rule",
        ["tenant_id", "trigger_event", "is_active"],
        unique=False,
    )

    op.create_table(
        "automation_ledger_entry",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("tenant_id", sa.String(length=128), nullable=False),
        sa.Column("rule_id", sa.Uuid(), nullable=False),
        sa.Column("entity_id", sa.String(length=128), nullable=False),
        sa.Column("last_fired_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("fire_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("row_version", sa.Integer(), nullable=False, server_default="1"),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("tenant_id", "rule_id", "entity_id", name="uq_automation_ledger_rule_entity"),
    )

    op.create_table(
        "automation_execution",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("tenant_id", sa.String(length=128), nullable=False),
        sa.Column("rule_id", sa.Uuid(), nullable=False),
        sa.Column("event_id", sa.String(length=128), nullable=False),
        sa.Column("event_name", sa.String(length=128), nullable=False),
        sa.Column("entity_type", sa.String(length=64), nullable=False),
        sa.Column("entity_id", sa.String(length=128), nullable=False),
        sa.Column("executed_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("conditions_passed", sa.Boolean(), nullable=False),
        sa.Column("condition_results_json", sa.JSON(), nullable=False),
        sa.Column("suppression_reason", sa.Text(), nullable=True),
        sa.Column("error", sa.Text(), nullable=True),
        sa.Column("action_results_json", sa.JSON(), nullable=False),
        sa.Column("is_test_mode", sa.Boolean(), nullable=False),
        sa.Column("outcome", sa.String(length=16), nullable=False),
        sa.Column("pending_actions", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("correlation_id", sa.String(length=128), nullable=True),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(
        "ix_automation_execution_tenant_rule",
        "automation_execution",
        ["tenant_id", "rule_id"],
        unique=False,
    )
    op.create_index(
        "ix_automation_execution_tenant_entity",
        "automation_execution",
        ["tenant_id", "entity_type", "entity_id"],
        unique=False,
    )
    op.create_index(
        "ix_automation_execution_tenant_executed_at",
        "automation_execution",
        ["tenant_id", "executed_at"],
        unique=False,
    )

    op.create_table(
        "automation_continuation",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("tenant_id", sa.String(length=128), nullable=False),
        sa.Column("execution_id", sa.Uuid(), nullable=False),
        sa.Column("rule_id", sa.Uuid(), nullable=False),
        sa.Column("event_json", sa.JSON(), nullable=False),
        sa.Column("remaining_actions_json", sa.JSON(), nullable=False),
        sa.Column("resume_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("status", sa.String(length=16), nullable=False, server_default="pending"),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(
        "ix_automation_continuation_status_resume_at",
        "automation_continuation",
        ["status", "resume_at"],
        unique=False,
    )


def downgrade() -> None:
    op.drop_index("ix_automation_continuation_status_resume_at", table_name="automation_continuation")
    op.drop_table("automation_continuation")
    op.drop_index("ix_automation_execution_tenant_executed_at", table_name="automation_execution")
    op.drop_index("ix_automation_execution_tenant_entity", table_name="automation_execution")
    op.drop_index("ix_automation_execution_tenant_rule", table_name="automation_execution")
    op.drop_table("automation_execution")
    op.drop_table("automation_ledger_entry")
    op.drop_index("ix_automation_rule_tenant_trigger_active", table_name="automation_rule")
    op.drop_table("automation_rule")
