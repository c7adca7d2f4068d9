from __future__ import annotations

import uuid
from datetime import datetime, timezone

from sqlalchemy import (
    Boolean,
    DateTime,
    Index,
    Integer,
    JSON,
    String,
    Text,
    UniqueConstraint,
    Uuid,
)
from sqlalchemy.orm import Mapped, mapped_column

from app.core.database import Base


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class AutomationRule(Base):
    __tablename__ = "automation_rule"

    id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    tenant_id: Mapped[str] = mapped_column(String(128), nullable=False)
    name: Mapped[str] = mapped_column(Text, nullable=False)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True, server_default="true")
    is_test_mode: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False, server_default="false")
    trigger_event: Mapped[str] = mapped_column(String(128), nullable=False)
    conditions_json: Mapped[list[dict[str, object]]] = mapped_column(JSON, nullable=False, default=list)
    actions_json: Mapped[list[dict[str, object]]] = mapped_column(JSON, nullable=False)
    constraints_json: Mapped[dict[str, object]] = mapped_column(JSON, nullable=False, default=dict)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=utcnow,
        onupdate=utcnow,
    )
    deleted_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)


class AutomationLedgerEntry(Base):
    __tablename__ = "automation_ledger_entry"

    id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    tenant_id: Mapped[str] = mapped_column(String(128), nullable=False)
    rule_id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), nullable=False)
    entity_id: Mapped[str] = mapped_column(String(128), nullable=False)
    last_fired_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    fire_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0, server_default="0")
    row_version: Mapped[int] = mapped_column(Integer, nullable=False, default=1, server_default="1")
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=utcnow,
        onupdate=utcnow,
    )

    __table_args__ = (
        UniqueConstraint("tenant_id", "rule_id", "entity_id", name="uq_automation_ledger_rule_entity"),
    )


class AutomationExecution(Base):
    __tablename__ = "automation_execution"

    id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    tenant_id: Mapped[str] = mapped_column(String(128), nullable=False)
    rule_id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), nullable=False)
    event_id: Mapped[str] = mapped_column(String(128), nullable=False)
    event_name: Mapped[str] = mapped_column(String(128), nullable=False)
    entity_type: Mapped[str] = mapped_column(String(64), nullable=False)
    entity_id: Mapped[str] = mapped_column(String(128), nullable=False)
    executed_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)
    conditions_passed: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    condition_results_json: Mapped[list[dict[str, object]]] = mapped_column(JSON, nullable=False, default=list)
    suppression_reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    error: Mapped[str | None] = mapped_column(Text, nullable=True)
    action_results_json: Mapped[list[dict[str, object]]] = mapped_column(JSON, nullable=False, default=list)
    is_test_mode: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    outcome: Mapped[str] = mapped_column(String(16), nullable=False)
    pending_actions: Mapped[int] = mapped_column(Integer, nullable=False, default=0, server_default="0")
    correlation_id: Mapped[str | None] = mapped_column(String(128), nullable=True)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=utcnow,
        onupdate=utcnow,
    )


class AutomationContinuation(Base):
    __tablename__ = "automation_continuation"

    id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    tenant_id: Mapped[str] = mapped_column(String(128), nullable=False)
    execution_id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), nullable=False)
    rule_id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), nullable=False)
    event_json: Mapped[dict[str, object]] = mapped_column(JSON, nullable=False)
    remaining_actions_json: Mapped[list[dict[str, object]]] = mapped_column(JSON, nullable=False)
    resume_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    status: Mapped[str] = mapped_column(String(16), nullable=False, default="pending", server_default="pending")
    attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=0, server_default="0")
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=utcnow,
        onupdate=utcnow,
    )


class AutomationFollowUpSequence(Base):
    __tablename__ = "automation_follow_up_sequence"

    id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    tenant_id: Mapped[str] = mapped_column(String(128), nullable=False)
    lead_id: Mapped[str] = mapped_column(String(128), nullable=False)
    status: Mapped[str] = mapped_column(String(16), nullable=False, default="active", server_default="active")
    current_step: Mapped[int] = mapped_column(Integer, nullable=False, default=0, server_default="0")
    steps_json: Mapped[list[dict[str, object]]] = mapped_column(JSON, nullable=False)
    fields_json: Mapped[dict[str, object]] = mapped_column(JSON, nullable=False, default=dict)
    next_step_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    started_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)
    paused_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    row_version: Mapped[int] = mapped_column(Integer, nullable=False, default=1, server_default="1")
    correlation_id: Mapped[str | None] = mapped_column(String(128), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=utcnow,
        onupdate=utcnow,
    )


Index("ix_automation_rule_tenant_trigger_active", AutomationRule.tenant_id, AutomationRule.trigger_event, AutomationRule.is_active)
Index("ix_automation_execution_tenant_rule", AutomationExecution.tenant_id, AutomationExecution.rule_id)
Index(
    "ix_automation_execution_tenant_entity",
    AutomationExecution.tenant_id,
    AutomationExecution.entity_type,
    AutomationExecution.entity_id,
)
Index("ix_automation_execution_tenant_executed_at", AutomationExecution.tenant_id, AutomationExecution.executed_at)
Index("ix_automation_continuation_status_resume_at", AutomationContinuation.status, AutomationContinuation.resume_at)
Index("ix_automation_follow_up_sequence_tenant_lead", AutomationFollowUpSequence.tenant_id, AutomationFollowUpSequence.lead_id)
Index(
    "ix_automation_follow_up_sequence_status_next_step",
    AutomationFollowUpSequence.status,
    AutomationFollowUpSequence.next_step_at,
)
