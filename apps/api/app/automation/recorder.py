from __future__ import annotations

import uuid
from collections.abc import Sequence
from datetime import datetime

from sqlalchemy import select
from sqlalchemy.orm import Session

from app.automation.adapter import AutomationEvent
from app.automation.models import AutomationExecution, utcnow
from app.automation.schemas import ActionResult, ConditionResult, ExecutionRecordRead


class ExecutionNotFoundError(LookupError):
    pass


def derive_outcome(
    suppression_reason: str | None,
    error: str | None,
    action_results: Sequence[ActionResult | dict],
) -> str:
    if suppression_reason:
        return "suppressed"
    if error:
        return "failed"
    for result in action_results:
        status_value = result.get("status") if isinstance(result, dict) else result.status
        if status_value == "failed":
            return "failed"
    return "successful"


class ExecutionRecorder:
    """Append-only store of one record per (event, rule) evaluation."""

    def record(
        self,
        session: Session,
        *,
        rule_id: uuid.UUID,
        event: AutomationEvent,
        conditions_passed: bool,
        condition_results: Sequence[ConditionResult] = (),
        suppression_reason: str | None = None,
        action_results: Sequence[ActionResult] = (),
        is_test_mode: bool = False,
        error: str | None = None,
        pending_actions: int = 0,
        executed_at: datetime | None = None,
    ) -> AutomationExecution:
        row = AutomationExecution(
            tenant_id=event.tenant_id,
            rule_id=rule_id,
            event_id=event.id,
            event_name=event.name,
            entity_type=event.entity_type,
            entity_id=event.entity_id,
            executed_at=executed_at or utcnow(),
            conditions_passed=conditions_passed,
            condition_results_json=[item.model_dump(mode="json") for item in condition_results],
            suppression_reason=suppression_reason,
            error=error[:2000] if error else None,
            action_results_json=[item.model_dump(mode="json") for item in action_results],
            is_test_mode=is_test_mode,
            outcome=derive_outcome(suppression_reason, error, action_results),
            pending_actions=pending_actions,
            correlation_id=event.correlation_id,
        )
        session.add(row)
        session.flush()
        return row

    def append(
        self,
        session: Session,
        execution_id: uuid.UUID,
        action_results: Sequence[ActionResult],
        pending_actions: int,
        error: str | None = None,
    ) -> AutomationExecution:
        row = session.scalar(select(AutomationExecution).where(AutomationExecution.id == execution_id))
        if row is None:
            raise ExecutionNotFoundError(f"execution {execution_id} not found")

        merged = [*row.action_results_json, *(item.model_dump(mode="json") for item in action_results)]
        row.action_results_json = merged
        row.pending_actions = pending_actions
        if error:
            row.error = error[:2000]
        row.outcome = derive_outcome(row.suppression_reason, row.error, merged)
        row.updated_at = utcnow()
        session.add(row)
        session.flush()
        return row

    def to_read(self, row: AutomationExecution) -> ExecutionRecordRead:
        return ExecutionRecordRead(
            id=row.id,
            tenant_id=row.tenant_id,
            rule_id=row.rule_id,
            event_id=row.event_id,
            event_name=row.event_name,
            entity_type=row.entity_type,
            entity_id=row.entity_id,
            timestamp=row.executed_at,
            conditions_passed=row.conditions_passed,
            condition_results=[ConditionResult.model_validate(item) for item in row.condition_results_json or []],
            suppression_reason=row.suppression_reason,
            error=row.error,
            action_results=[ActionResult.model_validate(item) for item in row.action_results_json or []],
            is_test_mode=row.is_test_mode,
            outcome=row.outcome,
            pending_actions=row.pending_actions,
        )
