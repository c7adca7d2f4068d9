from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from fastapi import HTTPException, status
from sqlalchemy import Select, and_, case, func, select
from sqlalchemy.orm import Session

from app import audit
from app.automation.adapter import MalformedEventError, normalize_event
from app.automation.engine import RuleEngine, automation_engine
from app.automation.ledger import ConstraintLedger
from app.automation.models import AutomationExecution, AutomationRule, utcnow
from app.automation.recorder import ExecutionRecorder
from app.automation.schemas import (
    AutomationRuleCreate,
    AutomationRuleRead,
    AutomationRuleUpdate,
    EventIngestRequest,
    EventIngestResponse,
    ExecutionRecordRead,
    ExecutionStats,
    LedgerEntryRead,
    RuleExecutionCount,
    action_list_adapter,
)
from app.core.celery_app import evaluate_automation_event_task
from app.core.config import get_settings
from app.metrics import observe_event


@dataclass
class ActorUser:
    user_id: str
    tenant_id: str
    permissions: set[str] = field(default_factory=set)
    correlation_id: str | None = None


class AutomationRuleService:
    entity_type = "automation.rule"

    def list_rules(
        self,
        session: Session,
        actor_user: ActorUser,
        *,
        trigger_event: str | None = None,
        is_active: bool | None = None,
        is_test_mode: bool | None = None,
    ) -> list[AutomationRuleRead]:
        self._require_permission(actor_user, "automation.rules.read")
        stmt: Select[tuple[AutomationRule]] = select(AutomationRule).where(
            and_(
                AutomationRule.tenant_id == actor_user.tenant_id,
                AutomationRule.deleted_at.is_(None),
            )
        )
        if trigger_event:
            stmt = stmt.where(AutomationRule.trigger_event == trigger_event)
        if is_active is not None:
            stmt = stmt.where(AutomationRule.is_active.is_(is_active))
        if is_test_mode is not None:
            stmt = stmt.where(AutomationRule.is_test_mode.is_(is_test_mode))
        rows = session.scalars(stmt.order_by(AutomationRule.created_at.desc())).all()
        return [self._to_read(row) for row in rows]

    def get_rule(self, session: Session, actor_user: ActorUser, rule_id: uuid.UUID) -> AutomationRuleRead:
        self._require_permission(actor_user, "automation.rules.read")
        return self._to_read(self._load_rule(session, actor_user, rule_id))

    def create_rule(self, session: Session, dto: AutomationRuleCreate, actor_user: ActorUser) -> AutomationRuleRead:
        self._require_permission(actor_user, "automation.rules.manage")
        self._validate_trigger_event(dto.trigger_event)
        self._validate_action_count(len(dto.actions))

        rule = AutomationRule(
            tenant_id=actor_user.tenant_id,
            name=dto.name.strip(),
            description=dto.description,
            is_active=dto.is_active,
            is_test_mode=dto.is_test_mode,
            trigger_event=dto.trigger_event,
            conditions_json=[item.model_dump(mode="json") for item in dto.conditions],
            actions_json=action_list_adapter.dump_python(list(dto.actions), mode="json"),
            constraints_json=dto.constraints.model_dump(mode="json"),
        )
        session.add(rule)
        session.flush()

        after = self._to_read(rule).model_dump(mode="json")
        self._audit(actor_user, rule, "automation.rule.created", None, after)
        session.commit()
        session.refresh(rule)
        return self._to_read(rule)

    def update_rule(
        self,
        session: Session,
        rule_id: uuid.UUID,
        dto: AutomationRuleUpdate,
        actor_user: ActorUser,
    ) -> AutomationRuleRead:
        self._require_permission(actor_user, "automation.rules.manage")
        rule = self._load_rule(session, actor_user, rule_id)
        before = self._to_read(rule).model_dump(mode="json")

        payload = dto.model_dump(exclude_unset=True)
        if payload.get("name") is not None:
            rule.name = dto.name.strip()
        if "description" in payload:
            rule.description = dto.description
        if payload.get("is_active") is not None:
            rule.is_active = dto.is_active
        if payload.get("is_test_mode") is not None:
            rule.is_test_mode = dto.is_test_mode
        if payload.get("trigger_event") is not None:
            self._validate_trigger_event(dto.trigger_event)
            rule.trigger_event = dto.trigger_event
        if dto.conditions is not None:
            rule.conditions_json = [item.model_dump(mode="json") for item in dto.conditions]
        if dto.actions is not None:
            self._validate_action_count(len(dto.actions))
            rule.actions_json = action_list_adapter.dump_python(list(dto.actions), mode="json")
        if dto.constraints is not None:
            rule.constraints_json = dto.constraints.model_dump(mode="json")

        rule.updated_at = utcnow()
        session.add(rule)
        session.flush()

        after = self._to_read(rule).model_dump(mode="json")
        self._audit(actor_user, rule, "automation.rule.updated", before, after)
        session.commit()
        session.refresh(rule)
        return self._to_read(rule)

    def set_active(self, session: Session, rule_id: uuid.UUID, enabled: bool, actor_user: ActorUser) -> AutomationRuleRead:
        return self._toggle(session, rule_id, actor_user, "is_active", enabled, "automation.rule.activation_changed")

    def set_test_mode(self, session: Session, rule_id: uuid.UUID, enabled: bool, actor_user: ActorUser) -> AutomationRuleRead:
        return self._toggle(session, rule_id, actor_user, "is_test_mode", enabled, "automation.rule.test_mode_changed")

    def soft_delete_rule(self, session: Session, rule_id: uuid.UUID, actor_user: ActorUser) -> None:
        self._require_permission(actor_user, "automation.rules.manage")
        rule = self._load_rule(session, actor_user, rule_id)
        before = self._to_read(rule).model_dump(mode="json")

        rule.deleted_at = utcnow()
        rule.updated_at = utcnow()
        session.add(rule)
        session.flush()

        self._audit(actor_user, rule, "automation.rule.deleted", before, {"deleted_at": rule.deleted_at.isoformat()})
        session.commit()

    def _toggle(
        self,
        session: Session,
        rule_id: uuid.UUID,
        actor_user: ActorUser,
        attribute: str,
        enabled: bool,
        action: str,
    ) -> AutomationRuleRead:
        self._require_permission(actor_user, "automation.rules.manage")
        rule = self._load_rule(session, actor_user, rule_id)
        previous = getattr(rule, attribute)
        if previous == enabled:
            return self._to_read(rule)

        setattr(rule, attribute, enabled)
        rule.updated_at = utcnow()
        session.add(rule)
        session.flush()

        self._audit(actor_user, rule, action, {attribute: previous}, {attribute: enabled})
        session.commit()
        session.refresh(rule)
        return self._to_read(rule)

    def _audit(
        self,
        actor_user: ActorUser,
        rule: AutomationRule,
        action: str,
        before: dict[str, Any] | None,
        after: dict[str, Any] | None,
    ) -> None:
        audit.record(
            actor_user_id=actor_user.user_id,
            entity_type=self.entity_type,
            entity_id=str(rule.id),
            action=action,
            before=before,
            after=after,
            correlation_id=actor_user.correlation_id,
            tenant_id=actor_user.tenant_id,
        )

    def _validate_trigger_event(self, trigger_event: str) -> None:
        if trigger_event not in get_settings().automation_trigger_events:
            raise HTTPException(
                status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
                detail=f"unsupported trigger_event: {trigger_event}",
            )

    def _validate_action_count(self, count: int) -> None:
        limit = get_settings().automation_max_actions_per_rule
        if count > limit:
            raise HTTPException(
                status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
                detail=f"a rule may define at most {limit} actions",
            )

    def _load_rule(self, session: Session, actor_user: ActorUser, rule_id: uuid.UUID) -> AutomationRule:
        rule = session.scalar(
            select(AutomationRule).where(
                and_(
                    AutomationRule.id == rule_id,
                    AutomationRule.tenant_id == actor_user.tenant_id,
                    AutomationRule.deleted_at.is_(None),
                )
            )
        )
        if rule is None:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="automation rule not found")
        return rule

    def _to_read(self, rule: AutomationRule) -> AutomationRuleRead:
        return AutomationRuleRead.model_validate(
            {
                "id": rule.id,
                "tenant_id": rule.tenant_id,
                "name": rule.name,
                "description": rule.description,
                "is_active": rule.is_active,
                "is_test_mode": rule.is_test_mode,
                "trigger_event": rule.trigger_event,
                "conditions": rule.conditions_json or [],
                "actions": rule.actions_json or [],
                "constraints": rule.constraints_json or {},
                "created_at": rule.created_at,
                "updated_at": rule.updated_at,
            }
        )

    def _require_permission(self, actor_user: ActorUser, permission: str) -> None:
        if permission not in actor_user.permissions:
            raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=f"Missing permission: {permission}")


class AutomationExecutionService:
    def __init__(self, recorder: ExecutionRecorder | None = None, ledger: ConstraintLedger | None = None) -> None:
        self.recorder = recorder or ExecutionRecorder()
        self.ledger = ledger or ConstraintLedger()

    def list_executions(
        self,
        session: Session,
        actor_user: ActorUser,
        *,
        rule_id: uuid.UUID | None = None,
        entity_type: str | None = None,
        entity_id: str | None = None,
        outcome: str | None = None,
        since: datetime | None = None,
        until: datetime | None = None,
        limit: int = 50,
    ) -> list[ExecutionRecordRead]:
        self._require_permission(actor_user, "automation.executions.read")
        filters = self._filters(
            actor_user,
            rule_id=rule_id,
            entity_type=entity_type,
            entity_id=entity_id,
            since=since,
            until=until,
        )
        stmt: Select[tuple[AutomationExecution]] = select(AutomationExecution).where(and_(*filters))
        if outcome:
            stmt = stmt.where(AutomationExecution.outcome == outcome)
        rows = session.scalars(
            stmt.order_by(AutomationExecution.executed_at.desc(), AutomationExecution.id.desc()).limit(limit)
        ).all()
        return [self.recorder.to_read(row) for row in rows]

    def get_execution(self, session: Session, actor_user: ActorUser, execution_id: uuid.UUID) -> ExecutionRecordRead:
        self._require_permission(actor_user, "automation.executions.read")
        row = session.scalar(
            select(AutomationExecution).where(
                and_(
                    AutomationExecution.id == execution_id,
                    AutomationExecution.tenant_id == actor_user.tenant_id,
                )
            )
        )
        if row is None:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="execution not found")
        return self.recorder.to_read(row)

    def execution_stats(
        self,
        session: Session,
        actor_user: ActorUser,
        *,
        rule_id: uuid.UUID | None = None,
        since: datetime | None = None,
        until: datetime | None = None,
    ) -> ExecutionStats:
        self._require_permission(actor_user, "automation.executions.read")
        filters = self._filters(actor_user, rule_id=rule_id, since=since, until=until)

        def _count_where(condition: Any) -> Any:
            return func.coalesce(func.sum(case((condition, 1), else_=0)), 0)

        totals = session.execute(
            select(
                func.count(AutomationExecution.id),
                _count_where(AutomationExecution.conditions_passed.is_(True)),
                _count_where(AutomationExecution.outcome == "successful"),
                _count_where(AutomationExecution.outcome == "suppressed"),
                _count_where(AutomationExecution.outcome == "failed"),
                _count_where(AutomationExecution.is_test_mode.is_(True)),
            ).where(and_(*filters))
        ).one()
        total, passed, successful, suppressed, failed, test_mode = (int(value or 0) for value in totals)

        per_rule = session.execute(
            select(
                AutomationExecution.rule_id,
                AutomationRule.name,
                func.count(AutomationExecution.id).label("execution_count"),
            )
            .outerjoin(AutomationRule, AutomationRule.id == AutomationExecution.rule_id)
            .where(and_(*filters))
            .group_by(AutomationExecution.rule_id, AutomationRule.name)
            .order_by(func.count(AutomationExecution.id).desc(), AutomationExecution.rule_id.asc())
        ).all()

        return ExecutionStats(
            total_executions=total,
            conditions_passed=passed,
            conditions_failed=total - passed,
            successful=successful,
            suppressed=suppressed,
            failed=failed,
            test_mode=test_mode,
            by_rule=[
                RuleExecutionCount(rule_id=row[0], rule_name=row[1] or "", count=int(row[2]))
                for row in per_rule
            ],
        )

    def get_ledger_entry(
        self,
        session: Session,
        actor_user: ActorUser,
        rule_id: uuid.UUID,
        entity_id: str,
    ) -> LedgerEntryRead:
        self._require_permission(actor_user, "automation.executions.read")
        entry = self.ledger.get(session, actor_user.tenant_id, rule_id, entity_id)
        if entry is None:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="ledger entry not found")
        return LedgerEntryRead.model_validate(entry)

    def _filters(
        self,
        actor_user: ActorUser,
        *,
        rule_id: uuid.UUID | None = None,
        entity_type: str | None = None,
        entity_id: str | None = None,
        since: datetime | None = None,
        until: datetime | None = None,
    ) -> list[Any]:
        filters: list[Any] = [AutomationExecution.tenant_id == actor_user.tenant_id]
        if rule_id is not None:
            filters.append(AutomationExecution.rule_id == rule_id)
        if entity_type:
            filters.append(AutomationExecution.entity_type == entity_type)
        if entity_id:
            filters.append(AutomationExecution.entity_id == entity_id)
        if since is not None:
            filters.append(AutomationExecution.executed_at >= since)
        if until is not None:
            filters.append(AutomationExecution.executed_at < until)
        return filters

    def _require_permission(self, actor_user: ActorUser, permission: str) -> None:
        if permission not in actor_user.permissions:
            raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=f"Missing permission: {permission}")


class AutomationEventService:
    def __init__(self, engine: RuleEngine | None = None) -> None:
        self.engine = engine or automation_engine

    def ingest(self, session: Session, dto: EventIngestRequest, actor_user: ActorUser) -> EventIngestResponse:
        if "automation.events.ingest" not in actor_user.permissions:
            raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Missing permission: automation.events.ingest")

        envelope = dto.model_dump(mode="json", exclude_none=True)
        envelope["tenant_id"] = actor_user.tenant_id
        envelope["correlation_id"] = actor_user.correlation_id

        try:
            event = normalize_event(envelope)
        except MalformedEventError as exc:
            observe_event("malformed")
            raise HTTPException(
                status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
                detail={"message": str(exc), "missing": exc.missing},
            ) from exc

        if get_settings().automation_async_ingest:
            evaluate_automation_event_task.delay(event.to_json())
            return EventIngestResponse(event_id=event.id, status="queued")

        records = self.engine.evaluate(session, event)
        return EventIngestResponse(event_id=event.id, status="evaluated", executions=records)
