from __future__ import annotations

import uuid
from dataclasses import dataclass

from pydantic import ValidationError
from sqlalchemy import Select, and_, select
from sqlalchemy.orm import Session

from app.automation.models import AutomationRule
from app.automation.schemas import RuleSnapshot


@dataclass(frozen=True)
class RuleCandidate:
    rule_id: uuid.UUID
    is_test_mode: bool
    rule: RuleSnapshot | None = None
    error: str | None = None


def to_snapshot(row: AutomationRule) -> RuleSnapshot:
    return RuleSnapshot.model_validate(
        {
            "id": row.id,
            "tenant_id": row.tenant_id,
            "name": row.name,
            "description": row.description,
            "is_active": row.is_active,
            "is_test_mode": row.is_test_mode,
            "trigger_event": row.trigger_event,
            "conditions": row.conditions_json or [],
            "actions": row.actions_json or [],
            "constraints": row.constraints_json or {},
            "created_at": row.created_at,
            "updated_at": row.updated_at,
        }
    )


class RuleStore:
    """Tenant-scoped read access to rule definitions."""

    def candidates(self, session: Session, tenant_id: str, trigger_event: str) -> list[RuleCandidate]:
        stmt: Select[tuple[AutomationRule]] = select(AutomationRule).where(
            and_(
                AutomationRule.tenant_id == tenant_id,
                AutomationRule.trigger_event == trigger_event,
                AutomationRule.is_active.is_(True),
                AutomationRule.deleted_at.is_(None),
            )
        )
        rows = session.scalars(stmt.order_by(AutomationRule.id.asc())).all()

        result: list[RuleCandidate] = []
        for row in rows:
            try:
                snapshot = to_snapshot(row)
            except ValidationError as exc:
                result.append(
                    RuleCandidate(
                        rule_id=row.id,
                        is_test_mode=bool(row.is_test_mode),
                        error=f"invalid rule definition: {exc.error_count()} validation errors",
                    )
                )
                continue
            result.append(RuleCandidate(rule_id=row.id, is_test_mode=snapshot.is_test_mode, rule=snapshot))
        return result

    def get(self, session: Session, tenant_id: str, rule_id: uuid.UUID) -> RuleSnapshot | None:
        """Current definition of a rule, active or not; ``None`` once deleted."""
        row = session.scalar(
            select(AutomationRule).where(
                and_(
                    AutomationRule.id == rule_id,
                    AutomationRule.tenant_id == tenant_id,
                    AutomationRule.deleted_at.is_(None),
                )
            )
        )
        if row is None:
            return None
        return to_snapshot(row)
