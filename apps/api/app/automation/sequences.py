from __future__ import annotations

import logging
import uuid
from collections.abc import Callable
from datetime import datetime, timedelta, timezone
from typing import Any

from fastapi import HTTPException, status
from opentelemetry import trace
from sqlalchemy import Select, and_, select, update
from sqlalchemy.orm import Session

from app import audit
from app.automation.adapter import AutomationEvent
from app.automation.engine import automation_engine
from app.automation.executor import ActionExecutor
from app.automation.models import AutomationFollowUpSequence, utcnow
from app.automation.schemas import (
    ActionSpec,
    CreateTaskAction,
    CreateTaskConfig,
    FollowUpSequenceCreate,
    FollowUpSequenceRead,
    FollowUpStep,
    SendEmailAction,
    SendEmailConfig,
    SendSmsAction,
    SendSmsConfig,
)
from app.automation.service import ActorUser
from app.context import reset_correlation_id, reset_tenant_id, set_correlation_id, set_tenant_id
from app.core.config import get_settings
from app.metrics import observe_sequence_step


logger = logging.getLogger("app.automation.sequences")
tracer = trace.get_tracer("app.automation.sequences")

STEP_EVENT_NAME = "lead.follow_up_step"


def step_action(step: FollowUpStep) -> ActionSpec:
    """Map a sequence step onto the action the executor dispatches.

    Recipients come from the sequence's field snapshot: ``email`` for email
    steps, ``phone`` for text steps and ``owner_id`` for call tasks.
    """
    template_vars: dict[str, Any] = {"message": step.message} if step.message else {}
    if step.channel == "email":
        return SendEmailAction(
            type="send_email",
            config=SendEmailConfig(to="{{email}}", template=step.template_id or "follow_up", vars=template_vars),
        )
    if step.channel == "text":
        return SendSmsAction(
            type="send_sms",
            config=SendSmsConfig(to="{{phone}}", template=step.template_id or "follow_up", vars=template_vars),
        )
    return CreateTaskAction(
        type="create_task",
        config=CreateTaskConfig(assignee="{{owner_id}}", title=step.message or "Call lead {{lead_id}}"),
    )


class FollowUpSequenceService:
    entity_type = "automation.follow_up_sequence"

    def __init__(
        self,
        executor: ActionExecutor | None = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.executor = executor or ActionExecutor(clock=clock)
        self.clock = clock

    def start(self, session: Session, dto: FollowUpSequenceCreate, actor_user: ActorUser) -> FollowUpSequenceRead:
        self._require_permission(actor_user, "automation.sequences.manage")
        limit = get_settings().automation_max_actions_per_rule
        if len(dto.steps) > limit:
            raise HTTPException(
                status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
                detail=f"a sequence may define at most {limit} steps",
            )

        now = self.clock()
        sequence = AutomationFollowUpSequence(
            tenant_id=actor_user.tenant_id,
            lead_id=dto.lead_id.strip(),
            status="active",
            current_step=0,
            steps_json=[step.model_dump(mode="json", exclude_none=True) for step in dto.steps],
            fields_json=dict(dto.fields),
            next_step_at=now + timedelta(hours=dto.steps[0].delay_hours),
            started_at=now,
            correlation_id=actor_user.correlation_id,
        )
        session.add(sequence)
        session.flush()

        self._audit(actor_user, sequence, "automation.sequence.started", None, {"lead_id": sequence.lead_id})
        session.commit()
        session.refresh(sequence)
        logger.info(
            "automation_sequence_started",
            extra={"sequence_id": str(sequence.id), "lead_id": sequence.lead_id, "steps": len(dto.steps)},
        )
        return self.to_read(sequence)

    def list_sequences(
        self,
        session: Session,
        actor_user: ActorUser,
        *,
        lead_id: str | None = None,
        status_filter: str | None = None,
    ) -> list[FollowUpSequenceRead]:
        self._require_permission(actor_user, "automation.sequences.read")
        stmt: Select[tuple[AutomationFollowUpSequence]] = select(AutomationFollowUpSequence).where(
            AutomationFollowUpSequence.tenant_id == actor_user.tenant_id
        )
        if lead_id:
            stmt = stmt.where(AutomationFollowUpSequence.lead_id == lead_id)
        if status_filter:
            stmt = stmt.where(AutomationFollowUpSequence.status == status_filter)
        rows = session.scalars(stmt.order_by(AutomationFollowUpSequence.started_at.desc())).all()
        return [self.to_read(row) for row in rows]

    def get(self, session: Session, actor_user: ActorUser, sequence_id: uuid.UUID) -> FollowUpSequenceRead:
        self._require_permission(actor_user, "automation.sequences.read")
        return self.to_read(self._load(session, actor_user, sequence_id))

    def pause(self, session: Session, sequence_id: uuid.UUID, actor_user: ActorUser) -> FollowUpSequenceRead:
        self._require_permission(actor_user, "automation.sequences.manage")
        sequence = self._load(session, actor_user, sequence_id)
        if sequence.status != "active":
            raise HTTPException(
                status_code=status.HTTP_409_CONFLICT,
                detail=f"sequence is not active (current status: {sequence.status})",
            )
        sequence.status = "paused"
        sequence.paused_at = self.clock()
        sequence.next_step_at = None
        return self._save_transition(session, sequence, actor_user, "automation.sequence.paused", "active")

    def resume(self, session: Session, sequence_id: uuid.UUID, actor_user: ActorUser) -> FollowUpSequenceRead:
        self._require_permission(actor_user, "automation.sequences.manage")
        sequence = self._load(session, actor_user, sequence_id)
        if sequence.status != "paused":
            raise HTTPException(
                status_code=status.HTTP_409_CONFLICT,
                detail=f"sequence is not paused (current status: {sequence.status})",
            )
        sequence.status = "active"
        sequence.paused_at = None
        sequence.next_step_at = self.clock()
        return self._save_transition(session, sequence, actor_user, "automation.sequence.resumed", "paused")

    def cancel(self, session: Session, sequence_id: uuid.UUID, actor_user: ActorUser) -> FollowUpSequenceRead:
        self._require_permission(actor_user, "automation.sequences.manage")
        sequence = self._load(session, actor_user, sequence_id)
        if sequence.status in {"completed", "cancelled"}:
            raise HTTPException(
                status_code=status.HTTP_409_CONFLICT,
                detail=f"sequence is already {sequence.status}",
            )
        previous = sequence.status
        sequence.status = "cancelled"
        sequence.next_step_at = None
        return self._save_transition(session, sequence, actor_user, "automation.sequence.cancelled", previous)

    def process_due(
        self,
        session: Session,
        now: datetime | None = None,
        limit: int | None = None,
    ) -> list[FollowUpSequenceRead]:
        """Run the current step of every active sequence whose step is due."""
        current = (now or self.clock()).astimezone(timezone.utc)
        batch_size = limit or get_settings().automation_resume_batch_size
        due_ids = session.scalars(
            select(AutomationFollowUpSequence.id)
            .where(
                and_(
                    AutomationFollowUpSequence.status == "active",
                    AutomationFollowUpSequence.next_step_at <= current,
                )
            )
            .order_by(AutomationFollowUpSequence.next_step_at.asc())
            .limit(batch_size)
        ).all()
        session.commit()

        processed: list[FollowUpSequenceRead] = []
        for sequence_id in due_ids:
            result = self._advance(session, sequence_id, current)
            if result is not None:
                processed.append(result)
        return processed

    def _advance(self, session: Session, sequence_id: uuid.UUID, current: datetime) -> FollowUpSequenceRead | None:
        sequence = session.scalar(select(AutomationFollowUpSequence).where(AutomationFollowUpSequence.id == sequence_id))
        if sequence is None or sequence.status != "active":
            session.rollback()
            return None

        step_index = sequence.current_step
        steps = [FollowUpStep.model_validate(_step_definition(item)) for item in sequence.steps_json]
        if step_index >= len(steps):
            sequence.status = "completed"
            sequence.completed_at = current
            sequence.next_step_at = None
            session.commit()
            return self.to_read(sequence)

        # Pushing next_step_at out by the lease keeps other workers off this
        # step and brings it back if this worker dies before recording it.
        version = sequence.row_version
        lease = timedelta(seconds=get_settings().automation_continuation_lease_seconds)
        claimed = session.execute(
            update(AutomationFollowUpSequence)
            .where(
                and_(
                    AutomationFollowUpSequence.id == sequence_id,
                    AutomationFollowUpSequence.row_version == version,
                    AutomationFollowUpSequence.status == "active",
                )
            )
            .values(row_version=version + 1, next_step_at=current + lease, updated_at=current)
        )
        if claimed.rowcount == 0:
            session.rollback()
            return None
        session.commit()

        step = steps[step_index]
        event = AutomationEvent(
            id=f"{sequence_id}:{step_index}",
            tenant_id=sequence.tenant_id,
            name=STEP_EVENT_NAME,
            entity_type="lead",
            entity_id=sequence.lead_id,
            occurred_at=current,
            fields={**sequence.fields_json, "lead_id": sequence.lead_id},
            correlation_id=sequence.correlation_id,
        )

        correlation_token = set_correlation_id(event.correlation_id)
        tenant_token = set_tenant_id(event.tenant_id)
        try:
            with tracer.start_as_current_span("automation.sequence.step") as span:
                span.set_attribute("sequence_id", str(sequence_id))
                span.set_attribute("tenant_id", event.tenant_id)
                span.set_attribute("lead_id", event.entity_id)
                span.set_attribute("step", step_index)
                span.set_attribute("channel", step.channel)
                result = self.executor.run_action(step_action(step), event)
                span.set_attribute("status", result.status)

            sequence = session.scalar(
                select(AutomationFollowUpSequence).where(AutomationFollowUpSequence.id == sequence_id)
            )
            if sequence is None:
                session.rollback()
                return None

            steps_json = [dict(item) for item in sequence.steps_json]
            steps_json[step_index] = {
                **steps_json[step_index],
                "executed_at": (result.executed_at or current).isoformat(),
                "status": result.status,
                "detail": result.detail,
            }
            sequence.steps_json = steps_json
            sequence.current_step = step_index + 1
            sequence.row_version = sequence.row_version + 1
            if sequence.status == "active":
                if step_index + 1 < len(steps):
                    sequence.next_step_at = current + timedelta(hours=steps[step_index + 1].delay_hours)
                else:
                    sequence.status = "completed"
                    sequence.completed_at = current
                    sequence.next_step_at = None
            session.add(sequence)
            session.commit()

            observe_sequence_step(step.channel, result.status)
            log = logger.warning if result.status == "failed" else logger.info
            log(
                "automation_sequence_step",
                extra={
                    "sequence_id": str(sequence_id),
                    "lead_id": sequence.lead_id,
                    "step": step_index,
                    "channel": step.channel,
                    "status": result.status,
                    "detail": result.detail,
                },
            )
            return self.to_read(sequence)
        finally:
            reset_tenant_id(tenant_token)
            reset_correlation_id(correlation_token)

    def _save_transition(
        self,
        session: Session,
        sequence: AutomationFollowUpSequence,
        actor_user: ActorUser,
        action: str,
        previous_status: str,
    ) -> FollowUpSequenceRead:
        sequence.row_version = sequence.row_version + 1
        sequence.updated_at = utcnow()
        session.add(sequence)
        session.flush()

        self._audit(actor_user, sequence, action, {"status": previous_status}, {"status": sequence.status})
        session.commit()
        session.refresh(sequence)
        return self.to_read(sequence)

    def _audit(
        self,
        actor_user: ActorUser,
        sequence: AutomationFollowUpSequence,
        action: str,
        before: dict[str, Any] | None,
        after: dict[str, Any] | None,
    ) -> None:
        audit.record(
            actor_user_id=actor_user.user_id,
            entity_type=self.entity_type,
            entity_id=str(sequence.id),
            action=action,
            before=before,
            after=after,
            correlation_id=actor_user.correlation_id,
            tenant_id=actor_user.tenant_id,
        )

    def _load(self, session: Session, actor_user: ActorUser, sequence_id: uuid.UUID) -> AutomationFollowUpSequence:
        sequence = session.scalar(
            select(AutomationFollowUpSequence).where(
                and_(
                    AutomationFollowUpSequence.id == sequence_id,
                    AutomationFollowUpSequence.tenant_id == actor_user.tenant_id,
                )
            )
        )
        if sequence is None:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="follow-up sequence not found")
        return sequence

    def to_read(self, sequence: AutomationFollowUpSequence) -> FollowUpSequenceRead:
        return FollowUpSequenceRead.model_validate(
            {
                "id": sequence.id,
                "tenant_id": sequence.tenant_id,
                "lead_id": sequence.lead_id,
                "status": sequence.status,
                "current_step": sequence.current_step,
                "steps": sequence.steps_json or [],
                "next_step_at": sequence.next_step_at,
                "started_at": sequence.started_at,
                "paused_at": sequence.paused_at,
                "completed_at": sequence.completed_at,
            }
        )

    def _require_permission(self, actor_user: ActorUser, permission: str) -> None:
        if permission not in actor_user.permissions:
            raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=f"Missing permission: {permission}")


def _step_definition(item: dict[str, Any]) -> dict[str, Any]:
    return {key: item[key] for key in ("delay_hours", "channel", "template_id", "message") if key in item}


follow_up_sequence_service = FollowUpSequenceService(executor=automation_engine.executor)
