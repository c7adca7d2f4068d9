from __future__ import annotations

import logging
import uuid
from collections.abc import Callable, Sequence
from datetime import datetime, timedelta, timezone

from opentelemetry import trace
from opentelemetry.trace import Status, StatusCode
from sqlalchemy import and_, select, update
from sqlalchemy.orm import Session

from app.automation.adapter import AutomationEvent, normalize_event
from app.automation.executor import ActionExecutor
from app.automation.models import AutomationContinuation, utcnow
from app.automation.recorder import ExecutionRecorder
from app.automation.rules import RuleStore
from app.automation.schemas import ActionResult, ActionSpec, ExecutionRecordRead, action_list_adapter
from app.context import reset_correlation_id, reset_tenant_id, set_correlation_id, set_tenant_id
from app.core.config import get_settings
from app.metrics import observe_continuation


logger = logging.getLogger("app.automation.scheduler")
tracer = trace.get_tracer("app.automation.scheduler")


class ContinuationScheduler:
    """Durable wait-then-continue for multi-step rules.

    A continuation row holds the triggering event and the actions left after a
    ``wait``. ``resume_due`` claims due rows with a pending -> running
    compare-and-set so concurrent workers never run the same continuation twice.
    A claim is a lease: rows left ``running`` past
    ``automation_continuation_lease_seconds`` go back to ``pending`` until
    ``automation_continuation_max_attempts`` is used up, then fail. A failed
    resume appends ``failed`` results for the remaining actions to the original
    execution record.
    """

    def __init__(
        self,
        executor: ActionExecutor | None = None,
        recorder: ExecutionRecorder | None = None,
        rule_store: RuleStore | None = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.executor = executor or ActionExecutor()
        self.recorder = recorder or ExecutionRecorder()
        self.rule_store = rule_store or RuleStore()
        self.clock = clock

    def schedule(
        self,
        session: Session,
        *,
        execution_id: uuid.UUID,
        rule_id: uuid.UUID,
        event: AutomationEvent,
        remaining: Sequence[ActionSpec],
        resume_at: datetime,
    ) -> AutomationContinuation:
        continuation = AutomationContinuation(
            tenant_id=event.tenant_id,
            execution_id=execution_id,
            rule_id=rule_id,
            event_json=event.to_json(),
            remaining_actions_json=action_list_adapter.dump_python(list(remaining), mode="json"),
            resume_at=resume_at.astimezone(timezone.utc),
            status="pending",
        )
        session.add(continuation)
        session.flush()
        logger.info(
            "automation_continuation_scheduled",
            extra={
                "continuation_id": str(continuation.id),
                "execution_id": str(execution_id),
                "rule_id": str(rule_id),
                "tenant_id": event.tenant_id,
            },
        )
        observe_continuation("scheduled")
        return continuation

    def resume_due(
        self,
        session: Session,
        now: datetime | None = None,
        limit: int | None = None,
    ) -> list[ExecutionRecordRead]:
        current = (now or self.clock()).astimezone(timezone.utc)
        batch_size = limit or get_settings().automation_resume_batch_size
        self._reclaim_stale(session, current)

        due_ids = session.scalars(
            select(AutomationContinuation.id)
            .where(
                and_(
                    AutomationContinuation.status == "pending",
                    AutomationContinuation.resume_at <= current,
                )
            )
            .order_by(AutomationContinuation.resume_at.asc())
            .limit(batch_size)
        ).all()
        session.commit()

        records: list[ExecutionRecordRead] = []
        for continuation_id in due_ids:
            if not self._claim(session, continuation_id, current):
                continue
            record = self._resume_one(session, continuation_id)
            if record is not None:
                records.append(record)
        return records

    def _claim(self, session: Session, continuation_id: uuid.UUID, current: datetime) -> bool:
        result = session.execute(
            update(AutomationContinuation)
            .where(
                and_(
                    AutomationContinuation.id == continuation_id,
                    AutomationContinuation.status == "pending",
                )
            )
            .values(
                status="running",
                attempts=AutomationContinuation.attempts + 1,
                updated_at=current,
            )
        )
        if result.rowcount == 0:
            session.rollback()
            return False
        session.commit()
        return True

    def _reclaim_stale(self, session: Session, current: datetime) -> None:
        settings = get_settings()
        cutoff = current - timedelta(seconds=settings.automation_continuation_lease_seconds)
        stale = session.execute(
            select(AutomationContinuation.id, AutomationContinuation.attempts).where(
                and_(
                    AutomationContinuation.status == "running",
                    AutomationContinuation.updated_at < cutoff,
                )
            )
        ).all()
        session.commit()

        for continuation_id, attempts in stale:
            if attempts >= settings.automation_continuation_max_attempts:
                self._fail(
                    session,
                    continuation_id,
                    f"continuation abandoned after {attempts} attempts: worker lease expired",
                )
                continue

            result = session.execute(
                update(AutomationContinuation)
                .where(
                    and_(
                        AutomationContinuation.id == continuation_id,
                        AutomationContinuation.status == "running",
                        AutomationContinuation.updated_at < cutoff,
                    )
                )
                .values(status="pending", updated_at=current)
            )
            if result.rowcount == 0:
                session.rollback()
                continue
            session.commit()
            logger.warning(
                "automation_continuation_reclaimed",
                extra={"continuation_id": str(continuation_id), "attempts": attempts},
            )
            observe_continuation("reclaimed")

    def _fail(self, session: Session, continuation_id: uuid.UUID, error: str) -> ExecutionRecordRead | None:
        continuation = session.scalar(
            select(AutomationContinuation).where(AutomationContinuation.id == continuation_id)
        )
        if continuation is None or continuation.status != "running":
            session.rollback()
            return None

        try:
            now = self.clock()
            actions = action_list_adapter.validate_python(continuation.remaining_actions_json)
            results = [
                ActionResult(type=action.type, status="failed", detail=error, executed_at=now)
                for action in actions
            ]
            row = self.recorder.append(session, continuation.execution_id, results, pending_actions=0, error=error)
            continuation.status = "failed"
            session.add(continuation)
            session.commit()
            record: ExecutionRecordRead | None = self.recorder.to_read(row)
        except Exception as exc:
            session.rollback()
            logger.error(
                "automation_continuation_unrecorded",
                extra={"continuation_id": str(continuation_id), "error": str(exc)},
            )
            session.execute(
                update(AutomationContinuation)
                .where(AutomationContinuation.id == continuation_id)
                .values(status="failed", updated_at=utcnow())
            )
            session.commit()
            record = None

        observe_continuation("failed")
        return record

    def _resume_one(self, session: Session, continuation_id: uuid.UUID) -> ExecutionRecordRead | None:
        continuation = session.scalar(
            select(AutomationContinuation).where(AutomationContinuation.id == continuation_id)
        )
        if continuation is None:
            return None

        event = normalize_event(continuation.event_json)
        correlation_token = set_correlation_id(event.correlation_id)
        tenant_token = set_tenant_id(event.tenant_id)
        try:
            with tracer.start_as_current_span("automation.continuation.resume") as span:
                span.set_attribute("continuation_id", str(continuation.id))
                span.set_attribute("execution_id", str(continuation.execution_id))
                span.set_attribute("rule_id", str(continuation.rule_id))
                span.set_attribute("tenant_id", event.tenant_id)
                try:
                    record = self._run(session, continuation, event)
                    session.commit()
                    return record
                except Exception as exc:
                    session.rollback()
                    span.record_exception(exc)
                    span.set_status(Status(StatusCode.ERROR, str(exc)))
                    logger.warning(
                        "automation_continuation_failed",
                        extra={
                            "continuation_id": str(continuation_id),
                            "tenant_id": event.tenant_id,
                            "error": str(exc),
                        },
                    )
                    return self._fail(session, continuation_id, f"continuation failed: {exc}")
        finally:
            reset_tenant_id(tenant_token)
            reset_correlation_id(correlation_token)

    def _run(
        self,
        session: Session,
        continuation: AutomationContinuation,
        event: AutomationEvent,
    ) -> ExecutionRecordRead:
        actions = action_list_adapter.validate_python(continuation.remaining_actions_json)
        rule = self.rule_store.get(session, continuation.tenant_id, continuation.rule_id)

        if rule is None or not rule.is_active:
            now = self.clock()
            results = [
                ActionResult(type=action.type, status="skipped", detail="rule deactivated", executed_at=now)
                for action in actions
            ]
            row = self.recorder.append(session, continuation.execution_id, results, pending_actions=0)
            continuation.status = "cancelled"
            session.add(continuation)
            logger.info(
                "automation_continuation_cancelled",
                extra={
                    "continuation_id": str(continuation.id),
                    "rule_id": str(continuation.rule_id),
                    "reason": "rule deactivated",
                },
            )
            observe_continuation("cancelled")
            return self.recorder.to_read(row)

        outcome = self.executor.execute(actions, event, rule.is_test_mode)
        row = self.recorder.append(
            session,
            continuation.execution_id,
            outcome.results,
            pending_actions=len(outcome.remaining),
        )
        if outcome.deferred and outcome.resume_at is not None:
            self.schedule(
                session,
                execution_id=continuation.execution_id,
                rule_id=continuation.rule_id,
                event=event,
                remaining=outcome.remaining,
                resume_at=outcome.resume_at,
            )
        continuation.status = "completed"
        session.add(continuation)
        logger.info(
            "automation_continuation_resumed",
            extra={
                "continuation_id": str(continuation.id),
                "execution_id": str(continuation.execution_id),
                "rule_id": str(continuation.rule_id),
                "outcome": row.outcome,
            },
        )
        observe_continuation("completed")
        return self.recorder.to_read(row)
