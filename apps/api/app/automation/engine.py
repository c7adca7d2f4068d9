from __future__ import annotations

import logging
import time
import uuid
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from datetime import datetime, tzinfo
from typing import Any

from opentelemetry import trace
from opentelemetry.trace import Status, StatusCode
from sqlalchemy.orm import Session

from app import audit, events
from app.automation.adapter import AutomationEvent, MalformedEventError, normalize_event
from app.automation.conditions import ConditionEvaluator
from app.automation.executor import ActionExecutor
from app.automation.gate import ConstraintGate, GateDecision, resolve_timezone
from app.automation.ledger import (
    ConstraintLedger,
    EntityLockRegistry,
    LedgerConflictError,
    LedgerUnavailableError,
)
from app.automation.models import AutomationExecution, utcnow
from app.automation.recorder import ExecutionRecorder
from app.automation.rules import RuleCandidate, RuleStore
from app.automation.scheduler import ContinuationScheduler
from app.automation.schemas import ConditionResult, ExecutionRecordRead, RuleSnapshot
from app.context import reset_correlation_id, reset_tenant_id, set_correlation_id, set_tenant_id
from app.metrics import observe_evaluation, observe_event, observe_ledger_conflict, observe_suppression


logger = logging.getLogger("app.automation.engine")
tracer = trace.get_tracer("app.automation.engine")


@dataclass
class _RuleRun:
    conditions_passed: bool = False
    condition_results: list[ConditionResult] = field(default_factory=list)


class RuleEngine:
    """Evaluates every active rule of a tenant against one event.

    Each candidate rule gets its own transaction and exactly one execution
    record, whatever happens to its siblings.
    """

    def __init__(
        self,
        rule_store: RuleStore | None = None,
        evaluator: ConditionEvaluator | None = None,
        ledger: ConstraintLedger | None = None,
        gate: ConstraintGate | None = None,
        executor: ActionExecutor | None = None,
        recorder: ExecutionRecorder | None = None,
        scheduler: ContinuationScheduler | None = None,
        locks: EntityLockRegistry | None = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.rule_store = rule_store or RuleStore()
        self.evaluator = evaluator or ConditionEvaluator()
        self.ledger = ledger or ConstraintLedger()
        self.gate = gate or ConstraintGate(self.ledger)
        self.executor = executor or ActionExecutor(clock=clock)
        self.recorder = recorder or ExecutionRecorder()
        self.scheduler = scheduler or ContinuationScheduler(
            executor=self.executor,
            recorder=self.recorder,
            rule_store=self.rule_store,
            clock=clock,
        )
        self.locks = locks or EntityLockRegistry()
        self.clock = clock

    def evaluate_envelope(self, session: Session, envelope: Mapping[str, Any]) -> list[ExecutionRecordRead]:
        try:
            event = normalize_event(envelope)
        except MalformedEventError as exc:
            observe_event("malformed")
            logger.warning(
                "automation_event_malformed",
                extra={
                    "event_name": envelope.get("event_type") or envelope.get("name"),
                    "reason": ", ".join(exc.missing),
                },
            )
            raise
        return self.evaluate(session, event)

    def evaluate(self, session: Session, event: AutomationEvent) -> list[ExecutionRecordRead]:
        correlation_token = set_correlation_id(event.correlation_id)
        tenant_token = set_tenant_id(event.tenant_id)
        try:
            candidates = self.rule_store.candidates(session, event.tenant_id, event.name)
            session.commit()
            observe_event("matched" if candidates else "unmatched")
            logger.info(
                "automation_event_received",
                extra={
                    "event_id": event.id,
                    "event_name": event.name,
                    "entity_type": event.entity_type,
                    "entity_id": event.entity_id,
                    "status": f"{len(candidates)} candidate rules",
                },
            )
            return [self._evaluate_candidate(session, candidate, event) for candidate in candidates]
        finally:
            reset_tenant_id(tenant_token)
            reset_correlation_id(correlation_token)

    def _evaluate_candidate(
        self,
        session: Session,
        candidate: RuleCandidate,
        event: AutomationEvent,
    ) -> ExecutionRecordRead:
        started = time.perf_counter()
        run = _RuleRun()

        with tracer.start_as_current_span("automation.rule.evaluate") as span:
            span.set_attribute("rule_id", str(candidate.rule_id))
            span.set_attribute("event_id", event.id)
            span.set_attribute("event_name", event.name)
            span.set_attribute("tenant_id", event.tenant_id)
            span.set_attribute("entity_id", event.entity_id)
            span.set_attribute("test_mode", candidate.is_test_mode)

            try:
                if candidate.rule is None:
                    raise ValueError(candidate.error or "invalid rule definition")
                row = self._run_rule(session, candidate.rule, event, run)
                session.commit()
            except Exception as exc:
                session.rollback()
                span.record_exception(exc)
                span.set_status(Status(StatusCode.ERROR, str(exc)))
                error = self._describe_error(exc)
                logger.warning(
                    "automation_rule_failed",
                    extra={
                        "rule_id": str(candidate.rule_id),
                        "event_id": event.id,
                        "entity_id": event.entity_id,
                        "error": error,
                    },
                )
                row = self.recorder.record(
                    session,
                    rule_id=candidate.rule_id,
                    event=event,
                    conditions_passed=run.conditions_passed,
                    condition_results=run.condition_results,
                    is_test_mode=candidate.is_test_mode,
                    error=error,
                    executed_at=self.clock(),
                )
                session.commit()

            span.set_attribute("outcome", row.outcome)

        record = self.recorder.to_read(row)
        observe_evaluation(record.outcome, record.is_test_mode, time.perf_counter() - started)
        logger.info(
            "automation_rule_evaluated",
            extra={
                "rule_id": str(record.rule_id),
                "execution_id": str(record.id),
                "event_id": record.event_id,
                "entity_id": record.entity_id,
                "outcome": record.outcome,
                "reason": record.suppression_reason or record.error,
                "duration_ms": round((time.perf_counter() - started) * 1000, 2),
            },
        )
        events.publish(
            {
                "event_id": str(uuid.uuid4()),
                "event_type": "automation.execution.recorded",
                "occurred_at": utcnow().isoformat(),
                "payload": {
                    "execution_id": str(record.id),
                    "rule_id": str(record.rule_id),
                    "trigger_event_id": record.event_id,
                    "entity_type": record.entity_type,
                    "entity_id": record.entity_id,
                    "outcome": record.outcome,
                    "is_test_mode": record.is_test_mode,
                },
            }
        )
        return record

    def _run_rule(
        self,
        session: Session,
        rule: RuleSnapshot,
        event: AutomationEvent,
        run: _RuleRun,
    ) -> AutomationExecution:
        evaluation = self.evaluator.evaluate(rule.conditions, event)
        run.conditions_passed = evaluation.passed
        run.condition_results = evaluation.results
        if not evaluation.passed:
            return self.recorder.record(
                session,
                rule_id=rule.id,
                event=event,
                conditions_passed=False,
                condition_results=evaluation.results,
                is_test_mode=rule.is_test_mode,
                executed_at=self.clock(),
            )

        now = self.clock()
        tz = resolve_timezone(event.timezone)
        if rule.is_test_mode:
            decision = self.gate.check(session, rule, event.entity_id, now, tz)
        else:
            with self.locks.hold(rule.tenant_id, rule.id, event.entity_id):
                decision = self._reserve_fire(session, rule, event, now, tz)

        if not decision.allowed:
            self._on_suppressed(rule, event, decision)
            return self.recorder.record(
                session,
                rule_id=rule.id,
                event=event,
                conditions_passed=True,
                condition_results=evaluation.results,
                suppression_reason=decision.reason,
                is_test_mode=rule.is_test_mode,
                executed_at=now,
            )

        outcome = self.executor.execute(rule.actions, event, rule.is_test_mode)
        row = self.recorder.record(
            session,
            rule_id=rule.id,
            event=event,
            conditions_passed=True,
            condition_results=evaluation.results,
            action_results=outcome.results,
            is_test_mode=rule.is_test_mode,
            pending_actions=len(outcome.remaining),
            executed_at=now,
        )
        if outcome.deferred and outcome.resume_at is not None:
            self.scheduler.schedule(
                session,
                execution_id=row.id,
                rule_id=rule.id,
                event=event,
                remaining=outcome.remaining,
                resume_at=outcome.resume_at,
            )
        return row

    def _reserve_fire(
        self,
        session: Session,
        rule: RuleSnapshot,
        event: AutomationEvent,
        now: datetime,
        tz: tzinfo,
    ) -> GateDecision:
        """Gate check plus ledger write, retried once on a concurrent write."""
        for attempt in (1, 2):
            decision = self.gate.check(session, rule, event.entity_id, now, tz)
            if not decision.allowed:
                return decision
            try:
                self.ledger.record_fire(
                    session,
                    rule.tenant_id,
                    rule.id,
                    event.entity_id,
                    now,
                    decision.ledger_version,
                )
                session.commit()
                return decision
            except LedgerConflictError:
                observe_ledger_conflict()
                logger.warning(
                    "automation_ledger_conflict",
                    extra={
                        "rule_id": str(rule.id),
                        "entity_id": event.entity_id,
                        "status": f"attempt {attempt}",
                    },
                )
                if attempt == 2:
                    raise
        raise LedgerConflictError("ledger write conflict")

    def _on_suppressed(self, rule: RuleSnapshot, event: AutomationEvent, decision: GateDecision) -> None:
        observe_suppression(decision.constraint or "unknown")
        logger.info(
            "automation_rule_suppressed",
            extra={
                "rule_id": str(rule.id),
                "event_id": event.id,
                "entity_id": event.entity_id,
                "reason": decision.reason,
            },
        )
        audit.record(
            actor_user_id="system",
            entity_type="automation.rule",
            entity_id=str(rule.id),
            action="automation.suppressed",
            before=None,
            after={
                "event_id": event.id,
                "entity_type": event.entity_type,
                "entity_id": event.entity_id,
                "constraint": decision.constraint,
                "reason": decision.reason,
                "test_mode": rule.is_test_mode,
            },
            correlation_id=event.correlation_id,
            tenant_id=event.tenant_id,
        )

    def _describe_error(self, exc: Exception) -> str:
        if isinstance(exc, LedgerConflictError):
            return f"ledger write conflict: {exc}"
        if isinstance(exc, LedgerUnavailableError):
            return str(exc)
        return str(exc) or exc.__class__.__name__


automation_engine = RuleEngine()
