from __future__ import annotations

import logging
import re
from collections.abc import Callable, Sequence
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any

from app.automation.adapter import AutomationEvent
from app.automation.delegates import ActionDelegates, OutboxActionDelegates
from app.automation.models import utcnow
from app.automation.schemas import (
    ActionResult,
    ActionSpec,
    CreateTaskAction,
    NotifyAction,
    SendEmailAction,
    SendSmsAction,
    UpdateFieldAction,
    WaitAction,
)
from app.metrics import observe_action_result


logger = logging.getLogger("app.automation.executor")

_PLACEHOLDER_RE = re.compile(r"\{\{\s*([A-Za-z0-9_.]+)\s*\}\}")


class ActionSkipped(Exception):
    pass


@dataclass
class ExecutorOutcome:
    results: list[ActionResult] = field(default_factory=list)
    remaining: list[ActionSpec] = field(default_factory=list)
    resume_at: datetime | None = None

    @property
    def deferred(self) -> bool:
        return bool(self.remaining)


def render_template(value: Any, fields: dict[str, Any]) -> Any:
    if isinstance(value, str):
        def _replace(match: re.Match[str]) -> str:
            resolved = fields.get(match.group(1))
            return "" if resolved is None else str(resolved)

        return _PLACEHOLDER_RE.sub(_replace, value)
    if isinstance(value, dict):
        return {key: render_template(item, fields) for key, item in value.items()}
    if isinstance(value, list):
        return [render_template(item, fields) for item in value]
    return value


class ActionExecutor:
    def __init__(
        self,
        delegates: ActionDelegates | None = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.delegates = delegates or OutboxActionDelegates()
        self.clock = clock

    def execute(
        self,
        actions: Sequence[ActionSpec],
        event: AutomationEvent,
        is_test_mode: bool,
    ) -> ExecutorOutcome:
        """Run actions in declared order.

        Live runs stop at the first ``wait`` (or delayed action) and hand the
        rest back as ``remaining`` with ``resume_at``. A delayed action is handed
        back with its delay cleared so a resume dispatches it right away.
        Test-mode runs never call a delegate and never defer.
        """
        outcome = ExecutorOutcome()
        fields = dict(event.fields)

        for index, action in enumerate(actions):
            now = self.clock()

            if is_test_mode:
                outcome.results.append(
                    ActionResult(type=action.type, status="executed", detail=self._describe(action, event), executed_at=now)
                )
                observe_action_result(action.type, "executed")
                continue

            if isinstance(action, WaitAction):
                outcome.results.append(
                    ActionResult(
                        type="wait",
                        status="executed",
                        detail=f"waiting {action.delay_minutes} minutes",
                        executed_at=now,
                    )
                )
                observe_action_result("wait", "executed")
                remaining = list(actions[index + 1 :])
                if remaining:
                    outcome.remaining = remaining
                    outcome.resume_at = now + timedelta(minutes=action.delay_minutes)
                    return outcome
                continue

            if action.delay_minutes > 0:
                outcome.remaining = [action.model_copy(update={"delay_minutes": 0}), *actions[index + 1 :]]
                outcome.resume_at = now + timedelta(minutes=action.delay_minutes)
                return outcome

            outcome.results.append(self._dispatch(action, event, fields, now))

        return outcome

    def run_action(self, action: ActionSpec, event: AutomationEvent) -> ActionResult:
        """Dispatch one action immediately, ignoring any delay on it."""
        return self._dispatch(action, event, dict(event.fields), self.clock())

    def _dispatch(self, action: ActionSpec, event: AutomationEvent, fields: dict[str, Any], now: datetime) -> ActionResult:
        try:
            detail = self._invoke(action, event, fields, now)
            result_status = "executed"
        except ActionSkipped as exc:
            detail = str(exc)
            result_status = "skipped"
        except Exception as exc:
            logger.warning(
                "automation_action_failed",
                extra={
                    "event_id": event.id,
                    "entity_id": event.entity_id,
                    "action_type": action.type,
                    "error": str(exc),
                },
            )
            detail = str(exc) or exc.__class__.__name__
            result_status = "failed"

        observe_action_result(action.type, result_status)
        return ActionResult(type=action.type, status=result_status, detail=detail, executed_at=now)

    def _invoke(self, action: ActionSpec, event: AutomationEvent, fields: dict[str, Any], now: datetime) -> str:
        if isinstance(action, (SendEmailAction, SendSmsAction)):
            to = render_template(action.config.to, fields).strip()
            if not to:
                raise ActionSkipped("recipient is empty")
            template = render_template(action.config.template, fields)
            template_vars = render_template(dict(action.config.vars), fields)
            if isinstance(action, SendEmailAction):
                self.delegates.send_email(to, template, template_vars)
                return f"email sent to {to} using template {template}"
            self.delegates.send_sms(to, template, template_vars)
            return f"sms sent to {to} using template {template}"

        if isinstance(action, NotifyAction):
            channel = render_template(action.config.channel, fields).strip()
            if not channel:
                raise ActionSkipped("channel is empty")
            self.delegates.notify(channel, render_template(action.config.message, fields))
            return f"notification posted to {channel}"

        if isinstance(action, CreateTaskAction):
            assignee = render_template(action.config.assignee, fields).strip()
            if not assignee:
                raise ActionSkipped("assignee is empty")
            title = render_template(action.config.title, fields)
            due_at = now + timedelta(minutes=action.config.due_in_minutes)
            self.delegates.create_task(assignee, due_at, title)
            return f"task '{title}' created for {assignee}, due {due_at.isoformat()}"

        if isinstance(action, UpdateFieldAction):
            entity_type, entity_id = self._target_entity(action, event)
            value = render_template(action.config.value, fields)
            self.delegates.update_field(entity_type, entity_id, action.config.field, value)
            return f"{entity_type}.{action.config.field} set to {value!r}"

        raise ValueError(f"unsupported action type {action.type}")

    def _target_entity(self, action: UpdateFieldAction, event: AutomationEvent) -> tuple[str, str]:
        entity_type = action.config.entity_type or event.entity_type
        if entity_type == event.entity_type:
            return entity_type, event.entity_id
        related_id = event.fields.get(f"{entity_type}_id")
        if related_id is None or str(related_id).strip() == "":
            raise ActionSkipped(f"event carries no {entity_type}_id")
        return entity_type, str(related_id)

    def _describe(self, action: ActionSpec, event: AutomationEvent) -> str:
        fields = dict(event.fields)
        if isinstance(action, WaitAction):
            return f"would wait {action.delay_minutes} minutes"

        if isinstance(action, SendEmailAction):
            text = f"would send email to {render_template(action.config.to, fields)} using template {action.config.template}"
        elif isinstance(action, SendSmsAction):
            text = f"would send sms to {render_template(action.config.to, fields)} using template {action.config.template}"
        elif isinstance(action, NotifyAction):
            text = f"would notify {render_template(action.config.channel, fields)}: {render_template(action.config.message, fields)}"
        elif isinstance(action, CreateTaskAction):
            text = (
                f"would create task '{render_template(action.config.title, fields)}' for "
                f"{render_template(action.config.assignee, fields)}"
            )
        else:
            entity_type = action.config.entity_type or event.entity_type
            text = f"would set {entity_type}.{action.config.field} to {render_template(action.config.value, fields)!r}"

        if action.delay_minutes > 0:
            text = f"{text} after {action.delay_minutes} minutes"
        return text
