from __future__ import annotations

import uuid
from datetime import datetime
from typing import Any, Protocol

from opentelemetry import trace

from app import events
from app.automation.models import utcnow
from app.context import get_correlation_id


tracer = trace.get_tracer("app.automation.delegates")


class ActionDelegates(Protocol):
    def send_email(self, to: str, template: str, vars: dict[str, Any]) -> None: ...

    def send_sms(self, to: str, template: str, vars: dict[str, Any]) -> None: ...

    def notify(self, channel: str, message: str) -> None: ...

    def create_task(self, assignee: str, due_at: datetime, title: str) -> None: ...

    def update_field(self, entity_type: str, entity_id: str, field: str, value: Any) -> None: ...


class OutboxActionDelegates:
    """Hands actions to downstream workers as ``automation.outbound.*`` events."""

    def send_email(self, to: str, template: str, vars: dict[str, Any]) -> None:
        self._publish("send_email", {"to": to, "template": template, "vars": vars})

    def send_sms(self, to: str, template: str, vars: dict[str, Any]) -> None:
        self._publish("send_sms", {"to": to, "template": template, "vars": vars})

    def notify(self, channel: str, message: str) -> None:
        self._publish("notify", {"channel": channel, "message": message})

    def create_task(self, assignee: str, due_at: datetime, title: str) -> None:
        self._publish("create_task", {"assignee": assignee, "due_at": due_at.isoformat(), "title": title})

    def update_field(self, entity_type: str, entity_id: str, field: str, value: Any) -> None:
        self._publish(
            "update_field",
            {"entity_type": entity_type, "entity_id": entity_id, "field": field, "value": value},
        )

    def _publish(self, action_type: str, payload: dict[str, Any]) -> None:
        with tracer.start_as_current_span(f"automation.outbound.{action_type}") as span:
            span.set_attribute("action_type", action_type)
            span.set_attribute("correlation_id", get_correlation_id() or "")
            events.publish(
                {
                    "event_id": str(uuid.uuid4()),
                    "event_type": f"automation.outbound.{action_type}",
                    "occurred_at": utcnow().isoformat(),
                    "payload": payload,
                }
            )
