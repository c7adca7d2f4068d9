from __future__ import annotations

import uuid
from collections.abc import Mapping
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any


class MalformedEventError(ValueError):
    def __init__(self, missing: list[str]) -> None:
        super().__init__(f"malformed event: missing {', '.join(missing)}")
        self.missing = missing


@dataclass(frozen=True)
class AutomationEvent:
    """Canonical domain event as seen by the rule engine."""

    id: str
    tenant_id: str
    name: str
    entity_type: str
    entity_id: str
    occurred_at: datetime
    fields: Mapping[str, Any] = field(default_factory=dict)
    previous_fields: Mapping[str, Any] = field(default_factory=dict)
    timezone: str | None = None
    correlation_id: str | None = None

    def to_json(self) -> dict[str, Any]:
        return {
            "event_id": self.id,
            "tenant_id": self.tenant_id,
            "event_type": self.name,
            "entity_type": self.entity_type,
            "entity_id": self.entity_id,
            "occurred_at": self.occurred_at.isoformat(),
            "payload": dict(self.fields),
            "previous": dict(self.previous_fields),
            "timezone": self.timezone,
            "correlation_id": self.correlation_id,
        }


def _clean_str(value: Any) -> str | None:
    if value is None:
        return None
    text = str(value).strip()
    return text or None


def _parse_occurred_at(value: Any) -> datetime:
    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, str) and value.strip():
        raw = value.strip()
        if raw.endswith("Z"):
            raw = raw[:-1] + "+00:00"
        try:
            parsed = datetime.fromisoformat(raw)
        except ValueError:
            return datetime.now(timezone.utc)
    else:
        return datetime.now(timezone.utc)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def normalize_event(envelope: Mapping[str, Any]) -> AutomationEvent:
    """Build an AutomationEvent from a CRUD-layer envelope.

    Accepts the envelope shape published through ``app.events.publish``
    (``event_type``/``payload``) as well as the flat ``name``/``fields`` form.
    Only ``name``, ``tenant_id`` and ``entity_id`` are required.
    """
    name = _clean_str(envelope.get("event_type") or envelope.get("name"))
    tenant_id = _clean_str(envelope.get("tenant_id"))

    payload_raw = envelope.get("payload", envelope.get("fields"))
    payload: dict[str, Any] = dict(payload_raw) if isinstance(payload_raw, Mapping) else {}
    previous_raw = envelope.get("previous", envelope.get("previous_fields"))
    previous: dict[str, Any] = dict(previous_raw) if isinstance(previous_raw, Mapping) else {}

    entity_type = _clean_str(envelope.get("entity_type"))
    if entity_type is None and name is not None and "." in name:
        entity_type = name.split(".", 1)[0]

    entity_id = _clean_str(envelope.get("entity_id"))
    if entity_id is None and entity_type is not None:
        entity_id = _clean_str(payload.get(f"{entity_type}_id"))

    missing = [
        key
        for key, value in (("name", name), ("tenant_id", tenant_id), ("entity_id", entity_id))
        if value is None
    ]
    if missing:
        raise MalformedEventError(missing)

    meta = envelope.get("meta") if isinstance(envelope.get("meta"), Mapping) else {}
    return AutomationEvent(
        id=_clean_str(envelope.get("event_id") or envelope.get("id")) or str(uuid.uuid4()),
        tenant_id=str(tenant_id),
        name=str(name),
        entity_type=entity_type or "unknown",
        entity_id=str(entity_id),
        occurred_at=_parse_occurred_at(envelope.get("occurred_at")),
        fields=payload,
        previous_fields=previous,
        timezone=_clean_str(envelope.get("timezone") or meta.get("timezone")),
        correlation_id=_clean_str(envelope.get("correlation_id")),
    )
