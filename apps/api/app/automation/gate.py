from __future__ import annotations

import math
from dataclasses import dataclass
from datetime import datetime, time, timedelta, timezone, tzinfo
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from sqlalchemy.orm import Session

from app.automation.ledger import ConstraintLedger
from app.automation.models import AutomationLedgerEntry
from app.automation.schemas import Constraints, RuleSnapshot
from app.core.config import get_settings


@dataclass(frozen=True)
class GateDecision:
    allowed: bool
    reason: str | None = None
    constraint: str | None = None
    ledger_version: int | None = None


def resolve_timezone(name: str | None) -> tzinfo:
    candidate = name or get_settings().automation_default_timezone
    try:
        return ZoneInfo(candidate)
    except (ZoneInfoNotFoundError, ValueError):
        return timezone.utc


def _as_aware(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def _in_window(local: time, start: time, end: time) -> bool:
    # minute resolution, both bounds inclusive
    minute = local.replace(second=0, microsecond=0)
    if start == end:
        return False
    if start < end:
        return start <= minute <= end
    return minute >= start or minute <= end


def evaluate_constraints(
    constraints: Constraints,
    entry: AutomationLedgerEntry | None,
    now: datetime,
    tz: tzinfo,
) -> GateDecision:
    """Pure suppression decision; the first failing check wins."""
    now = _as_aware(now)
    version = entry.row_version if entry is not None else None

    if constraints.max_fires_per_entity is not None and entry is not None:
        if entry.fire_count >= constraints.max_fires_per_entity:
            return GateDecision(
                allowed=False,
                reason=f"max fires reached: {entry.fire_count}/{constraints.max_fires_per_entity}",
                constraint="max_fires",
                ledger_version=version,
            )

    if constraints.cooldown_minutes is not None and entry is not None:
        required = timedelta(minutes=constraints.cooldown_minutes)
        elapsed = now - _as_aware(entry.last_fired_at)
        if elapsed < required:
            elapsed_minutes = max(0, int(elapsed.total_seconds() // 60))
            remaining_minutes = math.ceil((required - elapsed).total_seconds() / 60)
            return GateDecision(
                allowed=False,
                reason=(
                    f"cooldown active: {elapsed_minutes} of {constraints.cooldown_minutes} minutes elapsed, "
                    f"{remaining_minutes} minutes remaining"
                ),
                constraint="cooldown",
                ledger_version=version,
            )

    local_now = now.astimezone(tz)

    if constraints.business_days_only and local_now.weekday() >= 5:
        return GateDecision(
            allowed=False,
            reason=f"business days only: {local_now:%A} is not a business day",
            constraint="business_days",
            ledger_version=version,
        )

    start, end = constraints.quiet_hours_start, constraints.quiet_hours_end
    if start is not None and end is not None:
        local_time = local_now.time().replace(tzinfo=None)
        if _in_window(local_time, start, end):
            return GateDecision(
                allowed=False,
                reason=f"quiet hours: local time {local_time:%H:%M} is within {start:%H:%M}-{end:%H:%M}",
                constraint="quiet_hours",
                ledger_version=version,
            )

    return GateDecision(allowed=True, ledger_version=version)


class ConstraintGate:
    def __init__(self, ledger: ConstraintLedger | None = None) -> None:
        self.ledger = ledger or ConstraintLedger()

    def check(
        self,
        session: Session,
        rule: RuleSnapshot,
        entity_id: str,
        now: datetime,
        tz: tzinfo,
    ) -> GateDecision:
        entry = self.ledger.get(session, rule.tenant_id, rule.id, entity_id)
        return evaluate_constraints(rule.constraints, entry, now, tz)
