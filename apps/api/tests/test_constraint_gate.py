from __future__ import annotations

import uuid
from datetime import datetime, timedelta, timezone
from zoneinfo import ZoneInfo

import pytest

from app.automation.gate import evaluate_constraints, resolve_timezone
from app.automation.models import AutomationLedgerEntry
from app.automation.schemas import Constraints
from app.core.config import get_settings


# 2026-10-19 is a Monday.
MONDAY_NOON = datetime(2026, 10, 19, 12, 0, tzinfo=timezone.utc)


def _entry(last_fired_at: datetime, fire_count: int = 1) -> AutomationLedgerEntry:
    return AutomationLedgerEntry(
        tenant_id="tenant-a",
        rule_id=uuid.uuid4(),
        entity_id="lead-1",
        last_fired_at=last_fired_at,
        fire_count=fire_count,
        row_version=fire_count,
    )


def test_no_constraints_allow_without_ledger_entry() -> None:
    decision = evaluate_constraints(Constraints(), None, MONDAY_NOON, timezone.utc)

    assert decision.allowed is True
    assert decision.ledger_version is None


def test_first_fire_is_never_cooled_down() -> None:
    decision = evaluate_constraints(Constraints(cooldown_minutes=1440), None, MONDAY_NOON, timezone.utc)

    assert decision.allowed is True


def test_cooldown_reports_elapsed_and_remaining_minutes() -> None:
    entry = _entry(MONDAY_NOON)

    decision = evaluate_constraints(
        Constraints(cooldown_minutes=1440),
        entry,
        MONDAY_NOON + timedelta(minutes=10),
        timezone.utc,
    )

    assert decision.allowed is False
    assert decision.constraint == "cooldown"
    assert decision.reason == "cooldown active: 10 of 1440 minutes elapsed, 1430 minutes remaining"
    assert decision.ledger_version == 1


def test_cooldown_boundary_is_inclusive_of_the_full_window() -> None:
    entry = _entry(MONDAY_NOON)
    constraints = Constraints(cooldown_minutes=60)

    just_before = evaluate_constraints(constraints, entry, MONDAY_NOON + timedelta(minutes=59, seconds=59), timezone.utc)
    exactly = evaluate_constraints(constraints, entry, MONDAY_NOON + timedelta(minutes=60), timezone.utc)

    assert just_before.allowed is False
    assert just_before.reason.endswith("1 minutes remaining")
    assert exactly.allowed is True


def test_naive_ledger_timestamps_are_treated_as_utc() -> None:
    entry = _entry(MONDAY_NOON.replace(tzinfo=None))

    decision = evaluate_constraints(
        Constraints(cooldown_minutes=30),
        entry,
        MONDAY_NOON + timedelta(minutes=5),
        timezone.utc,
    )

    assert decision.allowed is False
    assert decision.reason.startswith("cooldown active: 5 of 30")


def test_max_fires_per_entity() -> None:
    constraints = Constraints(max_fires_per_entity=2)

    under = evaluate_constraints(constraints, _entry(MONDAY_NOON, fire_count=1), MONDAY_NOON, timezone.utc)
    reached = evaluate_constraints(constraints, _entry(MONDAY_NOON, fire_count=2), MONDAY_NOON, timezone.utc)

    assert under.allowed is True
    assert reached.allowed is False
    assert reached.constraint == "max_fires"
    assert reached.reason == "max fires reached: 2/2"


def test_max_fires_is_checked_before_cooldown() -> None:
    constraints = Constraints(max_fires_per_entity=1, cooldown_minutes=60)

    decision = evaluate_constraints(constraints, _entry(MONDAY_NOON), MONDAY_NOON + timedelta(minutes=1), timezone.utc)

    assert decision.constraint == "max_fires"


def test_business_days_only_uses_local_weekday() -> None:
    constraints = Constraints(business_days_only=True)
    saturday = datetime(2026, 10, 24, 15, 0, tzinfo=timezone.utc)
    # Monday 02:00 UTC is still Sunday evening in Los Angeles.
    monday_utc_sunday_local = datetime(2026, 10, 19, 2, 0, tzinfo=timezone.utc)

    weekend = evaluate_constraints(constraints, None, saturday, timezone.utc)
    local_sunday = evaluate_constraints(
        constraints,
        None,
        monday_utc_sunday_local,
        ZoneInfo("America/Los_Angeles"),
    )
    weekday = evaluate_constraints(constraints, None, MONDAY_NOON, timezone.utc)

    assert weekend.allowed is False
    assert weekend.reason == "business days only: Saturday is not a business day"
    assert local_sunday.allowed is False
    assert local_sunday.reason == "business days only: Sunday is not a business day"
    assert weekday.allowed is True


def test_quiet_hours_window_wraps_midnight() -> None:
    constraints = Constraints(quiet_hours_start="20:00", quiet_hours_end="08:00")
    new_york = ZoneInfo("America/New_York")
    # 01:30 UTC on 2026-10-20 is 21:30 EDT on Monday 2026-10-19.
    evening = datetime(2026, 10, 20, 1, 30, tzinfo=timezone.utc)
    morning = datetime(2026, 10, 19, 12, 0, tzinfo=timezone.utc)

    suppressed = evaluate_constraints(constraints, None, evening, new_york)
    allowed = evaluate_constraints(constraints, None, morning, new_york)

    assert suppressed.allowed is False
    assert suppressed.constraint == "quiet_hours"
    assert suppressed.reason == "quiet hours: local time 21:30 is within 20:00-08:00"
    assert allowed.allowed is True


@pytest.mark.parametrize(
    ("local_hour", "local_minute", "local_second", "expected_allowed"),
    [
        (20, 0, 0, False),
        (7, 59, 0, False),
        (8, 0, 0, False),
        (8, 0, 30, False),
        (8, 1, 0, True),
        (19, 59, 59, True),
    ],
)
def test_quiet_hours_boundaries(local_hour: int, local_minute: int, local_second: int, expected_allowed: bool) -> None:
    constraints = Constraints(quiet_hours_start="20:00", quiet_hours_end="08:00")
    now = datetime(2026, 10, 19, local_hour, local_minute, local_second, tzinfo=timezone.utc)

    decision = evaluate_constraints(constraints, None, now, timezone.utc)

    assert decision.allowed is expected_allowed


def test_same_day_quiet_hours_window() -> None:
    constraints = Constraints(quiet_hours_start="12:00", quiet_hours_end="13:00")

    lunch = evaluate_constraints(constraints, None, MONDAY_NOON + timedelta(minutes=30), timezone.utc)
    end_minute = evaluate_constraints(constraints, None, MONDAY_NOON + timedelta(hours=1, seconds=45), timezone.utc)
    after = evaluate_constraints(constraints, None, MONDAY_NOON + timedelta(hours=1, minutes=1), timezone.utc)

    assert lunch.allowed is False
    assert end_minute.allowed is False
    assert after.allowed is True


def test_equal_quiet_hours_bounds_define_no_window() -> None:
    constraints = Constraints(quiet_hours_start="09:00", quiet_hours_end="09:00")

    decision = evaluate_constraints(constraints, None, datetime(2026, 10, 19, 9, 0, tzinfo=timezone.utc), timezone.utc)

    assert decision.allowed is True


def test_decision_is_stable_for_the_same_inputs() -> None:
    constraints = Constraints(cooldown_minutes=120, business_days_only=True)
    entry = _entry(MONDAY_NOON)
    now = MONDAY_NOON + timedelta(minutes=45)

    first = evaluate_constraints(constraints, entry, now, timezone.utc)
    second = evaluate_constraints(constraints, entry, now, timezone.utc)

    assert first == second
    assert entry.fire_count == 1


def test_quiet_hours_must_be_set_together() -> None:
    with pytest.raises(ValueError):
        Constraints(quiet_hours_start="20:00")


def test_resolve_timezone_falls_back_to_default(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("AUTOMATION_DEFAULT_TIMEZONE", "Europe/Berlin")
    get_settings.cache_clear()
    try:
        assert resolve_timezone("America/Chicago") == ZoneInfo("America/Chicago")
        assert resolve_timezone(None) == ZoneInfo("Europe/Berlin")
        assert resolve_timezone("Mars/Olympus_Mons") == timezone.utc
    finally:
        get_settings.cache_clear()
