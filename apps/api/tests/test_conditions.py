from __future__ import annotations

from datetime import datetime, timezone
from typing import Any

import pytest

from app.automation.adapter import AutomationEvent
from app.automation.conditions import ConditionEvaluator
from app.automation.schemas import Condition


def _event(fields: dict[str, Any], previous: dict[str, Any] | None = None) -> AutomationEvent:
    return AutomationEvent(
        id="evt-1",
        tenant_id="tenant-a",
        name="job.status_changed",
        entity_type="job",
        entity_id="job-1",
        occurred_at=datetime(2026, 10, 19, 14, 0, tzinfo=timezone.utc),
        fields=fields,
        previous_fields=previous or {},
    )


def _conditions(*items: dict[str, Any]) -> list[Condition]:
    return [Condition.model_validate(item) for item in items]


def test_no_conditions_pass() -> None:
    evaluation = ConditionEvaluator().evaluate([], _event({}))

    assert evaluation.passed is True
    assert evaluation.results == []


def test_all_conditions_must_hold() -> None:
    conditions = _conditions(
        {"field": "status", "operator": "eq", "value": "completed"},
        {"field": "amount", "operator": "gte", "value": 500},
    )

    passing = ConditionEvaluator().evaluate(conditions, _event({"status": "completed", "amount": 750}))
    failing = ConditionEvaluator().evaluate(conditions, _event({"status": "completed", "amount": 120}))

    assert passing.passed is True
    assert [item.status for item in passing.results] == ["passed", "passed"]
    assert failing.passed is False
    assert [item.status for item in failing.results] == ["passed", "failed"]


def test_first_failure_short_circuits_remaining_conditions() -> None:
    conditions = _conditions(
        {"field": "status", "operator": "eq", "value": "completed"},
        {"field": "amount", "operator": "gt", "value": 10},
        {"field": "priority", "operator": "is_not_empty"},
    )

    evaluation = ConditionEvaluator().evaluate(conditions, _event({"status": "scheduled", "amount": 50}))

    assert evaluation.passed is False
    assert [item.status for item in evaluation.results] == ["failed", "not_evaluated", "not_evaluated"]


def test_missing_and_null_fields_fail_without_raising() -> None:
    missing = ConditionEvaluator().evaluate(
        _conditions({"field": "amount", "operator": "gt", "value": 1}),
        _event({}),
    )
    null = ConditionEvaluator().evaluate(
        _conditions({"field": "amount", "operator": "eq", "value": 1}),
        _event({"amount": None}),
    )

    assert missing.passed is False
    assert missing.results[0].detail == "field missing"
    assert null.passed is False
    assert null.results[0].detail == "field is null"


@pytest.mark.parametrize(
    ("value", "expected"),
    [
        (None, True),
        ("", True),
        ("   ", False),
        ([], True),
        ({}, True),
        ("x", False),
        (0, False),
        (False, False),
    ],
)
def test_is_empty_semantics(value: Any, expected: bool) -> None:
    evaluator = ConditionEvaluator()
    fields = {"notes": value}

    is_empty = evaluator.evaluate(_conditions({"field": "notes", "operator": "is_empty"}), _event(fields))
    is_not_empty = evaluator.evaluate(_conditions({"field": "notes", "operator": "is_not_empty"}), _event(fields))

    assert is_empty.passed is expected
    assert is_not_empty.passed is not expected


def test_missing_field_counts_as_empty() -> None:
    evaluation = ConditionEvaluator().evaluate(
        _conditions({"field": "phone", "operator": "is_empty"}),
        _event({"email": "a@example.com"}),
    )

    assert evaluation.passed is True


def test_numeric_comparisons_accept_numeric_strings() -> None:
    evaluator = ConditionEvaluator()
    event = _event({"amount": "1250.50", "visits": 3})

    assert evaluator.evaluate(_conditions({"field": "amount", "operator": "gt", "value": 1000}), event).passed
    assert evaluator.evaluate(_conditions({"field": "amount", "operator": "lte", "value": "1250.5"}), event).passed
    assert evaluator.evaluate(_conditions({"field": "visits", "operator": "eq", "value": 3.0}), event).passed
    assert not evaluator.evaluate(_conditions({"field": "visits", "operator": "lt", "value": 3}), event).passed


def test_date_comparisons_use_iso_timestamps() -> None:
    evaluator = ConditionEvaluator()
    event = _event({"due_date": "2026-10-01T00:00:00Z"})

    assert evaluator.evaluate(
        _conditions({"field": "due_date", "operator": "lt", "value": "2026-10-19T00:00:00+00:00"}),
        event,
    ).passed
    assert not evaluator.evaluate(
        _conditions({"field": "due_date", "operator": "gt", "value": "2026-10-19"}),
        event,
    ).passed


def test_type_mismatch_fails_the_condition() -> None:
    evaluation = ConditionEvaluator().evaluate(
        _conditions({"field": "amount", "operator": "gt", "value": "lots"}),
        _event({"amount": 12}),
    )

    assert evaluation.passed is False
    assert evaluation.results[0].status == "failed"
    assert evaluation.results[0].detail.startswith("type mismatch")


def test_boolean_equality_accepts_string_booleans() -> None:
    evaluator = ConditionEvaluator()

    assert evaluator.evaluate(
        _conditions({"field": "is_vip", "operator": "eq", "value": True}),
        _event({"is_vip": "true"}),
    ).passed
    assert not evaluator.evaluate(
        _conditions({"field": "is_vip", "operator": "eq", "value": True}),
        _event({"is_vip": False}),
    ).passed


def test_changed_to_requires_a_different_previous_value() -> None:
    evaluator = ConditionEvaluator()
    conditions = _conditions({"field": "status", "operator": "changed_to", "value": "completed"})

    changed = evaluator.evaluate(conditions, _event({"status": "completed"}, {"status": "in_progress"}))
    unchanged = evaluator.evaluate(conditions, _event({"status": "completed"}, {"status": "completed"}))
    no_previous = evaluator.evaluate(conditions, _event({"status": "completed"}))
    other_value = evaluator.evaluate(conditions, _event({"status": "cancelled"}, {"status": "in_progress"}))

    assert changed.passed is True
    assert unchanged.passed is False
    assert no_previous.passed is False
    assert no_previous.results[0].detail == "no previous value"
    assert other_value.passed is False


def test_condition_requires_value_for_comparison_operators() -> None:
    with pytest.raises(ValueError):
        Condition.model_validate({"field": "amount", "operator": "gt"})
