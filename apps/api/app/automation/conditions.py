from __future__ import annotations

import logging
from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from decimal import Decimal, InvalidOperation
from typing import Any

from app.automation.adapter import AutomationEvent
from app.automation.schemas import Condition, ConditionResult


logger = logging.getLogger("app.automation.conditions")

_MISSING = object()


@dataclass(frozen=True)
class ConditionEvaluation:
    passed: bool
    results: list[ConditionResult] = field(default_factory=list)


class ConditionEvaluator:
    """AND-evaluates a rule's conditions against an event snapshot.

    Evaluation stops at the first failing condition; the remaining ones are
    reported as ``not_evaluated``. Missing fields and type mismatches make a
    condition fail instead of raising.
    """

    def evaluate(self, conditions: Sequence[Condition], event: AutomationEvent) -> ConditionEvaluation:
        results: list[ConditionResult] = []
        passed = True
        for condition in conditions:
            if not passed:
                results.append(
                    ConditionResult(field=condition.field, operator=condition.operator, status="not_evaluated")
                )
                continue

            try:
                matched, detail = self._evaluate_one(condition, event.fields, event.previous_fields)
            except (TypeError, ValueError, ArithmeticError) as exc:
                logger.warning(
                    "condition_type_mismatch",
                    extra={
                        "event_id": event.id,
                        "event_name": event.name,
                        "reason": f"{condition.field} {condition.operator}",
                        "error": str(exc),
                    },
                )
                matched, detail = False, f"type mismatch: {exc}"

            results.append(
                ConditionResult(
                    field=condition.field,
                    operator=condition.operator,
                    status="passed" if matched else "failed",
                    detail=detail,
                )
            )
            if not matched:
                passed = False
        return ConditionEvaluation(passed=passed, results=results)

    def _evaluate_one(
        self,
        condition: Condition,
        fields: Mapping[str, Any],
        previous_fields: Mapping[str, Any],
    ) -> tuple[bool, str | None]:
        current = fields.get(condition.field, _MISSING)
        op = condition.operator
        target = condition.value

        if op == "is_empty":
            return self._is_empty(current), None
        if op == "is_not_empty":
            return not self._is_empty(current), None

        if current is _MISSING:
            return False, "field missing"
        if current is None:
            return False, "field is null"

        if op == "eq":
            return self._equals(current, target), None
        if op == "changed_to":
            if not self._equals(current, target):
                return False, None
            previous = previous_fields.get(condition.field, _MISSING)
            if previous is _MISSING or previous is None:
                return False, "no previous value"
            return not self._equals(previous, target), None

        left, right = self._ordered_pair(current, target)
        if op == "gt":
            return left > right, None
        if op == "gte":
            return left >= right, None
        if op == "lt":
            return left < right, None
        if op == "lte":
            return left <= right, None
        return False, f"unsupported operator {op}"

    def _is_empty(self, value: Any) -> bool:
        if value is _MISSING or value is None:
            return True
        if isinstance(value, str):
            return value == ""
        if isinstance(value, (list, tuple, dict, set)):
            return len(value) == 0
        return False

    def _equals(self, current: Any, target: Any) -> bool:
        if isinstance(current, bool) or isinstance(target, bool):
            return self._as_bool(current) == self._as_bool(target)
        if self._is_number(current):
            return self._to_number(current) == self._to_number(target)
        if isinstance(target, (dict, list)) or isinstance(current, (dict, list)):
            return current == target
        return str(current) == str(target)

    def _ordered_pair(self, current: Any, target: Any) -> tuple[Any, Any]:
        if self._is_number(current):
            return self._to_number(current), self._to_number(target)
        if isinstance(current, (datetime, date)):
            return self._to_datetime(current), self._to_datetime(target)
        if isinstance(current, str):
            try:
                return self._to_number(current), self._to_number(target)
            except (TypeError, ValueError):
                return self._to_datetime(current), self._to_datetime(target)
        raise TypeError(f"cannot order {type(current).__name__}")

    def _is_number(self, value: Any) -> bool:
        return isinstance(value, (int, float, Decimal)) and not isinstance(value, bool)

    def _to_number(self, value: Any) -> Decimal:
        if isinstance(value, bool):
            raise TypeError("boolean is not numeric")
        if isinstance(value, (int, Decimal)):
            return Decimal(value)
        if isinstance(value, float):
            return Decimal(str(value))
        if isinstance(value, str):
            try:
                return Decimal(value.strip())
            except InvalidOperation as exc:
                raise ValueError(f"{value!r} is not numeric") from exc
        raise TypeError(f"{type(value).__name__} is not numeric")

    def _to_datetime(self, value: Any) -> datetime:
        if isinstance(value, datetime):
            parsed = value
        elif isinstance(value, date):
            parsed = datetime(value.year, value.month, value.day)
        elif isinstance(value, str):
            raw = value.strip()
            if raw.endswith("Z"):
                raw = raw[:-1] + "+00:00"
            parsed = datetime.fromisoformat(raw)
        else:
            raise TypeError(f"{type(value).__name__} is not a date")
        if parsed.tzinfo is None:
            parsed = parsed.replace(tzinfo=timezone.utc)
        return parsed

    def _as_bool(self, value: Any) -> bool:
        if isinstance(value, bool):
            return value
        if isinstance(value, str) and value.strip().lower() in {"true", "false"}:
            return value.strip().lower() == "true"
        raise TypeError(f"{value!r} is not a boolean")
