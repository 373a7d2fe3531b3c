"""
Condition Evaluator

Evaluates trigger conditions (threshold, field comparisons, time windows)
against an entity snapshot. Pure: no database access, no clock reads.
Unknown fields, currency mismatches and incomparable values evaluate to
no-match rather than raising.
"""

import logging
from datetime import date
from numbers import Number
from typing import Any, Iterable, Optional, Set

from approval_engine.schemas.conditions import (
    ComparisonOperator,
    EntitySnapshot,
    EvaluationResult,
    FieldCondition,
    ThresholdCondition,
    TimeCondition,
    TriggerConditions,
)

logger = logging.getLogger(__name__)

_MISSING = object()


class ConditionEvaluator:
    """Matches structured trigger conditions against entity snapshots"""

    def __init__(self, holidays: Optional[Iterable[date]] = None):
        self.holidays: Set[date] = set(holidays or [])

    def evaluate(
        self, conditions: Optional[TriggerConditions], snapshot: EntitySnapshot
    ) -> EvaluationResult:
        """All clauses must match; the first failing clause is reported"""
        if conditions is None or conditions.is_empty():
            return EvaluationResult(matched=True)

        matched = []
        for clause in conditions.clauses():
            if not self.evaluate_clause(clause, snapshot):
                logger.debug(f"Condition {clause.kind} on snapshot did not match")
                return EvaluationResult(
                    matched=False, matched_conditions=matched, failed_condition=clause
                )
            matched.append(clause)

        return EvaluationResult(matched=True, matched_conditions=matched)

    def evaluate_clause(self, clause, snapshot: EntitySnapshot) -> bool:
        if isinstance(clause, ThresholdCondition):
            return self._match_threshold(clause, snapshot)
        if isinstance(clause, FieldCondition):
            return self._match_field(clause, snapshot)
        if isinstance(clause, TimeCondition):
            return self._match_time(clause, snapshot)
        raise TypeError(f"Unsupported condition clause: {type(clause).__name__}")

    def _match_threshold(
        self, condition: ThresholdCondition, snapshot: EntitySnapshot
    ) -> bool:
        if condition.currency:
            entity_currency = snapshot.fields.get("currency")
            if not isinstance(entity_currency, str):
                return False
            if entity_currency.upper() != condition.currency:
                return False

        value = snapshot.fields.get(condition.field, _MISSING)
        number = _as_number(value)
        if number is None:
            return False
        return _compare(condition.operator.value, number, condition.value)

    def _match_field(self, condition: FieldCondition, snapshot: EntitySnapshot) -> bool:
        value = snapshot.fields.get(condition.field, _MISSING)
        if value is _MISSING:
            return False

        operator = condition.operator
        expected = condition.value

        if operator == ComparisonOperator.EQ:
            return _equals(value, expected)
        if operator == ComparisonOperator.NE:
            return not _equals(value, expected)
        if operator in (ComparisonOperator.CONTAINS, ComparisonOperator.NOT_CONTAINS):
            contained = _contains(value, expected)
            if contained is None:
                return False
            return contained if operator == ComparisonOperator.CONTAINS else not contained
        if operator in (ComparisonOperator.IN, ComparisonOperator.NOT_IN):
            member = any(_equals(value, item) for item in expected)
            return member if operator == ComparisonOperator.IN else not member

        left, right = _as_number(value), _as_number(expected)
        if left is None or right is None:
            if isinstance(value, str) and isinstance(expected, str):
                left, right = value, expected
            else:
                return False
        return _compare(operator.value, left, right)

    def _match_time(self, condition: TimeCondition, snapshot: EntitySnapshot) -> bool:
        moment = snapshot.timestamp

        if condition.day_of_week is not None:
            # Python weekday(): Monday=0; conditions use Sunday=0
            day = (moment.weekday() + 1) % 7
            if day not in condition.day_of_week:
                return False

        if condition.time_range is not None:
            start = condition.time_range.start_hour
            end = condition.time_range.end_hour
            hour = moment.hour
            if start <= end:
                if not start <= hour <= end:
                    return False
            elif not (hour >= start or hour <= end):
                return False

        if condition.exclude_holidays and moment.date() in self.holidays:
            return False

        return True


def _as_number(value: Any) -> Optional[float]:
    if isinstance(value, bool) or value is _MISSING or value is None:
        return None
    if isinstance(value, Number):
        return float(value)
    if isinstance(value, str):
        try:
            return float(value)
        except ValueError:
            return None
    return None


def _equals(left: Any, right: Any) -> bool:
    left_number, right_number = _as_number(left), _as_number(right)
    if left_number is not None and right_number is not None and not (
        isinstance(left, str) and isinstance(right, str)
    ):
        return left_number == right_number
    return left == right


def _contains(container: Any, item: Any) -> Optional[bool]:
    if isinstance(container, str):
        if not isinstance(item, str):
            return None
        return item in container
    if isinstance(container, (list, tuple, set)):
        return any(_equals(element, item) for element in container)
    return None


def _compare(operator: str, left, right) -> bool:
    if operator == "gt":
        return left > right
    if operator == "gte":
        return left >= right
    if operator == "lt":
        return left < right
    if operator == "lte":
        return left <= right
    if operator == "eq":
        return left == right
    raise ValueError(f"Unsupported comparison operator: {operator}")
