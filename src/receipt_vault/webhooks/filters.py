"""Subscription filter evaluation.

Rules compare one field of the event payload with a string value. Field
names may be dotted paths into nested objects (``receipt.amount``). A rule
whose field is absent never holds, whatever the operator.
"""

import math
from typing import Any, Iterable, Optional, Tuple

from receipt_vault.common.models import (
    DomainEvent,
    FilterOperator,
    FilterRule,
    WebhookSubscription,
)

_MISSING = object()


def resolve_field(payload: Any, path: str) -> Any:
    value = payload
    for part in path.split("."):
        if not isinstance(value, dict) or part not in value:
            return _MISSING
        value = value[part]
    return value


def _as_text(value: Any) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    if value is None:
        return "null"
    return str(value)


def as_number(value: Any) -> Optional[float]:
    """Coerce to a finite float, or None when the value is not numeric."""
    if isinstance(value, bool) or value is None:
        return None
    if isinstance(value, (int, float)):
        number = float(value)
    elif isinstance(value, str):
        try:
            number = float(value.strip())
        except ValueError:
            return None
    else:
        return None
    if math.isnan(number) or math.isinf(number):
        return None
    return number


def _numeric_pair(actual: Any, expected: str) -> Optional[Tuple[float, float]]:
    left, right = as_number(actual), as_number(expected)
    if left is None or right is None:
        return None
    return left, right


def evaluate_rule(payload: Any, rule: FilterRule) -> bool:
    actual = resolve_field(payload, rule.field)
    if actual is _MISSING:
        return False

    if rule.operator == FilterOperator.EQUALS:
        return _as_text(actual) == rule.value
    if rule.operator == FilterOperator.CONTAINS:
        return rule.value in _as_text(actual)

    pair = _numeric_pair(actual, rule.value)
    if pair is None:
        return False
    left, right = pair
    if rule.operator == FilterOperator.GREATER_THAN:
        return left > right
    if rule.operator == FilterOperator.LESS_THAN:
        return left < right
    return False


def rules_hold(payload: Any, rules: Iterable[FilterRule]) -> bool:
    return all(evaluate_rule(payload, rule) for rule in rules)


def matches(event: DomainEvent, subscription: WebhookSubscription) -> bool:
    if event.type not in subscription.events:
        return False
    return rules_hold(event.payload, subscription.filter_rules)
