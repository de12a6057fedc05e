"""
Condition node evaluation.

Conditions are evaluated against a fresh subscriber snapshot, never against
state cached in the execution context.
"""

import math
from typing import Any, Optional

from automation_engine.core.models import (
    CustomFieldNode,
    FieldOperator,
    HasTagNode,
    SubscriberSnapshot,
    SubscriptionTierNode,
)


def _to_number(value: Any) -> Optional[float]:
    """Parse a numeric value; None if it is not a finite number."""
    if isinstance(value, bool) or value is None:
        return None
    if isinstance(value, (int, float)):
        number = float(value)
    else:
        try:
            number = float(str(value).strip())
        except ValueError:
            return None
    return number if math.isfinite(number) else None


def evaluate_custom_field(node: CustomFieldNode, subscriber: SubscriberSnapshot) -> bool:
    """
    Compare a subscriber custom field with the configured value.

    A missing field never matches. greater_than/less_than are numeric
    comparisons and are false when either side is not numeric.
    """
    if node.field_name not in subscriber.fields:
        return False

    actual = subscriber.fields[node.field_name]
    if actual is None:
        return False

    if node.operator == FieldOperator.EQUALS:
        return str(actual) == node.value
    if node.operator == FieldOperator.CONTAINS:
        return node.value in str(actual)

    left = _to_number(actual)
    right = _to_number(node.value)
    if left is None or right is None:
        return False

    if node.operator == FieldOperator.GREATER_THAN:
        return left > right
    if node.operator == FieldOperator.LESS_THAN:
        return left < right
    return False


def evaluate_condition(node: Any, subscriber: SubscriberSnapshot) -> bool:
    """
    Evaluate a condition node to the branch it takes.

    Raises:
        TypeError: If the node is not a condition node
    """
    if isinstance(node, HasTagNode):
        return (node.tag in subscriber.tags) == node.present
    if isinstance(node, SubscriptionTierNode):
        return subscriber.tier == node.tier
    if isinstance(node, CustomFieldNode):
        return evaluate_custom_field(node, subscriber)

    raise TypeError(f"Node '{getattr(node, 'id', node)}' is not a condition node")
