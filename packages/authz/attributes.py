"""Attribute condition evaluation.

Condition trees are evaluated in two modes sharing one traversal:
validation against a concrete object, and obligation derivation where
every value expression is resolved to a literal and no object is read.
"""

from collections.abc import Mapping
from dataclasses import dataclass
from typing import Any

from packages.authz.errors import AuthorizationUsageError
from packages.authz.models import (
    Attribute,
    Condition,
    ConditionOperator,
    read_field,
)


@dataclass(frozen=True)
class EvaluationContext:
    """Per-call evaluation input."""

    subject: Any
    object: Any = None


def _leaf(attr: str, value: Any) -> Condition:
    if isinstance(value, Condition):
        return Condition(ConditionOperator.parse(value.operator), value.expression)
    if isinstance(value, (tuple, list)) and len(value) == 2:
        return Condition(ConditionOperator.parse(value[0]), value[1])
    raise AuthorizationUsageError(
        f"Wrong conditions hash format for {attr!r}: {value!r}",
        "malformed_conditions",
    )


def _evaluate(expression: Any, subject: Any, obj: Any) -> Any:
    if callable(expression):
        return expression(subject, obj)
    return expression


class AttributeEvaluator:
    """Evaluates attribute condition trees."""

    def validate(self, tree: Mapping[str, Any], ctx: EvaluationContext, obj: Any) -> bool:
        """Check every condition of ``tree`` against ``obj`` (AND)."""
        for attr, value in tree.items():
            try:
                attr_value = read_field(obj, attr)
            except (AttributeError, TypeError) as e:
                raise AuthorizationUsageError(
                    f"Error when calling {attr} on {obj!r} for validating attribute: {e}",
                    "field_access_error",
                ) from e

            if isinstance(value, Mapping):
                if not self.validate(value, ctx, attr_value):
                    return False
                continue

            condition = _leaf(attr, value)
            evaluated = _evaluate(condition.expression, ctx.subject, ctx.object)
            if condition.operator == ConditionOperator.EQUALS:
                matched = attr_value == evaluated
            elif condition.operator == ConditionOperator.CONTAINS:
                try:
                    matched = evaluated in attr_value
                except TypeError:
                    matched = False
            else:
                raise AuthorizationUsageError(
                    f"Unknown operator {condition.operator!r}", "unknown_operator"
                )
            if not matched:
                return False
        return True

    def validate_attribute(self, attribute: Attribute, ctx: EvaluationContext) -> bool:
        """Validate one rule alternative against the context's object.

        Without an object there is nothing to check conditions against, so
        the alternative does not hold.
        """
        if ctx.object is None:
            return False
        return self.validate(attribute.conditions, ctx, ctx.object)

    def derive_obligation(self, tree: Mapping[str, Any], ctx: EvaluationContext) -> dict[str, Any]:
        """Resolve every value expression of ``tree`` to a literal.

        Returns a tree of the same shape whose leaves are
        ``(operator, literal)``.
        """
        obligation: dict[str, Any] = {}
        for attr, value in tree.items():
            if isinstance(value, Mapping):
                obligation[attr] = self.derive_obligation(value, ctx)
                continue
            condition = _leaf(attr, value)
            obligation[attr] = (
                condition.operator.value,
                _evaluate(condition.expression, ctx.subject, None),
            )
        return obligation

    def grants(self, attributes: list[Attribute], ctx: EvaluationContext) -> bool:
        """Rule-level check: no attributes, or any alternative validates (OR)."""
        if not attributes:
            return True
        return any(self.validate_attribute(attribute, ctx) for attribute in attributes)
