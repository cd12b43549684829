"""
Condition Evaluator
===================

Decides whether a permission's conditions hold for one request.

A condition compares an *actual* value taken from the request context with
an *expected* value from the condition itself. The expected value may be a
self-reference template (``@user.<attribute>``) resolved against the
authenticated subject, e.g.::

    {"field": "department", "operator": "eq", "value": "@user.department"}

grants only when the request targets the subject's own department.

All conditions of a permission are ANDed; an empty list always passes.
Evaluation is fail-closed: unknown operators, incomparable operands and
templates that resolve to nothing make the condition fail, never raise.
"""

import enum
import logging
from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from typing import Any, List, Optional, Sequence, Tuple

from models.domain import (
    AuthorizationContext, ConditionOperator, PermissionCondition, Subject
)

logger = logging.getLogger(__name__)

TEMPLATE_PREFIX = '@user.'

_SET_TYPES = (list, tuple, set, frozenset)


@dataclass
class ConditionResult:
    """Outcome of evaluating a permission's condition list."""
    passed: bool
    failed_conditions: List[PermissionCondition] = field(default_factory=list)


class _Unresolved:
    """Marker for a template whose subject attribute does not exist."""

    def __repr__(self):
        return "<unresolved>"


UNRESOLVED = _Unresolved()


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def _strict_equals(left: Any, right: Any) -> bool:
    """Equality without cross-type coercion (1 != "1", True != 1)."""
    if isinstance(left, bool) or isinstance(right, bool):
        return isinstance(left, bool) and isinstance(right, bool) and left == right
    if _is_number(left) and _is_number(right):
        return left == right
    if isinstance(left, str) and isinstance(right, str):
        return left == right
    return type(left) is type(right) and left == right


def _as_datetime(value: Any) -> Optional[datetime]:
    """Parse ISO timestamps; aware values are normalized to naive UTC."""
    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, date):
        parsed = datetime(value.year, value.month, value.day)
    elif isinstance(value, str):
        try:
            parsed = datetime.fromisoformat(value.strip().replace('Z', '+00:00'))
        except ValueError:
            return None
    else:
        return None
    if parsed.tzinfo is not None:
        parsed = parsed.astimezone(timezone.utc).replace(tzinfo=None)
    return parsed


def _ordering_pair(left: Any, right: Any) -> Tuple[Any, Any]:
    """Bring both operands onto one naturally ordered type."""
    if _is_number(left) and _is_number(right):
        return left, right
    left_dt, right_dt = _as_datetime(left), _as_datetime(right)
    if left_dt is not None and right_dt is not None:
        return left_dt, right_dt
    if isinstance(left, str) and isinstance(right, str):
        return left, right
    raise TypeError(f"cannot order {type(left).__name__} against {type(right).__name__}")


def _text(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, enum.Enum):
        return _text(value.value)
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, _SET_TYPES):
        return ",".join(_text(v) for v in value)
    return str(value)


def _member(value: Any, candidates: Sequence[Any]) -> bool:
    return any(_strict_equals(value, candidate) for candidate in candidates)


class ConditionEvaluator:
    """Evaluates PermissionCondition lists against a context and a subject."""

    def evaluate(
        self,
        conditions: Sequence[PermissionCondition],
        context: AuthorizationContext,
        subject: Subject
    ) -> ConditionResult:
        """
        AND all conditions together.

        Returns:
            ConditionResult with every failed condition, in list order
        """
        failed = [c for c in conditions if not self.evaluate_condition(c, context, subject)]
        return ConditionResult(passed=not failed, failed_conditions=failed)

    def evaluate_condition(
        self,
        condition: PermissionCondition,
        context: AuthorizationContext,
        subject: Subject
    ) -> bool:
        actual = self.get_context_value(condition.field, context)
        expected = self.resolve_value(condition.value, subject)
        if expected is UNRESOLVED:
            return False
        return self._compare(actual, condition.operator, expected)

    def get_context_value(self, field_name: str, context: AuthorizationContext) -> Any:
        """
        Look up the actual value a condition field refers to.

        A few well-known fields map onto dedicated context slots; anything
        else is looked up by name on the target resource attributes, then on
        the caller's additional attributes.
        """
        target = context.target_resource or {}

        if field_name == 'department':
            return context.department
        elif field_name in ('ownerId', 'owner_id'):
            return context.owner_id
        elif field_name in ('assignedTo', 'assigned_to'):
            return target.get('assignedTo', target.get('assigned_to'))
        elif field_name == 'type':
            return target['type'] if target.get('type') is not None else target.get('requestType')
        elif field_name in ('userId', 'user_id'):
            return context.user_id

        if field_name in target:
            return target[field_name]
        return (context.additional or {}).get(field_name)

    def resolve_value(self, value: Any, subject: Subject) -> Any:
        """
        Substitute ``@user.<attribute>`` templates with the subject's own value.

        Supported attributes: id, department, role (primary role kind), any
        Subject field, then any key of the subject's attribute bag.
        Non-template values are returned as-is.
        """
        if not (isinstance(value, str) and value.startswith(TEMPLATE_PREFIX)):
            return value

        attribute = value[len(TEMPLATE_PREFIX):]
        if attribute == 'id':
            resolved = subject.id
        elif attribute == 'department':
            resolved = subject.department
        elif attribute == 'role':
            role_type = subject.primary_role_type
            resolved = role_type.value if role_type else None
        elif attribute in ('username', 'full_name'):
            resolved = getattr(subject, attribute) or None
        else:
            resolved = (subject.attributes or {}).get(attribute)

        return UNRESOLVED if resolved is None else resolved

    def _compare(self, actual: Any, operator: str, expected: Any) -> bool:
        """
        Apply one operator. Unknown operators and type errors yield False.
        """
        try:
            op = ConditionOperator(operator)
        except ValueError:
            logger.warning(f"Unknown condition operator '{operator}', failing closed")
            return False

        try:
            if op == ConditionOperator.EQUALS:
                return _strict_equals(actual, expected)
            elif op == ConditionOperator.NOT_EQUALS:
                return not _strict_equals(actual, expected)
            elif op == ConditionOperator.IN:
                return isinstance(expected, _SET_TYPES) and _member(actual, expected)
            elif op == ConditionOperator.NOT_IN:
                return isinstance(expected, _SET_TYPES) and not _member(actual, expected)
            elif op == ConditionOperator.CONTAINS:
                return _text(expected) in _text(actual)
            elif op == ConditionOperator.NOT_CONTAINS:
                return _text(expected) not in _text(actual)

            left, right = _ordering_pair(actual, expected)
            if op == ConditionOperator.GREATER_THAN:
                return left > right
            elif op == ConditionOperator.GREATER_OR_EQUAL:
                return left >= right
            elif op == ConditionOperator.LESS_THAN:
                return left < right
            elif op == ConditionOperator.LESS_OR_EQUAL:
                return left <= right
        except (TypeError, ValueError):
            return False
        return False
