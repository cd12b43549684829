"""Tests for the condition evaluator."""

from datetime import datetime

import pytest

from core.conditions import ConditionEvaluator
from models.domain import AuthorizationContext, PermissionCondition, Role, Subject, SystemRoleType


@pytest.fixture
def evaluator():
    return ConditionEvaluator()


@pytest.fixture
def subject():
    return Subject(
        id="u1",
        username="fmanager",
        department="Finance",
        attributes={'region': 'north', 'level': 3},
        roles=[Role(id="manager", name="manager", type=SystemRoleType.DEPARTMENT_MANAGER)]
    )


def context(**data):
    return AuthorizationContext.from_mapping("u1", data, datetime(2024, 1, 1))


def cond(field, operator, value):
    return PermissionCondition(field=field, operator=operator, value=value)


def holds(evaluator, subject, condition, ctx):
    return evaluator.evaluate([condition], ctx, subject).passed


class TestTemplates:

    def test_department_template_grants_own_department(self, evaluator, subject):
        """@user.department resolves to the subject's department."""
        condition = cond('department', 'eq', '@user.department')
        assert holds(evaluator, subject, condition, context(department="Finance"))
        assert not holds(evaluator, subject, condition, context(department="HR"))

    def test_missing_context_department_fails(self, evaluator, subject):
        """A context without a department never matches the subject's own."""
        assert not holds(evaluator, subject, cond('department', 'eq', '@user.department'), context())

    def test_id_and_role_templates(self, evaluator, subject):
        """@user.id and @user.role resolve to the id and primary role kind."""
        assert holds(evaluator, subject, cond('assignedTo', 'eq', '@user.id'),
                     context(targetResource={'assignedTo': 'u1'}))
        assert holds(evaluator, subject, cond('requiredRole', 'eq', '@user.role'),
                     context(requiredRole='department_manager'))

    def test_attribute_bag_template(self, evaluator, subject):
        """Other names resolve against the subject's attributes."""
        assert holds(evaluator, subject, cond('region', 'eq', '@user.region'), context(region='north'))
        assert holds(evaluator, subject, cond('level', 'lte', '@user.level'), context(level=2))

    def test_unresolvable_template_fails_closed(self, evaluator, subject):
        """A template naming nothing on the subject fails even against a missing value."""
        assert not holds(evaluator, subject, cond('clearance', 'eq', '@user.clearance'), context())
        assert not holds(evaluator, subject, cond('clearance', 'ne', '@user.clearance'), context())

    def test_subject_without_department(self, evaluator, subject):
        """A subject without a department matches no department."""
        subject.department = None
        assert not holds(evaluator, subject, cond('department', 'eq', '@user.department'), context())


class TestFieldLookup:

    def test_well_known_fields(self, evaluator):
        """Dedicated context slots back the well-known fields."""
        ctx = context(department="HR", ownerId="u9", targetResource={'assignedTo': 'u3'})
        assert evaluator.get_context_value('department', ctx) == "HR"
        assert evaluator.get_context_value('ownerId', ctx) == "u9"
        assert evaluator.get_context_value('assignedTo', ctx) == "u3"
        assert evaluator.get_context_value('userId', ctx) == "u1"

    def test_type_falls_back_to_request_type(self, evaluator):
        """'type' reads the target's type, then its requestType."""
        assert evaluator.get_context_value('type', context(targetResource={'requestType': 'x'})) == 'x'
        assert evaluator.get_context_value('type', context(targetResource={'type': 'y', 'requestType': 'x'})) == 'y'

    def test_generic_lookup(self, evaluator):
        """Other fields come from the target resource, then the extra attributes."""
        ctx = context(targetResource={'createdBy': 'u1'}, priority=5)
        assert evaluator.get_context_value('createdBy', ctx) == 'u1'
        assert evaluator.get_context_value('priority', ctx) == 5
        assert evaluator.get_context_value('nothing', ctx) is None


class TestOperators:

    @pytest.mark.parametrize("actual,expected,result", [
        (1, 1.0, True),
        (1, "1", False),
        (True, 1, False),
        ("Finance", "Finance", True),
        (None, "Finance", False),
    ])
    def test_strict_equality(self, evaluator, subject, actual, expected, result):
        """Equality never coerces across types."""
        assert holds(evaluator, subject, cond('value', 'eq', expected), context(value=actual)) is result
        assert holds(evaluator, subject, cond('value', 'ne', expected), context(value=actual)) is not result

    def test_set_membership(self, evaluator, subject):
        """in/nin test membership in an array value."""
        ctx = context(department="Finance")
        assert holds(evaluator, subject, cond('department', 'in', ('Finance', 'Audit')), ctx)
        assert not holds(evaluator, subject, cond('department', 'nin', ['Finance', 'Audit']), ctx)
        assert holds(evaluator, subject, cond('department', 'nin', ['HR']), ctx)

    def test_set_operators_require_an_array(self, evaluator, subject):
        """in/nin against a scalar fail instead of testing substrings."""
        ctx = context(department="Fin")
        assert not holds(evaluator, subject, cond('department', 'in', 'Finance'), ctx)
        assert not holds(evaluator, subject, cond('department', 'nin', 'Finance'), ctx)

    @pytest.mark.parametrize("operator,expected,result", [
        ('gt', 3, True),
        ('gte', 5, True),
        ('lt', 5, False),
        ('lte', 5, True),
        ('lt', 7.5, True),
    ])
    def test_numeric_ordering(self, evaluator, subject, operator, expected, result):
        assert holds(evaluator, subject, cond('amount', operator, expected), context(amount=5)) is result

    def test_timestamp_ordering(self, evaluator, subject):
        """ISO strings and datetimes compare as points in time."""
        ctx = context(dueAt="2024-03-01T10:00:00Z")
        assert holds(evaluator, subject, cond('dueAt', 'gt', '2024-02-29T23:59:59'), ctx)
        assert holds(evaluator, subject, cond('dueAt', 'lt', datetime(2024, 3, 1, 11, 0)), ctx)
        assert holds(evaluator, subject, cond('dueAt', 'lte', '2024-03-01T12:00:00+02:00'), ctx)

    def test_incomparable_ordering_fails(self, evaluator, subject):
        """Ordering a number against a word or a missing value is false."""
        assert not holds(evaluator, subject, cond('amount', 'gt', 'ten'), context(amount=5))
        assert not holds(evaluator, subject, cond('amount', 'lt', 10), context())

    def test_contains(self, evaluator, subject):
        """contains works on the string form of both sides."""
        ctx = context(subject_line="Urgent: finance review", code=12345)
        assert holds(evaluator, subject, cond('subject_line', 'contains', 'finance'), ctx)
        assert holds(evaluator, subject, cond('code', 'contains', 234), ctx)
        assert holds(evaluator, subject, cond('subject_line', 'not_contains', 'HR'), ctx)

    def test_contains_on_missing_value(self, evaluator, subject):
        """A missing value is treated as the empty string."""
        assert not holds(evaluator, subject, cond('note', 'contains', 'x'), context())
        assert holds(evaluator, subject, cond('note', 'not_contains', 'x'), context())

    def test_unknown_operator_fails_closed(self, evaluator, subject):
        """Operators outside the fixed set evaluate to false without raising."""
        assert not holds(evaluator, subject, cond('department', 'regex', '.*'), context(department="Finance"))


class TestConjunction:

    def test_empty_list_passes(self, evaluator, subject):
        result = evaluator.evaluate([], context(), subject)
        assert result.passed
        assert result.failed_conditions == []

    def test_any_failing_condition_denies(self, evaluator, subject):
        """All conditions must hold; the failing ones are reported."""
        same_department = cond('department', 'eq', '@user.department')
        small_amount = cond('amount', 'lt', 100)
        wrong_owner = cond('ownerId', 'eq', '@user.id')
        ctx = context(department="Finance", amount=50, ownerId="u2")

        result = evaluator.evaluate([same_department, small_amount, wrong_owner], ctx, subject)
        assert not result.passed
        assert result.failed_conditions == [wrong_owner]

        result = evaluator.evaluate([same_department, small_amount], ctx, subject)
        assert result.passed
