"""Tests for the authorization engine."""

import threading
from datetime import datetime

import pytest

from core.exceptions import AccessDeniedError
from core.services import AccessControlServices
from models.domain import ActionType, AuthorizationContext, DenialReason, ResourceType, SystemRoleType
from models.entities import AccessAttemptRecord, UserRoleRecord


class TestDepartmentScopedManager:

    def test_grant_in_own_department(self, manager_setup, engine):
        result = engine.check_permission("u1", ResourceType.TICKETS, ActionType.UPDATE, {'department': 'Finance'})
        assert result.granted
        assert result.reason is None
        assert result.reason_code is None
        assert result.matched_permission.id == "perm-tickets-update-dept"

    def test_deny_in_other_department(self, manager_setup, engine):
        result = engine.check_permission("u1", ResourceType.TICKETS, ActionType.UPDATE, {'department': 'HR'})
        assert not result.granted
        assert result.reason == "conditions not satisfied"
        assert result.reason_code == DenialReason.CONDITIONS_NOT_SATISFIED
        assert [c.field for c in result.failed_conditions] == ['department']

    def test_deny_without_department(self, manager_setup, engine):
        result = engine.check_permission("u1", ResourceType.TICKETS, ActionType.UPDATE)
        assert result.reason_code == DenialReason.CONDITIONS_NOT_SATISFIED

    def test_subject_without_permission(self, manager_setup, engine):
        result = engine.check_permission("u2", ResourceType.TICKETS, ActionType.UPDATE, {'department': 'HR'})
        assert not result.granted
        assert result.reason == "no permission for resource/action"

    def test_unrelated_action(self, manager_setup, engine):
        result = engine.check_permission("u1", ResourceType.TICKETS, ActionType.DELETE, {'department': 'Finance'})
        assert result.reason_code == DenialReason.NO_PERMISSION

    def test_string_resource_and_action(self, manager_setup, engine):
        """Plain strings are accepted for resource and action."""
        assert engine.has_permission("u1", "tickets", "update", {'department': 'Finance'})


class TestSubjectValidity:

    def test_unknown_subject(self, engine):
        result = engine.check_permission("ghost", ResourceType.USERS, ActionType.READ)
        assert not result.granted
        assert result.reason == "subject not found or inactive"

    def test_inactive_subject(self, manager_setup, engine):
        manager_setup.set_user_active("u1", False, "root")
        result = engine.check_permission("u1", ResourceType.TICKETS, ActionType.UPDATE, {'department': 'Finance'})
        assert result.reason_code == DenialReason.SUBJECT_INVALID

    def test_invalid_subject_is_still_logged(self, services, engine):
        engine.check_permission("ghost", ResourceType.USERS, ActionType.READ)
        attempt = services.attempt_log.recent(1)[0]
        assert attempt.user_id == "ghost"
        assert attempt.reason == "subject not found or inactive"


class TestInternalErrors:

    def test_evaluation_error_becomes_a_denial(self, manager_setup, services, engine, monkeypatch):
        def explode(*args, **kwargs):
            raise RuntimeError("boom")

        monkeypatch.setattr(engine.evaluator, "evaluate", explode)
        result = engine.check_permission("u1", ResourceType.TICKETS, ActionType.UPDATE, {'department': 'Finance'})
        assert not result.granted
        assert result.reason == "internal evaluation error: boom"
        assert result.reason_code == DenialReason.INTERNAL_ERROR
        assert services.attempt_log.recent(1)[0].reason == "internal evaluation error: boom"

    def test_store_failure_becomes_a_denial(self, manager_setup, services, engine):
        """A failing store denies instead of raising or hanging."""
        UserRoleRecord.__table__.drop(services.database.engine)

        result = engine.check_permission("u1", ResourceType.TICKETS, ActionType.UPDATE, {'department': 'Finance'})
        assert result.reason_code == DenialReason.INTERNAL_ERROR
        assert result.reason.startswith("internal evaluation error: ")

    def test_context_with_missing_bags(self, manager_setup, services, engine):
        context = AuthorizationContext(
            user_id="u1", request_time=datetime(2024, 5, 1), department="Finance",
            target_resource=None, additional=None
        )
        result = engine.check_permission("u1", ResourceType.TICKETS, ActionType.UPDATE, context)
        assert result.granted

        snapshot = services.attempt_log.recent(1)[0].context
        assert snapshot['target_resource'] == {}
        assert snapshot['additional'] == {}

    def test_self_referencing_context(self, manager_setup, services, engine):
        """A context that cannot be serialized is logged as its repr."""
        attributes = {'department': 'Finance'}
        attributes['self'] = attributes
        result = engine.check_permission("u1", ResourceType.TICKETS, ActionType.UPDATE, attributes)
        assert result.granted

        attempt = services.attempt_log.recent(1)[0]
        assert attempt.granted
        assert list(attempt.context) == ['unserializable']
        assert "Finance" in attempt.context['unserializable']

    def test_unexpected_logging_error_keeps_the_verdict(self, manager_setup, services, engine, monkeypatch):
        def explode(*args, **kwargs):
            raise KeyError("attempt log")

        monkeypatch.setattr(services.attempt_log, "record", explode)
        result = engine.check_permission("u1", ResourceType.TICKETS, ActionType.UPDATE, {'department': 'Finance'})
        assert result.granted
        assert result.reason is None


class TestAttemptLogging:

    def test_one_entry_per_check(self, manager_setup, services, engine):
        before = len(services.attempt_log)
        engine.check_permission("u1", ResourceType.TICKETS, ActionType.UPDATE, {'department': 'Finance'})
        engine.check_permission("u1", ResourceType.TICKETS, ActionType.UPDATE, {'department': 'HR'})
        engine.check_permission("ghost", ResourceType.TICKETS, ActionType.READ)
        assert len(services.attempt_log) == before + 3

    def test_retained_entries_are_capped(self):
        """K checks leave min(K, cap) entries."""
        with AccessControlServices.open("sqlite:///:memory:", max_entries=5) as services:
            for _ in range(3):
                services.engine.check_permission("ghost", ResourceType.FAQ, ActionType.READ)
            assert len(services.attempt_log) == 3

            for _ in range(5):
                services.engine.check_permission("ghost", ResourceType.FAQ, ActionType.READ)
            assert len(services.attempt_log) == 5
            with services.database.get_session() as session:
                assert session.query(AccessAttemptRecord).count() == 5

    def test_context_snapshot(self, manager_setup, services, engine):
        engine.check_permission("u1", ResourceType.TICKETS, ActionType.UPDATE, {
            'department': 'HR',
            'ipAddress': '10.0.0.1',
            'userAgent': 'pytest',
            'targetResource': {'id': 't-1'}
        })
        attempt = services.attempt_log.recent(1)[0]
        assert not attempt.granted
        assert attempt.resource == "tickets"
        assert attempt.action == "update"
        assert attempt.reason == "conditions not satisfied"
        assert attempt.ip_address == '10.0.0.1'
        assert attempt.user_agent == 'pytest'
        assert attempt.context['department'] == 'HR'
        assert attempt.context['target_resource'] == {'id': 't-1'}

    def test_granted_attempt_has_no_reason(self, manager_setup, services, engine):
        engine.check_permission("u1", ResourceType.TICKETS, ActionType.UPDATE, {'department': 'Finance'})
        attempt = services.attempt_log.recent(1)[0]
        assert attempt.granted
        assert attempt.reason is None

    def test_failed_append_keeps_the_verdict(self, manager_setup, services, engine):
        AccessAttemptRecord.__table__.drop(services.database.engine)
        result = engine.check_permission("u1", ResourceType.TICKETS, ActionType.UPDATE, {'department': 'Finance'})
        assert result.granted
        assert services.attempt_log.failed_appends == 1
        assert services.attempt_log.statistics()['failed_appends'] == 1


class TestEngineApi:

    def test_deterministic_verdicts(self, manager_setup, engine):
        first = engine.check_permission("u1", ResourceType.TICKETS, ActionType.UPDATE, {'department': 'HR'})
        second = engine.check_permission("u1", ResourceType.TICKETS, ActionType.UPDATE, {'department': 'HR'})
        assert (first.granted, first.reason) == (second.granted, second.reason)

    def test_context_object_is_restamped(self, manager_setup, services, engine):
        """The checked user and request time override what the context carries."""
        context = AuthorizationContext(user_id="someone-else", request_time=datetime(2000, 1, 1), department="Finance")
        assert engine.has_permission("u1", ResourceType.TICKETS, ActionType.UPDATE, context)
        snapshot = services.attempt_log.recent(1)[0].context
        assert snapshot['user_id'] == "u1"
        assert not snapshot['request_time'].startswith("2000")

    def test_require_permission(self, manager_setup, engine):
        result = engine.require_permission("u1", ResourceType.TICKETS, ActionType.UPDATE, {'department': 'Finance'})
        assert result.granted

        with pytest.raises(AccessDeniedError) as excinfo:
            engine.require_permission("u1", ResourceType.TICKETS, ActionType.UPDATE, {'department': 'HR'})
        assert excinfo.value.reason == "conditions not satisfied"
        assert excinfo.value.reason_code == DenialReason.CONDITIONS_NOT_SATISFIED
        assert excinfo.value.result.failed_conditions

    def test_effective_permissions(self, manager_setup, engine):
        assert [p.id for p in engine.get_effective_permissions("u1")] == ["perm-tickets-update-dept"]
        assert engine.get_effective_permissions("ghost") == []

    def test_summarize_subject(self, manager_setup, engine):
        summary = engine.summarize_subject("u1")
        assert summary['valid']
        assert summary['department'] == "Finance"
        assert summary['source'] == "rbac"
        assert summary['roles'] == [{'id': 'manager', 'name': 'manager', 'type': 'department_manager'}]
        assert summary['permissions'][0]['conditions'][0]['value'] == '@user.department'

    def test_summarize_unknown_subject(self, engine):
        summary = engine.summarize_subject("ghost")
        assert not summary['valid']
        assert summary['username'] is None
        assert summary['permissions'] == []


class TestConcurrentChecks:

    def test_in_memory_checks_and_mutations_from_many_threads(self):
        """Threads sharing one in-memory database lose no entries and keep the chain intact."""
        with AccessControlServices.open("sqlite:///:memory:", max_entries=1000) as services:
            services.admin.create_subject("u1", "fmanager", "root", department="Finance")
            services.admin.create_role("manager", SystemRoleType.DEPARTMENT_MANAGER, "root", role_id="manager")
            services.admin.assign_role_to_user("u1", "manager", "root")
            mutations_before = len(services.mutation_log)
            errors = []

            def work(worker):
                try:
                    for i in range(25):
                        services.engine.check_permission(
                            "u1", ResourceType.TICKETS, ActionType.READ, {'department': 'Finance'}
                        )
                        if i % 5 == 0:
                            services.admin.change_configuration(f"key-{worker}", i, i + 1, "root")
                except Exception as e:
                    errors.append(e)

            threads = [threading.Thread(target=work, args=(n,)) for n in range(8)]
            for thread in threads:
                thread.start()
            for thread in threads:
                thread.join()

            assert errors == []
            assert services.attempt_log.failed_appends == 0
            assert services.mutation_log.failed_appends == 0
            assert len(services.attempt_log) == 200
            assert len(services.mutation_log) == mutations_before + 40
            assert services.mutation_log.verify_chain() == []
            with services.database.get_session() as session:
                assert session.query(AccessAttemptRecord).count() == 200
