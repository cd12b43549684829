"""Tests for the access attempt and mutation audit logs."""

import json
import threading
from contextlib import contextmanager
from datetime import datetime, timedelta

import pytest
from sqlalchemy.exc import OperationalError

from core.audit import SYSTEM_PERFORMER, AccessAttemptLog, MutationAuditLog, compute_hash
from core.exceptions import AuditWriteError
from models.database import Database
from models.domain import AuditAction, AuditEntityType, AuthorizationContext, Severity, SystemRoleType
from models.entities import AccessAttemptRecord, MutationAuditRecord


@pytest.fixture
def database():
    database = Database("sqlite:///:memory:")
    database.init_db()
    yield database
    database.dispose()


@pytest.fixture
def attempts(database):
    log = AccessAttemptLog(database, max_entries=10)
    log.init()
    return log


@pytest.fixture
def mutations(database):
    log = MutationAuditLog(database, max_entries=10)
    log.init()
    return log


def row_count(database, record_class):
    with database.get_session() as session:
        return session.query(record_class).count()


def log_roles(log, count, performed_by="admin"):
    return [
        log.log_role_creation(f"role-{i}", f"Role {i}", SystemRoleType.PROCESSOR, performed_by)
        for i in range(count)
    ]


class TestRetention:

    def test_cap_must_be_positive(self, database):
        with pytest.raises(ValueError):
            AccessAttemptLog(database, max_entries=0)

    def test_oldest_entries_are_evicted(self, database):
        log = AccessAttemptLog(database, max_entries=3)
        log.init()
        recorded = [log.record(f"u{i}", "tickets", "read", True) for i in range(5)]

        assert [a.id for a in log.entries()] == [a.id for a in recorded[2:]]
        assert row_count(database, AccessAttemptRecord) == 3

    def test_entries_survive_a_restart(self, tmp_path):
        url = f"sqlite:///{tmp_path / 'audit.db'}"
        database = Database(url)
        database.init_db()
        log = MutationAuditLog(database, max_entries=10)
        log.init()
        written = log_roles(log, 3)
        log.close()
        database.dispose()

        reopened = Database(url)
        log = MutationAuditLog(reopened, max_entries=10)
        log.init()
        assert [e.id for e in log.entries()] == [e.id for e in written]
        assert log.entries()[1].changes == written[1].changes

        appended = log.log_role_creation("role-x", "Role X", SystemRoleType.AUDITOR, "admin")
        assert appended.hash_prev == written[-1].hash_curr
        assert log.verify_chain() == []
        reopened.dispose()

    def test_restart_with_a_smaller_cap_loads_the_newest(self, tmp_path):
        url = f"sqlite:///{tmp_path / 'audit.db'}"
        database = Database(url)
        database.init_db()
        log = AccessAttemptLog(database, max_entries=10)
        log.init()
        recorded = [log.record(f"u{i}", "faq", "read", True) for i in range(4)]
        database.dispose()

        reopened = Database(url)
        log = AccessAttemptLog(reopened, max_entries=2)
        log.init()
        assert [a.id for a in log.entries()] == [a.id for a in recorded[2:]]
        reopened.dispose()

    def test_failed_append_leaves_the_window_unchanged(self, database, attempts):
        attempts.record("u1", "faq", "read", True)
        AccessAttemptRecord.__table__.drop(database.engine)

        with pytest.raises(AuditWriteError):
            attempts.record("u1", "faq", "read", True)
        assert len(attempts) == 1
        assert attempts.failed_appends == 1

    def test_concurrent_appends(self, tmp_path):
        database = Database(f"sqlite:///{tmp_path / 'audit.db'}")
        database.init_db()
        attempt_log = AccessAttemptLog(database, max_entries=100)
        mutation_log = MutationAuditLog(database, max_entries=100)

        def work(worker):
            for i in range(10):
                attempt_log.record(f"u{worker}", "tickets", "read", i % 2 == 0)
                mutation_log.log_configuration_change(f"key-{worker}", i, i + 1, f"admin-{worker}")

        threads = [threading.Thread(target=work, args=(n,)) for n in range(4)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        assert len(attempt_log) == 40
        assert row_count(database, AccessAttemptRecord) == 40
        assert len(mutation_log) == 40
        assert mutation_log.verify_chain() == []
        database.dispose()


class TestAccessAttemptLog:

    def test_record_snapshots_the_context(self, attempts):
        context = AuthorizationContext.from_mapping(
            "u1", {'department': 'Finance', 'ipAddress': '10.1.1.1', 'priority': 2}, datetime(2024, 5, 1)
        )
        attempt = attempts.record("u1", "tickets", "update", False, "conditions not satisfied", context)
        assert attempt.id.startswith("attempt-")
        assert attempt.ip_address == '10.1.1.1'
        assert attempt.context['request_time'] == "2024-05-01T00:00:00"
        assert attempt.context['additional'] == {'priority': 2}

    def test_granted_entries_carry_no_reason(self, attempts):
        assert attempts.record("u1", "tickets", "read", True, "ignored").reason is None

    def test_recent_is_newest_first(self, attempts):
        for user in ("u1", "u2", "u1", "u3"):
            attempts.record(user, "tickets", "read", True)

        assert [a.user_id for a in attempts.recent()] == ["u3", "u1", "u2", "u1"]
        assert [a.user_id for a in attempts.recent(limit=2)] == ["u3", "u1"]
        assert len(attempts.recent(user_id="u1")) == 2

    def test_date_range(self, attempts):
        for user in ("u1", "u2", "u3"):
            attempts.record(user, "tickets", "read", True)
        entries = attempts.entries()

        assert attempts.by_date_range() == entries
        assert attempts.by_date_range(start=datetime.now() + timedelta(days=1)) == []
        assert attempts.by_date_range(end=datetime(2000, 1, 1)) == []
        bounded = attempts.by_date_range(start=entries[0].timestamp, end=entries[-1].timestamp)
        assert [a.id for a in bounded] == [a.id for a in entries]

    def test_statistics(self, attempts):
        attempts.record("u1", "tickets", "read", True)
        attempts.record("u1", "tickets", "update", False, "conditions not satisfied")
        attempts.record("u2", "reports", "read", True)

        stats = attempts.statistics()
        assert stats['total_attempts'] == 3
        assert stats['granted_attempts'] == 2
        assert stats['denied_attempts'] == 1
        assert stats['denial_rate'] == pytest.approx(1 / 3)
        assert stats['top_resources'][0] == {'resource': 'tickets', 'count': 2}
        assert stats['top_users'][0] == {'user_id': 'u1', 'count': 2}
        assert stats['failed_appends'] == 0

    def test_empty_statistics(self, attempts):
        stats = attempts.statistics()
        assert stats['total_attempts'] == 0
        assert stats['denial_rate'] == 0


class TestMutationAuditLog:

    def test_role_update_snapshots_both_sides(self, mutations):
        entry = mutations.log_role_update(
            "role-1", {'name': 'Old', 'is_active': True}, {'name': 'New', 'is_active': False}, "admin"
        )
        assert entry.entity_type == AuditEntityType.ROLE
        assert entry.action == AuditAction.UPDATE
        assert [tuple(c) for c in entry.changes] == [('name', 'Old', 'New'), ('is_active', True, False)]
        assert entry.reason == "Updated role: Old"

    def test_assignment_entity_id(self, mutations):
        entry = mutations.log_role_assignment("u1", "manager", "Manager", "admin",
                                              ip_address="10.0.0.5", user_agent="cli")
        assert entry.entity_type == AuditEntityType.USER_ROLE
        assert entry.entity_id == "u1-manager"
        assert entry.action == AuditAction.ASSIGN
        assert entry.ip_address == "10.0.0.5"
        assert ('expires_at', None, None) in [tuple(c) for c in entry.changes]
        assert entry.new_values == {'user_id': 'u1', 'role_id': 'manager', 'role_name': 'Manager'}

    def test_security_violation_defaults(self, mutations):
        entry = mutations.log_security_violation("u2", "brute_force", "5 failed logins")
        assert entry.entity_type == AuditEntityType.SECURITY_EVENT
        assert entry.entity_id.startswith("security-")
        assert entry.performed_by == SYSTEM_PERFORMER
        assert entry.severity == Severity.MEDIUM
        assert entry.reason == "Security violation: brute_force - 5 failed logins"
        assert entry.new_values['user_id'] == "u2"

    def test_severity_is_taken_as_given(self, mutations):
        entry = mutations.log_security_violation("u2", "privilege_escalation", "x", Severity.CRITICAL)
        assert entry.severity == Severity.CRITICAL

    def test_queries(self, mutations):
        log_roles(mutations, 2, performed_by="alice")
        mutations.log_configuration_change("session_timeout", 30, 60, "bob")
        mutations.log_security_violation("u2", "brute_force", "5 failed logins", Severity.HIGH)

        assert [e.entity_id for e in mutations.by_performer("alice")] == ["role-1", "role-0"]
        assert [e.entity_id for e in mutations.by_entity(AuditEntityType.ROLE, "role-0")] == ["role-0"]
        assert mutations.by_entity("config")[0].entity_id == "config-session_timeout"
        assert len(mutations.security_events()) == 1
        assert mutations.recent(limit=1)[0].entity_type == AuditEntityType.SECURITY_EVENT

    def test_statistics(self, mutations):
        log_roles(mutations, 2, performed_by="alice")
        mutations.log_role_assignment("u1", "role-0", "Role 0", "bob")
        mutations.log_security_violation("u2", "brute_force", "5 failed logins")

        stats = mutations.statistics()
        assert stats['total_entries'] == 4
        assert stats['last_24h'] == 4
        assert stats['top_performers'][0] == {'performed_by': 'alice', 'count': 2}
        assert {'action': 'create', 'count': 2} in stats['top_actions']
        assert stats['security_violations'] == 1

    def test_export(self, mutations):
        written = log_roles(mutations, 3)
        document = json.loads(mutations.export())

        assert document['total_entries'] == 3
        assert 'export_date' in document
        assert [e['id'] for e in document['entries']] == [e.id for e in written]
        assert document['entries'][0]['changes'][0] == {'field': 'name', 'old': None, 'new': 'Role 0'}
        assert document['entries'][0]['hash_curr'] == written[0].hash_curr

    def test_export_with_bounds(self, mutations):
        log_roles(mutations, 2)
        document = json.loads(mutations.export(start=datetime.now() + timedelta(days=1)))
        assert document['total_entries'] == 0
        assert document['entries'] == []


class TestHashChain:

    def test_entries_link_to_their_predecessor(self, mutations):
        first, second = log_roles(mutations, 2)
        assert first.hash_prev == ""
        assert second.hash_prev == first.hash_curr
        assert second.hash_curr == compute_hash(first.hash_curr, second.payload())

    def test_intact_chain(self, mutations):
        log_roles(mutations, 4)
        assert mutations.verify_chain() == []

    def test_chain_survives_eviction(self, database):
        log = MutationAuditLog(database, max_entries=3)
        log.init()
        log_roles(log, 5)
        assert row_count(database, MutationAuditRecord) == 3
        assert log.verify_chain() == []

    def test_edited_entry_is_detected(self, database, mutations):
        entries = log_roles(mutations, 3)
        with database.get_session() as session:
            record = session.query(MutationAuditRecord).filter(MutationAuditRecord.id == entries[1].id).one()
            record.performed_by = "mallory"

        assert mutations.verify_chain() == [entries[1].id]

    def test_deleted_entry_is_detected(self, database, mutations):
        entries = log_roles(mutations, 3)
        with database.get_session() as session:
            session.query(MutationAuditRecord).filter(MutationAuditRecord.id == entries[1].id).delete()

        assert mutations.verify_chain() == [entries[2].id]

    def test_chain_resumes_after_a_commit_reported_as_failed(self, database, mutations, monkeypatch):
        """A row stored despite a reported failure is picked up before the next link."""
        log_roles(mutations, 2)
        real_session = database.get_session

        @contextmanager
        def committed_then_lost():
            with real_session() as session:
                yield session
            raise OperationalError("COMMIT", {}, Exception("connection lost"))

        monkeypatch.setattr(database, "get_session", committed_then_lost)
        with pytest.raises(AuditWriteError):
            mutations.log_configuration_change("session_timeout", 30, 60, "admin")
        monkeypatch.undo()

        assert mutations.failed_appends == 1
        assert len(mutations) == 2
        assert row_count(database, MutationAuditRecord) == 3

        appended = mutations.log_configuration_change("session_timeout", 60, 90, "admin")
        entries = mutations.entries()
        assert len(entries) == 4
        assert entries[2].entity_id == "config-session_timeout"
        assert appended.hash_prev == entries[2].hash_curr
        assert mutations.verify_chain() == []
