"""Shared fixtures for the access control tests."""

import pytest

from core.services import AccessControlServices
from models.domain import ActionType, ResourceType, SystemRoleType

SAME_DEPARTMENT = {'field': 'department', 'operator': 'eq', 'value': '@user.department'}


@pytest.fixture
def services():
    """Fresh services over a private in-memory database."""
    services = AccessControlServices.open("sqlite:///:memory:", max_entries=50)
    yield services
    services.close()


@pytest.fixture
def admin(services):
    """The administrator of the fresh services."""
    return services.admin


@pytest.fixture
def engine(services):
    """The authorization engine of the fresh services."""
    return services.engine


@pytest.fixture
def manager_setup(admin):
    """
    u1 (Finance) holds the 'manager' role, which may update tickets of its own
    department; u2 (HR) has neither role assignments nor a legacy role.
    """
    admin.create_subject("u1", "fmanager", "root", department="Finance")
    admin.create_subject("u2", "hr_clerk", "root", department="HR")
    admin.create_role("manager", SystemRoleType.DEPARTMENT_MANAGER, "root", role_id="manager")
    permission = admin.create_permission(
        ResourceType.TICKETS, ActionType.UPDATE, "root",
        conditions=[SAME_DEPARTMENT], permission_id="perm-tickets-update-dept"
    )
    admin.grant_permission("manager", permission.id, "root")
    admin.assign_role_to_user("u1", "manager", "root")
    return admin
