"""
Demo Data Loader
================

Creates realistic sample data for demonstrating permission checks.
Models a ticketing back office with:

- One role per system role kind, seeded from the default policy table
- Department-scoped managers and assignment-scoped processors
- A role hierarchy (Senior Processor inherits from Processor)
- A subject that still relies on its legacy role name
- Time-limited assignments, one still valid and one expired
- A custom conditional permission, a security violation and a
  configuration change in the mutation audit log

This data backs the scenarios in ``scenarios.test_scenarios``.
"""

from datetime import timedelta
from typing import Dict

from core.policy import system_role_permissions
from core.services import AccessControlServices
from models.domain import ActionType, ResourceType, Severity, SystemRoleType, utcnow

DEMO_ADMIN = "admin"

# (role id, name, kind, description)
DEMO_ROLES = [
    ("role-admin", "System Administrator", SystemRoleType.SYSTEM_ADMIN, "Full administrative access"),
    ("manager", "Department Manager", SystemRoleType.DEPARTMENT_MANAGER, "Manages tickets of own department"),
    ("role-processor", "Processor", SystemRoleType.PROCESSOR, "Works on tickets assigned to them"),
    ("role-inquiry", "Inquiry Officer", SystemRoleType.INQUIRY_OFFICER, "Reads inquiry tickets"),
    ("role-auditor", "Auditor", SystemRoleType.AUDITOR, "Reviews audit logs and reports"),
    ("role-employee", "Employee", SystemRoleType.EMPLOYEE, "Minimal access"),
]

# (id, username, full name, department, legacy role name)
DEMO_USERS = [
    ("admin", "admin", "System Administrator", "IT", None),
    ("u1", "fmanager", "Layla Haddad", "Finance", None),
    ("u2", "hr_clerk", "Omar Nasser", "HR", None),
    ("u3", "processor1", "Sami Khoury", "Operations", None),
    ("u4", "reviewer", "Rana Aziz", "Audit", "مراجع"),
    ("u5", "temp_auditor", "Karim Saleh", "Audit", None),
    ("u6", "former_officer", "Hala Mansour", "Inquiries", None),
    ("u7", "departed", "Nabil Fares", "Finance", None),
    ("u8", "senior_processor", "Dana Yousef", "Operations", None),
]


def _seed_system_permissions(services: AccessControlServices, role_id: str, role_type: SystemRoleType) -> int:
    """Materialize a role kind's default permissions and link them to the role."""
    count = 0
    for permission in system_role_permissions(role_type):
        services.store.add_permission(permission)
        services.store.link_permission(role_id, permission.id)
        count += 1
    return count


def load_demo_data(services: AccessControlServices, reset: bool = True) -> Dict[str, int]:
    """
    Load demo data for permission check demonstrations.

    Creates:
    - 9 users, one of them legacy-only and one deactivated
    - 7 roles, one inheriting from another
    - The default permission set of every system role kind, plus custom permissions
    - Role assignments, one expiring and one already expired

    Args:
        services: Open services to seed
        reset: Drop and recreate all tables first

    Returns:
        Counts of what was created
    """
    if reset:
        services.database.reset_db()
        services.attempt_log.init()
        services.mutation_log.init()

    admin = services.admin
    now = utcnow()

    # ================================================================
    # Users
    # ================================================================
    for user_id, username, full_name, department, legacy_role in DEMO_USERS:
        admin.create_subject(
            user_id, username, DEMO_ADMIN,
            full_name=full_name, department=department, legacy_role=legacy_role
        )

    # ================================================================
    # Roles and their system permissions
    # ================================================================
    permission_count = 0
    for role_id, name, role_type, description in DEMO_ROLES:
        admin.create_role(name, role_type, DEMO_ADMIN, description=description, role_id=role_id)
        permission_count += _seed_system_permissions(services, role_id, role_type)

    admin.create_role(
        "Senior Processor", SystemRoleType.PROCESSOR, DEMO_ADMIN,
        description="Processor who may escalate tickets",
        parent_role_id="role-processor",
        role_id="role-senior-processor"
    )

    # ================================================================
    # Custom permissions
    # ================================================================
    escalate = admin.create_permission(
        ResourceType.TICKETS, ActionType.ESCALATE, DEMO_ADMIN,
        description="Escalate any ticket", permission_id="perm-tickets-escalate"
    )
    admin.grant_permission("role-senior-processor", escalate.id, DEMO_ADMIN)

    finance_analytics = admin.create_permission(
        ResourceType.ANALYTICS, ActionType.EXPORT, DEMO_ADMIN,
        conditions=[{'field': 'department', 'operator': 'in', 'value': ['Finance', 'Audit'],
                     'description': 'Finance and Audit departments only'}],
        description="Export analytics for finance departments",
        department_scoped=True,
        permission_id="perm-analytics-export-finance"
    )
    admin.grant_permission("manager", finance_analytics.id, DEMO_ADMIN)
    permission_count += 2

    # ================================================================
    # Role assignments
    # ================================================================
    assignments = [
        ("admin", "role-admin", None),
        ("u1", "manager", None),
        ("u3", "role-processor", None),
        ("u5", "role-auditor", now + timedelta(days=7)),
        ("u6", "role-inquiry", now - timedelta(days=1)),
        ("u7", "role-employee", None),
        ("u8", "role-senior-processor", None),
    ]
    for user_id, role_id, expires_at in assignments:
        admin.assign_role_to_user(user_id, role_id, DEMO_ADMIN, expires_at=expires_at)

    # ================================================================
    # Account changes and operational events
    # ================================================================
    admin.set_user_active("u7", False, DEMO_ADMIN, reason="Left the organization")
    admin.change_configuration("audit.max_entries", 500, 1000, DEMO_ADMIN, reason="Longer audit retention")
    admin.record_security_violation(
        "u2", "REPEATED_DENIALS", "Five denied user deletions within one minute", Severity.HIGH
    )

    return {
        'users': len(DEMO_USERS),
        'roles': len(DEMO_ROLES) + 1,
        'permissions': permission_count,
        'assignments': len(assignments),
        'audit_entries': len(services.mutation_log)
    }
