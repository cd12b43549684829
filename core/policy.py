"""
System Role Policy
==================

The canonical default permission set for every system role kind, and the
mapping from legacy single-role names onto those kinds.

This table is the default-policy document: a subject without any role
assignment rows is granted exactly what its legacy role kind lists here.
Entries are expanded in table order (resource row, then action), which
fixes the order of the synthesized permissions.
"""

from typing import Any, Dict, List, Optional

from models.domain import (
    ActionType, Permission, PermissionCondition, ResourceType,
    Role, SystemRoleType
)

_SAME_DEPARTMENT = ({'field': 'department', 'operator': 'eq', 'value': '@user.department'},)

SYSTEM_ROLE_PERMISSIONS: Dict[SystemRoleType, List[Dict[str, Any]]] = {
    SystemRoleType.SYSTEM_ADMIN: [
        {'resource': ResourceType.USERS, 'actions': ['create', 'read', 'update', 'delete']},
        {'resource': ResourceType.EMPLOYEES, 'actions': ['create', 'read', 'update', 'delete']},
        {'resource': ResourceType.ROLES, 'actions': ['create', 'read', 'update', 'delete']},
        {'resource': ResourceType.PERMISSIONS, 'actions': ['create', 'read', 'update', 'delete']},
        {'resource': ResourceType.AUDIT_LOGS, 'actions': ['read', 'export']},
        {'resource': ResourceType.SETTINGS, 'actions': ['read', 'update']},
        {'resource': ResourceType.REPORTS, 'actions': ['create', 'read', 'export']},
        {'resource': ResourceType.TICKETS, 'actions': ['create', 'read', 'update', 'delete', 'assign', 'forward']},
        {'resource': ResourceType.DEPARTMENTS, 'actions': ['create', 'read', 'update', 'delete']},
        {'resource': ResourceType.NOTIFICATIONS, 'actions': ['create', 'read', 'update', 'delete']},
        {'resource': ResourceType.ANALYTICS, 'actions': ['read', 'export']},
    ],
    SystemRoleType.DEPARTMENT_MANAGER: [
        {'resource': ResourceType.EMPLOYEES, 'actions': ['read', 'update'], 'conditions': _SAME_DEPARTMENT},
        {'resource': ResourceType.TICKETS, 'actions': ['read', 'update', 'approve', 'escalate', 'forward'],
         'conditions': _SAME_DEPARTMENT},
        {'resource': ResourceType.REPORTS, 'actions': ['create', 'read', 'export'], 'conditions': _SAME_DEPARTMENT},
        {'resource': ResourceType.NOTIFICATIONS, 'actions': ['create', 'read']},
        {'resource': ResourceType.ANALYTICS, 'actions': ['read'], 'conditions': _SAME_DEPARTMENT},
    ],
    SystemRoleType.PROCESSOR: [
        {'resource': ResourceType.TICKETS, 'actions': ['read', 'update', 'reply', 'comment'],
         'conditions': ({'field': 'assignedTo', 'operator': 'eq', 'value': '@user.id'},)},
        {'resource': ResourceType.NOTIFICATIONS, 'actions': ['read', 'update']},
        {'resource': ResourceType.REPORTS, 'actions': ['read'],
         'conditions': ({'field': 'createdBy', 'operator': 'eq', 'value': '@user.id'},)},
    ],
    SystemRoleType.INQUIRY_OFFICER: [
        {'resource': ResourceType.TICKETS, 'actions': ['read'],
         'conditions': ({'field': 'type', 'operator': 'eq', 'value': 'استعلام'},)},
        {'resource': ResourceType.FAQ, 'actions': ['read']},
        {'resource': ResourceType.REPORTS, 'actions': ['create', 'read']},
    ],
    SystemRoleType.AUDITOR: [
        {'resource': ResourceType.AUDIT_LOGS, 'actions': ['read', 'export']},
        {'resource': ResourceType.TICKETS, 'actions': ['read']},
        {'resource': ResourceType.EMPLOYEES, 'actions': ['read']},
        {'resource': ResourceType.REPORTS, 'actions': ['create', 'read', 'export']},
        {'resource': ResourceType.ANALYTICS, 'actions': ['read', 'export']},
    ],
    SystemRoleType.EMPLOYEE: [
        {'resource': ResourceType.TICKETS, 'actions': ['read'], 'conditions': _SAME_DEPARTMENT},
        {'resource': ResourceType.NOTIFICATIONS, 'actions': ['read']},
    ],
}

# Legacy role names as stored on employee records
LEGACY_ROLE_MAP: Dict[str, SystemRoleType] = {
    'مدير': SystemRoleType.SYSTEM_ADMIN,
    'مدير القسم': SystemRoleType.DEPARTMENT_MANAGER,
    'موظف معالجة': SystemRoleType.PROCESSOR,
    'موظف استعلامات': SystemRoleType.INQUIRY_OFFICER,
    'مراجع': SystemRoleType.AUDITOR,
}


def map_legacy_role(role_name: Optional[str]) -> SystemRoleType:
    """
    Map a legacy role name onto a system role kind.

    Kind names themselves ("auditor", "system_admin", ...) are accepted too.
    Anything unmapped falls back to the minimal EMPLOYEE kind.
    """
    if role_name in LEGACY_ROLE_MAP:
        return LEGACY_ROLE_MAP[role_name]
    try:
        return SystemRoleType((role_name or '').strip().lower())
    except ValueError:
        return SystemRoleType.EMPLOYEE


def system_role_permissions(role_type: SystemRoleType) -> List[Permission]:
    """Materialize the default permissions of a role kind, in table order."""
    permissions = []
    for entry in SYSTEM_ROLE_PERMISSIONS.get(role_type, []):
        resource = entry['resource']
        conditions = [PermissionCondition.from_dict(c) for c in entry.get('conditions', ())]
        for action_name in entry['actions']:
            action = ActionType(action_name)
            permissions.append(Permission(
                id=f"{resource.value}-{action.value}-{role_type.value}",
                resource=resource,
                action=action,
                conditions=list(conditions),
                description=f"{role_type.value} can {action.value} {resource.value}",
                is_system_permission=True
            ))
    return permissions


def legacy_role(role_name: str) -> Role:
    """Synthesize the role a legacy role name stands for."""
    role_type = map_legacy_role(role_name)
    return Role(
        id=f"legacy-{role_type.value}",
        name=role_name,
        type=role_type,
        description=f"Legacy role: {role_name}",
        permissions=system_role_permissions(role_type)
    )


def all_system_permissions() -> List[Permission]:
    """Every default permission across all role kinds."""
    permissions = []
    for role_type in SystemRoleType:
        permissions.extend(system_role_permissions(role_type))
    return permissions
