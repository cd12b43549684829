"""
Access Model Administration
===========================

Mutations of the access model: roles, permissions, role assignments and
user accounts. Every successful mutation performs its store write and then
appends exactly one entry to the mutation audit log.

A failed audit append never undoes or aborts the mutation; it is reported
on the error log and counted by the audit log.
"""

import logging
import uuid
from datetime import datetime
from typing import Any, Dict, Iterable, Optional, Union

from models.domain import (
    ActionType, MutationAuditEntry, Permission, PermissionCondition, ResourceType,
    Role, RoleAssignment, Severity, Subject, SystemRoleType, utcnow
)
from .audit import MutationAuditLog
from .exceptions import AuditWriteError, NotFoundError
from .store import RoleStore

logger = logging.getLogger(__name__)

# Role attributes that update_role may change
ROLE_UPDATABLE_FIELDS = ('name', 'type', 'description', 'is_active', 'parent_role_id')


class AccessAdministrator:
    """
    Administrative service over a RoleStore, audited through a MutationAuditLog.
    """

    def __init__(self, store: RoleStore, mutation_log: MutationAuditLog):
        self.store = store
        self.mutation_log = mutation_log

    def _audit(self, log_method, *args, **kwargs) -> Optional[MutationAuditEntry]:
        """Append one audit entry; failures are logged, never raised."""
        try:
            return log_method(*args, **kwargs)
        except AuditWriteError:
            logger.exception(f"Audit entry via {log_method.__name__} was not recorded")
            return None

    def _require_subject(self, user_id: str) -> Subject:
        subject = self.store.get_subject(user_id)
        if subject is None:
            raise NotFoundError(f"User '{user_id}' not found")
        return subject

    def _require_role(self, role_id: str) -> Role:
        role = self.store.get_role(role_id)
        if role is None:
            raise NotFoundError(f"Role '{role_id}' not found")
        return role

    def _require_permission(self, permission_id: str) -> Permission:
        permission = self.store.get_permission(permission_id)
        if permission is None:
            raise NotFoundError(f"Permission '{permission_id}' not found")
        return permission

    # ========================================================================
    # Users
    # ========================================================================

    def create_subject(
        self,
        user_id: str,
        username: str,
        performed_by: str,
        full_name: str = "",
        department: Optional[str] = None,
        legacy_role: Optional[str] = None,
        attributes: Optional[Dict[str, Any]] = None
    ) -> Subject:
        """
        Create a user account.

        Args:
            user_id: Subject identifier
            username: Login name
            performed_by: Administrator making the change
            full_name: Display name
            department: Department the user belongs to
            legacy_role: Legacy single-role name, used only while the user
                has no role assignments
            attributes: Extra attributes available to ``@user.`` templates

        Returns:
            The created Subject

        Raises:
            ValueError: If a user with this id already exists
        """
        if self.store.get_subject(user_id) is not None:
            raise ValueError(f"User '{user_id}' already exists")

        subject = self.store.save_subject(Subject(
            id=user_id,
            username=username,
            full_name=full_name,
            department=department,
            legacy_role=legacy_role,
            attributes=dict(attributes or {})
        ))
        logger.info(f"User '{user_id}' created by {performed_by}")
        self._audit(
            self.mutation_log.log_user_creation,
            user_id, username, department, legacy_role, performed_by
        )
        return subject

    def set_user_active(
        self,
        user_id: str,
        active: bool,
        performed_by: str,
        reason: Optional[str] = None
    ) -> Subject:
        """Activate or deactivate a user account."""
        self._require_subject(user_id)
        subject = self.store.set_subject_flags(user_id, is_active=active)
        logger.info(f"User '{user_id}' {'activated' if active else 'deactivated'} by {performed_by}")
        if active:
            self._audit(self.mutation_log.log_user_activation, user_id, performed_by)
        else:
            self._audit(self.mutation_log.log_user_deactivation, user_id, performed_by, reason)
        return subject

    def lock_user(self, user_id: str, performed_by: str, reason: str) -> Subject:
        """Lock a user account."""
        self._require_subject(user_id)
        subject = self.store.set_subject_flags(user_id, is_locked=True)
        logger.info(f"User '{user_id}' locked by {performed_by}: {reason}")
        self._audit(self.mutation_log.log_user_lock, user_id, performed_by, reason)
        return subject

    # ========================================================================
    # Roles
    # ========================================================================

    def create_role(
        self,
        name: str,
        role_type: Union[SystemRoleType, str],
        performed_by: str,
        description: str = "",
        parent_role_id: Optional[str] = None,
        role_id: Optional[str] = None
    ) -> Role:
        """
        Create a role without permissions.

        Args:
            name: Role name
            role_type: System role kind the role belongs to
            performed_by: Administrator making the change
            description: Free text
            parent_role_id: Role to inherit permissions from
            role_id: Explicit id (default: generated)

        Returns:
            The created Role

        Raises:
            NotFoundError: If the parent role does not exist
        """
        role_type = SystemRoleType(role_type)
        if parent_role_id:
            self._require_role(parent_role_id)

        role = self.store.add_role(Role(
            id=role_id or f"role-{uuid.uuid4().hex[:12]}",
            name=name,
            type=role_type,
            description=description,
            parent_role_id=parent_role_id
        ))
        logger.info(f"Role '{role.name}' ({role.id}) created by {performed_by}")
        self._audit(
            self.mutation_log.log_role_creation,
            role.id, role.name, role.type, performed_by,
            description=description, parent_role_id=parent_role_id
        )
        return role

    def update_role(
        self,
        role_id: str,
        performed_by: str,
        reason: Optional[str] = None,
        **changes
    ) -> Role:
        """
        Change role attributes (name, type, description, is_active, parent_role_id).

        Only attributes whose value actually changes are written and audited.

        Raises:
            NotFoundError: If the role does not exist
            ValueError: If an unknown attribute is passed
        """
        unknown = set(changes) - set(ROLE_UPDATABLE_FIELDS)
        if unknown:
            raise ValueError(f"Cannot update role attributes: {', '.join(sorted(unknown))}")

        role = self._require_role(role_id)
        if changes.get('type') is not None:
            changes['type'] = SystemRoleType(changes['type'])
        if changes.get('parent_role_id'):
            self._require_role(changes['parent_role_id'])

        current = {name: getattr(role, name) for name in changes}
        effective = {name: value for name, value in changes.items() if current[name] != value}
        if not effective:
            return role

        updated = self.store.update_role(role_id, effective)
        logger.info(f"Role '{role_id}' updated by {performed_by}: {', '.join(effective)}")
        self._audit(
            self.mutation_log.log_role_update,
            role_id,
            {k: current[k] for k in effective},
            effective,
            performed_by,
            reason
        )
        return updated

    def assign_role_to_user(
        self,
        user_id: str,
        role_id: str,
        performed_by: str,
        expires_at: Optional[datetime] = None
    ) -> RoleAssignment:
        """
        Assign a role to a user, optionally until ``expires_at``.

        Raises:
            NotFoundError: If the user or role does not exist
        """
        self._require_subject(user_id)
        role = self._require_role(role_id)

        assignment = self.store.add_role_assignment(RoleAssignment(
            user_id=user_id,
            role_id=role_id,
            assigned_by=performed_by,
            assigned_at=utcnow(),
            expires_at=expires_at
        ))
        logger.info(f"Role '{role.name}' assigned to '{user_id}' by {performed_by}")
        self._audit(
            self.mutation_log.log_role_assignment,
            user_id, role_id, role.name, performed_by, expires_at=expires_at
        )
        return assignment

    def revoke_role_from_user(
        self,
        user_id: str,
        role_id: str,
        performed_by: str,
        reason: Optional[str] = None
    ) -> RoleAssignment:
        """
        Deactivate the user's active assignment of a role. The row is kept.

        Raises:
            NotFoundError: If the role or an active assignment does not exist
        """
        role = self._require_role(role_id)
        assignment = self.store.deactivate_role_assignment(user_id, role_id)
        if assignment is None:
            raise NotFoundError(f"User '{user_id}' has no active assignment of role '{role_id}'")

        logger.info(f"Role '{role.name}' revoked from '{user_id}' by {performed_by}")
        self._audit(
            self.mutation_log.log_role_revocation,
            user_id, role_id, role.name, performed_by, reason
        )
        return assignment

    # ========================================================================
    # Permissions
    # ========================================================================

    def create_permission(
        self,
        resource: Union[ResourceType, str],
        action: Union[ActionType, str],
        performed_by: str,
        conditions: Iterable[Union[PermissionCondition, Dict[str, Any]]] = (),
        description: str = "",
        department_scoped: bool = False,
        permission_id: Optional[str] = None
    ) -> Permission:
        """
        Create a custom permission.

        Args:
            resource: Resource kind
            action: Action kind
            performed_by: Administrator making the change
            conditions: PermissionCondition objects or their dict form
            description: Free text
            department_scoped: Marks the permission as department-bound
            permission_id: Explicit id (default: generated)

        Returns:
            The created Permission
        """
        conditions = [
            c if isinstance(c, PermissionCondition) else PermissionCondition.from_dict(c)
            for c in conditions
        ]
        permission = self.store.add_permission(Permission(
            id=permission_id or f"perm-{uuid.uuid4().hex[:12]}",
            resource=ResourceType(resource),
            action=ActionType(action),
            conditions=conditions,
            description=description,
            department_scoped=department_scoped
        ))
        logger.info(f"Permission {permission.action.value}:{permission.resource.value} "
                    f"({permission.id}) created by {performed_by}")
        self._audit(
            self.mutation_log.log_permission_creation,
            permission.id, permission.resource, permission.action, permission.conditions, performed_by
        )
        return permission

    def grant_permission(self, role_id: str, permission_id: str, performed_by: str) -> bool:
        """
        Attach a permission to a role.

        Returns:
            False if the role already had the permission (nothing is audited)
        """
        self._require_role(role_id)
        permission = self._require_permission(permission_id)
        if not self.store.link_permission(role_id, permission_id):
            return False

        logger.info(f"Permission '{permission_id}' granted to role '{role_id}' by {performed_by}")
        self._audit(
            self.mutation_log.log_permission_grant,
            role_id, permission_id, permission.resource, permission.action, performed_by
        )
        return True

    def revoke_permission(self, role_id: str, permission_id: str, performed_by: str) -> bool:
        """
        Detach a permission from a role.

        Returns:
            False if the role did not have the permission (nothing is audited)
        """
        self._require_role(role_id)
        permission = self._require_permission(permission_id)
        if not self.store.unlink_permission(role_id, permission_id):
            return False

        logger.info(f"Permission '{permission_id}' revoked from role '{role_id}' by {performed_by}")
        self._audit(
            self.mutation_log.log_permission_revoke,
            role_id, permission_id, permission.resource, permission.action, performed_by
        )
        return True

    # ========================================================================
    # Configuration and security events
    # ========================================================================

    def change_configuration(
        self,
        config_key: str,
        old_value: Any,
        new_value: Any,
        performed_by: str,
        reason: Optional[str] = None
    ) -> Optional[MutationAuditEntry]:
        """Record a system configuration change made by an administrator."""
        logger.info(f"Configuration '{config_key}' changed by {performed_by}")
        return self._audit(
            self.mutation_log.log_configuration_change,
            config_key, old_value, new_value, performed_by, reason
        )

    def record_security_violation(
        self,
        user_id: str,
        violation_type: str,
        details: str,
        severity: Union[Severity, str] = Severity.MEDIUM
    ) -> Optional[MutationAuditEntry]:
        """Record a security violation with caller-supplied severity."""
        logger.warning(f"Security violation by '{user_id}': {violation_type} ({Severity(severity).value})")
        return self._audit(
            self.mutation_log.log_security_violation,
            user_id, violation_type, details, Severity(severity)
        )
