"""
Role/Permission Store Adapter
=============================

The engine reads subjects, roles and role assignments through the
``RoleStore`` interface and never talks to a database directly. Any read
may fail; failures raise ``StoreError`` so they stay distinguishable from
"not found", which is reported as ``None`` or an empty list.

``SqlRoleStore`` is the SQLAlchemy implementation. Every call opens its own
session, so the store can be shared across threads.
"""

import json
import logging
from abc import ABC, abstractmethod
from contextlib import contextmanager
from datetime import datetime
from typing import Any, Dict, List, Optional, Set

from sqlalchemy.exc import SQLAlchemyError

from models.database import Database
from models.domain import (
    ActionType, Permission, PermissionCondition, ResourceType, Role,
    RoleAssignment, Subject, SystemRoleType, utcnow
)
from models.entities import (
    PermissionRecord, RolePermissionRecord, RoleRecord, UserRecord,
    UserRoleRecord
)
from .exceptions import StoreError

logger = logging.getLogger(__name__)


class RoleStore(ABC):
    """
    Read/write access to the role/permission model.

    Reads are what the engine consumes; writes are used by the
    administrative service, which audits every one of them.
    """

    # ---- reads consumed by the engine ------------------------------------

    @abstractmethod
    def get_subject(self, user_id: str) -> Optional[Subject]:
        """Return the subject, or None if unknown."""

    @abstractmethod
    def get_role_assignments(self, user_id: str) -> List[RoleAssignment]:
        """Every assignment row for the user, active or not, in assignment order."""

    @abstractmethod
    def get_role(self, role_id: str) -> Optional[Role]:
        """Return the role with direct and inherited permissions, or None."""

    @abstractmethod
    def get_legacy_role_name(self, user_id: str) -> Optional[str]:
        """The subject's single legacy role name, if any."""

    def get_active_role_assignments(
        self,
        user_id: str,
        at: Optional[datetime] = None
    ) -> List[RoleAssignment]:
        """Assignments that are active and unexpired at ``at`` (default: now)."""
        at = at or utcnow()
        return [a for a in self.get_role_assignments(user_id) if a.is_effective(at)]

    # ---- writes used by administration -----------------------------------

    @abstractmethod
    def save_subject(self, subject: Subject) -> Subject:
        """Insert or update a subject."""

    @abstractmethod
    def set_subject_flags(
        self,
        user_id: str,
        is_active: Optional[bool] = None,
        is_locked: Optional[bool] = None
    ) -> Optional[Subject]:
        """Change account flags; returns the updated subject or None if unknown."""

    @abstractmethod
    def add_role(self, role: Role) -> Role:
        """Persist a new role (without permissions)."""

    @abstractmethod
    def update_role(self, role_id: str, changes: Dict[str, Any]) -> Optional[Role]:
        """Apply attribute changes to a role; returns the updated role or None."""

    @abstractmethod
    def add_permission(self, permission: Permission) -> Permission:
        """Persist a new permission."""

    @abstractmethod
    def get_permission(self, permission_id: str) -> Optional[Permission]:
        """Return the permission, or None."""

    @abstractmethod
    def link_permission(self, role_id: str, permission_id: str) -> bool:
        """Attach a permission to a role; False if it was already attached."""

    @abstractmethod
    def unlink_permission(self, role_id: str, permission_id: str) -> bool:
        """Detach a permission from a role; False if it was not attached."""

    @abstractmethod
    def add_role_assignment(self, assignment: RoleAssignment) -> RoleAssignment:
        """Persist a new assignment row."""

    @abstractmethod
    def deactivate_role_assignment(self, user_id: str, role_id: str) -> Optional[RoleAssignment]:
        """Clear ``is_active`` on the user's active assignment of the role."""

    # ---- listings --------------------------------------------------------

    @abstractmethod
    def list_subjects(self) -> List[Subject]:
        """All subjects."""

    @abstractmethod
    def list_roles(self) -> List[Role]:
        """All roles with their permissions."""


# ============================================================================
# SQLAlchemy implementation
# ============================================================================

def _dump(value: Any) -> Optional[str]:
    return json.dumps(value, ensure_ascii=False, default=str) if value else None


def _load(text: Optional[str], default):
    return json.loads(text) if text else default


class SqlRoleStore(RoleStore):
    """
    RoleStore backed by the SQLAlchemy tables in ``models.entities``.

    Database errors are logged and re-raised as ``StoreError``.
    """

    def __init__(self, database: Database):
        self.database = database

    @contextmanager
    def _session(self, operation: str):
        try:
            with self.database.get_session() as session:
                yield session
        except SQLAlchemyError as e:
            logger.error(f"Store operation '{operation}' failed: {e}")
            raise StoreError(f"{operation} failed: {e}") from e

    # ---- conversions -----------------------------------------------------

    @staticmethod
    def _to_subject(record: UserRecord) -> Subject:
        return Subject(
            id=record.id,
            username=record.username,
            full_name=record.full_name or "",
            department=record.department,
            is_active=bool(record.is_active),
            is_locked=bool(record.is_locked),
            legacy_role=record.legacy_role,
            attributes=_load(record.attributes, {})
        )

    @staticmethod
    def _to_permission(record: PermissionRecord) -> Permission:
        return Permission(
            id=record.id,
            resource=ResourceType(record.resource),
            action=ActionType(record.action),
            conditions=[PermissionCondition.from_dict(c) for c in _load(record.conditions, [])],
            description=record.description or "",
            is_system_permission=bool(record.is_system_permission),
            department_scoped=bool(record.department_scoped),
            created_at=record.created_at,
            updated_at=record.updated_at
        )

    @staticmethod
    def _to_assignment(record: UserRoleRecord) -> RoleAssignment:
        return RoleAssignment(
            user_id=record.user_id,
            role_id=record.role_id,
            assigned_by=record.assigned_by or "",
            assigned_at=record.assigned_at,
            expires_at=record.expires_at,
            is_active=bool(record.is_active)
        )

    def _direct_permissions(self, record: RoleRecord) -> List[Permission]:
        return [self._to_permission(rp.permission) for rp in record.permissions if rp.permission]

    def _inherited_permissions(
        self,
        session,
        role: RoleRecord,
        visited: Optional[Set[str]] = None
    ) -> List[Permission]:
        """
        Permissions of the role's ancestors, nearest parent first.

        Handles circular parent references through visited set tracking.
        Inactive ancestors contribute nothing but their own parents still do.
        """
        if visited is None:
            visited = set()
        visited.add(role.id)

        if not role.parent_role_id or role.parent_role_id in visited:
            return []

        parent = session.get(RoleRecord, role.parent_role_id)
        if parent is None:
            return []

        inherited = self._direct_permissions(parent) if parent.is_active else []
        inherited.extend(self._inherited_permissions(session, parent, visited))
        return inherited

    def _to_role(self, session, record: RoleRecord) -> Role:
        return Role(
            id=record.id,
            name=record.name,
            type=SystemRoleType(record.type),
            description=record.description or "",
            is_active=bool(record.is_active),
            parent_role_id=record.parent_role_id,
            permissions=self._direct_permissions(record),
            inherited_permissions=self._inherited_permissions(session, record),
            created_at=record.created_at,
            updated_at=record.updated_at
        )

    # ---- reads -----------------------------------------------------------

    def get_subject(self, user_id: str) -> Optional[Subject]:
        with self._session("get_subject") as session:
            record = session.get(UserRecord, user_id)
            return self._to_subject(record) if record else None

    def get_role_assignments(self, user_id: str) -> List[RoleAssignment]:
        with self._session("get_role_assignments") as session:
            records = session.query(UserRoleRecord).filter(
                UserRoleRecord.user_id == user_id
            ).order_by(UserRoleRecord.id).all()
            return [self._to_assignment(r) for r in records]

    def get_role(self, role_id: str) -> Optional[Role]:
        with self._session("get_role") as session:
            record = session.get(RoleRecord, role_id)
            return self._to_role(session, record) if record else None

    def get_legacy_role_name(self, user_id: str) -> Optional[str]:
        with self._session("get_legacy_role_name") as session:
            record = session.get(UserRecord, user_id)
            return record.legacy_role if record else None

    def get_permission(self, permission_id: str) -> Optional[Permission]:
        with self._session("get_permission") as session:
            record = session.get(PermissionRecord, permission_id)
            return self._to_permission(record) if record else None

    def list_subjects(self) -> List[Subject]:
        with self._session("list_subjects") as session:
            return [self._to_subject(r) for r in session.query(UserRecord).order_by(UserRecord.username).all()]

    def list_roles(self) -> List[Role]:
        with self._session("list_roles") as session:
            records = session.query(RoleRecord).order_by(RoleRecord.created_at, RoleRecord.id).all()
            return [self._to_role(session, r) for r in records]

    # ---- writes ----------------------------------------------------------

    def save_subject(self, subject: Subject) -> Subject:
        with self._session("save_subject") as session:
            record = session.get(UserRecord, subject.id)
            if record is None:
                record = UserRecord(id=subject.id)
                session.add(record)
            record.username = subject.username or subject.id
            record.full_name = subject.full_name
            record.department = subject.department
            record.legacy_role = subject.legacy_role
            record.is_active = subject.is_active
            record.is_locked = subject.is_locked
            record.attributes = _dump(subject.attributes)
            session.flush()
            return self._to_subject(record)

    def set_subject_flags(
        self,
        user_id: str,
        is_active: Optional[bool] = None,
        is_locked: Optional[bool] = None
    ) -> Optional[Subject]:
        with self._session("set_subject_flags") as session:
            record = session.get(UserRecord, user_id)
            if record is None:
                return None
            if is_active is not None:
                record.is_active = is_active
            if is_locked is not None:
                record.is_locked = is_locked
            session.flush()
            return self._to_subject(record)

    def add_role(self, role: Role) -> Role:
        with self._session("add_role") as session:
            record = RoleRecord(
                id=role.id,
                name=role.name,
                type=role.type.value,
                description=role.description,
                is_active=role.is_active,
                parent_role_id=role.parent_role_id,
                created_at=role.created_at,
                updated_at=role.updated_at
            )
            session.add(record)
            session.flush()
            return self._to_role(session, record)

    def update_role(self, role_id: str, changes: Dict[str, Any]) -> Optional[Role]:
        with self._session("update_role") as session:
            record = session.get(RoleRecord, role_id)
            if record is None:
                return None
            for name, value in changes.items():
                if name == 'type':
                    value = SystemRoleType(value).value
                setattr(record, name, value)
            record.updated_at = utcnow()
            session.flush()
            return self._to_role(session, record)

    def add_permission(self, permission: Permission) -> Permission:
        with self._session("add_permission") as session:
            record = PermissionRecord(
                id=permission.id,
                resource=permission.resource.value,
                action=permission.action.value,
                conditions=_dump([c.to_dict() for c in permission.conditions]),
                description=permission.description,
                is_system_permission=permission.is_system_permission,
                department_scoped=permission.department_scoped,
                created_at=permission.created_at,
                updated_at=permission.updated_at
            )
            session.add(record)
            session.flush()
            return self._to_permission(record)

    def link_permission(self, role_id: str, permission_id: str) -> bool:
        with self._session("link_permission") as session:
            existing = session.query(RolePermissionRecord).filter(
                RolePermissionRecord.role_id == role_id,
                RolePermissionRecord.permission_id == permission_id
            ).first()
            if existing:
                return False
            session.add(RolePermissionRecord(role_id=role_id, permission_id=permission_id))
            return True

    def unlink_permission(self, role_id: str, permission_id: str) -> bool:
        with self._session("unlink_permission") as session:
            result = session.query(RolePermissionRecord).filter(
                RolePermissionRecord.role_id == role_id,
                RolePermissionRecord.permission_id == permission_id
            ).delete()
            return result > 0

    def add_role_assignment(self, assignment: RoleAssignment) -> RoleAssignment:
        with self._session("add_role_assignment") as session:
            record = UserRoleRecord(
                user_id=assignment.user_id,
                role_id=assignment.role_id,
                assigned_by=assignment.assigned_by,
                assigned_at=assignment.assigned_at,
                expires_at=assignment.expires_at,
                is_active=assignment.is_active
            )
            session.add(record)
            session.flush()
            return self._to_assignment(record)

    def deactivate_role_assignment(self, user_id: str, role_id: str) -> Optional[RoleAssignment]:
        with self._session("deactivate_role_assignment") as session:
            record = session.query(UserRoleRecord).filter(
                UserRoleRecord.user_id == user_id,
                UserRoleRecord.role_id == role_id,
                UserRoleRecord.is_active.is_(True)
            ).order_by(UserRoleRecord.id).first()
            if record is None:
                return None
            record.is_active = False
            session.flush()
            return self._to_assignment(record)
