"""
Entity Models for the Access Control Store
==========================================

SQLAlchemy tables backing the role/permission store and both audit logs:

Access model:
- Users: subjects whose requests are checked (with a legacy single-role name)
- Roles: named permission bundles with an optional parent role
- Permissions: (resource, action, conditions) tuples
- RolePermission: ordered role -> permission links
- UserRole: role assignments with expiry and an active flag

Audit:
- AccessAttemptRecord: one row per permission check
- MutationAuditRecord: one row per access-model mutation or security event,
  linked into a SHA-256 hash chain

Conditions, attribute bags and change snapshots are stored as JSON text.
"""

from sqlalchemy import (
    Column, Integer, String, DateTime, Boolean,
    ForeignKey, Text
)
from sqlalchemy.orm import relationship

from .database import Base
from .domain import utcnow


# ============================================================================
# Access Model
# ============================================================================

class UserRecord(Base):
    """
    A subject known to the store.

    ``legacy_role`` carries the single role name from before role
    assignments existed; it is only consulted when the user has no
    assignment rows at all.
    """
    __tablename__ = 'users'

    id = Column(String(100), primary_key=True)
    username = Column(String(100), unique=True, nullable=False, index=True)
    full_name = Column(String(255))
    department = Column(String(255))
    legacy_role = Column(String(100))
    is_active = Column(Boolean, default=True, nullable=False)
    is_locked = Column(Boolean, default=False, nullable=False)
    attributes = Column(Text)  # JSON object
    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    roles = relationship("UserRoleRecord", back_populates="user", cascade="all, delete-orphan")

    def __repr__(self):
        return f"<UserRecord(id='{self.id}', username='{self.username}')>"


class RoleRecord(Base):
    """A named collection of permissions, optionally inheriting from a parent."""
    __tablename__ = 'roles'

    id = Column(String(100), primary_key=True)
    name = Column(String(255), nullable=False, index=True)
    type = Column(String(50), nullable=False)
    description = Column(Text)
    is_active = Column(Boolean, default=True, nullable=False)
    parent_role_id = Column(String(100), ForeignKey('roles.id'))
    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    permissions = relationship(
        "RolePermissionRecord",
        back_populates="role",
        cascade="all, delete-orphan",
        order_by="RolePermissionRecord.id"
    )

    def __repr__(self):
        return f"<RoleRecord(id='{self.id}', name='{self.name}', type='{self.type}')>"


class PermissionRecord(Base):
    """One grantable capability. An empty condition list is unconditional."""
    __tablename__ = 'permissions'

    id = Column(String(100), primary_key=True)
    resource = Column(String(50), nullable=False, index=True)
    action = Column(String(50), nullable=False)
    conditions = Column(Text)  # JSON list of {field, operator, value, description}
    description = Column(Text)
    is_system_permission = Column(Boolean, default=False, nullable=False)
    department_scoped = Column(Boolean, default=False, nullable=False)
    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    roles = relationship("RolePermissionRecord", back_populates="permission", cascade="all, delete-orphan")

    def __repr__(self):
        return f"<PermissionRecord(id='{self.id}', {self.action}:{self.resource})>"


class RolePermissionRecord(Base):
    """Association between roles and permissions. Row id gives the order."""
    __tablename__ = 'role_permissions'

    id = Column(Integer, primary_key=True, autoincrement=True)
    role_id = Column(String(100), ForeignKey('roles.id'), nullable=False)
    permission_id = Column(String(100), ForeignKey('permissions.id'), nullable=False)
    granted_at = Column(DateTime, default=utcnow)

    role = relationship("RoleRecord", back_populates="permissions")
    permission = relationship("PermissionRecord", back_populates="roles")

    def __repr__(self):
        return f"<RolePermissionRecord(role_id='{self.role_id}', permission_id='{self.permission_id}')>"


class UserRoleRecord(Base):
    """
    Association between users and roles.

    Rows are never deleted: revocation clears ``is_active`` so the history
    stays available for audit. Row id gives the assignment order.
    """
    __tablename__ = 'user_roles'

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(String(100), ForeignKey('users.id'), nullable=False, index=True)
    role_id = Column(String(100), ForeignKey('roles.id'), nullable=False)
    assigned_by = Column(String(100))
    assigned_at = Column(DateTime, default=utcnow)
    expires_at = Column(DateTime)  # NULL = no expiration
    is_active = Column(Boolean, default=True, nullable=False)

    user = relationship("UserRecord", back_populates="roles")
    role = relationship("RoleRecord")

    def __repr__(self):
        return f"<UserRoleRecord(user_id='{self.user_id}', role_id='{self.role_id}', active={self.is_active})>"


# ============================================================================
# Audit Logging
# ============================================================================

class AccessAttemptRecord(Base):
    """
    Durable copy of one permission check outcome.

    ``seq`` is the insertion order used for oldest-first eviction.
    """
    __tablename__ = 'access_attempts'

    seq = Column(Integer, primary_key=True, autoincrement=True)
    id = Column(String(64), unique=True, nullable=False)
    user_id = Column(String(100), index=True)
    resource = Column(String(50))
    action = Column(String(50))
    granted = Column(Boolean, nullable=False)
    reason = Column(Text)
    timestamp = Column(DateTime, default=utcnow, index=True)
    ip_address = Column(String(45))  # IPv4 or IPv6
    user_agent = Column(String(500))
    context = Column(Text)  # JSON snapshot of the AuthorizationContext

    def __repr__(self):
        return f"<AccessAttemptRecord(user='{self.user_id}', {self.action}:{self.resource}, granted={self.granted})>"


class MutationAuditRecord(Base):
    """
    Durable copy of one mutation audit entry.

    ``hash_curr`` covers the entry payload and ``hash_prev``, so editing or
    removing a row in the middle of the retained window breaks the chain.
    """
    __tablename__ = 'mutation_audit'

    seq = Column(Integer, primary_key=True, autoincrement=True)
    id = Column(String(64), unique=True, nullable=False)
    entity_type = Column(String(50), nullable=False, index=True)
    entity_id = Column(String(255), nullable=False)
    action = Column(String(20), nullable=False)
    performed_by = Column(String(100), index=True)
    changes = Column(Text)  # JSON list of [field, old, new]
    reason = Column(Text)
    severity = Column(String(20))
    timestamp = Column(DateTime, default=utcnow, index=True)
    ip_address = Column(String(45))
    user_agent = Column(String(500))
    hash_prev = Column(String(64))
    hash_curr = Column(String(64), nullable=False)

    def __repr__(self):
        return f"<MutationAuditRecord(entity={self.entity_type}:{self.entity_id}, action='{self.action}')>"
