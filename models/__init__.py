# Access Control - Data Models
# Domain value objects and the SQLAlchemy tables that persist them

from .database import Base, Database
from .domain import (
    ResourceType,
    ActionType,
    SystemRoleType,
    ConditionOperator,
    DenialReason,
    AuditEntityType,
    AuditAction,
    Severity,
    PermissionCondition,
    Permission,
    Role,
    RoleAssignment,
    Subject,
    AuthorizationContext,
    PermissionCheckResult,
    AccessAttempt,
    FieldChange,
    MutationAuditEntry,
    utcnow
)
from .entities import (
    UserRecord,
    RoleRecord,
    PermissionRecord,
    RolePermissionRecord,
    UserRoleRecord,
    AccessAttemptRecord,
    MutationAuditRecord
)

__all__ = [
    'Base',
    'Database',
    'ResourceType',
    'ActionType',
    'SystemRoleType',
    'ConditionOperator',
    'DenialReason',
    'AuditEntityType',
    'AuditAction',
    'Severity',
    'PermissionCondition',
    'Permission',
    'Role',
    'RoleAssignment',
    'Subject',
    'AuthorizationContext',
    'PermissionCheckResult',
    'AccessAttempt',
    'FieldChange',
    'MutationAuditEntry',
    'utcnow',
    'UserRecord',
    'RoleRecord',
    'PermissionRecord',
    'RolePermissionRecord',
    'UserRoleRecord',
    'AccessAttemptRecord',
    'MutationAuditRecord'
]
