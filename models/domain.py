"""
Domain Types for the Permission Engine
======================================

Plain value objects the engine evaluates. They are deliberately decoupled
from the SQLAlchemy tables in ``entities.py``: the store adapter converts
rows into these objects, and the legacy fallback synthesizes them without
touching the database at all.

Enumerations:
- ResourceType / ActionType: what can be protected and which verbs apply
- SystemRoleType: the fixed role kinds the product defines
- ConditionOperator: the predicate operators a PermissionCondition may use
- DenialReason: the fixed denial taxonomy
- AuditEntityType / AuditAction / Severity: mutation audit vocabulary
"""

import enum
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, NamedTuple, Optional, Tuple


def utcnow() -> datetime:
    """Naive UTC timestamp, the representation used throughout storage."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


class ResourceType(str, enum.Enum):
    """Protectable resource kinds."""
    USERS = "users"
    EMPLOYEES = "employees"
    ROLES = "roles"
    PERMISSIONS = "permissions"
    AUDIT_LOGS = "audit_logs"
    SETTINGS = "settings"
    REPORTS = "reports"
    TICKETS = "tickets"
    DEPARTMENTS = "departments"
    NOTIFICATIONS = "notifications"
    ANALYTICS = "analytics"
    FAQ = "faq"


class ActionType(str, enum.Enum):
    """Verbs a permission can grant."""
    CREATE = "create"
    READ = "read"
    UPDATE = "update"
    DELETE = "delete"
    EXPORT = "export"
    ASSIGN = "assign"
    FORWARD = "forward"
    APPROVE = "approve"
    ESCALATE = "escalate"
    REPLY = "reply"
    COMMENT = "comment"


class SystemRoleType(str, enum.Enum):
    """Role kinds with a canonical default permission set."""
    SYSTEM_ADMIN = "system_admin"
    DEPARTMENT_MANAGER = "department_manager"
    PROCESSOR = "processor"
    INQUIRY_OFFICER = "inquiry_officer"
    AUDITOR = "auditor"
    EMPLOYEE = "employee"


class ConditionOperator(str, enum.Enum):
    """Operators understood by the condition evaluator."""
    EQUALS = "eq"
    NOT_EQUALS = "ne"
    IN = "in"
    NOT_IN = "nin"
    GREATER_THAN = "gt"
    GREATER_OR_EQUAL = "gte"
    LESS_THAN = "lt"
    LESS_OR_EQUAL = "lte"
    CONTAINS = "contains"
    NOT_CONTAINS = "not_contains"


class DenialReason(str, enum.Enum):
    """Fixed denial taxonomy. Extend, never rename."""
    SUBJECT_INVALID = "subject not found or inactive"
    NO_PERMISSION = "no permission for resource/action"
    CONDITIONS_NOT_SATISFIED = "conditions not satisfied"
    INTERNAL_ERROR = "internal evaluation error"


class AuditEntityType(str, enum.Enum):
    ROLE = "role"
    USER_ROLE = "user_role"
    ROLE_PERMISSION = "role_permission"
    PERMISSION = "permission"
    SECURITY_EVENT = "security_event"
    CONFIG = "config"
    USER = "user"


class AuditAction(str, enum.Enum):
    CREATE = "create"
    UPDATE = "update"
    ASSIGN = "assign"
    REVOKE = "revoke"


class Severity(str, enum.Enum):
    """Severity of a security event. Supplied by the caller, never inferred."""
    LOW = "LOW"
    MEDIUM = "MEDIUM"
    HIGH = "HIGH"
    CRITICAL = "CRITICAL"


# ============================================================================
# Access model
# ============================================================================

@dataclass(frozen=True)
class PermissionCondition:
    """
    A single predicate over the request context.

    ``value`` may be a literal, a list (for ``in``/``nin``) or a
    self-reference template such as ``@user.department`` that is resolved
    against the authenticated subject at evaluation time.
    """
    field: str
    operator: str
    value: Any
    description: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        data = {'field': self.field, 'operator': self.operator, 'value': self.value}
        if self.description:
            data['description'] = self.description
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "PermissionCondition":
        value = data.get('value')
        if isinstance(value, list):
            value = tuple(value)
        return cls(
            field=data['field'],
            operator=data['operator'],
            value=value,
            description=data.get('description')
        )


@dataclass
class Permission:
    """One grantable capability: a (resource, action) pair plus conditions."""
    id: str
    resource: ResourceType
    action: ActionType
    conditions: List[PermissionCondition] = field(default_factory=list)
    description: str = ""
    is_system_permission: bool = False
    department_scoped: bool = False
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)

    @property
    def key(self) -> Tuple[ResourceType, ActionType]:
        return (self.resource, self.action)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'id': self.id,
            'resource': self.resource.value,
            'action': self.action.value,
            'conditions': [c.to_dict() for c in self.conditions],
            'description': self.description,
            'is_system_permission': self.is_system_permission,
            'department_scoped': self.department_scoped
        }


@dataclass
class Role:
    """A named bundle of permissions assignable to a subject."""
    id: str
    name: str
    type: SystemRoleType
    description: str = ""
    is_active: bool = True
    parent_role_id: Optional[str] = None
    permissions: List[Permission] = field(default_factory=list)
    inherited_permissions: List[Permission] = field(default_factory=list)
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)


@dataclass
class RoleAssignment:
    """
    Link between a subject and a role.

    Inactive or expired assignments are kept for audit and simply ignored
    during resolution.
    """
    user_id: str
    role_id: str
    assigned_by: str
    assigned_at: datetime = field(default_factory=utcnow)
    expires_at: Optional[datetime] = None
    is_active: bool = True

    def is_effective(self, at: Optional[datetime] = None) -> bool:
        """True iff active and not yet expired at ``at`` (default: now)."""
        if not self.is_active:
            return False
        if self.expires_at is None:
            return True
        return self.expires_at > (at or utcnow())


@dataclass
class Subject:
    """The authenticated user whose request is being checked."""
    id: str
    username: str = ""
    full_name: str = ""
    department: Optional[str] = None
    is_active: bool = True
    is_locked: bool = False
    legacy_role: Optional[str] = None
    attributes: Dict[str, Any] = field(default_factory=dict)
    roles: List[Role] = field(default_factory=list)

    @property
    def primary_role_type(self) -> Optional[SystemRoleType]:
        return self.roles[0].type if self.roles else None


# ============================================================================
# Requests and verdicts
# ============================================================================

# Mapping keys accepted by AuthorizationContext.from_mapping, camelCase and
# snake_case alike.
_CONTEXT_KEYS = {
    'department': 'department',
    'departmentId': 'department',
    'department_id': 'department',
    'ownerId': 'owner_id',
    'owner_id': 'owner_id',
    'targetResource': 'target_resource',
    'target_resource': 'target_resource',
    'ipAddress': 'ip_address',
    'ip_address': 'ip_address',
    'userAgent': 'user_agent',
    'user_agent': 'user_agent',
}


@dataclass(frozen=True)
class AuthorizationContext:
    """
    Read-only input to a single permission check.

    ``target_resource`` holds attributes of the object being acted on
    (assignedTo, type, createdBy, ...); ``additional`` holds any other
    caller-supplied attributes.
    """
    user_id: str
    request_time: datetime
    department: Optional[str] = None
    owner_id: Optional[str] = None
    target_resource: Dict[str, Any] = field(default_factory=dict)
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    additional: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_mapping(
        cls,
        user_id: str,
        data: Optional[Dict[str, Any]] = None,
        request_time: Optional[datetime] = None
    ) -> "AuthorizationContext":
        """
        Build a context from a loose attribute bag.

        Known keys populate the named fields; everything else lands in
        ``additional``. ``userId``/``requestTime`` in the bag are ignored,
        the caller-supplied values always win.
        """
        known: Dict[str, Any] = {}
        additional: Dict[str, Any] = {}
        for key, value in (data or {}).items():
            if key in ('userId', 'user_id', 'requestTime', 'request_time'):
                continue
            if key in _CONTEXT_KEYS:
                known[_CONTEXT_KEYS[key]] = value
            elif key == 'additional' and isinstance(value, dict):
                additional.update(value)
            else:
                additional[key] = value

        return cls(
            user_id=user_id,
            request_time=request_time or utcnow(),
            department=known.get('department'),
            owner_id=known.get('owner_id'),
            target_resource=dict(known.get('target_resource') or {}),
            ip_address=known.get('ip_address'),
            user_agent=known.get('user_agent'),
            additional=additional
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            'user_id': self.user_id,
            'request_time': self.request_time.isoformat(),
            'department': self.department,
            'owner_id': self.owner_id,
            'target_resource': dict(self.target_resource or {}),
            'ip_address': self.ip_address,
            'user_agent': self.user_agent,
            'additional': dict(self.additional or {})
        }


@dataclass
class PermissionCheckResult:
    """Verdict of one permission check."""
    granted: bool
    reason: Optional[str] = None
    reason_code: Optional[DenialReason] = None
    matched_permission: Optional[Permission] = None
    failed_conditions: List[PermissionCondition] = field(default_factory=list)
    duration_ms: float = 0.0


# ============================================================================
# Audit records
# ============================================================================

@dataclass(frozen=True)
class AccessAttempt:
    """One logged outcome of a permission check."""
    id: str
    user_id: str
    resource: str
    action: str
    granted: bool
    timestamp: datetime
    reason: Optional[str] = None
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    context: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'id': self.id,
            'user_id': self.user_id,
            'resource': self.resource,
            'action': self.action,
            'granted': self.granted,
            'reason': self.reason,
            'timestamp': self.timestamp.isoformat(),
            'ip_address': self.ip_address,
            'user_agent': self.user_agent,
            'context': self.context
        }


class FieldChange(NamedTuple):
    """One (field, old, new) snapshot inside a mutation audit entry."""
    field: str
    old: Any
    new: Any


@dataclass(frozen=True)
class MutationAuditEntry:
    """One change to the access model, or one security-relevant event."""
    id: str
    entity_type: AuditEntityType
    entity_id: str
    action: AuditAction
    performed_by: str
    changes: Tuple[FieldChange, ...]
    reason: str
    timestamp: datetime
    severity: Optional[Severity] = None
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    hash_prev: str = ""
    hash_curr: str = ""

    @property
    def old_values(self) -> Dict[str, Any]:
        return {c.field: c.old for c in self.changes if c.old is not None}

    @property
    def new_values(self) -> Dict[str, Any]:
        return {c.field: c.new for c in self.changes if c.new is not None}

    def payload(self) -> Dict[str, Any]:
        """Fields covered by the hash chain."""
        return {
            'entity_type': self.entity_type.value,
            'entity_id': self.entity_id,
            'action': self.action.value,
            'performed_by': self.performed_by,
            'changes': [list(c) for c in self.changes],
            'reason': self.reason,
            'severity': self.severity.value if self.severity else None,
            'timestamp': self.timestamp.isoformat()
        }

    def to_dict(self) -> Dict[str, Any]:
        data = self.payload()
        data.update({
            'id': self.id,
            'changes': [c._asdict() for c in self.changes],
            'ip_address': self.ip_address,
            'user_agent': self.user_agent,
            'hash_prev': self.hash_prev,
            'hash_curr': self.hash_curr
        })
        return data
