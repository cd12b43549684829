# Access Control - Core Modules
# Permission resolution, condition evaluation, authorization and audit trail

from .exceptions import (
    AccessControlError,
    StoreError,
    ResolutionError,
    AuditWriteError,
    NotFoundError,
    AccessDeniedError
)
from .store import RoleStore, SqlRoleStore
from .providers import RbacBackedProvider, LegacyDerivedProvider, select_provider
from .resolver import PermissionResolver, Resolution
from .conditions import ConditionEvaluator, ConditionResult
from .audit import AccessAttemptLog, MutationAuditLog
from .engine import AuthorizationEngine
from .admin import AccessAdministrator
from .services import AccessControlServices

__all__ = [
    'AccessControlError',
    'StoreError',
    'ResolutionError',
    'AuditWriteError',
    'NotFoundError',
    'AccessDeniedError',
    'RoleStore',
    'SqlRoleStore',
    'RbacBackedProvider',
    'LegacyDerivedProvider',
    'select_provider',
    'PermissionResolver',
    'Resolution',
    'ConditionEvaluator',
    'ConditionResult',
    'AccessAttemptLog',
    'MutationAuditLog',
    'AuthorizationEngine',
    'AccessAdministrator',
    'AccessControlServices'
]
