"""
Authorization Engine
====================

The single entry point for permission checks.

A check resolves the subject's effective permissions, selects the one
permission matching the requested (resource, action) and evaluates its
conditions against the request context:

1. Subject missing or inactive   -> deny, "subject not found or inactive"
2. No matching permission         -> deny, "no permission for resource/action"
3. Conditions fail                -> deny, "conditions not satisfied"
4. Conditions pass                -> grant, with the matched permission
5. Anything unexpected            -> deny, "internal evaluation error: <message>"

``check_permission`` never raises. Every call appends exactly one entry to
the access attempt log; a failed append is reported on the error log and
never changes the verdict.
"""

import enum
import logging
import time
from dataclasses import replace
from typing import Any, Dict, List, Mapping, Optional, Union

from models.domain import (
    ActionType, AuthorizationContext, DenialReason, Permission,
    PermissionCheckResult, ResourceType, utcnow
)
from .audit import AccessAttemptLog
from .conditions import ConditionEvaluator
from .exceptions import AccessDeniedError, AuditWriteError
from .resolver import PermissionResolver
from .store import RoleStore

logger = logging.getLogger(__name__)

ContextLike = Union[AuthorizationContext, Mapping[str, Any], None]


def _value(item: Any) -> str:
    return item.value if isinstance(item, enum.Enum) else str(item)


class AuthorizationEngine:
    """
    Grant/deny decisions for (subject, resource, action, context).

    The engine keeps no per-call state; concurrent checks only share the
    attempt log, which serializes its own appends.
    """

    def __init__(
        self,
        store: RoleStore,
        attempt_log: AccessAttemptLog,
        resolver: Optional[PermissionResolver] = None,
        evaluator: Optional[ConditionEvaluator] = None
    ):
        """
        Initialize the engine.

        Args:
            store: Role/permission store adapter
            attempt_log: Log receiving one entry per check
            resolver: Permission resolver (default: one over ``store``)
            evaluator: Condition evaluator
        """
        self.store = store
        self.attempt_log = attempt_log
        self.resolver = resolver or PermissionResolver(store)
        self.evaluator = evaluator or ConditionEvaluator()

    def _build_context(self, user_id: str, context: ContextLike) -> AuthorizationContext:
        """Stamp the request with the checked user and the current time."""
        if isinstance(context, AuthorizationContext):
            return replace(
                context,
                user_id=user_id,
                request_time=utcnow(),
                target_resource=context.target_resource or {},
                additional=context.additional or {}
            )
        return AuthorizationContext.from_mapping(user_id, dict(context or {}), utcnow())

    def check_permission(
        self,
        user_id: str,
        resource: Union[ResourceType, str],
        action: Union[ActionType, str],
        context: ContextLike = None
    ) -> PermissionCheckResult:
        """
        Check whether a subject may perform an action on a resource.

        Args:
            user_id: Subject identifier
            resource: Resource kind
            action: Action kind
            context: AuthorizationContext, or a plain attribute mapping
                (department, ownerId, targetResource, ipAddress, ...)

        Returns:
            PermissionCheckResult; ``reason`` is set iff not granted
        """
        started = time.perf_counter()
        ctx = None
        try:
            ctx = self._build_context(user_id, context)
            result = self._evaluate(user_id, resource, action, ctx)
        except Exception as e:
            logger.exception(f"Permission check failed for '{user_id}' on {_value(action)}:{_value(resource)}")
            result = PermissionCheckResult(
                granted=False,
                reason=f"{DenialReason.INTERNAL_ERROR.value}: {e}",
                reason_code=DenialReason.INTERNAL_ERROR
            )

        result.duration_ms = (time.perf_counter() - started) * 1000
        self._record_attempt(user_id, resource, action, result, ctx)
        return result

    def _evaluate(
        self,
        user_id: str,
        resource: Union[ResourceType, str],
        action: Union[ActionType, str],
        context: AuthorizationContext
    ) -> PermissionCheckResult:
        resolution = self.resolver.resolve(user_id, at=context.request_time)
        if not resolution.subject_valid:
            return self._deny(DenialReason.SUBJECT_INVALID)

        permission = resolution.find(resource, action)
        if permission is None:
            return self._deny(DenialReason.NO_PERMISSION)

        outcome = self.evaluator.evaluate(permission.conditions, context, resolution.subject)
        if not outcome.passed:
            result = self._deny(DenialReason.CONDITIONS_NOT_SATISFIED)
            result.failed_conditions = outcome.failed_conditions
            return result

        return PermissionCheckResult(granted=True, matched_permission=permission)

    @staticmethod
    def _deny(reason: DenialReason) -> PermissionCheckResult:
        return PermissionCheckResult(granted=False, reason=reason.value, reason_code=reason)

    def _record_attempt(
        self,
        user_id: str,
        resource: Any,
        action: Any,
        result: PermissionCheckResult,
        context: Optional[AuthorizationContext]
    ) -> None:
        try:
            self.attempt_log.record(
                user_id=user_id,
                resource=_value(resource),
                action=_value(action),
                granted=result.granted,
                reason=result.reason,
                context=context
            )
        except AuditWriteError:
            logger.exception(f"Access attempt for '{user_id}' was not recorded")
        except Exception:
            logger.exception(f"Unexpected error recording access attempt for '{user_id}'")

    def has_permission(
        self,
        user_id: str,
        resource: Union[ResourceType, str],
        action: Union[ActionType, str],
        context: ContextLike = None
    ) -> bool:
        """Boolean form of ``check_permission``."""
        return self.check_permission(user_id, resource, action, context).granted

    def require_permission(
        self,
        user_id: str,
        resource: Union[ResourceType, str],
        action: Union[ActionType, str],
        context: ContextLike = None
    ) -> PermissionCheckResult:
        """
        Like ``check_permission`` but raises when not granted.

        Raises:
            AccessDeniedError: Carrying the denial reason and full result
        """
        result = self.check_permission(user_id, resource, action, context)
        if not result.granted:
            raise AccessDeniedError(result.reason, reason_code=result.reason_code, result=result)
        return result

    # ---- access reviews --------------------------------------------------

    def get_effective_permissions(self, user_id: str) -> List[Permission]:
        """Effective permissions in first-seen order; empty for invalid subjects."""
        return self.resolver.get_effective_permissions(user_id)

    def summarize_subject(self, user_id: str) -> Dict[str, Any]:
        """
        Describe what a subject can do, for access reviews.

        Returns:
            Dictionary with the subject, the role source (rbac/legacy),
            its roles and its effective permissions
        """
        resolution = self.resolver.resolve(user_id)
        subject = resolution.subject
        return {
            'user_id': user_id,
            'valid': resolution.subject_valid,
            'username': subject.username if subject else None,
            'department': subject.department if subject else None,
            'source': resolution.source,
            'roles': [
                {'id': role.id, 'name': role.name, 'type': role.type.value}
                for role in resolution.roles
            ],
            'permissions': [p.to_dict() for p in resolution.permissions]
        }
