"""
Permission Resolver
===================

Turns a user id into the subject's effective permission set:

1. Fetch the subject; a missing or inactive subject resolves to nothing.
2. Select a role provider (role assignments, or the legacy role fallback).
3. Concatenate each role's direct then inherited permissions, in role order.
4. Keep exactly one permission per (resource, action): the first one seen.
   Later duplicates are dropped without merging their conditions.

Store failures surface as ``ResolutionError``, never as an empty result.
"""

from dataclasses import dataclass, field, replace
from datetime import datetime
from typing import Dict, List, Optional, Tuple

from models.domain import ActionType, Permission, ResourceType, Role, Subject, utcnow
from .exceptions import ResolutionError, StoreError
from .providers import select_provider
from .store import RoleStore


@dataclass
class Resolution:
    """Outcome of resolving one subject."""
    subject: Optional[Subject]
    source: str = "none"
    roles: List[Role] = field(default_factory=list)
    permissions: List[Permission] = field(default_factory=list)

    @property
    def subject_valid(self) -> bool:
        return self.subject is not None and self.subject.is_active

    def find(self, resource: ResourceType, action: ActionType) -> Optional[Permission]:
        for permission in self.permissions:
            if permission.resource == resource and permission.action == action:
                return permission
        return None


def effective_permissions(roles: List[Role]) -> List[Permission]:
    """
    Deduplicate the roles' permissions by (resource, action), first seen wins.

    The returned list keeps first-insertion order.
    """
    unique: Dict[Tuple[ResourceType, ActionType], Permission] = {}
    for role in roles:
        for permission in list(role.permissions) + list(role.inherited_permissions):
            if permission.key not in unique:
                unique[permission.key] = permission
    return list(unique.values())


class PermissionResolver:
    """Resolves subjects and their effective permissions through a RoleStore."""

    def __init__(self, store: RoleStore):
        self.store = store

    def get_subject(self, user_id: str) -> Optional[Subject]:
        """The subject if it exists and is active, else None."""
        try:
            subject = self.store.get_subject(user_id)
        except StoreError as e:
            raise ResolutionError(f"Could not load subject '{user_id}': {e.message}") from e
        if subject is None or not subject.is_active:
            return None
        return subject

    def resolve(self, user_id: str, at: Optional[datetime] = None) -> Resolution:
        """
        Resolve a subject, its roles and its effective permissions.

        Args:
            user_id: Opaque subject identifier
            at: Point in time for assignment expiry (default: now)

        Returns:
            Resolution; ``subject`` is None when the subject is missing or inactive
        """
        subject = self.get_subject(user_id)
        if subject is None:
            return Resolution(subject=None)

        try:
            provider = select_provider(self.store, user_id, at or utcnow())
            roles = provider.roles()
        except StoreError as e:
            raise ResolutionError(f"Could not resolve roles for '{user_id}': {e.message}") from e

        return Resolution(
            subject=replace(subject, roles=roles),
            source=provider.source,
            roles=roles,
            permissions=effective_permissions(roles)
        )

    def get_effective_permissions(self, user_id: str) -> List[Permission]:
        """Effective permissions only; empty for a missing or inactive subject."""
        return self.resolve(user_id).permissions
