"""
Role Assignment Providers
=========================

Where a subject's roles come from is decided once per resolution:

- RbacBackedProvider: the subject has role assignment rows; roles are the
  active, unexpired assignments' roles in assignment order.
- LegacyDerivedProvider: the subject has no assignment rows at all; a single
  synthetic role is derived from the legacy role name through the system
  role permission table.

A subject whose assignments all expired or were revoked stays RBAC-backed
(with no roles); it never falls back to its legacy role.
"""

from datetime import datetime
from typing import List, Optional

from models.domain import Role, utcnow
from .policy import legacy_role
from .store import RoleStore


class RoleAssignmentProvider:
    """Supplies the ordered roles a subject currently holds."""

    source = "none"

    def roles(self) -> List[Role]:
        raise NotImplementedError


class RbacBackedProvider(RoleAssignmentProvider):
    """Roles from first-class role assignments."""

    source = "rbac"

    def __init__(self, store: RoleStore, user_id: str, at: Optional[datetime] = None):
        self.store = store
        self.user_id = user_id
        self.at = at or utcnow()

    def roles(self) -> List[Role]:
        roles = []
        for assignment in self.store.get_active_role_assignments(self.user_id, self.at):
            role = self.store.get_role(assignment.role_id)
            if role is not None and role.is_active:
                roles.append(role)
        return roles


class LegacyDerivedProvider(RoleAssignmentProvider):
    """One synthetic role derived from a legacy single-role name."""

    source = "legacy"

    def __init__(self, role_name: Optional[str]):
        self.role_name = role_name

    def roles(self) -> List[Role]:
        if not self.role_name:
            return []
        return [legacy_role(self.role_name)]


def select_provider(store: RoleStore, user_id: str, at: Optional[datetime] = None) -> RoleAssignmentProvider:
    """
    Pick the provider for a subject.

    Any assignment row, even an expired or revoked one, selects the RBAC
    provider; only subjects never migrated to role assignments use their
    legacy role.
    """
    if store.get_role_assignments(user_id):
        return RbacBackedProvider(store, user_id, at)
    return LegacyDerivedProvider(store.get_legacy_role_name(user_id))
