"""
auth/rbac.py -- Role-based access control resolver.

A user's effective permission set is the union, over every role assigned to
the user, of that role's granted (resource, action) pairs. It is computed
from two bounded queries (user -> role ids, role ids -> grants) followed by
plain set algebra in effective_permissions(), which is also what the
property tests check the store-backed path against.

has_permission() answers a single question without materialising the set:
an admin-role check, then one EXISTS query.

The role literally named "admin" is a wildcard: its holders pass every
permission check whatever their explicit grants. Renaming that role removes
the bypass.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable

from sqlalchemy.exc import IntegrityError

from auth.models import Permission, Role
from auth.store import AuthStore

logger = logging.getLogger("hostpanel.auth")

ADMIN_ROLE = "admin"
DEFAULT_ROLE = "user"


def effective_permissions(
    role_ids: Iterable[str], grants: Iterable[tuple[str, str, str]]
) -> frozenset[tuple[str, str]]:
    """Union of (resource, action) over grants whose role is in role_ids."""
    held = set(role_ids)
    return frozenset((resource, action) for role_id, resource, action in grants if role_id in held)


def is_authorized(role_names: Iterable[str], permissions: Iterable[tuple[str, str]], resource: str, action: str) -> bool:
    """Pure form of the authorization rule: admin bypass, else an explicit grant."""
    if ADMIN_ROLE in set(role_names):
        return True
    return (resource, action) in set(permissions)


class RBACResolver:
    def __init__(self, store: AuthStore) -> None:
        self.store = store

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def role_names(self, user_id: str) -> list[str]:
        return self.store.role_names_for_user(user_id)

    def permissions_of(self, user_id: str) -> frozenset[tuple[str, str]]:
        role_ids = self.store.role_ids_for_user(user_id)
        if not role_ids:
            return frozenset()
        return effective_permissions(role_ids, self.store.grants_for_roles(role_ids))

    def has_permission(self, user_id: str, resource: str, action: str) -> bool:
        if ADMIN_ROLE in self.store.role_names_for_user(user_id):
            return True
        return self.store.user_has_grant(user_id, resource, action)

    # ------------------------------------------------------------------
    # Administration
    # ------------------------------------------------------------------

    def ensure_role(
        self,
        name: str,
        display_name: str | None = None,
        description: str = "",
        is_system: bool = False,
    ) -> Role:
        """Return the role called name, creating it if absent.

        A concurrent creator winning the insert race shows up as an
        IntegrityError; the row it wrote is then read back.
        """
        role = self.store.get_role_by_name(name)
        if role is not None:
            return role
        try:
            self.store.create_role(
                Role(
                    name=name,
                    display_name=display_name or name.replace("_", " ").title(),
                    description=description,
                    is_system=is_system,
                )
            )
            logger.info("Created role %s", name)
        except IntegrityError:
            logger.debug("Role %s created concurrently", name)
        role = self.store.get_role_by_name(name)
        if role is None:
            raise LookupError(f"Role {name!r} vanished after creation.")
        return role

    def ensure_permission(self, resource: str, action: str, description: str = "") -> Permission:
        permission = self.store.get_permission(resource, action)
        if permission is not None:
            return permission
        try:
            self.store.create_permission(Permission(resource=resource, action=action, description=description))
        except IntegrityError:
            logger.debug("Permission %s.%s created concurrently", resource, action)
        permission = self.store.get_permission(resource, action)
        if permission is None:
            raise LookupError(f"Permission {resource}.{action} vanished after creation.")
        return permission

    def grant(self, role_name: str, resource: str, action: str) -> bool:
        """Grant (resource, action) to an existing role. False if already granted."""
        role = self._require_role(role_name)
        permission = self.ensure_permission(resource, action)
        return self.store.add_role_permission(role.id, permission.id)

    def revoke_grant(self, role_name: str, resource: str, action: str) -> bool:
        role = self._require_role(role_name)
        permission = self.store.get_permission(resource, action)
        if permission is None:
            return False
        return self.store.remove_role_permission(role.id, permission.id)

    def assign_role(self, user_id: str, role_name: str) -> bool:
        """Assign an existing role to a user. False if the user already holds it."""
        role = self._require_role(role_name)
        return self.store.add_user_role(user_id, role.id)

    def remove_role(self, user_id: str, role_name: str) -> bool:
        role = self.store.get_role_by_name(role_name)
        if role is None:
            return False
        return self.store.remove_user_role(user_id, role.id)

    def _require_role(self, role_name: str) -> Role:
        role = self.store.get_role_by_name(role_name)
        if role is None:
            raise LookupError(f"Unknown role {role_name!r}.")
        return role
