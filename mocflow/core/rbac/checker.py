"""Permission checking utilities for mocflow."""

from typing import List, Union

from .permissions import Permission


class PermissionChecker:
    """Checks if a user holds specific permissions."""

    def __init__(self, user_permissions: list[str]):
        self.permissions = set(user_permissions)

    def has_permission(self, permission: Union[str, Permission]) -> bool:
        """Check if user has a specific permission."""
        perm_str = str(permission) if isinstance(permission, Permission) else permission

        if perm_str in self.permissions:
            return True

        # Check for wildcard permission on resource
        if ":" in perm_str:
            resource = perm_str.split(":")[0]
            if f"{resource}:*" in self.permissions:
                return True
            # Global admin wildcard
            if "*:*" in self.permissions:
                return True

        return False

    def has_any_permission(self, permissions: List[Union[str, Permission]]) -> bool:
        """Check if user has any of the given permissions."""
        return any(self.has_permission(p) for p in permissions)


def has_permission(user, permission: Union[str, Permission]) -> bool:
    """
    Check if a user has a specific permission.

    Administrators hold every permission.

    Args:
        user: Object exposing ``is_admin`` and ``permissions``
        permission: Permission string or Permission object

    Returns:
        True if user has the permission
    """
    if not user:
        return False
    if user.is_admin:
        return True

    checker = PermissionChecker(list(user.permissions or []))
    return checker.has_permission(permission)
