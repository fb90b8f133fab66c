"""RBAC (Role-Based Access Control) module for mocflow.

Permission strings gate the operations that are not tied to a workflow
role: creating, editing, viewing and deleting any change request.
"""

from .permissions import Permission, Resource, Action, PERMISSION_DEFINITIONS
from .checker import PermissionChecker, has_permission

__all__ = [
    "Permission",
    "Resource",
    "Action",
    "PERMISSION_DEFINITIONS",
    "PermissionChecker",
    "has_permission",
]
