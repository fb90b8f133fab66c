"""Permission model for mocflow RBAC.

Permission string format: "resource:action"
Examples:
  - change_requests:create
  - change_requests:delete
"""

from enum import Enum
from typing import NamedTuple, FrozenSet


class Resource(str, Enum):
    """Resources that can be protected by permissions."""

    CHANGE_REQUESTS = "change_requests"


class Action(str, Enum):
    """Actions that can be performed on resources."""

    CREATE = "create"
    READ = "read"      # View any request regardless of its viewer list
    UPDATE = "update"  # Edit any request's content
    DELETE = "delete"  # Delete any request in a deletable status


class Permission(NamedTuple):
    """A permission is a combination of resource and action."""
    resource: Resource
    action: Action

    def __str__(self) -> str:
        return f"{self.resource.value}:{self.action.value}"

    @classmethod
    def from_string(cls, perm_str: str) -> "Permission":
        """Parse a permission string like 'change_requests:create'."""
        parts = perm_str.split(":")
        if len(parts) != 2:
            raise ValueError(f"Invalid permission format: {perm_str}")
        return cls(Resource(parts[0]), Action(parts[1]))


PERMISSION_MATRIX: dict[Resource, FrozenSet[Action]] = {
    Resource.CHANGE_REQUESTS: frozenset([
        Action.CREATE, Action.READ, Action.UPDATE, Action.DELETE,
    ]),
}


def _generate_permission_definitions() -> dict[str, Permission]:
    """Generate all valid permission combinations from the matrix."""
    permissions = {}
    for resource, actions in PERMISSION_MATRIX.items():
        for action in actions:
            perm = Permission(resource, action)
            permissions[str(perm)] = perm
    return permissions


# All valid permissions as a dictionary: "resource:action" -> Permission
PERMISSION_DEFINITIONS = _generate_permission_definitions()

CREATE_CHANGE_REQUESTS = Permission(Resource.CHANGE_REQUESTS, Action.CREATE)
VIEW_ANY_CHANGE_REQUEST = Permission(Resource.CHANGE_REQUESTS, Action.READ)
EDIT_ANY_CHANGE_REQUEST = Permission(Resource.CHANGE_REQUESTS, Action.UPDATE)
DELETE_ANY_CHANGE_REQUEST = Permission(Resource.CHANGE_REQUESTS, Action.DELETE)


def is_valid_permission(perm_str: str) -> bool:
    """Check if a permission string is valid."""
    if perm_str == "*:*":
        return True
    if perm_str.endswith(":*"):
        return perm_str[:-2] in {r.value for r in Resource}
    return perm_str in PERMISSION_DEFINITIONS
