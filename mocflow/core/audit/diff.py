"""Field-level diff between a stored change request and a proposed patch."""

from dataclasses import asdict, dataclass
from datetime import date, datetime
from enum import Enum
from typing import Any, Mapping, Optional, Protocol

from mocflow.core.clock import EPOCH_MILLIS_THRESHOLD, date_from_epoch_millis

from .fields import (
    DEPARTMENT_KINDS,
    SET_KINDS,
    TRACKED_FIELDS,
    USER_KINDS,
    TrackedField,
    normalize,
)


class ChangeType(str, Enum):
    ADDED = "added"
    CHANGED = "changed"
    REMOVED = "removed"


@dataclass
class FieldChange:
    field_label: str
    old_value: Optional[str]
    new_value: Optional[str]
    change_type: ChangeType

    def to_dict(self) -> dict:
        data = asdict(self)
        data["change_type"] = self.change_type.value
        return data


class NameResolver(Protocol):
    def user_name(self, user_id) -> str: ...

    def department_name(self, department_id) -> str: ...


def format_value(value: Any) -> str:
    """Render a plain field value for display."""
    if value is None:
        return ""
    if isinstance(value, bool):
        return "Yes" if value else "No"
    if isinstance(value, (int, float)) and value > EPOCH_MILLIS_THRESHOLD:
        return date_from_epoch_millis(value).isoformat()
    if isinstance(value, datetime):
        return value.date().isoformat()
    if isinstance(value, date):
        return value.isoformat()
    if isinstance(value, (list, tuple)):
        return ", ".join(format_value(v) for v in value)
    return str(value)


def display_value(field: TrackedField, value: Any, resolver: NameResolver) -> str:
    """Render a field value, resolving identifiers into names."""
    if field.kind in USER_KINDS:
        resolve = resolver.user_name
    elif field.kind in DEPARTMENT_KINDS:
        resolve = resolver.department_name
    else:
        return format_value(value)

    if field.kind in SET_KINDS:
        return ", ".join(resolve(v) for v in value or [])
    return resolve(value) if value else ""


def changed_fields(current: Mapping[str, Any], patch: Mapping[str, Any]) -> list[TrackedField]:
    """Patched fields whose normalized value differs, in registry order."""
    return [
        field for field in TRACKED_FIELDS
        if field.key in patch
        and normalize(field, current.get(field.key)) != normalize(field, patch[field.key])
    ]


def is_material_change(current: Mapping[str, Any], patch: Mapping[str, Any]) -> bool:
    return bool(changed_fields(current, patch))


def compute_field_changes(
    current: Mapping[str, Any],
    patch: Mapping[str, Any],
    resolver: NameResolver,
) -> list[FieldChange]:
    """
    Build the change list for a patch.

    Args:
        current: Stored values keyed by field
        patch: Proposed values keyed by field
        resolver: Resolves user and department ids to display names

    Returns:
        One FieldChange per materially changed field
    """
    changes = []
    for field in changed_fields(current, patch):
        old = display_value(field, current.get(field.key), resolver)
        new = display_value(field, patch[field.key], resolver)
        if not old and new:
            change_type = ChangeType.ADDED
        elif old and not new:
            change_type = ChangeType.REMOVED
        else:
            change_type = ChangeType.CHANGED
        changes.append(FieldChange(field.label, old or None, new or None, change_type))
    return changes


def summarize(changes: list[FieldChange]) -> str:
    return "Updated " + ", ".join(change.field_label for change in changes)
