"""Field registry, diff engine and audit trail for change requests."""

from .fields import TRACKED_FIELDS, FIELDS_BY_KEY, FieldKind, TrackedField
from .diff import ChangeType, FieldChange, compute_field_changes, format_value, is_material_change
from .recorder import AuditRecorder

__all__ = [
    "TRACKED_FIELDS",
    "FIELDS_BY_KEY",
    "FieldKind",
    "TrackedField",
    "ChangeType",
    "FieldChange",
    "compute_field_changes",
    "format_value",
    "is_material_change",
    "AuditRecorder",
]
