"""Registry of the editable, audited change request fields.

The material-change check, the diff engine and patch validation all iterate
this one registry, so they cannot disagree about what a field is or how it
compares.
"""

from datetime import date, datetime
from enum import Enum
from typing import Any, Dict, FrozenSet, NamedTuple, Optional

from mocflow.core.clock import date_from_epoch_millis
from mocflow.core.errors import ValidationError
from mocflow.core.ids import as_optional_uuid, id_list, id_str


class FieldKind(str, Enum):
    TEXT = "text"
    CHOICE = "choice"
    FLAG = "flag"
    DATE = "date"
    USER = "user"
    USER_SET = "user_set"
    DEPARTMENT = "department"
    DEPARTMENT_SET = "department_set"


class TrackedField(NamedTuple):
    key: str
    label: str
    kind: FieldKind = FieldKind.TEXT
    choices: Optional[FrozenSet[str]] = None
    required: bool = False


CHANGE_TYPES = frozenset(["temporary", "permanent", "emergency"])
RISK_LEVELS = frozenset(["low", "medium", "high"])

TRACKED_FIELDS: list[TrackedField] = [
    TrackedField("title", "Title", required=True),
    TrackedField("description", "Description", required=True),
    TrackedField("reason_for_change", "Reason for Change"),
    TrackedField("change_type", "Change Type", FieldKind.CHOICE, CHANGE_TYPES),
    TrackedField("change_category", "Change Category"),
    TrackedField("change_category_other", "Other Category"),
    TrackedField("risk_assessment_required", "Risk Assessment Required", FieldKind.FLAG),
    TrackedField("impact_assessment", "Impact Assessment"),
    TrackedField("hse_impact_assessment", "HSE Impact Assessment"),
    TrackedField("risk_evaluation", "Risk Evaluation"),
    TrackedField("risk_level_pre_mitigation", "Risk Level (Pre-Mitigation)", FieldKind.CHOICE, RISK_LEVELS),
    TrackedField("risk_matrix_pre_mitigation", "Risk Matrix (Pre-Mitigation)"),
    TrackedField("risk_level_post_mitigation", "Risk Level (Post-Mitigation)", FieldKind.CHOICE, RISK_LEVELS),
    TrackedField("risk_matrix_post_mitigation", "Risk Matrix (Post-Mitigation)"),
    TrackedField("pre_change_condition", "Pre-Change Condition"),
    TrackedField("post_change_condition", "Post-Change Condition"),
    TrackedField("supporting_documents_notes", "Supporting Documents Notes"),
    TrackedField("stakeholder_review_approvals_text", "Stakeholder Review & Approvals"),
    TrackedField("training_required", "Training Required", FieldKind.FLAG),
    TrackedField("training_details", "Training Details"),
    TrackedField("start_date_of_change", "Start Date", FieldKind.DATE),
    TrackedField("expected_completion_date", "Expected Completion Date", FieldKind.DATE),
    TrackedField("deadline", "Deadline", FieldKind.DATE),
    TrackedField("implementation_owner", "Implementation Owner"),
    TrackedField("verification_of_completion_text", "Verification of Completion"),
    TrackedField("post_implementation_review_text", "Post-Implementation Review"),
    TrackedField("closeout_approved_by_text", "Closeout Approval"),
    TrackedField("assigned_to_id", "Assigned To", FieldKind.USER),
    TrackedField("technical_authority_approver_ids", "Technical Authority Approvers", FieldKind.USER_SET),
    TrackedField("closeout_approver_ids", "Closeout Approvers", FieldKind.USER_SET),
    TrackedField("requesting_department_id", "Requesting Department", FieldKind.DEPARTMENT),
    TrackedField("departments_affected", "Departments Affected", FieldKind.DEPARTMENT_SET),
    TrackedField("viewer_ids", "Viewers", FieldKind.USER_SET),
]

FIELDS_BY_KEY: Dict[str, TrackedField] = {f.key: f for f in TRACKED_FIELDS}

SET_KINDS = frozenset([FieldKind.USER_SET, FieldKind.DEPARTMENT_SET])
USER_KINDS = frozenset([FieldKind.USER, FieldKind.USER_SET])
DEPARTMENT_KINDS = frozenset([FieldKind.DEPARTMENT, FieldKind.DEPARTMENT_SET])


def get_field(key: str) -> TrackedField:
    """Look up an editable field, raising ValidationError for anything else."""
    field = FIELDS_BY_KEY.get(key)
    if field is None:
        raise ValidationError(f"Field '{key}' cannot be edited")
    return field


def normalize(field: TrackedField, value: Any) -> Any:
    """Comparable form of a stored or proposed value."""
    if field.kind in SET_KINDS:
        return frozenset(id_list(value))
    if value is None or value == "":
        return None
    if field.kind in (FieldKind.USER, FieldKind.DEPARTMENT):
        return id_str(value)
    if field.kind is FieldKind.DATE and isinstance(value, datetime):
        return value.date()
    return value


def coerce(field: TrackedField, value: Any) -> Any:
    """Validate a proposed value and convert it to its stored form."""
    if field.kind in SET_KINDS:
        if value is None:
            return []
        if isinstance(value, (str, bytes)) or not hasattr(value, "__iter__"):
            raise ValidationError(f"{field.label} must be a list")
        return id_list(value)

    if value is None or value == "":
        if field.required:
            raise ValidationError(f"{field.label} is required")
        return None

    if field.kind in (FieldKind.USER, FieldKind.DEPARTMENT):
        return as_optional_uuid(value)
    if field.kind is FieldKind.FLAG:
        if not isinstance(value, bool):
            raise ValidationError(f"{field.label} must be true or false")
        return value
    if field.kind is FieldKind.DATE:
        return _coerce_date(field, value)
    if not isinstance(value, str):
        raise ValidationError(f"{field.label} must be text")
    if field.kind is FieldKind.CHOICE and value not in field.choices:
        raise ValidationError(
            f"{field.label} must be one of: {', '.join(sorted(field.choices))}"
        )
    return value


def _coerce_date(field: TrackedField, value: Any) -> date:
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        return date_from_epoch_millis(value)
    if isinstance(value, str):
        try:
            return date.fromisoformat(value[:10])
        except ValueError:
            pass
    raise ValidationError(f"{field.label} must be a date")


def snapshot(record) -> Dict[str, Any]:
    """Current values of every tracked field on ``record``."""
    return {field.key: getattr(record, field.key) for field in TRACKED_FIELDS}
