"""Request bodies for the change request endpoints."""

from datetime import date
from typing import List, Literal, Optional
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field


class ChangeRequestFields(BaseModel):
    """Editable change request fields; every field is optional in a patch."""
    model_config = ConfigDict(extra="forbid")

    title: Optional[str] = None
    description: Optional[str] = None
    reason_for_change: Optional[str] = None
    change_type: Optional[Literal["temporary", "permanent", "emergency"]] = None
    change_category: Optional[str] = None
    change_category_other: Optional[str] = None
    risk_assessment_required: Optional[bool] = None
    impact_assessment: Optional[str] = None
    hse_impact_assessment: Optional[str] = None
    risk_evaluation: Optional[str] = None
    risk_level_pre_mitigation: Optional[Literal["low", "medium", "high"]] = None
    risk_matrix_pre_mitigation: Optional[str] = None
    risk_level_post_mitigation: Optional[Literal["low", "medium", "high"]] = None
    risk_matrix_post_mitigation: Optional[str] = None
    pre_change_condition: Optional[str] = None
    post_change_condition: Optional[str] = None
    supporting_documents_notes: Optional[str] = None
    stakeholder_review_approvals_text: Optional[str] = None
    training_required: Optional[bool] = None
    training_details: Optional[str] = None
    start_date_of_change: Optional[date] = None
    expected_completion_date: Optional[date] = None
    deadline: Optional[date] = None
    implementation_owner: Optional[str] = None
    verification_of_completion_text: Optional[str] = None
    post_implementation_review_text: Optional[str] = None
    closeout_approved_by_text: Optional[str] = None
    assigned_to_id: Optional[UUID] = None
    requesting_department_id: Optional[UUID] = None
    departments_affected: Optional[List[UUID]] = None
    technical_authority_approver_ids: Optional[List[UUID]] = None
    closeout_approver_ids: Optional[List[UUID]] = None
    viewer_ids: Optional[List[UUID]] = None


class ChangeRequestCreate(ChangeRequestFields):
    title: str = Field(..., min_length=1)
    description: str = Field(..., min_length=1)


class StatusChangeRequest(BaseModel):
    new_status: str
    comments: Optional[str] = None


class DepartmentVoteRequest(BaseModel):
    department_id: UUID
    decision: Literal["approved", "rejected"]
    comments: Optional[str] = None


class CloseoutVoteRequest(BaseModel):
    decision: Literal["approved", "rejected"]
    comments: Optional[str] = None
