"""Change request models.

A change request carries its workflow status, the per-department approval
rows, and the ballot boxes for the technical-authority and closeout panels.
JSON columns are always reassigned, never mutated in place, so the ORM sees
every change.
"""

import uuid
from sqlalchemy import (
    Boolean, Column, Date, DateTime, ForeignKey, Integer, JSON, String, Text, Uuid,
)
from sqlalchemy.orm import relationship

from mocflow.core.clock import utcnow
from mocflow.db.base import Base


class ChangeRequest(Base):
    """A Management-of-Change request."""
    __tablename__ = "change_requests"

    id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    sequence_number = Column(Integer, nullable=False, unique=True)
    display_id = Column(String(50), nullable=False, unique=True)

    # Ownership
    submitter_id = Column(Uuid(as_uuid=True), ForeignKey("users.id"), nullable=False, index=True)
    assigned_to_id = Column(Uuid(as_uuid=True), ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    requesting_department_id = Column(
        Uuid(as_uuid=True), ForeignKey("departments.id", ondelete="SET NULL"), nullable=True
    )

    # Workflow state
    status = Column(String(50), nullable=False, default="draft", index=True)

    # Approval structures (id lists hold canonical uuid strings)
    departments_affected = Column(JSON, nullable=False, default=list)
    technical_authority_approver_ids = Column(JSON, nullable=False, default=list)
    technical_authority_approvals = Column(JSON, nullable=False, default=dict)  # {user_id: "approved"|"rejected"}
    closeout_approver_ids = Column(JSON, nullable=False, default=list)
    closeout_approvals = Column(JSON, nullable=False, default=dict)
    viewer_ids = Column(JSON, nullable=False, default=list)

    # Review metadata
    date_raised = Column(DateTime, nullable=False, default=utcnow)
    submitted_at = Column(DateTime, nullable=True)
    reviewed_at = Column(DateTime, nullable=True)
    reviewer_id = Column(Uuid(as_uuid=True), ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    review_comments = Column(Text, nullable=True)

    # Content
    title = Column(String(500), nullable=False)
    description = Column(Text, nullable=False)
    reason_for_change = Column(Text, nullable=True)
    change_type = Column(String(20), nullable=True)  # temporary, permanent, emergency
    change_category = Column(String(255), nullable=True)
    change_category_other = Column(String(255), nullable=True)
    risk_assessment_required = Column(Boolean, nullable=True)
    impact_assessment = Column(Text, nullable=True)
    hse_impact_assessment = Column(Text, nullable=True)
    risk_evaluation = Column(Text, nullable=True)
    risk_level_pre_mitigation = Column(String(10), nullable=True)  # low, medium, high
    risk_matrix_pre_mitigation = Column(Text, nullable=True)
    risk_level_post_mitigation = Column(String(10), nullable=True)
    risk_matrix_post_mitigation = Column(Text, nullable=True)
    pre_change_condition = Column(Text, nullable=True)
    post_change_condition = Column(Text, nullable=True)
    supporting_documents_notes = Column(Text, nullable=True)
    stakeholder_review_approvals_text = Column(Text, nullable=True)
    training_required = Column(Boolean, nullable=True)
    training_details = Column(Text, nullable=True)
    start_date_of_change = Column(Date, nullable=True)
    expected_completion_date = Column(Date, nullable=True)
    deadline = Column(Date, nullable=True)
    implementation_owner = Column(String(255), nullable=True)
    verification_of_completion_text = Column(Text, nullable=True)
    post_implementation_review_text = Column(Text, nullable=True)
    closeout_approved_by_text = Column(Text, nullable=True)

    # Optimistic concurrency guard
    version = Column(Integer, nullable=False)

    created_at = Column(DateTime, default=utcnow, index=True)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    department_approvals = relationship(
        "DepartmentApproval",
        back_populates="change_request",
        order_by="DepartmentApproval.position",
        cascade="all, delete-orphan",
    )
    edit_history = relationship(
        "EditHistoryEntry",
        back_populates="change_request",
        cascade="all, delete-orphan",
    )
    status_history = relationship(
        "StatusChange",
        back_populates="change_request",
        order_by="StatusChange.created_at",
        cascade="all, delete-orphan",
    )

    __mapper_args__ = {"version_id_col": version}

    def __repr__(self) -> str:
        return f"<ChangeRequest {self.display_id} [{self.status}]>"


class DepartmentApproval(Base):
    """One department's sign-off on a change request."""
    __tablename__ = "department_approvals"

    id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    change_request_id = Column(
        Uuid(as_uuid=True), ForeignKey("change_requests.id", ondelete="CASCADE"), nullable=False, index=True
    )
    position = Column(Integer, nullable=False, default=0)
    department_id = Column(Uuid(as_uuid=True), ForeignKey("departments.id"), nullable=False)
    status = Column(String(20), nullable=False, default="pending")  # pending, approved, rejected
    approver_id = Column(Uuid(as_uuid=True), ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    approved_at = Column(DateTime, nullable=True)
    comments = Column(Text, nullable=True)

    change_request = relationship("ChangeRequest", back_populates="department_approvals")

    def __repr__(self) -> str:
        return f"<DepartmentApproval {self.department_id} [{self.status}]>"
