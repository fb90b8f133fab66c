"""Append-only audit trail for change requests."""

import uuid
from sqlalchemy import Column, DateTime, ForeignKey, JSON, String, Text, Uuid
from sqlalchemy.orm import relationship

from mocflow.core.clock import utcnow
from mocflow.db.base import Base


class EditHistoryEntry(Base):
    """
    One material content edit.

    ``field_changes`` holds a list of
    ``{"field_label", "old_value", "new_value", "change_type"}`` dicts.
    """
    __tablename__ = "edit_history"

    id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    change_request_id = Column(
        Uuid(as_uuid=True), ForeignKey("change_requests.id", ondelete="CASCADE"), nullable=False, index=True
    )
    edited_by_id = Column(Uuid(as_uuid=True), ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    edited_by_name = Column(String(255), nullable=False)
    description = Column(Text, nullable=False)
    field_changes = Column(JSON, nullable=False, default=list)
    timestamp = Column(DateTime, nullable=False, default=utcnow, index=True)

    change_request = relationship("ChangeRequest", back_populates="edit_history")

    def __repr__(self) -> str:
        return f"<EditHistoryEntry {self.change_request_id} by {self.edited_by_name}>"


class StatusChange(Base):
    """Records every status transition of a change request."""
    __tablename__ = "status_changes"

    id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    change_request_id = Column(
        Uuid(as_uuid=True), ForeignKey("change_requests.id", ondelete="CASCADE"), nullable=False, index=True
    )
    from_status = Column(String(50), nullable=False)
    to_status = Column(String(50), nullable=False)
    actor_id = Column(Uuid(as_uuid=True), ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    comments = Column(Text, nullable=True)
    created_at = Column(DateTime, nullable=False, default=utcnow, index=True)

    change_request = relationship("ChangeRequest", back_populates="status_history")

    def __repr__(self) -> str:
        return f"<StatusChange {self.from_status} -> {self.to_status}>"
