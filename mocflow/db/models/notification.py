"""In-app notification records."""

import uuid
from enum import Enum
from sqlalchemy import Boolean, Column, DateTime, ForeignKey, String, Text, Uuid

from mocflow.core.clock import utcnow
from mocflow.db.base import Base


class NotificationType(str, Enum):
    """Kinds of notification a user can receive."""
    STATUS_CHANGE = "status_change"
    DEPARTMENT_ACTION = "department_action"


class Notification(Base):
    """A message delivered to one user's inbox."""
    __tablename__ = "notifications"

    id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    recipient_id = Column(
        Uuid(as_uuid=True), ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True
    )
    actor_id = Column(Uuid(as_uuid=True), ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    # No FK: notifications are removed explicitly when their request is deleted.
    change_request_id = Column(Uuid(as_uuid=True), nullable=True, index=True)
    related_title = Column(String(500), nullable=True)
    type = Column(String(50), nullable=False)
    message = Column(Text, nullable=False)
    is_read = Column(Boolean, nullable=False, default=False)
    created_at = Column(DateTime, nullable=False, default=utcnow, index=True)

    def __repr__(self) -> str:
        return f"<Notification {self.type} -> {self.recipient_id}>"
