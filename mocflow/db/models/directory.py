"""Directory models: users and departments."""

import uuid
from sqlalchemy import Boolean, Column, DateTime, JSON, String, Text, Uuid
from sqlalchemy.orm import validates

from mocflow.core.clock import utcnow
from mocflow.core.rbac.permissions import is_valid_permission
from mocflow.db.base import Base


class User(Base):
    __tablename__ = "users"

    id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    email = Column(String(255), nullable=False, unique=True, index=True)
    name = Column(String(255), nullable=True)
    is_admin = Column(Boolean, nullable=False, default=False)
    is_approved = Column(Boolean, nullable=False, default=False)
    permissions = Column(JSON, nullable=False, default=list)  # ["change_requests:create", ...]
    created_at = Column(DateTime, default=utcnow)

    @validates("permissions")
    def _validate_permissions(self, key, value):
        for perm in value or []:
            if not is_valid_permission(perm):
                raise ValueError(f"Unknown permission: {perm}")
        return list(value or [])

    @property
    def display_name(self) -> str:
        return self.name or self.email or "Unknown"

    def __repr__(self) -> str:
        return f"<User {self.email}>"


class Department(Base):
    __tablename__ = "departments"

    id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    name = Column(String(255), nullable=False, unique=True)
    description = Column(Text, nullable=True)
    approver_ids = Column(JSON, nullable=False, default=list)  # ordered user ids; first is the default approver
    is_active = Column(Boolean, nullable=False, default=True)
    created_at = Column(DateTime, default=utcnow)

    def __repr__(self) -> str:
        return f"<Department {self.name}>"
