"""User and department lookups used by the workflow engine."""

from dataclasses import dataclass
from typing import Optional
from uuid import UUID

from sqlalchemy.orm import Session

from mocflow.core.errors import NotFoundError
from mocflow.core.ids import IdLike, as_uuid
from mocflow.core.rbac import has_permission
from mocflow.db.models import Department, User

UNKNOWN_USER = "Unknown User"
UNKNOWN_DEPARTMENT = "Unknown Department"


@dataclass(frozen=True)
class UserInfo:
    id: UUID
    display_name: str
    is_admin: bool
    is_approved: bool
    permissions: tuple[str, ...] = ()

    def can(self, permission) -> bool:
        return has_permission(self, permission)


@dataclass(frozen=True)
class DepartmentInfo:
    id: UUID
    name: str
    approver_ids: tuple[str, ...] = ()

    @property
    def default_approver_id(self) -> Optional[UUID]:
        return as_uuid(self.approver_ids[0]) if self.approver_ids else None


class UserDirectory:
    def __init__(self, db: Session):
        self.db = db

    def find(self, user_id: IdLike) -> Optional[UserInfo]:
        user = self.db.get(User, as_uuid(user_id))
        if user is None:
            return None
        return UserInfo(
            id=user.id,
            display_name=user.display_name,
            is_admin=bool(user.is_admin),
            is_approved=bool(user.is_approved),
            permissions=tuple(user.permissions or []),
        )

    def get(self, user_id: IdLike) -> UserInfo:
        user = self.find(user_id)
        if user is None:
            raise NotFoundError(f"User {user_id} not found")
        return user

    def exists_approved(self, user_id: IdLike) -> bool:
        user = self.find(user_id)
        return user is not None and user.is_approved

    def display_name(self, user_id: IdLike) -> str:
        user = self.find(user_id)
        return user.display_name if user else UNKNOWN_USER


class DepartmentDirectory:
    def __init__(self, db: Session):
        self.db = db

    def find(self, department_id: IdLike) -> Optional[DepartmentInfo]:
        department = self.db.get(Department, as_uuid(department_id))
        if department is None:
            return None
        return DepartmentInfo(
            id=department.id,
            name=department.name,
            approver_ids=tuple(department.approver_ids or []),
        )

    def get(self, department_id: IdLike) -> DepartmentInfo:
        department = self.find(department_id)
        if department is None:
            raise NotFoundError(f"Department {department_id} not found")
        return department

    def name(self, department_id: IdLike) -> str:
        department = self.find(department_id)
        return department.name if department else UNKNOWN_DEPARTMENT

    def default_approver(self, department_id: IdLike) -> Optional[UUID]:
        department = self.find(department_id)
        return department.default_approver_id if department else None

    def approved_by(self, user_id: IdLike) -> list[DepartmentInfo]:
        """Active departments listing the user as an approver."""
        key = str(as_uuid(user_id))
        departments = self.db.query(Department).filter(Department.is_active.is_(True)).all()
        return [
            DepartmentInfo(id=d.id, name=d.name, approver_ids=tuple(d.approver_ids or []))
            for d in departments
            if key in (d.approver_ids or [])
        ]


class DisplayResolver:
    """Resolves ids to names for the diff engine and detail views."""

    def __init__(self, users: UserDirectory, departments: DepartmentDirectory):
        self.users = users
        self.departments = departments

    def user_name(self, user_id) -> str:
        return self.users.display_name(user_id)

    def department_name(self, department_id) -> str:
        return self.departments.name(department_id)
