"""Notification inbox API endpoints."""

from typing import List
from uuid import UUID

from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from mocflow.api.deps import get_current_user, get_db
from mocflow.api.schemas.common import SuccessResponse
from mocflow.services.directory import UserInfo
from mocflow.services.notifications import NotificationService

router = APIRouter(prefix="/notifications", tags=["notifications"])


@router.get("")
def list_notifications(
    recent: bool = True,
    db: Session = Depends(get_db),
    current_user: UserInfo = Depends(get_current_user),
) -> List[dict]:
    """List notifications: unread plus the latest ones, or everything with ``recent=false``."""
    service = NotificationService(db)
    if recent:
        return service.list_recent(current_user.id)
    return service.list_all(current_user.id)


@router.get("/unread-count")
def unread_count(
    db: Session = Depends(get_db),
    current_user: UserInfo = Depends(get_current_user),
):
    return {"count": NotificationService(db).unread_count(current_user.id)}


@router.post("/read-all", response_model=SuccessResponse)
def mark_all_read(
    db: Session = Depends(get_db),
    current_user: UserInfo = Depends(get_current_user),
):
    count = NotificationService(db).mark_all_read(current_user.id)
    return SuccessResponse(message=f"Marked {count} notifications as read", data={"count": count})


@router.post("/{notification_id}/read")
def mark_read(
    notification_id: UUID,
    db: Session = Depends(get_db),
    current_user: UserInfo = Depends(get_current_user),
):
    return NotificationService(db).mark_read(notification_id, current_user.id)


@router.post("/{notification_id}/unread")
def mark_unread(
    notification_id: UUID,
    db: Session = Depends(get_db),
    current_user: UserInfo = Depends(get_current_user),
):
    return NotificationService(db).mark_unread(notification_id, current_user.id)


@router.delete("/{notification_id}", response_model=SuccessResponse)
def delete_notification(
    notification_id: UUID,
    db: Session = Depends(get_db),
    current_user: UserInfo = Depends(get_current_user),
):
    NotificationService(db).delete(notification_id, current_user.id)
    return SuccessResponse(message="Notification deleted")


@router.delete("", response_model=SuccessResponse)
def clear_notifications(
    db: Session = Depends(get_db),
    current_user: UserInfo = Depends(get_current_user),
):
    count = NotificationService(db).clear_all(current_user.id)
    return SuccessResponse(message=f"Cleared {count} notifications", data={"count": count})
