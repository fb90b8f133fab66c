"""Notification fan-out and the per-user inbox.

Handles:
- Planning who hears about a status change or a department vote
- Best-effort delivery after the workflow transaction has committed
- Inbox operations (read state, deletion, counts)
"""

import logging
from dataclasses import asdict, dataclass
from typing import Any, Dict, Iterable, List, Optional
from uuid import UUID

from jinja2 import Template
from sqlalchemy.orm import Session

from mocflow.core.config import Settings, get_settings
from mocflow.core.errors import NotFoundError, PermissionDeniedError
from mocflow.core.ids import IdLike, as_optional_uuid, as_uuid
from mocflow.core.workflow.consensus import Ballot
from mocflow.core.workflow.states import MocStatus
from mocflow.db.models import Notification, NotificationType

logger = logging.getLogger(__name__)


# Message templates keyed by the status being entered
STATUS_TEMPLATES: Dict[MocStatus, Template] = {
    MocStatus.PENDING_DEPARTMENT_APPROVAL: Template('{{ actor }} submitted MOC "{{ title }}" for review.'),
    MocStatus.PENDING_FINAL_REVIEW: Template('MOC "{{ title }}" requires your technical authority approval.'),
    MocStatus.APPROVED: Template('{{ actor }} approved MOC "{{ title }}".'),
    MocStatus.REJECTED: Template('{{ actor }} rejected MOC "{{ title }}".'),
    MocStatus.PENDING_CLOSEOUT: Template('{{ actor }} requested closeout of MOC "{{ title }}".'),
}

DEPARTMENT_VOTE_TEMPLATE = Template('{{ actor }} {{ action }} MOC "{{ title }}" for their department.')

COMMENTS_TEMPLATE = Template("{{ message }}{% if comments %} Comments: {{ comments }}{% endif %}")


@dataclass
class NotificationRequest:
    """One notification to create for one recipient."""
    recipient_id: UUID
    change_request_id: UUID
    type: str
    message: str
    actor_id: Optional[UUID] = None
    related_title: Optional[str] = None

    def to_payload(self) -> Dict[str, Any]:
        payload = asdict(self)
        for key in ("recipient_id", "change_request_id", "actor_id"):
            payload[key] = str(payload[key]) if payload[key] else None
        return payload

    @classmethod
    def from_payload(cls, payload: Dict[str, Any]) -> "NotificationRequest":
        return cls(
            recipient_id=as_uuid(payload["recipient_id"]),
            change_request_id=as_uuid(payload["change_request_id"]),
            type=payload["type"],
            message=payload["message"],
            actor_id=as_optional_uuid(payload.get("actor_id")),
            related_title=payload.get("related_title"),
        )


def _recipients(groups: Iterable[Iterable[Any]], exclude: Any) -> list[UUID]:
    """Flatten recipient groups, dropping blanks, duplicates and the actor."""
    excluded = str(exclude)
    seen: list[str] = []
    for group in groups:
        for user_id in group:
            if not user_id:
                continue
            key = str(user_id)
            if key != excluded and key not in seen:
                seen.append(key)
    return [as_uuid(key) for key in seen]


def _with_comments(message: str, comments: Optional[str]) -> str:
    return COMMENTS_TEMPLATE.render(message=message, comments=(comments or "").strip())


def plan_status_notifications(
    change_request,
    from_status: MocStatus,
    to_status: MocStatus,
    *,
    actor_id: UUID,
    actor_name: str,
    comments: Optional[str] = None,
    department_approver_ids: Iterable[str] = (),
) -> List[NotificationRequest]:
    """
    Decide who is told about a status change, and what they are told.

    Args:
        change_request: Request after the change was applied
        from_status: Status before the change
        to_status: Status after the change
        actor_id: Acting user, never notified
        actor_name: Display name used in messages
        comments: Comments supplied with the action
        department_approver_ids: Approvers of every affected department

    Returns:
        One request per recipient; empty when the target status notifies nobody
    """
    template = STATUS_TEMPLATES.get(to_status)
    if template is None or from_status is to_status:
        return []

    cr = change_request
    if to_status is MocStatus.PENDING_DEPARTMENT_APPROVAL:
        groups = [
            department_approver_ids,
            [cr.assigned_to_id],
            cr.technical_authority_approver_ids or [],
            cr.viewer_ids or [],
        ]
    elif to_status is MocStatus.PENDING_FINAL_REVIEW:
        groups = [cr.technical_authority_approver_ids or []]
    elif to_status is MocStatus.PENDING_CLOSEOUT:
        groups = [cr.closeout_approver_ids or []]
    else:
        groups = [[cr.submitter_id], [cr.assigned_to_id], cr.viewer_ids or []]

    message = _with_comments(template.render(actor=actor_name, title=cr.title), comments)
    return [
        NotificationRequest(
            recipient_id=recipient_id,
            change_request_id=cr.id,
            type=NotificationType.STATUS_CHANGE.value,
            message=message,
            actor_id=actor_id,
            related_title=cr.title,
        )
        for recipient_id in _recipients(groups, exclude=actor_id)
    ]


def plan_department_vote_notification(
    change_request,
    decision: Ballot,
    *,
    actor_id: UUID,
    actor_name: str,
    comments: Optional[str] = None,
) -> List[NotificationRequest]:
    """Tell the submitter how a department voted."""
    cr = change_request
    message = DEPARTMENT_VOTE_TEMPLATE.render(actor=actor_name, action=decision.value, title=cr.title)
    return [
        NotificationRequest(
            recipient_id=recipient_id,
            change_request_id=cr.id,
            type=NotificationType.DEPARTMENT_ACTION.value,
            message=_with_comments(message, comments),
            actor_id=actor_id,
            related_title=cr.title,
        )
        for recipient_id in _recipients([[cr.submitter_id]], exclude=actor_id)
    ]


class NotificationService:
    """Creates notifications and serves the per-user inbox."""

    def __init__(self, db: Session, settings: Optional[Settings] = None):
        self.db = db
        self.settings = settings or get_settings()

    def create_notification(self, request: NotificationRequest) -> Notification:
        """Persist one notification and commit it."""
        notification = Notification(
            recipient_id=request.recipient_id,
            actor_id=request.actor_id,
            change_request_id=request.change_request_id,
            related_title=request.related_title,
            type=request.type,
            message=request.message,
            is_read=False,
        )
        self.db.add(notification)
        self.db.commit()
        return notification

    def dispatch(self, requests: List[NotificationRequest]) -> int:
        """
        Deliver notifications without failing the caller.

        Returns:
            Number of notifications created (or enqueued)
        """
        if not requests:
            return 0

        if self.settings.notification_dispatch == "celery":
            return self._enqueue(requests)

        delivered = 0
        for request in requests:
            try:
                self.create_notification(request)
                delivered += 1
            except Exception:
                self.db.rollback()
                logger.exception(f"Failed to notify {request.recipient_id} about {request.change_request_id}")
        return delivered

    def _enqueue(self, requests: List[NotificationRequest]) -> int:
        from mocflow.workers.notification_tasks import deliver_notifications

        try:
            deliver_notifications.delay([r.to_payload() for r in requests])
        except Exception:
            logger.exception(f"Failed to enqueue {len(requests)} notifications")
            return 0
        return len(requests)

    # Inbox

    def list_recent(self, user_id: IdLike) -> List[Dict[str, Any]]:
        """All unread notifications plus the most recent ones, newest first."""
        user_id = as_uuid(user_id)
        unread = self._query(user_id).filter(Notification.is_read.is_(False)).all()
        latest = self._query(user_id).limit(self.settings.recent_notifications_limit).all()
        merged = {n.id: n for n in unread + latest}
        ordered = sorted(merged.values(), key=lambda n: n.created_at, reverse=True)
        return [self._to_dict(n) for n in ordered]

    def list_all(self, user_id: IdLike) -> List[Dict[str, Any]]:
        return [self._to_dict(n) for n in self._query(as_uuid(user_id)).all()]

    def unread_count(self, user_id: IdLike) -> int:
        return self._owned(as_uuid(user_id)).filter(Notification.is_read.is_(False)).count()

    def mark_read(self, notification_id: IdLike, user_id: IdLike) -> Dict[str, Any]:
        return self._set_read(notification_id, user_id, True)

    def mark_unread(self, notification_id: IdLike, user_id: IdLike) -> Dict[str, Any]:
        return self._set_read(notification_id, user_id, False)

    def mark_all_read(self, user_id: IdLike) -> int:
        count = self._owned(as_uuid(user_id)).filter(
            Notification.is_read.is_(False)
        ).update({Notification.is_read: True}, synchronize_session=False)
        self.db.commit()
        return count

    def delete(self, notification_id: IdLike, user_id: IdLike) -> None:
        notification = self._get_owned(notification_id, user_id)
        self.db.delete(notification)
        self.db.commit()

    def clear_all(self, user_id: IdLike) -> int:
        count = self._owned(as_uuid(user_id)).delete(synchronize_session=False)
        self.db.commit()
        return count

    def delete_for_change_request(self, change_request_id: UUID) -> int:
        """Remove a request's notifications inside the caller's transaction."""
        return self.db.query(Notification).filter(
            Notification.change_request_id == change_request_id
        ).delete(synchronize_session=False)

    def _owned(self, user_id: UUID):
        return self.db.query(Notification).filter(Notification.recipient_id == user_id)

    def _query(self, user_id: UUID):
        return self._owned(user_id).order_by(Notification.created_at.desc())

    def _get_owned(self, notification_id: IdLike, user_id: IdLike) -> Notification:
        notification = self.db.get(Notification, as_uuid(notification_id))
        if notification is None:
            raise NotFoundError(f"Notification {notification_id} not found")
        if notification.recipient_id != as_uuid(user_id):
            raise PermissionDeniedError("You can only modify your own notifications")
        return notification

    def _set_read(self, notification_id: IdLike, user_id: IdLike, is_read: bool) -> Dict[str, Any]:
        notification = self._get_owned(notification_id, user_id)
        notification.is_read = is_read
        self.db.commit()
        return self._to_dict(notification)

    def _to_dict(self, notification: Notification) -> Dict[str, Any]:
        return {
            "id": str(notification.id),
            "recipient_id": str(notification.recipient_id),
            "actor_id": str(notification.actor_id) if notification.actor_id else None,
            "change_request_id": str(notification.change_request_id) if notification.change_request_id else None,
            "related_title": notification.related_title,
            "type": notification.type,
            "message": notification.message,
            "is_read": notification.is_read,
            "created_at": notification.created_at.isoformat() if notification.created_at else None,
        }
