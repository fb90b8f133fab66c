"""Change request service.

Provides the high-level API for the workflow: every mutating operation loads
and locks one change request, validates and applies the change through the
state machine, records the audit trail and commits once. Notifications are
dispatched only after the commit succeeded.
"""

import logging
import uuid
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Mapping, Optional, Set

from sqlalchemy.orm import Session
from sqlalchemy.orm.exc import StaleDataError

from mocflow.core.audit.diff import FieldChange, compute_field_changes
from mocflow.core.audit.fields import (
    DEPARTMENT_KINDS,
    SET_KINDS,
    TRACKED_FIELDS,
    USER_KINDS,
    coerce,
    get_field,
    snapshot,
)
from mocflow.core.audit.recorder import AuditRecorder
from mocflow.core.clock import utcnow
from mocflow.core.config import Settings, get_settings
from mocflow.core.errors import (
    ConflictError,
    InvalidStatusError,
    NotFoundError,
    PermissionDeniedError,
    ValidationError,
)
from mocflow.core.ids import IdLike, as_uuid
from mocflow.core.rbac.permissions import (
    CREATE_CHANGE_REQUESTS,
    DELETE_ANY_CHANGE_REQUEST,
    EDIT_ANY_CHANGE_REQUEST,
    VIEW_ANY_CHANGE_REQUEST,
)
from mocflow.db.models import ChangeRequest
from mocflow.db.models.sequence import next_value
from mocflow.services.directory import (
    DepartmentDirectory,
    DisplayResolver,
    UserDirectory,
    UserInfo,
)
from mocflow.services.notifications import (
    NotificationRequest,
    NotificationService,
    plan_department_vote_notification,
    plan_status_notifications,
)

from .consensus import parse_decision, prune_ballots
from .machine import WorkflowStateMachine
from .states import DELETABLE_STATES, REVIEW_STATES, ActorRole, MocStatus, parse_status

logger = logging.getLogger(__name__)

EDITOR_ROLES = {ActorRole.ADMIN, ActorRole.SUBMITTER, ActorRole.ASSIGNEE, ActorRole.TECHNICAL_AUTHORITY}


@dataclass
class EditResult:
    """Outcome of a content edit."""
    changed: bool
    status_reset: bool = False
    field_changes: List[FieldChange] = field(default_factory=list)


class ChangeRequestService:
    """
    High-level service for managing change requests.

    Handles:
    - Creating requests with an atomically allocated sequence number
    - Content edits with audit history and approval invalidation
    - Status transitions, department votes and panel ballots
    - Resubmission and deletion
    - Visibility-filtered reads
    """

    def __init__(
        self,
        db: Session,
        *,
        settings: Optional[Settings] = None,
        notifier: Optional[NotificationService] = None,
    ):
        """
        Initialize the change request service.

        Args:
            db: Database session; the service commits its own transactions
            settings: Application settings (defaults to the cached settings)
            notifier: Notification dispatcher (defaults to in-app notifications)
        """
        self.db = db
        self.settings = settings or get_settings()
        self.users = UserDirectory(db)
        self.departments = DepartmentDirectory(db)
        self.resolver = DisplayResolver(self.users, self.departments)
        self.audit = AuditRecorder(db)
        self.inbox = NotificationService(db, self.settings)
        self.notifier = notifier or self.inbox

    # Commands

    def create_change_request(self, actor_id: IdLike, fields: Mapping[str, Any]) -> Dict[str, Any]:
        """
        Create a change request in draft.

        Args:
            actor_id: Submitting user; needs change_requests:create
            fields: Initial content and reference fields (title and description required)

        Returns:
            The created change request
        """
        actor = self._actor(actor_id)
        if not actor.can(CREATE_CHANGE_REQUESTS):
            raise PermissionDeniedError("You do not have permission to create change requests")

        values = self._validated_patch(fields)
        for tracked in TRACKED_FIELDS:
            if tracked.required and not values.get(tracked.key):
                raise ValidationError(f"{tracked.label} is required")

        try:
            number = next_value(self.db, self.settings.sequence_name)
            cr = ChangeRequest(
                id=uuid.uuid4(),
                sequence_number=number,
                display_id=f"{self.settings.display_id_prefix}-{number}",
                submitter_id=actor.id,
                status=MocStatus.DRAFT.value,
                date_raised=utcnow(),
                departments_affected=[],
                technical_authority_approver_ids=[],
                technical_authority_approvals={},
                closeout_approver_ids=[],
                closeout_approvals={},
                viewer_ids=[],
            )
            for key, value in values.items():
                setattr(cr, key, value)
            self._machine(cr, actor).reset_department_approvals()
            self.db.add(cr)
            self.db.commit()
        except Exception:
            self.db.rollback()
            raise

        logger.info(f"Created change request {cr.display_id} by {actor.id}")
        return self._to_dict(cr)

    def update_content(
        self,
        change_request_id: IdLike,
        patch: Mapping[str, Any],
        actor_id: IdLike,
    ) -> Dict[str, Any]:
        """
        Apply a content patch.

        A patch that changes nothing is a successful no-op. A material change
        while the request is under review sends it back to draft and resets
        every approval.

        Returns:
            ``{"changed", "status_reset", "field_changes", "change_request"}``
        """
        actor = self._actor(actor_id)
        values = self._validated_patch(patch)

        def operation(cr: ChangeRequest, outbox: List[NotificationRequest]) -> EditResult:
            machine = self._machine(cr, actor)
            if not (machine.roles() & EDITOR_ROLES or actor.can(EDIT_ANY_CHANGE_REQUEST)):
                raise PermissionDeniedError("You do not have permission to edit this change request")

            current = snapshot(cr)
            changes = compute_field_changes(current, values, self.resolver)
            if not changes:
                return EditResult(changed=False)

            for key, value in values.items():
                setattr(cr, key, value)

            status_reset = machine.status in REVIEW_STATES
            if status_reset:
                machine.invalidate_approvals()
            elif "departments_affected" in values and values["departments_affected"] != current["departments_affected"]:
                machine.realign_department_approvals()
            cr.technical_authority_approvals = prune_ballots(
                cr.technical_authority_approver_ids, cr.technical_authority_approvals
            )
            cr.closeout_approvals = prune_ballots(cr.closeout_approver_ids, cr.closeout_approvals)

            self.audit.record_edit(cr, actor, changes)
            self._finish(cr, machine, actor, outbox)
            return EditResult(changed=True, status_reset=status_reset, field_changes=changes)

        result, cr = self._atomic(change_request_id, operation)
        return {
            "changed": result.changed,
            "status_reset": result.status_reset,
            "field_changes": [c.to_dict() for c in result.field_changes],
            "change_request": self._to_dict(cr),
        }

    def request_transition(
        self,
        change_request_id: IdLike,
        new_status,
        actor_id: IdLike,
        comments: Optional[str] = None,
    ) -> Dict[str, Any]:
        """
        Request a status change.

        Inside a consensus stage a panel member's request is recorded as a
        ballot; the status only moves once the panel agrees.

        Raises:
            InvalidStatusError: ``new_status`` is not a known status
            InvalidTransitionError: No rule connects the two states
            PermissionDeniedError: The actor lacks the role the rule requires
        """
        actor = self._actor(actor_id)
        target = new_status if isinstance(new_status, MocStatus) else parse_status(new_status)
        if target is None:
            raise InvalidStatusError(f"Invalid status: {new_status}", requested_status=str(new_status))

        def operation(cr: ChangeRequest, outbox: List[NotificationRequest]) -> None:
            machine = self._machine(cr, actor)
            machine.request(target, comments)
            self._finish(cr, machine, actor, outbox)

        _, cr = self._atomic(change_request_id, operation)
        return self._to_dict(cr)

    def cast_department_vote(
        self,
        change_request_id: IdLike,
        department_id: IdLike,
        decision,
        actor_id: IdLike,
        comments: Optional[str] = None,
    ) -> Dict[str, Any]:
        """Record a department's approval or rejection and aggregate."""
        actor = self._actor(actor_id)
        ballot = parse_decision(decision)
        department = self.departments.get(department_id)

        def operation(cr: ChangeRequest, outbox: List[NotificationRequest]) -> None:
            machine = self._machine(cr, actor)
            machine.cast_department_vote(department, ballot, comments)
            outbox.extend(plan_department_vote_notification(
                cr, ballot, actor_id=actor.id, actor_name=actor.display_name, comments=comments,
            ))
            self._finish(cr, machine, actor, outbox)

        _, cr = self._atomic(change_request_id, operation)
        return self._to_dict(cr)

    def cast_closeout_vote(
        self,
        change_request_id: IdLike,
        decision,
        actor_id: IdLike,
        comments: Optional[str] = None,
    ) -> Dict[str, Any]:
        """Record a closeout approval or rejection."""
        actor = self._actor(actor_id)
        ballot = parse_decision(decision)

        def operation(cr: ChangeRequest, outbox: List[NotificationRequest]) -> None:
            machine = self._machine(cr, actor)
            machine.cast_closeout_vote(ballot, comments)
            self._finish(cr, machine, actor, outbox)

        _, cr = self._atomic(change_request_id, operation)
        return self._to_dict(cr)

    def resubmit(self, change_request_id: IdLike, actor_id: IdLike) -> Dict[str, Any]:
        """Send a rejected request back to department approval with fresh approvals."""
        actor = self._actor(actor_id)

        def operation(cr: ChangeRequest, outbox: List[NotificationRequest]) -> None:
            machine = self._machine(cr, actor)
            machine.resubmit()
            self._finish(cr, machine, actor, outbox)

        _, cr = self._atomic(change_request_id, operation)
        return self._to_dict(cr)

    def delete_change_request(self, change_request_id: IdLike, actor_id: IdLike) -> None:
        """Delete a draft, rejected or cancelled request and everything attached to it."""
        actor = self._actor(actor_id)

        def operation(cr: ChangeRequest, outbox: List[NotificationRequest]) -> None:
            is_submitter = str(cr.submitter_id) == str(actor.id)
            if not (is_submitter or actor.can(DELETE_ANY_CHANGE_REQUEST)):
                raise PermissionDeniedError("You do not have permission to delete this change request")
            if MocStatus(cr.status) not in DELETABLE_STATES:
                raise InvalidStatusError(
                    f"Change requests cannot be deleted while {cr.status}",
                    current_status=cr.status,
                )
            self.inbox.delete_for_change_request(cr.id)
            self.db.delete(cr)
            logger.info(f"Deleted change request {cr.display_id} by {actor.id}")

        self._atomic(change_request_id, operation)

    # Queries

    def get_change_request(self, change_request_id: IdLike, actor_id: IdLike) -> Dict[str, Any]:
        """Get a change request with resolved display names."""
        actor = self._actor(actor_id)
        cr = self._get_visible(change_request_id, actor)
        return self._to_detail(cr)

    def list_change_requests(self, actor_id: IdLike, status: Optional[str] = None) -> List[Dict[str, Any]]:
        """
        List the requests the actor may see, newest first.

        Drafts are only listed for their submitter. ``status="all"`` or None
        disables the status filter.
        """
        actor = self._actor(actor_id)
        query = self.db.query(ChangeRequest)
        if status and status != "all":
            parsed = parse_status(status)
            if parsed is None:
                raise InvalidStatusError(f"Invalid status filter: {status}", requested_status=status)
            query = query.filter(ChangeRequest.status == parsed.value)

        approver_departments = self._approver_departments(actor)
        visible = []
        for cr in query.order_by(ChangeRequest.sequence_number.desc()).all():
            if cr.status == MocStatus.DRAFT.value and str(cr.submitter_id) != str(actor.id):
                continue
            if self._can_view(cr, actor, approver_departments):
                visible.append(self._to_dict(cr))
        return visible

    def list_department_queue(self, actor_id: IdLike) -> List[Dict[str, Any]]:
        """Requests raised by or affecting the departments the actor approves for."""
        actor = self._actor(actor_id)
        approver_departments = self._approver_departments(actor)
        queue = []
        for cr in self.db.query(ChangeRequest).order_by(ChangeRequest.sequence_number.desc()).all():
            if cr.status == MocStatus.DRAFT.value and str(cr.submitter_id) != str(actor.id):
                continue
            related = set(cr.departments_affected or [])
            if cr.requesting_department_id:
                related.add(str(cr.requesting_department_id))
            if actor.is_admin or related & approver_departments or self._is_participant(cr, actor):
                queue.append(self._to_dict(cr))
        return queue

    def list_edit_history(self, change_request_id: IdLike, actor_id: IdLike) -> List[Dict[str, Any]]:
        actor = self._actor(actor_id)
        cr = self._get_visible(change_request_id, actor)
        return self.audit.list_edit_history(cr.id)

    def list_status_history(self, change_request_id: IdLike, actor_id: IdLike) -> List[Dict[str, Any]]:
        actor = self._actor(actor_id)
        cr = self._get_visible(change_request_id, actor)
        return self.audit.list_status_history(cr.id)

    # Internals

    def _atomic(self, change_request_id: IdLike, operation: Callable) -> tuple[Any, ChangeRequest]:
        """
        Run ``operation`` as one locked read-modify-write, retrying stale writes.

        Returns:
            The operation's result and the change request it acted on
        """
        cr_id = as_uuid(change_request_id)
        attempts = max(1, self.settings.max_conflict_retries)
        for attempt in range(1, attempts + 1):
            outbox: List[NotificationRequest] = []
            try:
                cr = self._lock(cr_id)
                result = operation(cr, outbox)
                self.db.commit()
            except StaleDataError:
                self.db.rollback()
                logger.warning(f"Concurrent update on change request {cr_id} (attempt {attempt}/{attempts})")
                continue
            except Exception:
                self.db.rollback()
                raise

            self.notifier.dispatch(outbox)
            return result, cr

        raise ConflictError(f"Change request {cr_id} was modified concurrently; try again")

    def _lock(self, cr_id: uuid.UUID) -> ChangeRequest:
        cr = self.db.query(ChangeRequest).filter(
            ChangeRequest.id == cr_id
        ).populate_existing().with_for_update().first()
        if not cr:
            raise NotFoundError(f"Change request {cr_id} not found")
        return cr

    def _machine(self, cr: ChangeRequest, actor: UserInfo) -> WorkflowStateMachine:
        return WorkflowStateMachine(
            cr,
            actor,
            default_approver=self.departments.default_approver,
            require_rejection_comments=self.settings.require_rejection_comments,
        )

    def _finish(
        self,
        cr: ChangeRequest,
        machine: WorkflowStateMachine,
        actor: UserInfo,
        outbox: List[NotificationRequest],
    ) -> None:
        """Persist the machine's status events and plan their notifications."""
        cr.updated_at = utcnow()
        approver_ids = None
        for event in machine.events:
            self.audit.record_status_change(cr, event)
            if approver_ids is None:
                approver_ids = self._department_approver_ids(cr)
            outbox.extend(plan_status_notifications(
                cr,
                event.from_status,
                event.to_status,
                actor_id=actor.id,
                actor_name=actor.display_name,
                comments=event.comments,
                department_approver_ids=approver_ids,
            ))

    def _actor(self, actor_id: Optional[IdLike]) -> UserInfo:
        if actor_id is None or actor_id == "":
            raise ValidationError("An acting user is required")
        return self.users.get(actor_id)

    def _validated_patch(self, patch: Mapping[str, Any]) -> Dict[str, Any]:
        """Coerce every patched field and check the users and departments it references."""
        if not isinstance(patch, Mapping):
            raise ValidationError("Patch must be a mapping of field names to values")

        values = {}
        for key, value in patch.items():
            values[key] = coerce(get_field(key), value)

        for key, value in values.items():
            tracked = get_field(key)
            ids = value if tracked.kind in SET_KINDS else ([value] if value else [])
            for ref in ids:
                if tracked.kind in USER_KINDS:
                    if self.users.find(ref) is None:
                        raise NotFoundError(f"{tracked.label}: user {ref} not found")
                    if not self.users.exists_approved(ref):
                        raise ValidationError(f"{tracked.label}: user {ref} is not approved")
                elif tracked.kind in DEPARTMENT_KINDS:
                    self.departments.get(ref)
        return values

    def _department_approver_ids(self, cr: ChangeRequest) -> List[str]:
        approver_ids: List[str] = []
        for department_id in cr.departments_affected or []:
            department = self.departments.find(department_id)
            if department:
                approver_ids.extend(department.approver_ids)
        return approver_ids

    def _approver_departments(self, actor: UserInfo) -> Set[str]:
        return {str(d.id) for d in self.departments.approved_by(actor.id)}

    def _is_participant(self, cr: ChangeRequest, actor: UserInfo) -> bool:
        key = str(actor.id)
        return (
            str(cr.submitter_id) == key
            or (cr.assigned_to_id is not None and str(cr.assigned_to_id) == key)
            or key in (cr.technical_authority_approver_ids or [])
            or key in (cr.closeout_approver_ids or [])
        )

    def _can_view(self, cr: ChangeRequest, actor: UserInfo, approver_departments: Set[str]) -> bool:
        if actor.can(VIEW_ANY_CHANGE_REQUEST) or self._is_participant(cr, actor):
            return True
        if approver_departments & set(cr.departments_affected or []):
            return True
        if cr.status == MocStatus.DRAFT.value:
            return False
        viewers = cr.viewer_ids or []
        return not viewers or str(actor.id) in viewers

    def _get_visible(self, change_request_id: IdLike, actor: UserInfo) -> ChangeRequest:
        cr = self.db.get(ChangeRequest, as_uuid(change_request_id))
        if cr is None:
            raise NotFoundError(f"Change request {change_request_id} not found")
        if not self._can_view(cr, actor, self._approver_departments(actor)):
            raise PermissionDeniedError("You do not have permission to view this change request")
        return cr

    def _to_dict(self, cr: ChangeRequest) -> Dict[str, Any]:
        data = {
            "id": str(cr.id),
            "display_id": cr.display_id,
            "sequence_number": cr.sequence_number,
            "status": cr.status,
            "submitter_id": str(cr.submitter_id),
            "reviewer_id": str(cr.reviewer_id) if cr.reviewer_id else None,
            "review_comments": cr.review_comments,
            "date_raised": _iso(cr.date_raised),
            "submitted_at": _iso(cr.submitted_at),
            "reviewed_at": _iso(cr.reviewed_at),
            "department_approvals": [
                {
                    "department_id": str(a.department_id),
                    "status": a.status,
                    "approver_id": str(a.approver_id) if a.approver_id else None,
                    "approved_at": _iso(a.approved_at),
                    "comments": a.comments,
                }
                for a in cr.department_approvals
            ],
            "technical_authority_approvals": dict(cr.technical_authority_approvals or {}),
            "closeout_approvals": dict(cr.closeout_approvals or {}),
            "version": cr.version,
            "created_at": _iso(cr.created_at),
            "updated_at": _iso(cr.updated_at),
        }
        for tracked in TRACKED_FIELDS:
            value = getattr(cr, tracked.key)
            if tracked.kind in SET_KINDS:
                value = list(value or [])
            elif value is not None and tracked.kind in (USER_KINDS | DEPARTMENT_KINDS):
                value = str(value)
            else:
                value = _iso(value) if hasattr(value, "isoformat") else value
            data[tracked.key] = value
        return data

    def _to_detail(self, cr: ChangeRequest) -> Dict[str, Any]:
        """Serialized request plus display names for every referenced id."""
        data = self._to_dict(cr)
        user_name = self.resolver.user_name
        department_name = self.resolver.department_name
        data["submitter_name"] = user_name(cr.submitter_id)
        data["assigned_to_name"] = user_name(cr.assigned_to_id) if cr.assigned_to_id else None
        data["reviewer_name"] = user_name(cr.reviewer_id) if cr.reviewer_id else None
        data["requesting_department_name"] = (
            department_name(cr.requesting_department_id) if cr.requesting_department_id else None
        )
        data["departments_affected_names"] = [department_name(d) for d in cr.departments_affected or []]
        data["technical_authority_approver_names"] = [
            user_name(u) for u in cr.technical_authority_approver_ids or []
        ]
        data["closeout_approver_names"] = [user_name(u) for u in cr.closeout_approver_ids or []]
        data["viewer_names"] = [user_name(u) for u in cr.viewer_ids or []]
        for entry in data["department_approvals"]:
            entry["department_name"] = department_name(entry["department_id"])
            entry["approver_name"] = user_name(entry["approver_id"]) if entry["approver_id"] else None
        return data


def _iso(value):
    return value.isoformat() if value is not None else None
