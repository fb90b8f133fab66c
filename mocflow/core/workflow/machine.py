"""Change request state machine.

Applies the transition table, the consensus rules and the state-entry effects
to a loaded ``ChangeRequest``. The machine only mutates the in-memory record;
persisting it (and the recorded status events) is the caller's job.
"""

import logging
from dataclasses import dataclass
from typing import Callable, Optional
from uuid import UUID

from mocflow.core.clock import utcnow
from mocflow.core.errors import (
    AlreadyProcessedError,
    InvalidTransitionError,
    PermissionDeniedError,
    ValidationError,
)
from mocflow.core.ids import as_uuid

from .consensus import Ballot, Outcome, aggregate_departments, record_ballot, tally
from .states import (
    DECISION_STATES,
    PANEL_OUTCOMES,
    SUBMISSION_SOURCES,
    ActorRole,
    MocStatus,
    Panel,
    TransitionRule,
    find_rule,
    is_known_transition,
)

logger = logging.getLogger(__name__)


@dataclass
class StatusEvent:
    """A status change applied by the machine."""
    from_status: MocStatus
    to_status: MocStatus
    actor_id: UUID
    comments: Optional[str] = None


class WorkflowStateMachine:
    """
    State machine for one change request and one acting user.

    Handles:
    - Authorizing status changes against the transition table
    - Recording panel ballots and applying consensus
    - Department votes and their aggregation
    - State-entry effects (approval resets, review stamps, ballot clearing)
    """

    def __init__(
        self,
        change_request,
        actor,
        *,
        default_approver: Callable[[str], Optional[UUID]],
        require_rejection_comments: bool = False,
    ):
        """
        Initialize the state machine.

        Args:
            change_request: The locked ChangeRequest record to mutate
            actor: Acting user exposing ``id`` and ``is_admin``
            default_approver: Maps a department id to its default approver
            require_rejection_comments: Reject rejecting actions without comments
        """
        self.cr = change_request
        self.actor = actor
        self._default_approver = default_approver
        self.require_rejection_comments = require_rejection_comments
        self._events: list[StatusEvent] = []

    @property
    def status(self) -> MocStatus:
        return MocStatus(self.cr.status)

    @property
    def events(self) -> list[StatusEvent]:
        return list(self._events)

    @property
    def actor_key(self) -> str:
        return str(self.actor.id)

    def roles(self) -> set[ActorRole]:
        """Roles the actor holds on this change request."""
        roles = set()
        if self.actor.is_admin:
            roles.add(ActorRole.ADMIN)
        if str(self.cr.submitter_id) == self.actor_key:
            roles.add(ActorRole.SUBMITTER)
        if self.cr.assigned_to_id is not None and str(self.cr.assigned_to_id) == self.actor_key:
            roles.add(ActorRole.ASSIGNEE)
        if self.actor_key in (self.cr.technical_authority_approver_ids or []):
            roles.add(ActorRole.TECHNICAL_AUTHORITY)
        if self.actor_key in (self.cr.closeout_approver_ids or []):
            roles.add(ActorRole.CLOSEOUT_APPROVER)
        return roles

    def panel_members(self, panel: Panel) -> list[str]:
        if panel is Panel.TECHNICAL_AUTHORITY:
            return list(self.cr.technical_authority_approver_ids or [])
        return list(self.cr.closeout_approver_ids or [])

    def configured_panels(self) -> set[Panel]:
        return {panel for panel in Panel if self.panel_members(panel)}

    def authorize(self, to_state: MocStatus) -> TransitionRule:
        """
        Find the rule allowing the actor to move the request to ``to_state``.

        Raises:
            InvalidTransitionError: No rule connects the states (non-admin actor)
            PermissionDeniedError: A rule exists but the actor lacks its role
        """
        from_state = self.status
        roles = self.roles()
        rule = find_rule(from_state, to_state, roles, self.configured_panels())
        if rule is not None:
            return rule

        if ActorRole.ADMIN in roles:
            return TransitionRule(from_state, to_state, frozenset([ActorRole.ADMIN]))

        if not is_known_transition(from_state, to_state):
            raise InvalidTransitionError(
                f"Cannot move a change request from {from_state.value} to {to_state.value}",
                from_state.value,
                to_state.value,
            )
        raise PermissionDeniedError(
            f"You do not have permission to move this change request to {to_state.value}",
        )

    def request(self, to_state: MocStatus, comments: Optional[str] = None) -> Optional[StatusEvent]:
        """
        Perform a requested status change.

        Returns:
            The applied status event, or None when a ballot was recorded and
            the panel has not reached consensus yet.
        """
        rule = self.authorize(to_state)
        self._check_comments(rule.requires_comment or to_state is MocStatus.REJECTED, comments)

        if rule.casts_ballot:
            advance, _ = PANEL_OUTCOMES[rule.panel]
            ballot = Ballot.APPROVED if to_state is advance else Ballot.REJECTED
            return self._cast(rule.panel, ballot, comments)

        return self.enter(to_state, comments)

    def cast_closeout_vote(self, decision: Ballot, comments: Optional[str] = None) -> Optional[StatusEvent]:
        """Record a closeout decision; admins outside the panel decide directly."""
        roles = self.roles()
        if not roles & {ActorRole.ADMIN, ActorRole.CLOSEOUT_APPROVER}:
            raise PermissionDeniedError(
                "Only closeout approvers can approve or reject closeout",
                required_role=ActorRole.CLOSEOUT_APPROVER.value,
            )
        if self.status is not MocStatus.PENDING_CLOSEOUT:
            raise AlreadyProcessedError(
                "Change request is not pending closeout",
                current_status=self.status.value,
            )
        self._check_comments(decision is Ballot.REJECTED, comments)

        if ActorRole.CLOSEOUT_APPROVER in roles:
            event = self._cast(Panel.CLOSEOUT, decision, comments)
        else:
            advance, reject = PANEL_OUTCOMES[Panel.CLOSEOUT]
            event = self.enter(advance if decision is Ballot.APPROVED else reject, comments)

        if event is not None:
            completed = event.to_status is MocStatus.COMPLETED
            if completed:
                self.cr.reviewed_at = utcnow()
                self.cr.reviewer_id = self.actor.id
            self.cr.review_comments = comments or ("Closeout approved" if completed else "Closeout rejected")
        return event

    def cast_department_vote(
        self,
        department,
        decision: Ballot,
        comments: Optional[str] = None,
    ) -> Optional[StatusEvent]:
        """
        Record one department's decision and aggregate.

        Args:
            department: Department record exposing ``id`` and ``approver_ids``
            decision: APPROVED or REJECTED
            comments: Optional comments stored on the department entry
        """
        if not (self.actor.is_admin or self.actor_key in (department.approver_ids or [])):
            raise PermissionDeniedError(
                "You are not an approver for this department",
                required_role="department_approver",
            )
        if self.status is not MocStatus.PENDING_DEPARTMENT_APPROVAL:
            raise AlreadyProcessedError(
                "Change request is not awaiting department approval",
                current_status=self.status.value,
            )

        department_key = str(department.id)
        entry = next(
            (a for a in self.cr.department_approvals if str(a.department_id) == department_key),
            None,
        )
        if entry is None:
            raise ValidationError("Department is not affected by this change request")
        self._check_comments(decision is Ballot.REJECTED, comments)

        entry.status = decision.value
        entry.approver_id = self.actor.id
        entry.approved_at = utcnow()
        entry.comments = comments
        logger.info(
            "Department %s %s change request %s",
            department_key, decision.value, self.cr.display_id,
        )

        outcome = aggregate_departments(a.status for a in self.cr.department_approvals)
        if outcome is Outcome.REJECT:
            return self.enter(MocStatus.REJECTED, comments)
        if outcome is Outcome.ADVANCE:
            if Panel.TECHNICAL_AUTHORITY in self.configured_panels():
                return self.enter(MocStatus.PENDING_FINAL_REVIEW)
            return self.enter(MocStatus.APPROVED, "All departments approved")
        return None

    def resubmit(self) -> StatusEvent:
        """Send a rejected request back into department approval."""
        if not self.roles() & {ActorRole.ADMIN, ActorRole.SUBMITTER}:
            raise PermissionDeniedError(
                "Only the submitter can resubmit this change request",
                required_role=ActorRole.SUBMITTER.value,
            )
        if self.status is not MocStatus.REJECTED:
            raise AlreadyProcessedError(
                "Only rejected change requests can be resubmitted",
                current_status=self.status.value,
            )
        self._clear_review()
        return self.enter(MocStatus.PENDING_DEPARTMENT_APPROVAL)

    def invalidate_approvals(self) -> StatusEvent:
        """Return a request under review to draft after a material edit."""
        self.reset_department_approvals()
        self.cr.technical_authority_approvals = {}
        self._clear_review()
        return self.enter(MocStatus.DRAFT, "Content edited during review")

    def enter(self, to_state: MocStatus, comments: Optional[str] = None) -> StatusEvent:
        """Move to ``to_state`` and apply its entry effects."""
        from_state = self.status

        if to_state is MocStatus.PENDING_DEPARTMENT_APPROVAL and from_state in SUBMISSION_SOURCES:
            self.reset_department_approvals()
            self.cr.technical_authority_approvals = {}
            self.cr.submitted_at = utcnow()

        if to_state in DECISION_STATES:
            self.cr.reviewed_at = utcnow()
            self.cr.reviewer_id = self.actor.id
            self.cr.review_comments = comments

        sent_back = from_state is MocStatus.PENDING_CLOSEOUT and to_state is MocStatus.IN_PROGRESS
        if to_state is MocStatus.PENDING_CLOSEOUT or sent_back:
            self.cr.closeout_approvals = {}

        self.cr.status = to_state.value
        event = StatusEvent(from_state, to_state, self.actor.id, comments)
        self._events.append(event)
        logger.info(
            "Change request %s moved %s -> %s by %s",
            self.cr.display_id, from_state.value, to_state.value, self.actor_key,
        )
        return event

    def reset_department_approvals(self) -> None:
        """Rebuild one pending entry per affected department."""
        from mocflow.db.models.change_request import DepartmentApproval

        self.cr.department_approvals = [
            DepartmentApproval(
                department_id=as_uuid(department_id),
                position=position,
                status=Ballot.PENDING.value,
                approver_id=self._default_approver(department_id),
            )
            for position, department_id in enumerate(self.cr.departments_affected or [])
        ]

    def realign_department_approvals(self) -> None:
        """Match the approval entries to ``departments_affected``, keeping existing decisions."""
        from mocflow.db.models.change_request import DepartmentApproval

        existing = {str(a.department_id): a for a in self.cr.department_approvals}
        entries = []
        for position, department_id in enumerate(self.cr.departments_affected or []):
            entry = existing.get(department_id)
            if entry is None:
                entry = DepartmentApproval(
                    department_id=as_uuid(department_id),
                    status=Ballot.PENDING.value,
                    approver_id=self._default_approver(department_id),
                )
            entry.position = position
            entries.append(entry)
        self.cr.department_approvals = entries

    def _cast(self, panel: Panel, ballot: Ballot, comments: Optional[str]) -> Optional[StatusEvent]:
        members = self.panel_members(panel)
        if panel is Panel.TECHNICAL_AUTHORITY:
            ballots = record_ballot(members, self.cr.technical_authority_approvals, self.actor_key, ballot)
            self.cr.technical_authority_approvals = ballots
        else:
            ballots = record_ballot(members, self.cr.closeout_approvals, self.actor_key, ballot)
            self.cr.closeout_approvals = ballots
        logger.info(
            "%s ballot %s recorded on %s by %s",
            panel.value, ballot.value, self.cr.display_id, self.actor_key,
        )

        advance, reject = PANEL_OUTCOMES[panel]
        outcome = tally(members, ballots)
        if outcome is Outcome.ADVANCE:
            return self.enter(advance, comments)
        if outcome is Outcome.REJECT:
            return self.enter(reject, comments)
        return None

    def _clear_review(self) -> None:
        self.cr.reviewed_at = None
        self.cr.reviewer_id = None
        self.cr.review_comments = None

    def _check_comments(self, rejecting: bool, comments: Optional[str]) -> None:
        if rejecting and self.require_rejection_comments and not (comments or "").strip():
            raise ValidationError("Comments are required when rejecting")
