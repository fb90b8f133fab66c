"""Change request workflow states and transitions.

State Machine Diagram:

    ┌───────┐  submit   ┌─────────────────────────────┐
    │ DRAFT │──────────►│ PENDING_DEPARTMENT_APPROVAL │◄──┐ resubmit
    └───▲───┘           └──────────────┬──────────────┘   │
        │ material edit                │ all departments  │
        │ (from either pending state)  │ approved         │
        │                 ┌────────────▼─────────┐        │
        └─────────────────┤ PENDING_FINAL_REVIEW │ (only with technical
                          └────────────┬─────────┘  authority approvers)
                                       │ consensus
                         ┌─────────────┴────────────┐
                    ┌────▼─────┐               ┌────▼─────┐
                    │ APPROVED │               │ REJECTED │──┘
                    └────┬─────┘               └──────────┘
                    ┌────▼────────┐◄─── closeout rejected ──┐
                    │ IN_PROGRESS │                         │
                    └────┬────────┘                         │
                    ┌────▼─────────────┐                    │
                    │ PENDING_CLOSEOUT │────────────────────┘
                    └────┬─────────────┘
                    ┌────▼──────┐
                    │ COMPLETED │
                    └───────────┘

CANCELLED is reachable by the submitter from any pending, approved or
rejected state. Administrators may move a request between any two states.
"""

from enum import Enum
from typing import Dict, FrozenSet, NamedTuple, Optional, Set


class MocStatus(str, Enum):
    """Workflow status of a change request."""

    DRAFT = "draft"
    PENDING_DEPARTMENT_APPROVAL = "pending_department_approval"
    PENDING_FINAL_REVIEW = "pending_final_review"
    APPROVED = "approved"
    REJECTED = "rejected"
    IN_PROGRESS = "in_progress"
    PENDING_CLOSEOUT = "pending_closeout"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


class ActorRole(str, Enum):
    """Roles an acting user can hold relative to one change request."""

    ADMIN = "admin"
    SUBMITTER = "submitter"
    ASSIGNEE = "assignee"
    TECHNICAL_AUTHORITY = "technical_authority"
    CLOSEOUT_APPROVER = "closeout_approver"


class Panel(str, Enum):
    """Approver panels that decide by consensus."""

    TECHNICAL_AUTHORITY = "technical_authority"
    CLOSEOUT = "closeout"


class TransitionRule(NamedTuple):
    """Defines a permitted status change and who may request it.

    ``panel``/``panel_configured`` restrict the rule to requests where that
    panel has (or has no) approvers. ``casts_ballot`` rules record the actor's
    vote and only move the request once the panel reaches consensus.
    """
    from_state: MocStatus
    to_state: MocStatus
    roles: FrozenSet[ActorRole]
    panel: Optional[Panel] = None
    panel_configured: Optional[bool] = None
    casts_ballot: bool = False
    requires_comment: bool = False


_SUBMITTER = frozenset([ActorRole.SUBMITTER])
_OWNERS = frozenset([ActorRole.SUBMITTER, ActorRole.ASSIGNEE])
_TECHNICAL_AUTHORITY = frozenset([ActorRole.TECHNICAL_AUTHORITY])
_CLOSEOUT = frozenset([ActorRole.CLOSEOUT_APPROVER])
_ADMIN = frozenset([ActorRole.ADMIN])


TRANSITION_RULES: list[TransitionRule] = [
    # Submission
    TransitionRule(MocStatus.DRAFT, MocStatus.PENDING_DEPARTMENT_APPROVAL, _SUBMITTER),
    TransitionRule(MocStatus.PENDING_DEPARTMENT_APPROVAL, MocStatus.REJECTED, _ADMIN,
                   requires_comment=True),

    # Cancellation
    TransitionRule(MocStatus.PENDING_DEPARTMENT_APPROVAL, MocStatus.CANCELLED, _SUBMITTER),
    TransitionRule(MocStatus.PENDING_FINAL_REVIEW, MocStatus.CANCELLED, _SUBMITTER),
    TransitionRule(MocStatus.APPROVED, MocStatus.CANCELLED, _SUBMITTER),
    TransitionRule(MocStatus.REJECTED, MocStatus.CANCELLED, _SUBMITTER),

    # Final review
    TransitionRule(MocStatus.PENDING_FINAL_REVIEW, MocStatus.APPROVED, _TECHNICAL_AUTHORITY,
                   Panel.TECHNICAL_AUTHORITY, True, casts_ballot=True),
    TransitionRule(MocStatus.PENDING_FINAL_REVIEW, MocStatus.REJECTED, _TECHNICAL_AUTHORITY,
                   Panel.TECHNICAL_AUTHORITY, True, casts_ballot=True, requires_comment=True),
    TransitionRule(MocStatus.PENDING_FINAL_REVIEW, MocStatus.APPROVED, _OWNERS,
                   Panel.TECHNICAL_AUTHORITY, False),
    TransitionRule(MocStatus.PENDING_FINAL_REVIEW, MocStatus.REJECTED, _OWNERS,
                   Panel.TECHNICAL_AUTHORITY, False, requires_comment=True),

    # Implementation
    TransitionRule(MocStatus.APPROVED, MocStatus.IN_PROGRESS, _OWNERS),
    TransitionRule(MocStatus.IN_PROGRESS, MocStatus.PENDING_CLOSEOUT, _OWNERS),

    # Closeout
    TransitionRule(MocStatus.PENDING_CLOSEOUT, MocStatus.COMPLETED, _CLOSEOUT,
                   Panel.CLOSEOUT, True, casts_ballot=True),
    TransitionRule(MocStatus.PENDING_CLOSEOUT, MocStatus.IN_PROGRESS, _CLOSEOUT,
                   Panel.CLOSEOUT, True, casts_ballot=True, requires_comment=True),
    TransitionRule(MocStatus.PENDING_CLOSEOUT, MocStatus.COMPLETED, _OWNERS,
                   Panel.CLOSEOUT, False),
]

# Build lookup tables for efficient access
RULES_BY_PAIR: Dict[tuple[MocStatus, MocStatus], list[TransitionRule]] = {}

for rule in TRANSITION_RULES:
    RULES_BY_PAIR.setdefault((rule.from_state, rule.to_state), []).append(rule)


# Statuses a panel's consensus leads to: (advance, reject)
PANEL_OUTCOMES: Dict[Panel, tuple[MocStatus, MocStatus]] = {
    Panel.TECHNICAL_AUTHORITY: (MocStatus.APPROVED, MocStatus.REJECTED),
    Panel.CLOSEOUT: (MocStatus.COMPLETED, MocStatus.IN_PROGRESS),
}

# A material edit in these states sends the request back to draft
REVIEW_STATES: Set[MocStatus] = {
    MocStatus.PENDING_DEPARTMENT_APPROVAL,
    MocStatus.PENDING_FINAL_REVIEW,
}

# Entering department approval from these states rebuilds the approvals
SUBMISSION_SOURCES: Set[MocStatus] = {
    MocStatus.DRAFT,
    MocStatus.REJECTED,
}

# States that stamp the review metadata on entry
DECISION_STATES: Set[MocStatus] = {
    MocStatus.APPROVED,
    MocStatus.REJECTED,
}

# States a change request may be deleted from
DELETABLE_STATES: Set[MocStatus] = {
    MocStatus.DRAFT,
    MocStatus.REJECTED,
    MocStatus.CANCELLED,
}


def parse_status(value: str) -> Optional[MocStatus]:
    """Return the status for ``value``, or None if it is not a known status."""
    try:
        return MocStatus(value)
    except ValueError:
        return None


def is_known_transition(from_state: MocStatus, to_state: MocStatus) -> bool:
    """Check if any rule connects the two states."""
    return (from_state, to_state) in RULES_BY_PAIR


def find_rule(
    from_state: MocStatus,
    to_state: MocStatus,
    roles: Set[ActorRole],
    configured_panels: Set[Panel],
) -> Optional[TransitionRule]:
    """Get the first rule for the state pair that the actor's roles satisfy."""
    for rule in RULES_BY_PAIR.get((from_state, to_state), []):
        if rule.panel is not None and (rule.panel in configured_panels) != rule.panel_configured:
            continue
        if rule.roles & roles:
            return rule
    return None
