"""Consensus rules for department approvals and approver panels.

Every rule is the same fold: any rejection is final, unanimous approval
advances, anything else keeps waiting. Approvers that have not voted count as
pending.
"""

from enum import Enum
from typing import Iterable, Mapping, Optional

from mocflow.core.errors import ValidationError


class Ballot(str, Enum):
    """A single approver's (or department's) vote."""

    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"


class Outcome(str, Enum):
    """Result of folding a set of ballots."""

    PENDING = "pending"
    ADVANCE = "advance"
    REJECT = "reject"


def parse_decision(value) -> Ballot:
    """Parse an approve/reject decision; pending is not a valid vote."""
    try:
        ballot = Ballot(value)
    except ValueError:
        raise ValidationError(f"Invalid decision: {value!r}")
    if ballot is Ballot.PENDING:
        raise ValidationError("A decision must be 'approved' or 'rejected'")
    return ballot


def fold(ballots: Iterable[Ballot]) -> Outcome:
    """Any rejected -> REJECT; all approved -> ADVANCE; otherwise PENDING."""
    all_approved = True
    for ballot in ballots:
        if ballot is Ballot.REJECTED:
            return Outcome.REJECT
        if ballot is not Ballot.APPROVED:
            all_approved = False
    return Outcome.ADVANCE if all_approved else Outcome.PENDING


def tally(approver_ids: Iterable[str], ballots: Mapping[str, str]) -> Outcome:
    """Fold the ballot box over the full configured approver set."""
    return fold(Ballot(ballots.get(approver_id, Ballot.PENDING.value)) for approver_id in approver_ids)


def aggregate_departments(statuses: Iterable[str]) -> Outcome:
    return fold(Ballot(status) for status in statuses)


def record_ballot(
    approver_ids: list[str],
    ballots: Mapping[str, str],
    voter_id: str,
    ballot: Ballot,
) -> dict[str, str]:
    """Return a new ballot box with the voter's ballot, ordered like the approver list."""
    updated = dict(ballots)
    updated[voter_id] = ballot.value
    return prune_ballots(approver_ids, updated)


def prune_ballots(approver_ids: list[str], ballots: Optional[Mapping[str, str]]) -> dict[str, str]:
    """Drop ballots cast by users no longer on the panel."""
    ballots = ballots or {}
    return {approver_id: ballots[approver_id] for approver_id in approver_ids if approver_id in ballots}
