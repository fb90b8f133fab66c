"""Change request workflow engine.

Provides the status state machine and consensus rules. The service that
persists every workflow operation lives in ``mocflow.core.workflow.service``.
"""

from .states import (
    MocStatus,
    ActorRole,
    Panel,
    TransitionRule,
    TRANSITION_RULES,
    REVIEW_STATES,
    DELETABLE_STATES,
    find_rule,
    is_known_transition,
    parse_status,
)
from .consensus import Ballot, Outcome, tally, aggregate_departments, parse_decision
from .machine import WorkflowStateMachine, StatusEvent

__all__ = [
    "MocStatus",
    "ActorRole",
    "Panel",
    "TransitionRule",
    "TRANSITION_RULES",
    "REVIEW_STATES",
    "DELETABLE_STATES",
    "find_rule",
    "is_known_transition",
    "parse_status",
    "Ballot",
    "Outcome",
    "tally",
    "aggregate_departments",
    "parse_decision",
    "WorkflowStateMachine",
    "StatusEvent",
]
