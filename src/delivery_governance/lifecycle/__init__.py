"""Issue lifecycle: the canonical state machine and the human intervention policy."""

from delivery_governance.lifecycle.intervention import (
    InterventionContext,
    InterventionDecision,
    check_intervention,
    check_manual_state_transition,
    describe_policy,
    validate_manual_action_context,
)
from delivery_governance.lifecycle.states import (
    IssueState,
    TRANSITION_TABLE,
    allowed_targets,
    can_perform_action,
    ensure_not_killed,
    ensure_not_terminal,
    get_issue_state_description,
    is_active_state,
    is_terminal_state,
    is_valid_issue_state,
    is_valid_transition,
)

__all__ = [
    "InterventionContext",
    "InterventionDecision",
    "IssueState",
    "TRANSITION_TABLE",
    "allowed_targets",
    "can_perform_action",
    "check_intervention",
    "check_manual_state_transition",
    "describe_policy",
    "ensure_not_killed",
    "ensure_not_terminal",
    "get_issue_state_description",
    "is_active_state",
    "is_terminal_state",
    "is_valid_issue_state",
    "is_valid_transition",
    "validate_manual_action_context",
]
