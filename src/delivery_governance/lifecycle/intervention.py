"""Human intervention policy.

Automatic transitions are governed by the transition table and guardrails.
This policy adds a second, independent layer restricting when a *human* may
act on an issue:

1. Automatic (non-manual) actions are always allowed.
2. A manual action is allowed when the issue is in HOLD or KILLED, or when
   the latest verdict explicitly asks for a human (HUMAN_REQUIRED).
3. Any other manual action on an intermediate state is denied.

Manual transitions are narrower still: leaving HOLD and entering HOLD or
KILLED are allowed; a manual jump between two intermediate states is not.
"""

from pydantic import BaseModel, ConfigDict

from delivery_governance.lifecycle.states import IssueState

HUMAN_INTERVENTION_ALLOWED_STATES: frozenset[IssueState] = frozenset({IssueState.HOLD, IssueState.KILLED})
HUMAN_INTERVENTION_REQUIRED_ACTIONS: frozenset[str] = frozenset({"HUMAN_REQUIRED"})

RULE_AUTOMATIC_ACTIONS_ALLOWED = "RULE_1_AUTOMATIC_ACTIONS_ALLOWED"
RULE_ALLOWED_STATE = "RULE_2A_ALLOWED_STATE"
RULE_VERDICT_REQUIRES_HUMAN = "RULE_2B_VERDICT_REQUIRES_HUMAN"
RULE_INTERMEDIATE_STATE_BLOCKED = "RULE_3_INTERMEDIATE_STATE_BLOCKED"
RULE_TRANSITION_FROM_HOLD = "RULE_TRANSITION_FROM_HOLD"
RULE_TRANSITION_TO_HOLD_OR_KILLED = "RULE_TRANSITION_TO_HOLD_OR_KILLED"
RULE_INTERMEDIATE_TRANSITION_BLOCKED = "RULE_INTERMEDIATE_TRANSITION_BLOCKED"


class InterventionContext(BaseModel):
    """One evaluation of "may a human act now".

    Attributes:
        current_state: State of the issue when the action is requested.
        target_state: Proposed new state, for transitions.
        verdict_action: Action of the latest verdict (e.g. HUMAN_REQUIRED).
        is_manual_action: True when a human initiated the action.
        initiated_by: Identification of the human.
        reason: Why the human is intervening.
    """

    model_config = ConfigDict(frozen=True)

    current_state: IssueState | None = None
    target_state: IssueState | None = None
    verdict_action: str | None = None
    is_manual_action: bool
    initiated_by: str | None = None
    reason: str | None = None


class InterventionDecision(BaseModel):
    """Outcome of a human intervention check."""

    model_config = ConfigDict(frozen=True)

    allowed: bool
    reason: str
    policy_rule: str
    violation: str | None = None
    suggestions: tuple[str, ...] = ()


def check_intervention(context: InterventionContext) -> InterventionDecision:
    """Evaluate the intervention rules in order; the first match decides.

    Args:
        context: The intervention request.

    Returns:
        InterventionDecision with the deciding rule.
    """
    if not context.is_manual_action:
        return InterventionDecision(
            allowed=True,
            reason="Automatic action allowed (governed by guardrails)",
            policy_rule=RULE_AUTOMATIC_ACTIONS_ALLOWED,
        )

    if context.current_state in HUMAN_INTERVENTION_ALLOWED_STATES:
        return InterventionDecision(
            allowed=True,
            reason=f"Manual intervention allowed: issue is in {context.current_state.value} state",
            policy_rule=RULE_ALLOWED_STATE,
        )

    if context.verdict_action in HUMAN_INTERVENTION_REQUIRED_ACTIONS:
        return InterventionDecision(
            allowed=True,
            reason=f"Manual intervention allowed: verdict action is {context.verdict_action}",
            policy_rule=RULE_VERDICT_REQUIRES_HUMAN,
        )

    state_name = context.current_state.value if context.current_state else "UNKNOWN"
    return InterventionDecision(
        allowed=False,
        reason="Manual intervention not allowed in intermediate state",
        policy_rule=RULE_INTERMEDIATE_STATE_BLOCKED,
        violation=(
            f"Manual action blocked: issue is in {state_name} state. "
            "Human intervention is only allowed in HOLD or KILLED states, "
            "or when the verdict action is HUMAN_REQUIRED."
        ),
        suggestions=(
            "Use automatic state transitions with guardrails",
            "Put issue on HOLD if manual review is needed",
            "Wait for verdict to require human intervention",
        ),
    )


def check_manual_state_transition(
    from_state: IssueState,
    to_state: IssueState,
    initiated_by: str | None = None,
    reason: str | None = None,
) -> InterventionDecision:
    """Check whether a human may move an issue from one state to another.

    Args:
        from_state: Current issue state.
        to_state: Requested target state.
        initiated_by: Identification of the human (informational).
        reason: Why the human is intervening (informational).

    Returns:
        InterventionDecision with the deciding rule.
    """
    if from_state is IssueState.HOLD:
        return InterventionDecision(
            allowed=True,
            reason=f"Manual transition from HOLD to {to_state.value} allowed",
            policy_rule=RULE_TRANSITION_FROM_HOLD,
        )

    if to_state in HUMAN_INTERVENTION_ALLOWED_STATES:
        return InterventionDecision(
            allowed=True,
            reason=f"Manual transition to {to_state.value} allowed from any state",
            policy_rule=RULE_TRANSITION_TO_HOLD_OR_KILLED,
        )

    return InterventionDecision(
        allowed=False,
        reason="Manual transition between intermediate states is forbidden",
        policy_rule=RULE_INTERMEDIATE_TRANSITION_BLOCKED,
        violation=(
            f"Manual transition {from_state.value} → {to_state.value} blocked. "
            "Transitions between intermediate states must be automatic."
        ),
        suggestions=(
            f"Transition to {to_state.value} must be automatic based on guardrails",
            "Put issue on HOLD if manual intervention is needed",
        ),
    )


def validate_manual_action_context(context: InterventionContext) -> list[str]:
    """Return validation messages for a manual action; empty when valid.

    Automatic actions are never validated here.
    """
    if not context.is_manual_action:
        return []

    errors: list[str] = []
    if not context.initiated_by:
        errors.append("Manual action must include initiatedBy (user identification)")
    if not context.reason:
        errors.append("Manual action must include reason for intervention")
    if context.target_state is not None and context.current_state is None:
        errors.append("Manual state transition must include currentState")
    return errors


def describe_policy() -> str:
    """Return a human-readable summary of the intervention policy."""
    return """Human Intervention Policy

Manual intervention is ONLY allowed when:
  1. Issue State = HOLD
  2. Issue State = KILLED
  3. Verdict Action = HUMAN_REQUIRED

Manual transitions:
  - Leaving HOLD to any non-terminal state: allowed
  - Entering HOLD or KILLED from any state: allowed
  - Any other manual transition: FORBIDDEN

FORBIDDEN examples (must be automatic, based on guardrails):
  - Manual transition from IMPLEMENTING to VERIFIED
  - Manual transition from VERIFIED to MERGE_READY

Automatic actions are always allowed and are governed by guardrails.
"""
