"""Tests for the human intervention policy."""

import pytest

from delivery_governance.lifecycle import (
    InterventionContext,
    IssueState,
    check_intervention,
    check_manual_state_transition,
    describe_policy,
    validate_manual_action_context,
)
from delivery_governance.lifecycle.intervention import (
    RULE_ALLOWED_STATE,
    RULE_AUTOMATIC_ACTIONS_ALLOWED,
    RULE_INTERMEDIATE_STATE_BLOCKED,
    RULE_INTERMEDIATE_TRANSITION_BLOCKED,
    RULE_TRANSITION_FROM_HOLD,
    RULE_TRANSITION_TO_HOLD_OR_KILLED,
    RULE_VERDICT_REQUIRES_HUMAN,
)


class TestCheckIntervention:
    def test_automatic_actions_always_allowed(self) -> None:
        decision = check_intervention(
            InterventionContext(current_state=IssueState.IMPLEMENTING, is_manual_action=False)
        )

        assert decision.allowed is True
        assert decision.policy_rule == RULE_AUTOMATIC_ACTIONS_ALLOWED

    @pytest.mark.parametrize("state", [IssueState.HOLD, IssueState.KILLED])
    def test_manual_allowed_in_hold_and_killed(self, state: IssueState) -> None:
        decision = check_intervention(InterventionContext(current_state=state, is_manual_action=True))

        assert decision.allowed is True
        assert decision.policy_rule == RULE_ALLOWED_STATE

    def test_manual_allowed_when_verdict_requires_human(self) -> None:
        decision = check_intervention(
            InterventionContext(
                current_state=IssueState.VERIFIED,
                verdict_action="HUMAN_REQUIRED",
                is_manual_action=True,
            )
        )

        assert decision.allowed is True
        assert decision.policy_rule == RULE_VERDICT_REQUIRES_HUMAN

    def test_manual_blocked_in_intermediate_state(self) -> None:
        decision = check_intervention(
            InterventionContext(current_state=IssueState.IMPLEMENTING, verdict_action="GREEN", is_manual_action=True)
        )

        assert decision.allowed is False
        assert decision.policy_rule == RULE_INTERMEDIATE_STATE_BLOCKED
        assert decision.violation is not None
        assert "IMPLEMENTING" in decision.violation
        assert len(decision.suggestions) == 3


class TestManualTransition:
    @pytest.mark.parametrize("target", [IssueState.CREATED, IssueState.IMPLEMENTING, IssueState.MERGE_READY])
    def test_leaving_hold_allowed(self, target: IssueState) -> None:
        decision = check_manual_state_transition(IssueState.HOLD, target, "alice", "review done")

        assert decision.allowed is True
        assert decision.policy_rule == RULE_TRANSITION_FROM_HOLD

    @pytest.mark.parametrize("target", [IssueState.HOLD, IssueState.KILLED])
    def test_entering_hold_or_killed_allowed(self, target: IssueState) -> None:
        decision = check_manual_state_transition(IssueState.VERIFIED, target)

        assert decision.allowed is True
        assert decision.policy_rule == RULE_TRANSITION_TO_HOLD_OR_KILLED

    def test_intermediate_jump_blocked(self) -> None:
        decision = check_manual_state_transition(IssueState.IMPLEMENTING, IssueState.VERIFIED)

        assert decision.allowed is False
        assert decision.policy_rule == RULE_INTERMEDIATE_TRANSITION_BLOCKED
        assert decision.violation is not None
        assert "IMPLEMENTING → VERIFIED" in decision.violation
        assert any("HOLD" in suggestion for suggestion in decision.suggestions)


class TestValidateContext:
    def test_automatic_context_never_validated(self) -> None:
        assert validate_manual_action_context(InterventionContext(is_manual_action=False)) == []

    def test_complete_manual_context_is_valid(self) -> None:
        context = InterventionContext(
            current_state=IssueState.HOLD,
            target_state=IssueState.IMPLEMENTING,
            is_manual_action=True,
            initiated_by="alice",
            reason="Spec clarified",
        )

        assert validate_manual_action_context(context) == []

    def test_missing_fields_reported(self) -> None:
        context = InterventionContext(target_state=IssueState.HOLD, is_manual_action=True)

        errors = validate_manual_action_context(context)

        assert errors == [
            "Manual action must include initiatedBy (user identification)",
            "Manual action must include reason for intervention",
            "Manual state transition must include currentState",
        ]


def test_describe_policy_mentions_every_rule() -> None:
    text = describe_policy()

    assert "HOLD" in text
    assert "KILLED" in text
    assert "HUMAN_REQUIRED" in text
    assert "FORBIDDEN" in text
