"""Tests for the issue lifecycle state machine and its guards."""

import pytest

from delivery_governance.errors import TerminalStateViolation
from delivery_governance.lifecycle import (
    TRANSITION_TABLE,
    IssueState,
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

TERMINAL = [IssueState.DONE, IssueState.KILLED]
NON_TERMINAL = [state for state in IssueState if state not in TERMINAL]
ACTIVE = [state for state in NON_TERMINAL if state is not IssueState.HOLD]


class TestTransitionTable:
    @pytest.mark.parametrize("source", TERMINAL)
    @pytest.mark.parametrize("target", list(IssueState))
    def test_terminal_states_are_absorbing(self, source: IssueState, target: IssueState) -> None:
        assert is_valid_transition(source, target) is False

    @pytest.mark.parametrize("source", ACTIVE)
    def test_every_active_state_can_enter_hold(self, source: IssueState) -> None:
        assert is_valid_transition(source, IssueState.HOLD) is True

    @pytest.mark.parametrize("target", ACTIVE)
    def test_hold_can_resume_into_every_active_state(self, target: IssueState) -> None:
        assert is_valid_transition(IssueState.HOLD, target) is True

    def test_hold_can_be_killed_but_not_done(self) -> None:
        assert is_valid_transition(IssueState.HOLD, IssueState.KILLED) is True
        assert is_valid_transition(IssueState.HOLD, IssueState.DONE) is False

    def test_hold_to_hold_is_not_a_transition(self) -> None:
        """Only active states enter HOLD; an issue already on hold cannot be put on hold again."""
        assert is_valid_transition(IssueState.HOLD, IssueState.HOLD) is False

    @pytest.mark.parametrize(
        ("source", "target", "expected"),
        [
            (IssueState.CREATED, IssueState.SPEC_READY, True),
            (IssueState.CREATED, IssueState.IMPLEMENTING, False),
            (IssueState.IMPLEMENTING, IssueState.SPEC_READY, True),
            (IssueState.VERIFIED, IssueState.IMPLEMENTING, True),
            (IssueState.MERGE_READY, IssueState.DONE, True),
            (IssueState.MERGE_READY, IssueState.VERIFIED, True),
            (IssueState.VERIFIED, IssueState.DONE, False),
            (IssueState.SPEC_READY, IssueState.CREATED, False),
        ],
    )
    def test_specific_transitions(self, source: IssueState, target: IssueState, expected: bool) -> None:
        assert is_valid_transition(source, target) is expected

    def test_table_matches_allowed_targets(self) -> None:
        assert set(TRANSITION_TABLE) == set(IssueState)
        for state, targets in TRANSITION_TABLE.items():
            assert targets == allowed_targets(state)

    def test_unknown_state_fails_loudly(self) -> None:
        with pytest.raises(AssertionError):
            allowed_targets("ARCHIVED")  # type: ignore[arg-type]


class TestStatePredicates:
    def test_terminal_and_active(self) -> None:
        assert [s for s in IssueState if is_terminal_state(s)] == TERMINAL
        assert [s for s in IssueState if is_active_state(s)] == ACTIVE
        assert not is_active_state(IssueState.HOLD)
        assert not is_terminal_state(IssueState.HOLD)

    @pytest.mark.parametrize("state", list(IssueState))
    def test_can_perform_action(self, state: IssueState) -> None:
        assert can_perform_action(state) is (state not in TERMINAL)

    def test_is_valid_issue_state_is_case_sensitive(self) -> None:
        assert is_valid_issue_state("HOLD") is True
        assert is_valid_issue_state("hold") is False
        assert is_valid_issue_state("ARCHIVED") is False
        assert is_valid_issue_state(None) is False

    @pytest.mark.parametrize("state", list(IssueState))
    def test_every_state_has_a_description(self, state: IssueState) -> None:
        assert get_issue_state_description(state)


class TestGuards:
    def test_ensure_not_killed_raises_for_killed(self) -> None:
        with pytest.raises(TerminalStateViolation) as exc_info:
            ensure_not_killed(IssueState.KILLED)

        assert "Cannot perform action on KILLED issue" in str(exc_info.value)
        assert exc_info.value.state == "KILLED"
        assert exc_info.value.to_dict()["kind"] == "TERMINAL_STATE_VIOLATION"

    @pytest.mark.parametrize("state", [s for s in IssueState if s is not IssueState.KILLED])
    def test_ensure_not_killed_passes_otherwise(self, state: IssueState) -> None:
        ensure_not_killed(state)

    @pytest.mark.parametrize("state", TERMINAL)
    def test_ensure_not_terminal_raises(self, state: IssueState) -> None:
        with pytest.raises(TerminalStateViolation, match=state.value):
            ensure_not_terminal(state)

    @pytest.mark.parametrize("state", NON_TERMINAL)
    def test_ensure_not_terminal_passes(self, state: IssueState) -> None:
        ensure_not_terminal(state)
