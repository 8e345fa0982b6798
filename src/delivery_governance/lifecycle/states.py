"""Canonical issue state machine.

Eight states, two of them absorbing (DONE, KILLED). HOLD is reachable from
every active state and can resume into any of them. allowed_targets() is the
single source of truth for the transition table and is written as an
exhaustive match so an unhandled state fails loudly.

The two guards, ensure_not_killed() and ensure_not_terminal(), must run before
every mutating operation on an issue.
"""

from enum import StrEnum
from typing import NoReturn

from delivery_governance.errors import TerminalStateViolation


class IssueState(StrEnum):
    """Canonical issue lifecycle states."""

    CREATED = "CREATED"
    SPEC_READY = "SPEC_READY"
    IMPLEMENTING = "IMPLEMENTING"
    VERIFIED = "VERIFIED"
    MERGE_READY = "MERGE_READY"
    DONE = "DONE"
    HOLD = "HOLD"
    KILLED = "KILLED"


TERMINAL_STATES: frozenset[IssueState] = frozenset({IssueState.DONE, IssueState.KILLED})
ACTIVE_STATES: frozenset[IssueState] = frozenset(
    {
        IssueState.CREATED,
        IssueState.SPEC_READY,
        IssueState.IMPLEMENTING,
        IssueState.VERIFIED,
        IssueState.MERGE_READY,
    }
)

_DESCRIPTIONS: dict[IssueState, str] = {
    IssueState.CREATED: "Issue created, awaiting specification",
    IssueState.SPEC_READY: "Specification complete, ready for implementation",
    IssueState.IMPLEMENTING: "Implementation in progress",
    IssueState.VERIFIED: "Implementation verified, awaiting merge readiness",
    IssueState.MERGE_READY: "Ready to merge",
    IssueState.DONE: "Completed",
    IssueState.HOLD: "Work paused, on hold for human review",
    IssueState.KILLED: "Cancelled, no further work will be performed",
}


def _unreachable(state: object) -> NoReturn:
    raise AssertionError(f"Unhandled issue state: {state!r}")


def allowed_targets(state: IssueState) -> frozenset[IssueState]:
    """Return the states an issue may transition to from ``state``."""
    match state:
        case IssueState.CREATED:
            return frozenset({IssueState.SPEC_READY, IssueState.HOLD, IssueState.KILLED})
        case IssueState.SPEC_READY:
            return frozenset({IssueState.IMPLEMENTING, IssueState.HOLD, IssueState.KILLED})
        case IssueState.IMPLEMENTING:
            return frozenset({IssueState.VERIFIED, IssueState.SPEC_READY, IssueState.HOLD, IssueState.KILLED})
        case IssueState.VERIFIED:
            return frozenset({IssueState.MERGE_READY, IssueState.IMPLEMENTING, IssueState.HOLD, IssueState.KILLED})
        case IssueState.MERGE_READY:
            return frozenset({IssueState.DONE, IssueState.VERIFIED, IssueState.HOLD, IssueState.KILLED})
        case IssueState.HOLD:
            # HOLD is entered from active states only.
            return ACTIVE_STATES | {IssueState.KILLED}
        case IssueState.DONE | IssueState.KILLED:
            return frozenset()
        case _:
            _unreachable(state)


TRANSITION_TABLE: dict[IssueState, frozenset[IssueState]] = {state: allowed_targets(state) for state in IssueState}


def is_valid_issue_state(value: object) -> bool:
    """Return True if value is the exact (case-sensitive) name of an issue state."""
    return isinstance(value, str) and value in IssueState.__members__


def is_valid_transition(from_state: IssueState, to_state: IssueState) -> bool:
    """Return True if the transition table allows from_state → to_state."""
    return to_state in allowed_targets(from_state)


def is_terminal_state(state: IssueState) -> bool:
    return state in TERMINAL_STATES


def is_active_state(state: IssueState) -> bool:
    """Active means work is progressing: not DONE, KILLED or HOLD."""
    return state in ACTIVE_STATES


def can_perform_action(state: IssueState) -> bool:
    """Return True if any action may be performed on an issue in this state."""
    return not is_terminal_state(state)


def get_issue_state_description(state: IssueState) -> str:
    return _DESCRIPTIONS[state]


def ensure_not_killed(state: IssueState) -> None:
    """Guard against acting on a cancelled ("zombie") issue.

    Raises:
        TerminalStateViolation: If state is KILLED.
    """
    if state is IssueState.KILLED:
        raise TerminalStateViolation(
            "Cannot perform action on KILLED issue. "
            "Issue has been cancelled. Re-activation requires explicit new intent.",
            state=state.value,
        )


def ensure_not_terminal(state: IssueState) -> None:
    """Guard against acting on a DONE or KILLED issue.

    Raises:
        TerminalStateViolation: If state is DONE or KILLED.
    """
    if is_terminal_state(state):
        raise TerminalStateViolation(
            f"Cannot perform action on issue in terminal state {state.value}.",
            state=state.value,
        )
