"""Stop/rerun governance for CI failure loops."""

from delivery_governance.stop_decision.evaluator import (
    AttemptCounts,
    RecommendedNextStep,
    RuleEvaluation,
    StopDecision,
    StopDecisionContext,
    StopDecisionEvaluator,
    StopDecisionType,
    StopReasonCode,
)
from delivery_governance.stop_decision.polling import CheckStatus, PollOutcome, PollResult, wait_for_checks

__all__ = [
    "AttemptCounts",
    "CheckStatus",
    "PollOutcome",
    "PollResult",
    "RecommendedNextStep",
    "RuleEvaluation",
    "StopDecision",
    "StopDecisionContext",
    "StopDecisionEvaluator",
    "StopDecisionType",
    "StopReasonCode",
    "wait_for_checks",
]
