"""Stop decision evaluator for CI rerun governance.

Decides whether an automated rerun loop may CONTINUE, must HOLD for a human,
or must be KILLed for the current context. Every stop rule is evaluated and
recorded in ``applied_rules`` (so a CONTINUE decision still shows what was
checked); the first triggered rule in priority order decides:

    1. max_reruns_per_job          MAX_ATTEMPTS      KILL  MANUAL_REVIEW
    2. max_total_reruns_per_pr     MAX_TOTAL_RERUNS  KILL  MANUAL_REVIEW
    3. max_wait_minutes_for_green  TIMEOUT           KILL  MANUAL_REVIEW
    4. block_on_failure_classes    NON_RETRIABLE     HOLD  FIX_REQUIRED
    5. no_signal_change_threshold  NO_SIGNAL_CHANGE  HOLD  MANUAL_REVIEW
    6. cooldown_minutes            COOLDOWN_ACTIVE   HOLD  WAIT
    7. lawbook RERUN_FAILED_JOBS   LAWBOOK_BLOCK     HOLD  MANUAL_REVIEW

The evaluator is pure: the lawbook and the current time are parameters.
"""

from collections.abc import Callable, Sequence
from datetime import UTC, datetime
from enum import StrEnum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field

from delivery_governance.hashing import stable_hash
from delivery_governance.lawbook.gate import authorize
from delivery_governance.lawbook.schema import LawbookDocument, StopRules
from delivery_governance.observability import get_logger

logger = get_logger(__name__)

RERUN_ACTION_ID = "RERUN_FAILED_JOBS"


class StopDecisionType(StrEnum):
    CONTINUE = "CONTINUE"
    HOLD = "HOLD"
    KILL = "KILL"


class StopReasonCode(StrEnum):
    MAX_ATTEMPTS = "MAX_ATTEMPTS"
    MAX_TOTAL_RERUNS = "MAX_TOTAL_RERUNS"
    TIMEOUT = "TIMEOUT"
    NON_RETRIABLE = "NON_RETRIABLE"
    NO_SIGNAL_CHANGE = "NO_SIGNAL_CHANGE"
    COOLDOWN_ACTIVE = "COOLDOWN_ACTIVE"
    LAWBOOK_BLOCK = "LAWBOOK_BLOCK"


class RecommendedNextStep(StrEnum):
    """What the caller should do next.

    PROMPT means "generate a fix prompt and let automation continue".
    """

    PROMPT = "PROMPT"
    MANUAL_REVIEW = "MANUAL_REVIEW"
    FIX_REQUIRED = "FIX_REQUIRED"
    WAIT = "WAIT"


class AttemptCounts(BaseModel):
    model_config = ConfigDict(frozen=True)

    current_job_attempts: int = Field(default=0, ge=0)
    total_pr_attempts: int = Field(default=0, ge=0)


class StopDecisionContext(BaseModel):
    """Inputs of one stop decision.

    Attributes:
        owner: Repository owner.
        repo: Repository name.
        pr_number: Pull request number.
        run_id: CI workflow run id, if known.
        request_id: Caller correlation id.
        failure_class: Classification of the latest failure.
        attempt_counts: Per-job and per-PR rerun counters.
        first_failure_at: When the loop first went red.
        last_changed_at: When the PR or its checks last changed.
        previous_failure_signals: Rolling window of failure-signal hashes, oldest first.
    """

    model_config = ConfigDict(frozen=True)

    owner: str
    repo: str
    pr_number: int = Field(ge=1)
    run_id: int | None = None
    request_id: str | None = None
    failure_class: str | None = None
    attempt_counts: AttemptCounts = Field(default_factory=AttemptCounts)
    first_failure_at: datetime | None = None
    last_changed_at: datetime | None = None
    previous_failure_signals: tuple[str, ...] = ()

    @property
    def stream_id(self) -> str:
        """Audit stream identifier of the PR this context belongs to."""
        return f"pr:{self.owner}/{self.repo}#{self.pr_number}"


class RuleEvaluation(BaseModel):
    """One stop rule as evaluated for a decision."""

    model_config = ConfigDict(frozen=True)

    rule: str
    triggered: bool
    detail: str


class StopDecision(BaseModel):
    """Result of evaluating the stop rules.

    ``reason_code`` is None for CONTINUE. ``applied_rules`` lists every rule
    in priority order, triggered or not.
    """

    model_config = ConfigDict(frozen=True)

    decision: StopDecisionType
    reason_code: StopReasonCode | None = None
    reasons: tuple[str, ...]
    recommended_next_step: RecommendedNextStep
    attempt_counts: AttemptCounts
    thresholds: dict[str, Any]
    applied_rules: tuple[RuleEvaluation, ...]
    lawbook_version: str | None = None
    lawbook_hash: str | None = None
    context_hash: str
    evaluated_at: datetime


_OUTCOMES: dict[StopReasonCode, tuple[StopDecisionType, RecommendedNextStep]] = {
    StopReasonCode.MAX_ATTEMPTS: (StopDecisionType.KILL, RecommendedNextStep.MANUAL_REVIEW),
    StopReasonCode.MAX_TOTAL_RERUNS: (StopDecisionType.KILL, RecommendedNextStep.MANUAL_REVIEW),
    StopReasonCode.TIMEOUT: (StopDecisionType.KILL, RecommendedNextStep.MANUAL_REVIEW),
    StopReasonCode.NON_RETRIABLE: (StopDecisionType.HOLD, RecommendedNextStep.FIX_REQUIRED),
    StopReasonCode.NO_SIGNAL_CHANGE: (StopDecisionType.HOLD, RecommendedNextStep.MANUAL_REVIEW),
    StopReasonCode.COOLDOWN_ACTIVE: (StopDecisionType.HOLD, RecommendedNextStep.WAIT),
    StopReasonCode.LAWBOOK_BLOCK: (StopDecisionType.HOLD, RecommendedNextStep.MANUAL_REVIEW),
}


def is_blocked_failure_class(failure_class: str | None, block_list: Sequence[str]) -> bool:
    """Case-insensitive substring match of the failure class against the block list."""
    if not failure_class:
        return False
    normalized = failure_class.strip().lower()
    return any(blocked.lower() in normalized for blocked in block_list)


def has_no_signal_change(previous_signals: Sequence[str], threshold: int) -> bool:
    """True when the last ``threshold`` failure signals are all identical."""
    if len(previous_signals) < threshold:
        return False
    recent = previous_signals[-threshold:]
    return all(signal == recent[0] for signal in recent)


def minutes_since(moment: datetime | None, now: datetime) -> int | None:
    """Whole minutes elapsed since ``moment``; naive datetimes are taken as UTC."""
    if moment is None:
        return None
    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=UTC)
    return int((now - moment).total_seconds() // 60)


class StopDecisionEvaluator:
    """Evaluates stop rules for a rerun context against a lawbook.

    Args:
        clock: Returns the current time; injectable for tests.
    """

    def __init__(self, clock: Callable[[], datetime] | None = None) -> None:
        self._clock = clock or (lambda: datetime.now(UTC))

    def evaluate(
        self,
        context: StopDecisionContext,
        lawbook: LawbookDocument | None,
        now: datetime | None = None,
    ) -> StopDecision:
        """Evaluate every stop rule and return the decision.

        Args:
            context: The rerun context.
            lawbook: Lawbook in force. Without one, default stop rules apply
                and the rerun action itself is denied (LAWBOOK_BLOCK).
            now: Evaluation time; defaults to the injected clock.

        Returns:
            The StopDecision.
        """
        now = now or self._clock()
        rules = lawbook.stop_rules if lawbook is not None else StopRules()
        attempts = context.attempt_counts

        minutes_since_first_failure = minutes_since(context.first_failure_at, now)
        minutes_since_last_change = minutes_since(context.last_changed_at, now)
        rerun_verdict = authorize(RERUN_ACTION_ID, lawbook)

        checks: list[tuple[StopReasonCode, str, bool, str]] = [
            (
                StopReasonCode.MAX_ATTEMPTS,
                "max_reruns_per_job",
                attempts.current_job_attempts >= rules.max_reruns_per_job,
                f"Job rerun attempts {attempts.current_job_attempts}/{rules.max_reruns_per_job}",
            ),
            (
                StopReasonCode.MAX_TOTAL_RERUNS,
                "max_total_reruns_per_pr",
                attempts.total_pr_attempts >= rules.max_total_reruns_per_pr,
                f"PR total reruns {attempts.total_pr_attempts}/{rules.max_total_reruns_per_pr}",
            ),
            (
                StopReasonCode.TIMEOUT,
                "max_wait_minutes_for_green",
                rules.max_wait_minutes_for_green is not None
                and minutes_since_first_failure is not None
                and minutes_since_first_failure >= rules.max_wait_minutes_for_green,
                f"Minutes since first failure {minutes_since_first_failure}/{rules.max_wait_minutes_for_green}",
            ),
            (
                StopReasonCode.NON_RETRIABLE,
                "block_on_failure_classes",
                is_blocked_failure_class(context.failure_class, rules.block_on_failure_classes),
                f"Failure class '{context.failure_class}' checked against {list(rules.block_on_failure_classes)}",
            ),
            (
                StopReasonCode.NO_SIGNAL_CHANGE,
                "no_signal_change_threshold",
                has_no_signal_change(context.previous_failure_signals, rules.no_signal_change_threshold),
                f"Last {rules.no_signal_change_threshold} failure signals compared "
                f"({len(context.previous_failure_signals)} recorded)",
            ),
            (
                StopReasonCode.COOLDOWN_ACTIVE,
                "cooldown_minutes",
                minutes_since_last_change is not None and minutes_since_last_change < rules.cooldown_minutes,
                f"Minutes since last change {minutes_since_last_change}/{rules.cooldown_minutes}",
            ),
            (
                StopReasonCode.LAWBOOK_BLOCK,
                "lawbook_allows_rerun",
                not rerun_verdict.allowed,
                rerun_verdict.reason,
            ),
        ]

        applied_rules = tuple(
            RuleEvaluation(rule=rule, triggered=triggered, detail=detail) for _, rule, triggered, detail in checks
        )
        triggered_codes = [(code, detail) for code, _, triggered, detail in checks if triggered]

        if triggered_codes:
            reason_code, detail = triggered_codes[0]
            decision, next_step = _OUTCOMES[reason_code]
            override = rules.next_step_overrides.get(reason_code.value)
            if override is not None:
                next_step = RecommendedNextStep(override)
            reasons = tuple(f"{code.value}: {text}" for code, text in triggered_codes)
        else:
            reason_code = None
            decision, next_step = StopDecisionType.CONTINUE, RecommendedNextStep.PROMPT
            reasons = ("All stop condition checks passed; safe to continue automation",)

        result = StopDecision(
            decision=decision,
            reason_code=reason_code,
            reasons=reasons,
            recommended_next_step=next_step,
            attempt_counts=attempts,
            thresholds=rules.model_dump(mode="json", exclude={"next_step_overrides"}),
            applied_rules=applied_rules,
            lawbook_version=rerun_verdict.lawbook_version,
            lawbook_hash=rerun_verdict.lawbook_hash,
            context_hash=stable_hash(context),
            evaluated_at=now,
        )

        logger.info(
            "Stop decision evaluated",
            stream_id=context.stream_id,
            request_id=context.request_id,
            decision=result.decision.value,
            reason_code=reason_code.value if reason_code else None,
            recommended_next_step=next_step.value,
        )
        return result
