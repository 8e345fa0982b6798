"""Core business logic services for the governance core.

Three service classes:
- AuditService: Redaction and append-only audit trail write orchestration
- IssueLifecycleService: Guarded, policy-checked issue state transitions
- StopDecisionService: Stop rule evaluation for CI rerun loops, audited

The remediation PlaybookExecutor lives in remediation/executor.py and uses
AuditService the same way.

All services are async-first. They accept injected repositories through
their constructors and contain no framework code. Every decision they make is
written to the audit trail before the result is returned; an audit failure
propagates as AuditWriteFailure.
"""

from typing import Any

from delivery_governance.core.interfaces import IAuditTrailRepository, IIssueRepository
from delivery_governance.core.models import AuditEvent
from delivery_governance.core.redaction import redact
from delivery_governance.core.schemas import AuditEventView, TransitionResult
from delivery_governance.errors import (
    AuditWriteFailure,
    ConflictError,
    GovernanceError,
    PolicyViolation,
    ValidationError,
)
from delivery_governance.hashing import to_json_value
from delivery_governance.lawbook.gate import authorize
from delivery_governance.lawbook.schema import LawbookDocument
from delivery_governance.lifecycle.intervention import (
    InterventionContext,
    check_intervention,
    check_manual_state_transition,
    validate_manual_action_context,
)
from delivery_governance.lifecycle.states import (
    IssueState,
    allowed_targets,
    ensure_not_terminal,
    is_valid_transition,
)
from delivery_governance.observability import get_logger
from delivery_governance.stop_decision.evaluator import StopDecision, StopDecisionContext, StopDecisionEvaluator

logger = get_logger(__name__)

ISSUE_TRANSITION_ACTION_ID = "ISSUE_TRANSITION"


def issue_stream_id(issue_id: str) -> str:
    return f"issue:{issue_id}"


def run_stream_id(run_key: str) -> str:
    return f"run:{run_key}"


class AuditService:
    """Append-only audit trail write orchestration.

    Payloads are converted to canonical JSON-native form, redacted, and only
    then handed to the repository, which hashes and chains them.

    Args:
        audit_repo: Append-only audit repository (Audit Wall).
    """

    def __init__(self, audit_repo: IAuditTrailRepository) -> None:
        self._audit_repo = audit_repo

    async def record(
        self,
        stream_id: str,
        event_type: str,
        payload: dict[str, Any],
        lawbook_version: str | None = None,
        lawbook_hash: str | None = None,
    ) -> AuditEvent:
        """Redact and append one event.

        Args:
            stream_id: Audit stream.
            event_type: Event type.
            payload: Event payload; may contain enums, datetimes and models.
            lawbook_version: Lawbook version in force.
            lawbook_hash: Lawbook content hash in force.

        Returns:
            The persisted AuditEvent.

        Raises:
            AuditWriteFailure: If the event could not be persisted.
        """
        redacted = redact(to_json_value(payload))
        return await self._audit_repo.append(
            stream_id=stream_id,
            event_type=event_type,
            payload=redacted,
            lawbook_version=lawbook_version,
            lawbook_hash=lawbook_hash,
        )

    async def get_trail(self, stream_id: str) -> list[AuditEventView]:
        """Return a stream's events in creation order."""
        events = await self._audit_repo.query(stream_id)
        return [AuditEventView.from_model(entry) for entry in events]


class IssueLifecycleService:
    """Guarded issue state transitions.

    Check order for transition():
        1. manual action context is complete (initiated_by, reason)
        2. stored state matches the caller's from_state
        3. issue is not DONE or KILLED
        4. lawbook allows ISSUE_TRANSITION
        5. transition table allows from_state → to_state
        6. manual transitions pass the human intervention policy

    Args:
        issue_repo: Issue persistence.
        audit: AuditService for decision records.
    """

    def __init__(self, issue_repo: IIssueRepository, audit: AuditService) -> None:
        self._issue_repo = issue_repo
        self._audit = audit

    async def transition(
        self,
        issue_id: str,
        from_state: IssueState,
        to_state: IssueState,
        *,
        is_manual: bool,
        lawbook: LawbookDocument | None,
        initiated_by: str | None = None,
        reason: str | None = None,
        verdict_action: str | None = None,
    ) -> TransitionResult:
        """Attempt one issue transition.

        Args:
            issue_id: Issue to transition.
            from_state: State the caller believes the issue is in.
            to_state: Requested state.
            is_manual: True when a human initiated the transition.
            lawbook: Lawbook in force.
            initiated_by: Human identification (required when manual).
            reason: Why the human intervenes (required when manual).
            verdict_action: Latest verdict action (e.g. HUMAN_REQUIRED).

        Returns:
            TransitionResult: ok with the new state, or err with the
            machine-readable error. The issue is unchanged on err.

        Raises:
            NotFoundError: If the issue does not exist.
            AuditWriteFailure: If the decision could not be audited.
        """
        from_state = IssueState(from_state)
        to_state = IssueState(to_state)
        context = InterventionContext(
            current_state=from_state,
            target_state=to_state,
            verdict_action=verdict_action,
            is_manual_action=is_manual,
            initiated_by=initiated_by,
            reason=reason,
        )
        request = {
            "issue_id": issue_id,
            "from_state": from_state,
            "to_state": to_state,
            "is_manual": is_manual,
            "initiated_by": initiated_by,
            "reason": reason,
            "verdict_action": verdict_action,
        }
        lawbook_version = lawbook.lawbook_version if lawbook is not None else None
        lawbook_hash = lawbook.content_hash if lawbook is not None else None

        issue = await self._issue_repo.get(issue_id)
        current = IssueState(issue.status)

        try:
            validation_errors = validate_manual_action_context(context)
            if validation_errors:
                raise ValidationError(validation_errors[0], field="context", reasons=validation_errors[1:])

            if current is not from_state:
                raise ConflictError(
                    f"Issue '{issue_id}' is in state {current.value}, not {from_state.value}",
                    issue_id=issue_id,
                    actual_state=current.value,
                )

            ensure_not_terminal(current)

            verdict = authorize(ISSUE_TRANSITION_ACTION_ID, lawbook)
            if not verdict.allowed:
                raise PolicyViolation(verdict.reason, policy_rule=verdict.rule_id, code=verdict.code.value)

            if not is_valid_transition(from_state, to_state):
                raise PolicyViolation(
                    f"Transition {from_state.value} → {to_state.value} is not allowed by the issue lifecycle",
                    policy_rule="lifecycle.transition_table",
                    suggestions=[f"Allowed targets: {sorted(s.value for s in allowed_targets(from_state))}"],
                )

            if is_manual:
                self._check_manual(context, from_state, to_state)

            await self._issue_repo.compare_and_set_status(issue_id, from_state.value, to_state.value)

        except GovernanceError as exc:
            await self._audit.record(
                issue_stream_id(issue_id),
                "ISSUE_TRANSITION_REJECTED",
                {**request, "error": exc.to_dict()},
                lawbook_version=lawbook_version,
                lawbook_hash=lawbook_hash,
            )
            logger.info(
                "Issue transition rejected",
                issue_id=issue_id,
                from_state=from_state.value,
                to_state=to_state.value,
                kind=exc.kind,
            )
            return TransitionResult.failure(issue_id, current, exc.to_dict())

        try:
            await self._audit.record(
                issue_stream_id(issue_id),
                "ISSUE_TRANSITIONED",
                request,
                lawbook_version=lawbook_version,
                lawbook_hash=lawbook_hash,
            )
        except AuditWriteFailure:
            # An unaudited transition must not stand.
            await self._issue_repo.compare_and_set_status(issue_id, to_state.value, from_state.value)
            logger.error(
                "Issue transition reverted after audit failure",
                issue_id=issue_id,
                from_state=from_state.value,
                to_state=to_state.value,
            )
            raise
        logger.info(
            "Issue transitioned",
            issue_id=issue_id,
            from_state=from_state.value,
            to_state=to_state.value,
            is_manual=is_manual,
        )
        return TransitionResult.success(issue_id, to_state)

    @staticmethod
    def _check_manual(context: InterventionContext, from_state: IssueState, to_state: IssueState) -> None:
        transition_decision = check_manual_state_transition(
            from_state,
            to_state,
            context.initiated_by,
            context.reason,
        )
        if transition_decision.allowed:
            return
        # A HUMAN_REQUIRED verdict explicitly hands the issue to a human.
        if check_intervention(context).allowed:
            return
        raise PolicyViolation(
            transition_decision.violation or transition_decision.reason,
            policy_rule=transition_decision.policy_rule,
            suggestions=list(transition_decision.suggestions),
        )


class StopDecisionService:
    """Evaluates stop rules and records every decision.

    Args:
        audit: AuditService for decision records.
        evaluator: The stop decision evaluator (clock injectable).
    """

    def __init__(self, audit: AuditService, evaluator: StopDecisionEvaluator | None = None) -> None:
        self._audit = audit
        self._evaluator = evaluator or StopDecisionEvaluator()

    async def evaluate(self, context: StopDecisionContext, lawbook: LawbookDocument | None) -> StopDecision:
        """Evaluate and audit one stop decision.

        Raises:
            AuditWriteFailure: If the decision could not be audited.
        """
        decision = self._evaluator.evaluate(context, lawbook)
        await self._audit.record(
            context.stream_id,
            "STOP_DECISION",
            {"context": context, "decision": decision},
            lawbook_version=decision.lawbook_version,
            lawbook_hash=decision.lawbook_hash,
        )
        return decision
