"""Error taxonomy for the governance core.

Every error carries a machine-readable ``kind`` and a list of human-readable
reasons so callers (an HTTP layer, a CLI) can render it without parsing
messages. None of these represent a crash of the system: they are outcomes of
a single request.

- PolicyViolation         — denied by the lawbook gate or intervention policy
- EvidenceMissing         — required evidence predicates unmet
- TerminalStateViolation  — action attempted on a DONE/KILLED issue
- StepExecutionFailure    — an action backend reported failure
- AuditWriteFailure       — an audit event could not be persisted (fail-closed)
- ValidationError         — malformed input (missing initiated_by, bad key, ...)
- NotFoundError           — referenced record does not exist
- ConflictError           — caller's view of the record is stale
- InvalidStatusTransition — a run/step status would move backwards

A repeated identical request is not an error: it is reported as
``reused=True`` on the returned result (DuplicateKeyNoOp).
"""

from typing import Any

DUPLICATE_KEY_NOOP = "DUPLICATE_KEY_NOOP"


class GovernanceError(Exception):
    """Base class for all governance errors.

    Args:
        message: Primary human-readable message.
        reasons: Additional human-readable reasons. The message is always the
            first entry of ``reasons``.
        details: Structured context included in to_dict().
    """

    kind = "GOVERNANCE_ERROR"

    def __init__(
        self,
        message: str,
        reasons: list[str] | None = None,
        **details: Any,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.reasons = [message, *(reasons or [])]
        self.details = details

    def to_dict(self) -> dict[str, Any]:
        """Serialize the error for callers and audit payloads.

        Returns:
            Dict with kind, message, reasons and details.
        """
        return {
            "kind": self.kind,
            "message": self.message,
            "reasons": list(self.reasons),
            "details": dict(self.details),
        }


class PolicyViolation(GovernanceError):
    """Action, playbook or transition denied by policy.

    Args:
        message: Why the action was denied.
        policy_rule: Identifier of the rule that denied the action.
        suggestions: Actionable remediations for the caller.
    """

    kind = "POLICY_VIOLATION"

    def __init__(
        self,
        message: str,
        policy_rule: str | None = None,
        suggestions: list[str] | None = None,
        **details: Any,
    ) -> None:
        super().__init__(message, policy_rule=policy_rule, **details)
        self.policy_rule = policy_rule
        self.suggestions = list(suggestions or [])

    def to_dict(self) -> dict[str, Any]:
        data = super().to_dict()
        data["policy_rule"] = self.policy_rule
        data["suggestions"] = list(self.suggestions)
        return data


class EvidenceMissing(GovernanceError):
    """Required evidence predicates are not satisfied."""

    kind = "EVIDENCE_MISSING"

    def __init__(self, missing: list[dict[str, Any]]) -> None:
        reasons = [f"Missing evidence: {item}" for item in missing]
        super().__init__("Required evidence not satisfied", reasons=reasons, missing=missing)
        self.missing = missing


class TerminalStateViolation(GovernanceError):
    """An action was attempted on an issue in DONE or KILLED."""

    kind = "TERMINAL_STATE_VIOLATION"

    def __init__(self, message: str, state: str) -> None:
        super().__init__(message, state=state)
        self.state = state


class StepExecutionFailure(GovernanceError):
    """A remediation step's action backend reported failure."""

    kind = "STEP_EXECUTION_FAILURE"

    def __init__(self, step_id: str, code: str, message: str) -> None:
        super().__init__(f"Step '{step_id}' failed: {message}", step_id=step_id, code=code)
        self.step_id = step_id
        self.code = code


class AuditWriteFailure(GovernanceError):
    """An audit event could not be written; the action is treated as not having happened."""

    kind = "AUDIT_WRITE_FAILURE"


class ValidationError(GovernanceError):
    """Malformed input.

    Args:
        message: What is wrong.
        field: The offending input field, if any.
    """

    kind = "VALIDATION_ERROR"

    def __init__(self, message: str, field: str | None = None, reasons: list[str] | None = None) -> None:
        super().__init__(message, reasons=reasons, field=field)
        self.field = field


class NotFoundError(GovernanceError):
    """A referenced record does not exist."""

    kind = "NOT_FOUND"

    def __init__(self, resource: str, resource_id: str) -> None:
        super().__init__(f"{resource} '{resource_id}' not found", resource=resource, resource_id=resource_id)
        self.resource = resource
        self.resource_id = resource_id


class ConflictError(GovernanceError):
    """The caller's expected state does not match the stored state."""

    kind = "CONFLICT"


class InvalidStatusTransition(GovernanceError):
    """A run or step status change that is not a forward move."""

    kind = "INVALID_STATUS_TRANSITION"
