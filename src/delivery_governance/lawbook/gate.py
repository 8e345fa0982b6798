"""Deny-by-default lawbook gate.

authorize() answers one question: may this action identifier be automated
under this lawbook? The answer is allowed only when the identifier is on the
allow-list and absent from the deny-list. A missing document, a document that
does not fail closed, or an empty identifier are all denials. Every verdict
carries the lawbook version and content hash so it can be reproduced later.
"""

from collections.abc import Iterable
from enum import StrEnum

from pydantic import BaseModel, ConfigDict

from delivery_governance.hashing import stable_hash
from delivery_governance.lawbook.schema import LawbookDocument
from delivery_governance.observability import get_logger

logger = get_logger(__name__)


class GateCode(StrEnum):
    """Machine-readable outcome of a gate evaluation."""

    ALLOWED = "ALLOWED"
    LAWBOOK_MISSING = "LAWBOOK_MISSING"
    LAWBOOK_NOT_FAIL_CLOSED = "LAWBOOK_NOT_FAIL_CLOSED"
    ACTION_UNKNOWN = "ACTION_UNKNOWN"
    ACTION_NOT_ALLOWED = "ACTION_NOT_ALLOWED"
    ACTION_DENIED = "ACTION_DENIED"


class GateVerdict(BaseModel):
    """Result of authorizing one action against a lawbook.

    Attributes:
        allowed: True only when the action is explicitly allowed and not denied.
        verdict: "ALLOW" or "DENY".
        reason: Human-readable explanation.
        rule_id: Identifier of the rule that decided the verdict.
        code: Machine-readable outcome.
        action_id: The action that was evaluated.
        lawbook_version: Version of the lawbook in force, None if missing.
        lawbook_hash: Content hash of the lawbook in force, None if missing.
        inputs_hash: Hash of (action_id, lawbook_hash) for reproducibility.
    """

    model_config = ConfigDict(frozen=True)

    allowed: bool
    verdict: str
    reason: str
    rule_id: str
    code: GateCode
    action_id: str
    lawbook_version: str | None = None
    lawbook_hash: str | None = None
    inputs_hash: str


def _verdict(
    action_id: str,
    code: GateCode,
    reason: str,
    rule_id: str,
    lawbook: LawbookDocument | None,
) -> GateVerdict:
    lawbook_hash = lawbook.content_hash if lawbook is not None else None
    allowed = code is GateCode.ALLOWED
    return GateVerdict(
        allowed=allowed,
        verdict="ALLOW" if allowed else "DENY",
        reason=reason,
        rule_id=rule_id,
        code=code,
        action_id=action_id,
        lawbook_version=lawbook.lawbook_version if lawbook is not None else None,
        lawbook_hash=lawbook_hash,
        inputs_hash=stable_hash({"action_id": action_id, "lawbook_hash": lawbook_hash}),
    )


def authorize(action_id: str, lawbook: LawbookDocument | None) -> GateVerdict:
    """Authorize a single action identifier against a lawbook.

    Args:
        action_id: Playbook id, action type or other gated identifier.
        lawbook: The lawbook in force, or None when none is configured.

    Returns:
        GateVerdict. Never raises for a denial.
    """
    if lawbook is None:
        verdict = _verdict(
            action_id,
            GateCode.LAWBOOK_MISSING,
            "No lawbook configured; all actions are denied",
            "lawbook.missing",
            None,
        )
    elif not lawbook.fail_closed:
        verdict = _verdict(
            action_id,
            GateCode.LAWBOOK_NOT_FAIL_CLOSED,
            f"Lawbook {lawbook.lawbook_version} is not fail-closed; refusing to authorize",
            "lawbook.fail_closed",
            lawbook,
        )
    elif not action_id:
        verdict = _verdict(
            action_id,
            GateCode.ACTION_UNKNOWN,
            "Empty action identifier",
            "lawbook.action_unknown",
            lawbook,
        )
    elif action_id in lawbook.denied_actions:
        verdict = _verdict(
            action_id,
            GateCode.ACTION_DENIED,
            f"Action '{action_id}' is explicitly denied by lawbook {lawbook.lawbook_version}",
            "lawbook.denied_actions",
            lawbook,
        )
    elif action_id not in lawbook.allowed_actions:
        verdict = _verdict(
            action_id,
            GateCode.ACTION_NOT_ALLOWED,
            f"Action '{action_id}' is not in the allow-list of lawbook {lawbook.lawbook_version}",
            "lawbook.allowed_actions",
            lawbook,
        )
    else:
        verdict = _verdict(
            action_id,
            GateCode.ALLOWED,
            f"Action '{action_id}' is allowed by lawbook {lawbook.lawbook_version}",
            "lawbook.allowed_actions",
            lawbook,
        )

    logger.debug(
        "Lawbook gate evaluated",
        action_id=action_id,
        allowed=verdict.allowed,
        code=verdict.code.value,
        lawbook_version=verdict.lawbook_version,
    )
    return verdict


def authorize_all(action_ids: Iterable[str], lawbook: LawbookDocument | None) -> GateVerdict | None:
    """Authorize several identifiers, stopping at the first denial.

    Args:
        action_ids: Identifiers in evaluation order.
        lawbook: The lawbook in force.

    Returns:
        The first denying GateVerdict, or None when every identifier is allowed.
    """
    for action_id in action_ids:
        verdict = authorize(action_id, lawbook)
        if not verdict.allowed:
            return verdict
    return None
