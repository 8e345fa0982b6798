"""Lawbook (policy document) schema.

A lawbook is a versioned, hashable authorization document. The governance core
never reads it from ambient state: every evaluation receives the document as a
parameter and records its version and content hash, so a later change to the
document never alters the meaning of historical audit records.
"""

from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field

from delivery_governance.evidence.gate import EvidenceKind
from delivery_governance.hashing import stable_hash

NextStepName = Literal["PROMPT", "MANUAL_REVIEW", "FIX_REQUIRED", "WAIT"]


class StopRules(BaseModel):
    """Bounds for the CI rerun loop evaluated by the stop decision evaluator.

    Attributes:
        max_reruns_per_job: Reruns allowed for a single job before KILL.
        max_total_reruns_per_pr: Reruns allowed across a PR before KILL.
        max_wait_minutes_for_green: Minutes since first failure before KILL.
        cooldown_minutes: Minimum minutes since the last change before a rerun.
        block_on_failure_classes: Failure-class substrings that are never retried.
        no_signal_change_threshold: Identical consecutive failure signals that
            mean a rerun gains no new information.
        next_step_overrides: Optional reason_code → recommended next step remap.
    """

    model_config = ConfigDict(frozen=True)

    max_reruns_per_job: int = Field(default=2, ge=0)
    max_total_reruns_per_pr: int = Field(default=5, ge=0)
    max_wait_minutes_for_green: int | None = Field(default=60, ge=1)
    cooldown_minutes: int = Field(default=5, ge=0)
    block_on_failure_classes: tuple[str, ...] = ("build deterministic", "lint error", "syntax error")
    no_signal_change_threshold: int = Field(default=2, ge=1)
    next_step_overrides: dict[str, NextStepName] = Field(default_factory=dict)


class EvidencePolicy(BaseModel):
    """Lawbook-level evidence requirements.

    Attributes:
        required_kinds_by_category: Incident category → evidence kinds that must
            be present before any playbook may run for that category.
    """

    model_config = ConfigDict(frozen=True)

    required_kinds_by_category: dict[str, tuple[EvidenceKind, ...]] = Field(default_factory=dict)


class LawbookDocument(BaseModel):
    """A versioned allow/deny authorization document.

    Attributes:
        lawbook_id: Stable identifier of the lawbook lineage.
        lawbook_version: Human-assigned version string.
        fail_closed: Must be true; a document that does not fail closed
            authorizes nothing.
        allowed_actions: Explicit allow-list of playbook ids, action types and
            other gated action identifiers.
        denied_actions: Explicit deny-list; always wins over allowed_actions.
        stop_rules: Bounds for the CI rerun loop.
        evidence: Category-level evidence requirements.
    """

    model_config = ConfigDict(frozen=True)

    lawbook_id: str = Field(default="DELIVERY-LAWBOOK", min_length=1)
    lawbook_version: str = Field(min_length=1)
    fail_closed: bool = True
    allowed_actions: tuple[str, ...] = ()
    denied_actions: tuple[str, ...] = ()
    stop_rules: StopRules = Field(default_factory=StopRules)
    evidence: EvidencePolicy = Field(default_factory=EvidencePolicy)

    @property
    def content_hash(self) -> str:
        """SHA-256 of the canonical JSON form of the whole document."""
        return stable_hash(self.model_dump(mode="json"))

    def reference(self) -> dict[str, Any]:
        """Return the version/hash pair recorded alongside every decision."""
        return {"lawbook_version": self.lawbook_version, "lawbook_hash": self.content_hash}
