"""Pydantic request and result objects exchanged with callers.

Incident                — the remediation target with its evidence bundle
StepView                — one remediation step as returned to callers
RemediationRunResult    — a remediation run as returned by run_playbook()
TransitionResult        — ok/err outcome of an issue transition
AuditEventView          — one audit event as returned by get_audit_trail()
"""

import uuid
from datetime import datetime
from typing import Any

from pydantic import BaseModel, ConfigDict, Field

from delivery_governance.core.models import AuditEvent, RemediationRun, RemediationStep, RunStatus, StepStatus
from delivery_governance.evidence.gate import EvidenceItem
from delivery_governance.lifecycle.states import IssueState


class Incident(BaseModel):
    """A detected incident a playbook may remediate.

    Attributes:
        incident_key: Stable business key (e.g. INC-2026-000123).
        incident_id: Optional storage id assigned by the incident source.
        category: Classifier category (e.g. ECS_TASK_CRASHLOOP).
        evidence: Evidence bundle produced by the classifier.
    """

    model_config = ConfigDict(frozen=True)

    incident_key: str = Field(min_length=1, max_length=128)
    incident_id: str | None = None
    category: str | None = None
    evidence: tuple[EvidenceItem, ...] = ()


class StepView(BaseModel):
    """A remediation step as seen by callers."""

    step_id: str
    sequence: int
    action_type: str
    idempotency_key: str
    status: StepStatus
    inputs: dict[str, Any]
    output: dict[str, Any] | None = None
    error: dict[str, Any] | None = None
    created_at: datetime
    started_at: datetime | None = None
    completed_at: datetime | None = None

    @classmethod
    def from_model(cls, step: RemediationStep) -> "StepView":
        return cls(
            step_id=step.step_id,
            sequence=step.sequence,
            action_type=step.action_type,
            idempotency_key=step.idempotency_key,
            status=StepStatus(step.status),
            inputs=dict(step.inputs_json or {}),
            output=step.output_json,
            error=step.error_json,
            created_at=step.created_at,
            started_at=step.started_at,
            completed_at=step.completed_at,
        )


class RemediationRunResult(BaseModel):
    """Outcome of PlaybookExecutor.run().

    ``reused`` is True when an identical request had already created the run
    (a duplicate-key no-op, not an error). ``error`` carries the
    machine-readable error (PolicyViolation, EvidenceMissing or
    StepExecutionFailure) that explains a SKIPPED or FAILED run.
    """

    run_id: uuid.UUID
    run_key: str
    incident_key: str
    playbook_id: str
    playbook_version: str
    inputs_hash: str
    status: RunStatus
    skip_reason: str | None = None
    reused: bool = False
    lawbook_version: str | None = None
    lawbook_hash: str | None = None
    planned: dict[str, Any] | None = None
    result: dict[str, Any] | None = None
    error: dict[str, Any] | None = None
    steps: list[StepView] = Field(default_factory=list)
    created_at: datetime
    started_at: datetime | None = None
    completed_at: datetime | None = None

    @classmethod
    def from_model(cls, run: RemediationRun, reused: bool = False) -> "RemediationRunResult":
        result = dict(run.result_json) if run.result_json else None
        return cls(
            run_id=run.id,
            run_key=run.run_key,
            incident_key=run.incident_key,
            playbook_id=run.playbook_id,
            playbook_version=run.playbook_version,
            inputs_hash=run.inputs_hash,
            status=RunStatus(run.status),
            skip_reason=run.skip_reason,
            reused=reused,
            lawbook_version=run.lawbook_version,
            lawbook_hash=run.lawbook_hash,
            planned=run.planned_json,
            result=result,
            error=result.get("error") if result else None,
            steps=[StepView.from_model(step) for step in sorted(run.steps, key=lambda s: s.sequence)],
            created_at=run.created_at,
            started_at=run.started_at,
            completed_at=run.completed_at,
        )


class TransitionResult(BaseModel):
    """Ok/err result of an issue transition.

    ``ok`` results carry the new state; ``err`` results carry the error's
    machine-readable form and leave the issue unchanged.
    """

    ok: bool
    issue_id: str
    state: IssueState
    error: dict[str, Any] | None = None

    @classmethod
    def success(cls, issue_id: str, state: IssueState) -> "TransitionResult":
        return cls(ok=True, issue_id=issue_id, state=state)

    @classmethod
    def failure(cls, issue_id: str, state: IssueState, error: dict[str, Any]) -> "TransitionResult":
        return cls(ok=False, issue_id=issue_id, state=state, error=error)

    @property
    def error_kind(self) -> str | None:
        return self.error["kind"] if self.error else None


class AuditEventView(BaseModel):
    """An audit event as returned to callers."""

    model_config = ConfigDict(frozen=True)

    id: uuid.UUID
    stream_id: str
    sequence: int
    event_type: str
    payload: dict[str, Any]
    payload_hash: str
    prev_hash: str | None = None
    chain_hash: str
    lawbook_version: str | None = None
    lawbook_hash: str | None = None
    created_at: datetime

    @classmethod
    def from_model(cls, entry: AuditEvent) -> "AuditEventView":
        return cls(
            id=entry.id,
            stream_id=entry.stream_id,
            sequence=entry.sequence,
            event_type=entry.event_type,
            payload=dict(entry.payload),
            payload_hash=entry.payload_hash,
            prev_hash=entry.prev_hash,
            chain_hash=entry.chain_hash,
            lawbook_version=entry.lawbook_version,
            lawbook_hash=entry.lawbook_hash,
            created_at=entry.created_at,
        )
