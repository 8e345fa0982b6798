"""SQLAlchemy ORM models for the governance core.

All tables use the ``gov_`` prefix. Two declarative bases keep the Audit Wall
physically separable from the primary store:

Primary database (Base):
- Issue                 — issue lifecycle state, mutated only via validated transitions
- RemediationRun        — one governed playbook execution, unique per run_key
- RemediationStep       — one action within a run, unique per (run_id, step_id)
- LawbookVersion        — immutable stored lawbook documents, unique per content hash
- LawbookActivePointer  — the active lawbook version per lawbook_id

Audit database (AuditBase):
- AuditEvent            — IMMUTABLE hash-chained audit log

IMPORTANT: AuditEvent rows are written ONLY via AuditTrailRepository. The
storage layer rejects UPDATE and DELETE (see adapters/audit_wall.py).
"""

import uuid
from datetime import UTC, datetime
from enum import StrEnum
from typing import Any

from sqlalchemy import JSON, DateTime, ForeignKey, Integer, String, TypeDecorator, UniqueConstraint
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship

JSONType = JSON().with_variant(JSONB(), "postgresql")


def utcnow() -> datetime:
    return datetime.now(UTC)


class UTCDateTime(TypeDecorator[datetime]):
    """Timezone-aware UTC datetime on every backend.

    SQLite drops tzinfo on storage; values read back are re-tagged as UTC so
    comparisons between stored and in-memory timestamps stay valid.
    """

    impl = DateTime(timezone=True)
    cache_ok = True

    def process_bind_param(self, value: datetime | None, dialect: Any) -> datetime | None:
        if value is None:
            return None
        if value.tzinfo is None:
            return value.replace(tzinfo=UTC)
        return value.astimezone(UTC)

    def process_result_value(self, value: datetime | None, dialect: Any) -> datetime | None:
        if value is None:
            return None
        if value.tzinfo is None:
            return value.replace(tzinfo=UTC)
        return value.astimezone(UTC)


class Base(DeclarativeBase):
    """Declarative base for the primary database."""


class AuditBase(DeclarativeBase):
    """Declarative base for the Audit Wall database."""


class RunStatus(StrEnum):
    PLANNED = "PLANNED"
    RUNNING = "RUNNING"
    SUCCEEDED = "SUCCEEDED"
    FAILED = "FAILED"
    SKIPPED = "SKIPPED"


class StepStatus(StrEnum):
    PLANNED = "PLANNED"
    RUNNING = "RUNNING"
    SUCCEEDED = "SUCCEEDED"
    FAILED = "FAILED"
    SKIPPED = "SKIPPED"


TERMINAL_RUN_STATUSES: frozenset[RunStatus] = frozenset({RunStatus.SUCCEEDED, RunStatus.FAILED, RunStatus.SKIPPED})

# Forward-only status moves. Anything not listed is rejected by the repositories.
RUN_STATUS_TRANSITIONS: dict[RunStatus, frozenset[RunStatus]] = {
    RunStatus.PLANNED: frozenset({RunStatus.RUNNING, RunStatus.SKIPPED}),
    RunStatus.RUNNING: frozenset({RunStatus.SUCCEEDED, RunStatus.FAILED}),
    RunStatus.SUCCEEDED: frozenset(),
    RunStatus.FAILED: frozenset(),
    RunStatus.SKIPPED: frozenset(),
}
STEP_STATUS_TRANSITIONS: dict[StepStatus, frozenset[StepStatus]] = {
    StepStatus.PLANNED: frozenset({StepStatus.RUNNING, StepStatus.SKIPPED}),
    StepStatus.RUNNING: frozenset({StepStatus.SUCCEEDED, StepStatus.FAILED}),
    StepStatus.SUCCEEDED: frozenset(),
    StepStatus.FAILED: frozenset(),
    StepStatus.SKIPPED: frozenset(),
}


class Issue(Base):
    """An issue governed by the lifecycle state machine.

    Attributes:
        id: Caller-assigned issue identifier.
        title: Human-readable title.
        status: Current IssueState value.
        created_at: When the issue was registered.
        updated_at: When the status last changed.
    """

    __tablename__ = "gov_issues"

    id: Mapped[str] = mapped_column(String(128), primary_key=True)
    title: Mapped[str] = mapped_column(String(500), nullable=False, default="")
    status: Mapped[str] = mapped_column(
        String(30),
        nullable=False,
        default="CREATED",
        index=True,
        comment="IssueState: CREATED | SPEC_READY | IMPLEMENTING | VERIFIED | MERGE_READY | DONE | HOLD | KILLED",
    )
    created_at: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False, default=utcnow)


class RemediationRun(Base):
    """One governed execution of a playbook against an incident.

    Created exactly once per run_key; a second identical request returns this
    row unchanged.

    Attributes:
        run_key: ``<incident_key>:<playbook_id>:<inputs_hash>``, globally unique.
        incident_key: Incident the run remediates.
        playbook_id: Playbook executed.
        playbook_version: Version of the playbook definition used.
        inputs_hash: Stable hash of the run-level inputs.
        status: RunStatus value.
        skip_reason: LAWBOOK_DENIED | EVIDENCE_MISSING | AUDIT_WRITE_FAILED for SKIPPED runs.
        planned_json: The deterministic plan, persisted before execution.
        result_json: Outcome summary (skip details, failing step, ...).
        lawbook_version: Lawbook version in force when the run was planned.
        lawbook_hash: Lawbook content hash in force when the run was planned.
    """

    __tablename__ = "gov_remediation_runs"

    id: Mapped[uuid.UUID] = mapped_column(primary_key=True, default=uuid.uuid4)
    run_key: Mapped[str] = mapped_column(String(256), nullable=False, unique=True)
    incident_key: Mapped[str] = mapped_column(String(128), nullable=False, index=True)
    playbook_id: Mapped[str] = mapped_column(String(100), nullable=False)
    playbook_version: Mapped[str] = mapped_column(String(50), nullable=False, default="")
    inputs_hash: Mapped[str] = mapped_column(String(64), nullable=False)
    status: Mapped[str] = mapped_column(
        String(20),
        nullable=False,
        comment="RunStatus: PLANNED | RUNNING | SUCCEEDED | FAILED | SKIPPED",
    )
    skip_reason: Mapped[str | None] = mapped_column(String(50), nullable=True)
    planned_json: Mapped[dict[str, Any] | None] = mapped_column(JSONType, nullable=True)
    result_json: Mapped[dict[str, Any] | None] = mapped_column(JSONType, nullable=True)
    lawbook_version: Mapped[str | None] = mapped_column(String(100), nullable=True)
    lawbook_hash: Mapped[str | None] = mapped_column(String(64), nullable=True)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False, default=utcnow)
    started_at: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)
    completed_at: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)

    steps: Mapped[list["RemediationStep"]] = relationship(
        back_populates="run",
        order_by="RemediationStep.sequence",
        lazy="selectin",
    )


class RemediationStep(Base):
    """One action within a remediation run.

    Attributes:
        run_id: Owning run.
        step_id: Playbook step identifier, unique within the run.
        sequence: Zero-based execution order.
        idempotency_key: ``<action_type>:<incident_key>:<params_hash>``.
        action_type: Action executed by the backend.
        status: StepStatus value; moves forward only.
        inputs_json: Resolved inputs handed to the backend.
        output_json: Backend output on success.
        error_json: {code, message} on failure.
    """

    __tablename__ = "gov_remediation_steps"
    __table_args__ = (UniqueConstraint("run_id", "step_id", name="uq_gov_remediation_steps_run_step"),)

    id: Mapped[uuid.UUID] = mapped_column(primary_key=True, default=uuid.uuid4)
    run_id: Mapped[uuid.UUID] = mapped_column(ForeignKey("gov_remediation_runs.id"), nullable=False, index=True)
    step_id: Mapped[str] = mapped_column(String(100), nullable=False)
    sequence: Mapped[int] = mapped_column(Integer, nullable=False)
    idempotency_key: Mapped[str] = mapped_column(String(256), nullable=False)
    action_type: Mapped[str] = mapped_column(String(50), nullable=False)
    status: Mapped[str] = mapped_column(String(20), nullable=False)
    inputs_json: Mapped[dict[str, Any]] = mapped_column(JSONType, nullable=False, default=dict)
    output_json: Mapped[dict[str, Any] | None] = mapped_column(JSONType, nullable=True)
    error_json: Mapped[dict[str, Any] | None] = mapped_column(JSONType, nullable=True)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False, default=utcnow)
    started_at: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)
    completed_at: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)

    run: Mapped[RemediationRun] = relationship(back_populates="steps")


class LawbookVersion(Base):
    """An immutable stored lawbook document.

    Storing the same document twice returns the existing row (keyed by hash).
    """

    __tablename__ = "gov_lawbook_versions"

    id: Mapped[uuid.UUID] = mapped_column(primary_key=True, default=uuid.uuid4)
    lawbook_id: Mapped[str] = mapped_column(String(100), nullable=False, index=True)
    lawbook_version: Mapped[str] = mapped_column(String(100), nullable=False)
    lawbook_hash: Mapped[str] = mapped_column(String(64), nullable=False, unique=True)
    document_json: Mapped[dict[str, Any]] = mapped_column(JSONType, nullable=False)
    created_by: Mapped[str] = mapped_column(String(255), nullable=False, default="system")
    created_at: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False, default=utcnow)


class LawbookActivePointer(Base):
    """Which stored lawbook version is active for a lawbook lineage."""

    __tablename__ = "gov_lawbook_active"

    lawbook_id: Mapped[str] = mapped_column(String(100), primary_key=True)
    lawbook_version_id: Mapped[uuid.UUID] = mapped_column(ForeignKey("gov_lawbook_versions.id"), nullable=False)
    activated_by: Mapped[str] = mapped_column(String(255), nullable=False, default="system")
    updated_at: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False, default=utcnow)


class AuditEvent(AuditBase):
    """IMMUTABLE audit event on the Audit Wall database.

    Events form one hash chain per stream: chain_hash covers the previous
    event's chain_hash and this event's identity, so editing or removing any
    row is detectable by AuditTrailRepository.verify_chain().

    Attributes:
        stream_id: Logical stream (``run:<run_key>``, ``issue:<id>``, ``pr:<owner>/<repo>#<n>``).
        sequence: 1-based position within the stream.
        event_type: RUN_PLANNED, STEP_STARTED, ISSUE_TRANSITIONED, ...
        payload: Redacted event payload.
        payload_hash: Stable hash of the redacted payload.
        prev_hash: chain_hash of the previous event in the stream, None for the first.
        chain_hash: Stable hash linking this event to its predecessor.
        lawbook_version: Lawbook version in force when the event was written.
        lawbook_hash: Lawbook content hash in force when the event was written.
    """

    __tablename__ = "gov_audit_events"
    __table_args__ = (UniqueConstraint("stream_id", "sequence", name="uq_gov_audit_events_stream_sequence"),)

    id: Mapped[uuid.UUID] = mapped_column(primary_key=True, default=uuid.uuid4)
    stream_id: Mapped[str] = mapped_column(String(400), nullable=False, index=True)
    sequence: Mapped[int] = mapped_column(Integer, nullable=False)
    event_type: Mapped[str] = mapped_column(String(50), nullable=False, index=True)
    payload: Mapped[dict[str, Any]] = mapped_column(JSONType, nullable=False)
    payload_hash: Mapped[str] = mapped_column(String(64), nullable=False)
    prev_hash: Mapped[str | None] = mapped_column(String(64), nullable=True)
    chain_hash: Mapped[str] = mapped_column(String(64), nullable=False)
    lawbook_version: Mapped[str | None] = mapped_column(String(100), nullable=True)
    lawbook_hash: Mapped[str | None] = mapped_column(String(64), nullable=True)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False, default=utcnow)
