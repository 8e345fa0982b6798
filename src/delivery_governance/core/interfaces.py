"""Abstract interfaces (Protocol classes) for the governance core.

Defines the contracts between the service layer and the adapter layer using
Python's typing.Protocol. Services depend on these protocols, never on
concrete adapter implementations, so tests can substitute mocks.

Protocols defined:
- IActionBackend
- IAuditTrailRepository
- IIssueRepository
- IRemediationRunRepository
- ILawbookVersionRepository
"""

import uuid
from typing import TYPE_CHECKING, Any, Protocol

from delivery_governance.core.models import (
    AuditEvent,
    Issue,
    LawbookVersion,
    RemediationRun,
    RemediationStep,
    RunStatus,
    StepStatus,
)
from delivery_governance.lawbook.schema import LawbookDocument

if TYPE_CHECKING:
    from delivery_governance.adapters.audit_wall import ChainVerification
    from delivery_governance.remediation.backends import StepContext, StepResult


class IActionBackend(Protocol):
    """Performs the side effect of one remediation step."""

    async def execute(self, context: "StepContext") -> "StepResult":
        """Execute a step with its resolved inputs.

        Args:
            context: Step identity, resolved inputs and earlier step outputs.

        Returns:
            StepResult reporting success or failure. Raising is treated as a
            failure with code EXECUTION_ERROR.
        """
        ...


class IAuditTrailRepository(Protocol):
    """Append-only audit store contract."""

    async def append(
        self,
        stream_id: str,
        event_type: str,
        payload: dict[str, Any],
        lawbook_version: str | None = None,
        lawbook_hash: str | None = None,
    ) -> AuditEvent:
        """Append a redacted event to a stream.

        Raises:
            AuditWriteFailure: If the event could not be persisted.
        """
        ...

    async def query(self, stream_id: str, event_type_filter: str | None = None) -> list[AuditEvent]:
        """Return a stream's events in creation order."""
        ...

    async def verify_chain(self, stream_id: str) -> "ChainVerification":
        """Recompute a stream's hash chain."""
        ...


class IIssueRepository(Protocol):
    """Issue lifecycle persistence contract."""

    async def create(self, issue_id: str, title: str = "", status: str = "CREATED") -> Issue:
        ...

    async def get(self, issue_id: str) -> Issue:
        """Raises NotFoundError if the issue does not exist."""
        ...

    async def compare_and_set_status(self, issue_id: str, from_status: str, to_status: str) -> Issue:
        """Raises ConflictError if the stored status is no longer from_status."""
        ...


class IRemediationRunRepository(Protocol):
    """Remediation run and step persistence contract."""

    async def get_by_key(self, run_key: str) -> RemediationRun | None:
        ...

    async def get_by_id(self, run_id: uuid.UUID) -> RemediationRun:
        ...

    async def insert_if_absent(
        self,
        run: RemediationRun,
        steps: list[RemediationStep] | None = None,
    ) -> tuple[RemediationRun, bool]:
        """Atomic insert against the unique run_key; returns (run, created)."""
        ...

    async def transition(
        self,
        run_id: uuid.UUID,
        from_status: RunStatus,
        to_status: RunStatus,
        **fields: Any,
    ) -> None:
        ...

    async def transition_step(
        self,
        step_pk: uuid.UUID,
        from_status: StepStatus,
        to_status: StepStatus,
        **fields: Any,
    ) -> None:
        ...

    async def list_steps(self, run_id: uuid.UUID) -> list[RemediationStep]:
        ...


class ILawbookVersionRepository(Protocol):
    """Lawbook version store contract."""

    async def store(self, lawbook: LawbookDocument, created_by: str = "system") -> tuple[LawbookVersion, bool]:
        ...

    async def activate(self, version_id: uuid.UUID, activated_by: str = "system") -> LawbookVersion:
        ...

    async def get_active(self, lawbook_id: str) -> LawbookDocument | None:
        ...
