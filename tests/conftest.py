"""Test fixtures for delivery-governance-core.

Provides:
- clock: A deterministic clock that advances one second per call
- primary_session_factory: In-memory SQLite primary database with schema
- audit_session_factory: In-memory SQLite Audit Wall database with triggers
- lawbook: A fail-closed lawbook allowing the bundled remediation playbooks
- incident: INC-2026-000123 with ECS, ALB, deploy and verification evidence
- mock_backend: An AsyncMock action backend that reports success
- failing_audit: An AuditService factory whose chosen event types fail to write
- repositories, services and a PlaybookExecutor wired to the fixtures above
"""

from collections.abc import AsyncGenerator, Callable
from datetime import UTC, datetime, timedelta
from typing import Any
from unittest.mock import AsyncMock

import pytest
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from delivery_governance.adapters.audit_wall import AuditTrailRepository, create_audit_schema
from delivery_governance.adapters.database import create_engine_for, create_primary_schema, make_session_factory
from delivery_governance.adapters.repositories import IssueRepository, RemediationRunRepository
from delivery_governance.core.models import AuditEvent
from delivery_governance.core.schemas import Incident
from delivery_governance.core.services import AuditService, IssueLifecycleService
from delivery_governance.errors import AuditWriteFailure
from delivery_governance.evidence.gate import EvidenceItem, EvidenceKind
from delivery_governance.lawbook.schema import LawbookDocument
from delivery_governance.remediation.backends import BackendRegistry, StepResult
from delivery_governance.remediation.catalog import ActionType, PlaybookCatalog
from delivery_governance.remediation.executor import PlaybookExecutor
from delivery_governance.settings import Settings

MEMORY_URL = "sqlite+aiosqlite:///:memory:"
BASE_TIME = datetime(2026, 3, 1, 12, 0, 0, tzinfo=UTC)


class TickingClock:
    """Clock returning BASE_TIME, then one second later on every call."""

    def __init__(self, start: datetime = BASE_TIME) -> None:
        self.current = start

    def __call__(self) -> datetime:
        value = self.current
        self.current = self.current + timedelta(seconds=1)
        return value


@pytest.fixture()
def clock() -> TickingClock:
    return TickingClock()


@pytest.fixture()
async def primary_session_factory() -> AsyncGenerator[async_sessionmaker[AsyncSession], None]:
    """Create an isolated in-memory primary database.

    Yields:
        Session factory bound to a fresh schema.
    """
    engine = create_engine_for(MEMORY_URL)
    await create_primary_schema(engine)
    yield make_session_factory(engine)
    await engine.dispose()


@pytest.fixture()
async def audit_session_factory() -> AsyncGenerator[async_sessionmaker[AsyncSession], None]:
    """Create an isolated in-memory Audit Wall database with append-only triggers.

    Yields:
        Session factory bound to a fresh audit schema.
    """
    engine = create_engine_for(MEMORY_URL)
    await create_audit_schema(engine)
    yield make_session_factory(engine)
    await engine.dispose()


@pytest.fixture()
def lawbook() -> LawbookDocument:
    """A fail-closed lawbook allowing the bundled playbooks and their action types.

    Returns:
        LawbookDocument version 2026.03.
    """
    return LawbookDocument(
        lawbook_id="DELIVERY-LAWBOOK",
        lawbook_version="2026.03",
        fail_closed=True,
        allowed_actions=(
            "restart-service",
            "service-health-reset",
            "redeploy-lkg",
            "rerun-post-deploy-verification",
            ActionType.RESTART_SERVICE.value,
            ActionType.ROLLBACK_DEPLOY.value,
            ActionType.RUN_VERIFICATION.value,
            ActionType.NOTIFY_SLACK.value,
            "ISSUE_TRANSITION",
            "RERUN_FAILED_JOBS",
        ),
    )


def make_incident(*kinds: EvidenceKind, incident_key: str = "INC-2026-000123") -> Incident:
    """Build an incident carrying one well-formed evidence item per requested kind."""
    refs = {
        EvidenceKind.ECS: {"cluster": "prod-cluster", "service": "checkout-api"},
        EvidenceKind.ALB: {"targetGroup": "tg-checkout"},
        EvidenceKind.DEPLOY_STATUS: {"env": "prod", "deployId": "dep-41"},
        EvidenceKind.VERIFICATION: {"env": "prod", "deployId": "dep-42", "reportHash": None},
        EvidenceKind.HTTP: {"url": "https://checkout.example.com/health", "status": 503},
    }
    return Incident(
        incident_key=incident_key,
        incident_id="7f9c1a",
        category="ECS_TASK_CRASHLOOP",
        evidence=tuple(EvidenceItem(kind=kind, ref=refs.get(kind, {})) for kind in kinds),
    )


@pytest.fixture()
def incident_factory() -> Callable[..., Incident]:
    return make_incident


@pytest.fixture()
def incident() -> Incident:
    return make_incident(
        EvidenceKind.ECS,
        EvidenceKind.ALB,
        EvidenceKind.DEPLOY_STATUS,
        EvidenceKind.VERIFICATION,
    )


@pytest.fixture()
def mock_backend() -> AsyncMock:
    """Create a mock action backend.

    Returns:
        AsyncMock whose execute() reports success with a fixed output.
    """
    backend = AsyncMock()
    backend.execute.return_value = StepResult.ok(status="done")
    return backend


@pytest.fixture()
def backends(mock_backend: AsyncMock) -> BackendRegistry:
    return BackendRegistry({action.value: mock_backend for action in ActionType})


@pytest.fixture()
def catalog() -> PlaybookCatalog:
    return PlaybookCatalog(Settings().playbook_dir)


@pytest.fixture()
def audit_repo(
    audit_session_factory: async_sessionmaker[AsyncSession],
    clock: Callable[[], datetime],
) -> AuditTrailRepository:
    return AuditTrailRepository(audit_session_factory, clock=clock)


@pytest.fixture()
def audit_service(audit_repo: AuditTrailRepository) -> AuditService:
    return AuditService(audit_repo)


class SelectiveFailureAudit(AuditService):
    """AuditService whose writes of the given event types raise AuditWriteFailure."""

    def __init__(self, audit_repo: AuditTrailRepository, failing_event_types: frozenset[str]) -> None:
        super().__init__(audit_repo)
        self.failing_event_types = failing_event_types

    async def record(self, stream_id: str, event_type: str, payload: dict[str, Any], **kwargs: Any) -> AuditEvent:
        if event_type in self.failing_event_types:
            raise AuditWriteFailure(f"audit database unavailable while writing {event_type}")
        return await super().record(stream_id, event_type, payload, **kwargs)


@pytest.fixture()
def failing_audit(audit_repo: AuditTrailRepository) -> Callable[..., AuditService]:
    """Build an AuditService that fails for the named event types and writes all others."""

    def _make(*event_types: str) -> AuditService:
        return SelectiveFailureAudit(audit_repo, frozenset(event_types))

    return _make


@pytest.fixture()
def run_repo(primary_session_factory: async_sessionmaker[AsyncSession]) -> RemediationRunRepository:
    return RemediationRunRepository(primary_session_factory)


@pytest.fixture()
def issue_repo(
    primary_session_factory: async_sessionmaker[AsyncSession],
    clock: Callable[[], datetime],
) -> IssueRepository:
    return IssueRepository(primary_session_factory, clock=clock)


@pytest.fixture()
def lifecycle_service(issue_repo: IssueRepository, audit_service: AuditService) -> IssueLifecycleService:
    return IssueLifecycleService(issue_repo, audit_service)


@pytest.fixture()
def executor(
    run_repo: RemediationRunRepository,
    audit_service: AuditService,
    catalog: PlaybookCatalog,
    backends: BackendRegistry,
    clock: Callable[[], datetime],
) -> PlaybookExecutor:
    """Create a PlaybookExecutor over in-memory stores and the mock backend.

    Returns:
        PlaybookExecutor with a 2 second step timeout.
    """
    return PlaybookExecutor(
        run_repo=run_repo,
        audit=audit_service,
        catalog=catalog,
        backends=backends,
        step_timeout_seconds=2.0,
        clock=clock,
    )
