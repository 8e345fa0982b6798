"""Delivery governance core entry point.

GovernanceCore wires the services to their repositories and exposes the
operations thin callers (an HTTP layer, a CLI) use:

- transition()         — guarded issue lifecycle transition (ok/err result)
- evaluate_stop()      — audited stop/rerun decision for a CI failure loop
- run_playbook()       — governed, idempotent remediation playbook run
- get_audit_trail()    — read-only audit history of one stream

create_governance_core() manages startup and shutdown:
- Primary database for issues, runs, steps and lawbook versions
- Audit Wall database connection for the immutable audit trail
- Bundled playbook catalog and the optional startup lawbook
"""

from collections.abc import AsyncGenerator, Awaitable, Callable, Mapping
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Any

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from delivery_governance.adapters.audit_wall import (
    AuditTrailRepository,
    ChainVerification,
    close_audit_db,
    init_audit_db,
)
from delivery_governance.adapters.database import close_database, init_database
from delivery_governance.adapters.lawbook_store import LawbookVersionRepository
from delivery_governance.adapters.repositories import IssueRepository, RemediationRunRepository
from delivery_governance.core.interfaces import ILawbookVersionRepository
from delivery_governance.core.models import Issue, LawbookVersion, utcnow
from delivery_governance.core.schemas import AuditEventView, Incident, RemediationRunResult, TransitionResult
from delivery_governance.core.services import (
    AuditService,
    IssueLifecycleService,
    StopDecisionService,
    issue_stream_id,
    run_stream_id,
)
from delivery_governance.lawbook.loader import load_lawbook
from delivery_governance.lawbook.schema import LawbookDocument
from delivery_governance.lifecycle.states import IssueState
from delivery_governance.observability import configure_logging, get_logger
from delivery_governance.remediation.backends import BackendRegistry
from delivery_governance.remediation.catalog import PlaybookCatalog
from delivery_governance.remediation.executor import PlaybookExecutor
from delivery_governance.settings import Settings
from delivery_governance.stop_decision.evaluator import StopDecision, StopDecisionContext, StopDecisionEvaluator
from delivery_governance.stop_decision.polling import CheckStatus, PollResult, wait_for_checks

logger = get_logger(__name__)


class GovernanceCore:
    """Facade over the governance services.

    The lawbook is always passed explicitly to each decision; ``lawbook``
    holds the one loaded at startup (if any) for callers that have no other.

    Args:
        session_factory: Primary database session factory.
        audit_session_factory: Audit Wall session factory.
        catalog: Playbook catalog.
        backends: Action backends by action type.
        settings: Service settings.
        lawbook: Lawbook loaded at startup.
        clock: Returns the current time; injectable for tests.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        audit_session_factory: async_sessionmaker[AsyncSession],
        catalog: PlaybookCatalog,
        backends: BackendRegistry | None = None,
        settings: Settings | None = None,
        lawbook: LawbookDocument | None = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.settings = settings or Settings()
        self.lawbook = lawbook
        self.catalog = catalog
        self.backends = backends or BackendRegistry()

        self._audit_repo = AuditTrailRepository(audit_session_factory, clock=clock)
        self._issue_repo = IssueRepository(session_factory, clock=clock)
        self._run_repo = RemediationRunRepository(session_factory)
        self._lawbook_repo: ILawbookVersionRepository = LawbookVersionRepository(session_factory, clock=clock)

        self._audit = AuditService(self._audit_repo)
        self._issues = IssueLifecycleService(self._issue_repo, self._audit)
        self._stop = StopDecisionService(self._audit, StopDecisionEvaluator(clock=clock))
        self._executor = PlaybookExecutor(
            run_repo=self._run_repo,
            audit=self._audit,
            catalog=catalog,
            backends=self.backends,
            step_timeout_seconds=self.settings.step_timeout_seconds,
            clock=clock,
        )

    # ------------------------------------------------------------------
    # Issue lifecycle
    # ------------------------------------------------------------------

    async def register_issue(self, issue_id: str, title: str = "") -> Issue:
        """Register an issue in CREATED; an existing issue is returned unchanged."""
        return await self._issue_repo.create(issue_id, title=title, status=IssueState.CREATED.value)

    async def transition(
        self,
        issue_id: str,
        from_state: IssueState | str,
        to_state: IssueState | str,
        *,
        is_manual: bool = False,
        initiated_by: str | None = None,
        reason: str | None = None,
        verdict_action: str | None = None,
        lawbook: LawbookDocument | None,
    ) -> TransitionResult:
        """Attempt a guarded issue transition.

        Returns:
            TransitionResult: ok with the new state, or err with the
            machine-readable error.
        """
        return await self._issues.transition(
            issue_id,
            IssueState(from_state),
            IssueState(to_state),
            is_manual=is_manual,
            lawbook=lawbook,
            initiated_by=initiated_by,
            reason=reason,
            verdict_action=verdict_action,
        )

    # ------------------------------------------------------------------
    # Stop / rerun governance
    # ------------------------------------------------------------------

    async def evaluate_stop(self, context: StopDecisionContext, lawbook: LawbookDocument | None) -> StopDecision:
        """Evaluate the stop rules for a CI failure loop and audit the decision."""
        return await self._stop.evaluate(context, lawbook)

    async def wait_for_checks(self, fetch: Callable[[], Awaitable[CheckStatus]]) -> PollResult:
        """Poll CI checks with the configured interval and maximum wait."""
        return await wait_for_checks(
            fetch,
            poll_interval=self.settings.check_poll_interval_seconds,
            max_wait=self.settings.check_max_wait_seconds,
        )

    # ------------------------------------------------------------------
    # Remediation
    # ------------------------------------------------------------------

    async def run_playbook(
        self,
        incident: Incident,
        playbook_id: str,
        inputs: Mapping[str, Any] | None,
        lawbook: LawbookDocument | None,
    ) -> RemediationRunResult:
        """Run a remediation playbook at most once per (incident, playbook, inputs)."""
        return await self._executor.run(incident, playbook_id, inputs, lawbook)

    # ------------------------------------------------------------------
    # Audit trail
    # ------------------------------------------------------------------

    async def get_audit_trail(self, stream_id: str) -> list[AuditEventView]:
        """Return a stream's audit events in creation order."""
        return await self._audit.get_trail(stream_id)

    async def get_run_audit_trail(self, run_key: str) -> list[AuditEventView]:
        return await self._audit.get_trail(run_stream_id(run_key))

    async def get_issue_audit_trail(self, issue_id: str) -> list[AuditEventView]:
        return await self._audit.get_trail(issue_stream_id(issue_id))

    async def verify_audit_chain(self, stream_id: str) -> ChainVerification:
        """Recompute a stream's hash chain to detect tampering."""
        return await self._audit_repo.verify_chain(stream_id)

    # ------------------------------------------------------------------
    # Lawbook versions
    # ------------------------------------------------------------------

    async def publish_lawbook(self, lawbook: LawbookDocument, published_by: str) -> LawbookVersion:
        """Store a lawbook version and make it the active one for its lawbook_id."""
        version, created = await self._lawbook_repo.store(lawbook, created_by=published_by)
        activated = await self._lawbook_repo.activate(version.id, activated_by=published_by)
        await self._audit.record(
            f"lawbook:{lawbook.lawbook_id}",
            "LAWBOOK_ACTIVATED",
            {"lawbook_id": lawbook.lawbook_id, "published_by": published_by, "new_version": created},
            lawbook_version=lawbook.lawbook_version,
            lawbook_hash=lawbook.content_hash,
        )
        return activated

    async def get_active_lawbook(self, lawbook_id: str) -> LawbookDocument | None:
        return await self._lawbook_repo.get_active(lawbook_id)


@asynccontextmanager
async def create_governance_core(
    settings: Settings | None = None,
    backends: BackendRegistry | None = None,
) -> AsyncGenerator[GovernanceCore, None]:
    """Start the governance core and shut it down on exit.

    Initializes the primary database, the Audit Wall database and the
    playbook catalog, and loads the startup lawbook when one is configured.

    Args:
        settings: Service settings; read from the environment when omitted.
        backends: Action backends by action type.

    Yields:
        The running GovernanceCore.
    """
    settings = settings or Settings()
    configure_logging(level=settings.log_level, json_output=settings.log_json)

    # Startup: primary database
    logger.info("Initializing primary database", service=settings.service_name)
    session_factory = await init_database(settings.database_url, pool_size=settings.database_pool_size)

    # Startup: Audit Wall (separate database)
    logger.info(
        "Initializing Audit Wall database",
        service=settings.service_name,
        pool_size=settings.audit_db_pool_size,
    )
    audit_session_factory = await init_audit_db(
        audit_db_url=settings.audit_db_url,
        pool_size=settings.audit_db_pool_size,
        max_overflow=settings.audit_db_max_overflow,
        pool_timeout=settings.audit_db_pool_timeout,
    )

    try:
        catalog = PlaybookCatalog(settings.playbook_dir)
        lawbook = load_lawbook(settings.lawbook_path) if settings.lawbook_path is not None else None
        if lawbook is None:
            logger.warning("No lawbook configured — every gated action will be denied")

        core = GovernanceCore(
            session_factory=session_factory,
            audit_session_factory=audit_session_factory,
            catalog=catalog,
            backends=backends,
            settings=settings,
            lawbook=lawbook,
        )
        logger.info("Governance core startup complete", playbooks=catalog.ids())

        yield core
    finally:
        # Shutdown
        logger.info("Shutting down governance core")
        await close_audit_db()
        await close_database()
        logger.info("Governance core shutdown complete")
