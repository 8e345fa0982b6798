"""Unit tests for the core services.

IssueLifecycleService and StopDecisionService run against in-memory SQLite
repositories so every decision can be checked in the audit trail.
"""

from collections.abc import Callable
from datetime import UTC, datetime, timedelta

import pytest

from delivery_governance.adapters.audit_wall import AuditTrailRepository
from delivery_governance.adapters.repositories import IssueRepository
from delivery_governance.core.services import AuditService, IssueLifecycleService, StopDecisionService
from delivery_governance.errors import AuditWriteFailure, NotFoundError
from delivery_governance.lawbook.schema import LawbookDocument
from delivery_governance.lifecycle import IssueState
from delivery_governance.lifecycle.intervention import RULE_INTERMEDIATE_TRANSITION_BLOCKED
from delivery_governance.stop_decision import (
    AttemptCounts,
    StopDecisionContext,
    StopDecisionEvaluator,
    StopDecisionType,
)

ISSUE_ID = "ISS-101"


# ---------------------------------------------------------------------------
# IssueLifecycleService
# ---------------------------------------------------------------------------


class TestIssueLifecycleService:
    async def test_automatic_forward_transition(
        self,
        lifecycle_service: IssueLifecycleService,
        issue_repo: IssueRepository,
        audit_repo: AuditTrailRepository,
        lawbook: LawbookDocument,
    ) -> None:
        await issue_repo.create(ISSUE_ID, title="Add retry budget")

        result = await lifecycle_service.transition(
            ISSUE_ID, IssueState.CREATED, IssueState.SPEC_READY, is_manual=False, lawbook=lawbook
        )

        assert result.ok is True
        assert result.state is IssueState.SPEC_READY
        assert (await issue_repo.get(ISSUE_ID)).status == "SPEC_READY"

        events = await audit_repo.query(f"issue:{ISSUE_ID}")
        assert [entry.event_type for entry in events] == ["ISSUE_TRANSITIONED"]
        assert events[0].payload["to_state"] == "SPEC_READY"
        assert events[0].lawbook_version == "2026.03"
        assert events[0].lawbook_hash == lawbook.content_hash

    async def test_transition_outside_table_rejected(
        self,
        lifecycle_service: IssueLifecycleService,
        issue_repo: IssueRepository,
        audit_repo: AuditTrailRepository,
        lawbook: LawbookDocument,
    ) -> None:
        await issue_repo.create(ISSUE_ID)

        result = await lifecycle_service.transition(
            ISSUE_ID, IssueState.CREATED, IssueState.DONE, is_manual=False, lawbook=lawbook
        )

        assert result.ok is False
        assert result.state is IssueState.CREATED
        assert result.error_kind == "POLICY_VIOLATION"
        assert result.error is not None
        assert result.error["policy_rule"] == "lifecycle.transition_table"
        assert (await issue_repo.get(ISSUE_ID)).status == "CREATED"

        events = await audit_repo.query(f"issue:{ISSUE_ID}")
        assert [entry.event_type for entry in events] == ["ISSUE_TRANSITION_REJECTED"]
        assert events[0].payload["error"]["kind"] == "POLICY_VIOLATION"

    async def test_killed_issue_rejects_everything(
        self,
        lifecycle_service: IssueLifecycleService,
        issue_repo: IssueRepository,
        lawbook: LawbookDocument,
    ) -> None:
        await issue_repo.create(ISSUE_ID, status="KILLED")

        result = await lifecycle_service.transition(
            ISSUE_ID,
            IssueState.KILLED,
            IssueState.HOLD,
            is_manual=True,
            initiated_by="alice",
            reason="revive",
            lawbook=lawbook,
        )

        assert result.ok is False
        assert result.error_kind == "TERMINAL_STATE_VIOLATION"
        assert (await issue_repo.get(ISSUE_ID)).status == "KILLED"

    async def test_manual_transition_requires_context(
        self,
        lifecycle_service: IssueLifecycleService,
        issue_repo: IssueRepository,
        lawbook: LawbookDocument,
    ) -> None:
        await issue_repo.create(ISSUE_ID, status="IMPLEMENTING")

        result = await lifecycle_service.transition(
            ISSUE_ID, IssueState.IMPLEMENTING, IssueState.HOLD, is_manual=True, lawbook=lawbook
        )

        assert result.ok is False
        assert result.error_kind == "VALIDATION_ERROR"
        assert result.error is not None
        assert "initiatedBy" in result.error["message"]

    async def test_manual_jump_between_intermediate_states_blocked(
        self,
        lifecycle_service: IssueLifecycleService,
        issue_repo: IssueRepository,
        lawbook: LawbookDocument,
    ) -> None:
        await issue_repo.create(ISSUE_ID, status="IMPLEMENTING")

        result = await lifecycle_service.transition(
            ISSUE_ID,
            IssueState.IMPLEMENTING,
            IssueState.VERIFIED,
            is_manual=True,
            initiated_by="alice",
            reason="tests pass locally",
            lawbook=lawbook,
        )

        assert result.ok is False
        assert result.error is not None
        assert result.error["policy_rule"] == RULE_INTERMEDIATE_TRANSITION_BLOCKED
        assert result.error["suggestions"]
        assert (await issue_repo.get(ISSUE_ID)).status == "IMPLEMENTING"

    async def test_human_required_verdict_allows_manual_transition(
        self,
        lifecycle_service: IssueLifecycleService,
        issue_repo: IssueRepository,
        lawbook: LawbookDocument,
    ) -> None:
        await issue_repo.create(ISSUE_ID, status="IMPLEMENTING")

        result = await lifecycle_service.transition(
            ISSUE_ID,
            IssueState.IMPLEMENTING,
            IssueState.VERIFIED,
            is_manual=True,
            initiated_by="alice",
            reason="verifier asked for human sign-off",
            verdict_action="HUMAN_REQUIRED",
            lawbook=lawbook,
        )

        assert result.ok is True
        assert result.state is IssueState.VERIFIED

    async def test_manual_hold_and_resume(
        self,
        lifecycle_service: IssueLifecycleService,
        issue_repo: IssueRepository,
        audit_repo: AuditTrailRepository,
        lawbook: LawbookDocument,
    ) -> None:
        await issue_repo.create(ISSUE_ID, status="VERIFIED")

        held = await lifecycle_service.transition(
            ISSUE_ID,
            IssueState.VERIFIED,
            IssueState.HOLD,
            is_manual=True,
            initiated_by="alice",
            reason="waiting on product",
            lawbook=lawbook,
        )
        resumed = await lifecycle_service.transition(
            ISSUE_ID,
            IssueState.HOLD,
            IssueState.IMPLEMENTING,
            is_manual=True,
            initiated_by="alice",
            reason="scope agreed",
            lawbook=lawbook,
        )

        assert held.ok is True
        assert resumed.ok is True
        assert (await issue_repo.get(ISSUE_ID)).status == "IMPLEMENTING"

        events = await audit_repo.query(f"issue:{ISSUE_ID}")
        assert [entry.payload["to_state"] for entry in events] == ["HOLD", "IMPLEMENTING"]
        assert events[0].payload["initiated_by"] == "alice"

    async def test_stale_from_state_is_conflict(
        self,
        lifecycle_service: IssueLifecycleService,
        issue_repo: IssueRepository,
        lawbook: LawbookDocument,
    ) -> None:
        await issue_repo.create(ISSUE_ID)

        result = await lifecycle_service.transition(
            ISSUE_ID, IssueState.SPEC_READY, IssueState.IMPLEMENTING, is_manual=False, lawbook=lawbook
        )

        assert result.ok is False
        assert result.error_kind == "CONFLICT"
        assert result.state is IssueState.CREATED

    async def test_missing_lawbook_denies(
        self,
        lifecycle_service: IssueLifecycleService,
        issue_repo: IssueRepository,
    ) -> None:
        await issue_repo.create(ISSUE_ID)

        result = await lifecycle_service.transition(
            ISSUE_ID, IssueState.CREATED, IssueState.SPEC_READY, is_manual=False, lawbook=None
        )

        assert result.ok is False
        assert result.error is not None
        assert result.error["policy_rule"] == "lawbook.missing"

    async def test_lawbook_without_issue_transition_denies(
        self,
        lifecycle_service: IssueLifecycleService,
        issue_repo: IssueRepository,
    ) -> None:
        await issue_repo.create(ISSUE_ID)
        lawbook = LawbookDocument(lawbook_version="v1", allowed_actions=("restart-service",))

        result = await lifecycle_service.transition(
            ISSUE_ID, IssueState.CREATED, IssueState.SPEC_READY, is_manual=False, lawbook=lawbook
        )

        assert result.ok is False
        assert result.error is not None
        assert result.error["policy_rule"] == "lawbook.allowed_actions"

    async def test_unknown_issue_raises(
        self,
        lifecycle_service: IssueLifecycleService,
        lawbook: LawbookDocument,
    ) -> None:
        with pytest.raises(NotFoundError):
            await lifecycle_service.transition(
                "ISS-404", IssueState.CREATED, IssueState.SPEC_READY, is_manual=False, lawbook=lawbook
            )

    async def test_unaudited_transition_is_reverted(
        self,
        issue_repo: IssueRepository,
        audit_repo: AuditTrailRepository,
        failing_audit: Callable[..., AuditService],
        lawbook: LawbookDocument,
    ) -> None:
        await issue_repo.create(ISSUE_ID)
        service = IssueLifecycleService(issue_repo, failing_audit("ISSUE_TRANSITIONED"))

        with pytest.raises(AuditWriteFailure):
            await service.transition(
                ISSUE_ID, IssueState.CREATED, IssueState.SPEC_READY, is_manual=False, lawbook=lawbook
            )

        assert (await issue_repo.get(ISSUE_ID)).status == "CREATED"
        assert await audit_repo.count(f"issue:{ISSUE_ID}") == 0

        retry = await IssueLifecycleService(issue_repo, AuditService(audit_repo)).transition(
            ISSUE_ID, IssueState.CREATED, IssueState.SPEC_READY, is_manual=False, lawbook=lawbook
        )
        assert retry.ok is True


# ---------------------------------------------------------------------------
# StopDecisionService
# ---------------------------------------------------------------------------


class TestStopDecisionService:
    async def test_decision_is_audited_on_pr_stream(
        self,
        audit_service: AuditService,
        audit_repo: AuditTrailRepository,
        lawbook: LawbookDocument,
    ) -> None:
        now = datetime(2026, 3, 1, 12, 0, tzinfo=UTC)
        service = StopDecisionService(audit_service, StopDecisionEvaluator(clock=lambda: now))
        context = StopDecisionContext(
            owner="acme",
            repo="checkout",
            pr_number=42,
            run_id=9001,
            failure_class="flaky test",
            attempt_counts=AttemptCounts(current_job_attempts=2, total_pr_attempts=2),
            first_failure_at=now - timedelta(minutes=5),
            last_changed_at=now - timedelta(minutes=30),
        )

        decision = await service.evaluate(context, lawbook)

        assert decision.decision is StopDecisionType.KILL
        events = await audit_repo.query("pr:acme/checkout#42")
        assert [entry.event_type for entry in events] == ["STOP_DECISION"]
        assert events[0].payload["decision"]["reason_code"] == "MAX_ATTEMPTS"
        assert events[0].payload["context"]["run_id"] == 9001
        assert events[0].lawbook_hash == lawbook.content_hash
