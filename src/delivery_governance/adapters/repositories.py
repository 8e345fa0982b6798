"""SQLAlchemy repositories for the primary database.

Each public method runs in its own short transaction. Idempotent creation is
an atomic insert against a unique constraint: the loser of a race catches the
IntegrityError, rolls back, and returns the winner's row. Status changes are
compare-and-set UPDATEs (``WHERE status = :from``) so two writers can never
both move the same record, and a record never moves backwards.
"""

import uuid
from collections.abc import Callable
from datetime import datetime
from typing import Any

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from delivery_governance.core.models import (
    RUN_STATUS_TRANSITIONS,
    STEP_STATUS_TRANSITIONS,
    Issue,
    RemediationRun,
    RemediationStep,
    RunStatus,
    StepStatus,
    utcnow,
)
from delivery_governance.errors import ConflictError, InvalidStatusTransition, NotFoundError
from delivery_governance.observability import get_logger

logger = get_logger(__name__)


class IssueRepository:
    """Persistence for Issue lifecycle state.

    Args:
        session_factory: Primary database session factory.
        clock: Returns the current time; injectable for tests.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._session_factory = session_factory
        self._clock = clock

    async def create(self, issue_id: str, title: str = "", status: str = "CREATED") -> Issue:
        """Register an issue; an existing issue with the same id is returned unchanged."""
        now = self._clock()
        issue = Issue(id=issue_id, title=title, status=status, created_at=now, updated_at=now)
        async with self._session_factory() as session:
            session.add(issue)
            try:
                await session.commit()
                created = True
            except IntegrityError:
                await session.rollback()
                created = False
        if not created:
            return await self.get(issue_id)
        logger.info("Issue registered", issue_id=issue_id, status=status)
        return issue

    async def get(self, issue_id: str) -> Issue:
        """Retrieve an issue.

        Raises:
            NotFoundError: If no issue exists with the given id.
        """
        async with self._session_factory() as session:
            issue = await session.get(Issue, issue_id)
        if issue is None:
            raise NotFoundError(resource="Issue", resource_id=issue_id)
        return issue

    async def compare_and_set_status(self, issue_id: str, from_status: str, to_status: str) -> Issue:
        """Move an issue from from_status to to_status atomically.

        Raises:
            ConflictError: If the stored status is no longer from_status.
        """
        async with self._session_factory() as session:
            result = await session.execute(
                update(Issue)
                .where(Issue.id == issue_id, Issue.status == from_status)
                .values(status=to_status, updated_at=self._clock())
            )
            await session.commit()
        if result.rowcount != 1:
            raise ConflictError(
                f"Issue '{issue_id}' is no longer in state {from_status}",
                issue_id=issue_id,
                expected_state=from_status,
            )
        return await self.get(issue_id)


class RemediationRunRepository:
    """Persistence for RemediationRun and its planned steps.

    Args:
        session_factory: Primary database session factory.
    """

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        self._session_factory = session_factory

    async def get_by_key(self, run_key: str) -> RemediationRun | None:
        async with self._session_factory() as session:
            result = await session.execute(select(RemediationRun).where(RemediationRun.run_key == run_key))
            return result.scalar_one_or_none()

    async def get_by_id(self, run_id: uuid.UUID) -> RemediationRun:
        """Retrieve a run with its steps.

        Raises:
            NotFoundError: If the run does not exist.
        """
        async with self._session_factory() as session:
            result = await session.execute(select(RemediationRun).where(RemediationRun.id == run_id))
            run = result.scalar_one_or_none()
        if run is None:
            raise NotFoundError(resource="RemediationRun", resource_id=str(run_id))
        return run

    async def insert_if_absent(
        self,
        run: RemediationRun,
        steps: list[RemediationStep] | None = None,
    ) -> tuple[RemediationRun, bool]:
        """Insert a run (and its planned steps) unless its run_key already exists.

        Args:
            run: The new run.
            steps: Planned steps, inserted in the same transaction.

        Returns:
            (run, created). created is False when another request won the
            run_key; the returned run is then the winner's row.
        """
        run.steps = list(steps or [])
        async with self._session_factory() as session:
            session.add(run)
            try:
                await session.commit()
                created = True
            except IntegrityError as exc:
                await session.rollback()
                conflict = exc
                created = False

        if not created:
            existing = await self.get_by_key(run.run_key)
            if existing is None:
                raise conflict
            logger.info("Run key already exists, returning existing run", run_key=run.run_key)
            return existing, False

        logger.info(
            "Remediation run created",
            run_id=str(run.id),
            run_key=run.run_key,
            status=run.status,
            steps=len(run.steps),
        )
        return run, True

    async def transition(
        self,
        run_id: uuid.UUID,
        from_status: RunStatus,
        to_status: RunStatus,
        **fields: Any,
    ) -> None:
        """Move a run forward from from_status to to_status.

        Args:
            run_id: Run to update.
            from_status: Status the run must currently have.
            to_status: New status; must be a forward move.
            fields: Additional columns to set (started_at, result_json, ...).

        Raises:
            InvalidStatusTransition: If the move is not forward or the stored
                status is no longer from_status.
        """
        if to_status not in RUN_STATUS_TRANSITIONS[from_status]:
            raise InvalidStatusTransition(
                f"Run status cannot move {from_status.value} → {to_status.value}",
                run_id=str(run_id),
            )
        async with self._session_factory() as session:
            result = await session.execute(
                update(RemediationRun)
                .where(RemediationRun.id == run_id, RemediationRun.status == from_status.value)
                .values(status=to_status.value, updated_at=utcnow(), **fields)
            )
            await session.commit()
        if result.rowcount != 1:
            raise InvalidStatusTransition(
                f"Run {run_id} is not in status {from_status.value}",
                run_id=str(run_id),
            )

    async def transition_step(
        self,
        step_pk: uuid.UUID,
        from_status: StepStatus,
        to_status: StepStatus,
        **fields: Any,
    ) -> None:
        """Move a step forward from from_status to to_status.

        Raises:
            InvalidStatusTransition: If the move is not forward or the stored
                status is no longer from_status.
        """
        if to_status not in STEP_STATUS_TRANSITIONS[from_status]:
            raise InvalidStatusTransition(
                f"Step status cannot move {from_status.value} → {to_status.value}",
                step_pk=str(step_pk),
            )
        async with self._session_factory() as session:
            result = await session.execute(
                update(RemediationStep)
                .where(RemediationStep.id == step_pk, RemediationStep.status == from_status.value)
                .values(status=to_status.value, **fields)
            )
            await session.commit()
        if result.rowcount != 1:
            raise InvalidStatusTransition(
                f"Step {step_pk} is not in status {from_status.value}",
                step_pk=str(step_pk),
            )

    async def list_steps(self, run_id: uuid.UUID) -> list[RemediationStep]:
        """Return a run's steps in execution order."""
        async with self._session_factory() as session:
            result = await session.execute(
                select(RemediationStep)
                .where(RemediationStep.run_id == run_id)
                .order_by(RemediationStep.sequence.asc())
            )
            return list(result.scalars().all())
