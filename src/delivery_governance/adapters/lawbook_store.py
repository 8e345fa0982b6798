"""Lawbook versioning adapter.

Every lawbook document ever used is stored immutably, keyed by its content
hash, so an audit record's lawbook_hash can always be resolved back to the
exact document that produced a decision. Storing an identical document twice
returns the existing version. One version per lawbook_id is "active";
activating another version moves the pointer without touching history.
"""

import uuid
from collections.abc import Callable
from datetime import datetime

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from delivery_governance.core.models import LawbookActivePointer, LawbookVersion, utcnow
from delivery_governance.errors import NotFoundError
from delivery_governance.lawbook.loader import parse_lawbook
from delivery_governance.lawbook.schema import LawbookDocument
from delivery_governance.observability import get_logger

logger = get_logger(__name__)


class LawbookVersionRepository:
    """Repository for immutable lawbook versions and the active pointer.

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

    async def store(self, lawbook: LawbookDocument, created_by: str = "system") -> tuple[LawbookVersion, bool]:
        """Store a lawbook version unless a version with the same hash exists.

        Args:
            lawbook: The document to store.
            created_by: Who submitted the document.

        Returns:
            (version, created). created is False for an identical document.
        """
        lawbook_hash = lawbook.content_hash
        existing = await self.get_by_hash(lawbook_hash)
        if existing is not None:
            return existing, False

        version = LawbookVersion(
            lawbook_id=lawbook.lawbook_id,
            lawbook_version=lawbook.lawbook_version,
            lawbook_hash=lawbook_hash,
            document_json=lawbook.model_dump(mode="json"),
            created_by=created_by,
            created_at=self._clock(),
        )
        async with self._session_factory() as session:
            session.add(version)
            try:
                await session.commit()
                created = True
            except IntegrityError:
                await session.rollback()
                created = False

        if not created:
            winner = await self.get_by_hash(lawbook_hash)
            if winner is None:
                raise NotFoundError(resource="LawbookVersion", resource_id=lawbook_hash)
            return winner, False

        logger.info(
            "Lawbook version stored",
            lawbook_id=lawbook.lawbook_id,
            lawbook_version=lawbook.lawbook_version,
            lawbook_hash=lawbook_hash[:12],
        )
        return version, True

    async def get_by_hash(self, lawbook_hash: str) -> LawbookVersion | None:
        async with self._session_factory() as session:
            result = await session.execute(select(LawbookVersion).where(LawbookVersion.lawbook_hash == lawbook_hash))
            return result.scalar_one_or_none()

    async def list_versions(self, lawbook_id: str) -> list[LawbookVersion]:
        """Return all stored versions of a lawbook, oldest first."""
        async with self._session_factory() as session:
            result = await session.execute(
                select(LawbookVersion)
                .where(LawbookVersion.lawbook_id == lawbook_id)
                .order_by(LawbookVersion.created_at.asc())
            )
            return list(result.scalars().all())

    async def activate(self, version_id: uuid.UUID, activated_by: str = "system") -> LawbookVersion:
        """Make a stored version the active lawbook for its lawbook_id.

        Raises:
            NotFoundError: If the version does not exist.
        """
        async with self._session_factory() as session:
            version = await session.get(LawbookVersion, version_id)
            if version is None:
                raise NotFoundError(resource="LawbookVersion", resource_id=str(version_id))

            pointer = await session.get(LawbookActivePointer, version.lawbook_id)
            if pointer is None:
                session.add(
                    LawbookActivePointer(
                        lawbook_id=version.lawbook_id,
                        lawbook_version_id=version.id,
                        activated_by=activated_by,
                        updated_at=self._clock(),
                    )
                )
            else:
                pointer.lawbook_version_id = version.id
                pointer.activated_by = activated_by
                pointer.updated_at = self._clock()
            await session.commit()

        logger.info(
            "Lawbook version activated",
            lawbook_id=version.lawbook_id,
            lawbook_version=version.lawbook_version,
            activated_by=activated_by,
        )
        return version

    async def get_active(self, lawbook_id: str) -> LawbookDocument | None:
        """Return the active lawbook document, or None when none is active."""
        async with self._session_factory() as session:
            result = await session.execute(
                select(LawbookVersion)
                .join(LawbookActivePointer, LawbookActivePointer.lawbook_version_id == LawbookVersion.id)
                .where(LawbookActivePointer.lawbook_id == lawbook_id)
            )
            version = result.scalar_one_or_none()
        if version is None:
            return None
        return parse_lawbook(version.document_json)
