"""Audit Wall — separate database for the immutable audit trail.

This module is the ONLY place that connects to DELIVERY_GOVERNANCE_AUDIT_DB_URL.
All other modules use the primary database from adapters/database.py.

Append-only is enforced at three levels:
- AuditTrailRepository has no update() or delete() methods
- ORM flush guards reject any UPDATE/DELETE of a loaded AuditEvent
- database triggers (SQLite and PostgreSQL) reject UPDATE/DELETE statements
  issued by anyone, including raw SQL

Each stream (one run, one issue, one PR) is a hash chain: chain_hash covers
the previous event's chain_hash, so removing or editing an event breaks
verify_chain() for every later event.

Key exports:
- init_audit_db(...)          — create the audit engine, schema and triggers
- close_audit_db()            — dispose the audit engine
- get_audit_session_factory() — session factory for the audit database
- AuditTrailRepository        — append-only write + read + chain verification
"""

from collections.abc import Callable
from datetime import UTC, datetime
from typing import Any

from pydantic import BaseModel, ConfigDict
from sqlalchemy import DDL, event, func, select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker

from delivery_governance.adapters.database import create_engine_for, make_session_factory
from delivery_governance.core.models import AuditBase, AuditEvent, utcnow
from delivery_governance.errors import AuditWriteFailure
from delivery_governance.hashing import stable_hash
from delivery_governance.observability import get_logger

logger = get_logger(__name__)

APPEND_ONLY_MESSAGE = "audit events are append-only"
_MAX_APPEND_ATTEMPTS = 5

# Module-level engine and session factory, set by init_audit_db()
_audit_engine: AsyncEngine | None = None
_audit_session_factory: async_sessionmaker[AsyncSession] | None = None


# ---------------------------------------------------------------------------
# Storage-level immutability
# ---------------------------------------------------------------------------

_audit_table = AuditEvent.__table__

for _operation in ("UPDATE", "DELETE"):
    event.listen(
        _audit_table,
        "after_create",
        DDL(
            f"CREATE TRIGGER IF NOT EXISTS gov_audit_events_no_{_operation.lower()} "
            f"BEFORE {_operation} ON gov_audit_events "
            f"BEGIN SELECT RAISE(ABORT, '{APPEND_ONLY_MESSAGE}'); END"
        ).execute_if(dialect="sqlite"),
    )

event.listen(
    _audit_table,
    "after_create",
    DDL(
        "CREATE OR REPLACE FUNCTION gov_audit_events_append_only() RETURNS trigger AS $$ "
        f"BEGIN RAISE EXCEPTION '{APPEND_ONLY_MESSAGE}'; END; $$ LANGUAGE plpgsql"
    ).execute_if(dialect="postgresql"),
)
event.listen(
    _audit_table,
    "after_create",
    DDL(
        "CREATE TRIGGER gov_audit_events_no_mutation "
        "BEFORE UPDATE OR DELETE ON gov_audit_events "
        "FOR EACH ROW EXECUTE FUNCTION gov_audit_events_append_only()"
    ).execute_if(dialect="postgresql"),
)


@event.listens_for(AuditEvent, "before_update")
def _reject_update(mapper: Any, connection: Any, target: AuditEvent) -> None:
    raise AuditWriteFailure(APPEND_ONLY_MESSAGE, event_id=str(target.id), operation="update")


@event.listens_for(AuditEvent, "before_delete")
def _reject_delete(mapper: Any, connection: Any, target: AuditEvent) -> None:
    raise AuditWriteFailure(APPEND_ONLY_MESSAGE, event_id=str(target.id), operation="delete")


# ---------------------------------------------------------------------------
# Engine lifecycle
# ---------------------------------------------------------------------------


async def create_audit_schema(engine: AsyncEngine) -> None:
    """Create the audit table and its append-only triggers."""
    async with engine.begin() as conn:
        await conn.run_sync(AuditBase.metadata.create_all)


async def init_audit_db(
    audit_db_url: str,
    pool_size: int = 5,
    max_overflow: int = 2,
    pool_timeout: int = 30,
) -> async_sessionmaker[AsyncSession]:
    """Initialize the Audit Wall engine, schema and session factory.

    Must be called once at startup before any audit write.

    Args:
        audit_db_url: SQLAlchemy async URL for the separate audit database.
        pool_size: Connection pool size.
        max_overflow: Max overflow connections above pool_size.
        pool_timeout: Seconds to wait for a connection before raising.

    Returns:
        The audit session factory.
    """
    global _audit_engine, _audit_session_factory  # noqa: PLW0603

    logger.info("Initializing Audit Wall engine", pool_size=pool_size, max_overflow=max_overflow)
    _audit_engine = create_engine_for(
        audit_db_url,
        pool_size=pool_size,
        max_overflow=max_overflow,
        pool_timeout=pool_timeout,
    )
    await create_audit_schema(_audit_engine)
    _audit_session_factory = make_session_factory(_audit_engine)
    logger.info("Audit Wall engine initialized")
    return _audit_session_factory


async def close_audit_db() -> None:
    """Dispose the Audit Wall engine. No audit writes are possible afterwards."""
    global _audit_engine, _audit_session_factory  # noqa: PLW0603

    if _audit_engine is not None:
        logger.info("Disposing Audit Wall engine")
        await _audit_engine.dispose()
        _audit_engine = None
        _audit_session_factory = None


def get_audit_session_factory() -> async_sessionmaker[AsyncSession]:
    """Return the Audit Wall session factory.

    Raises:
        RuntimeError: If init_audit_db() has not been called yet.
    """
    if _audit_session_factory is None:
        raise RuntimeError("Audit Wall database has not been initialized. Call init_audit_db() at startup.")
    return _audit_session_factory


# ---------------------------------------------------------------------------
# Chain hashing
# ---------------------------------------------------------------------------


def _as_utc(moment: datetime) -> datetime:
    if moment.tzinfo is None:
        return moment.replace(tzinfo=UTC)
    return moment.astimezone(UTC)


def compute_chain_hash(
    stream_id: str,
    sequence: int,
    event_type: str,
    payload_hash: str,
    prev_hash: str | None,
    lawbook_version: str | None,
    lawbook_hash: str | None,
    created_at: datetime,
) -> str:
    """Hash linking an audit event to its predecessor in the stream."""
    return stable_hash(
        {
            "stream_id": stream_id,
            "sequence": sequence,
            "event_type": event_type,
            "payload_hash": payload_hash,
            "prev_hash": prev_hash,
            "lawbook_version": lawbook_version,
            "lawbook_hash": lawbook_hash,
            "created_at": _as_utc(created_at).isoformat(timespec="microseconds"),
        }
    )


class ChainVerification(BaseModel):
    """Result of recomputing a stream's hash chain."""

    model_config = ConfigDict(frozen=True)

    stream_id: str
    valid: bool
    event_count: int
    first_invalid_sequence: int | None = None
    reason: str | None = None


# ---------------------------------------------------------------------------
# Repository
# ---------------------------------------------------------------------------


class AuditTrailRepository:
    """Append-only repository for AuditEvent on the Audit Wall database.

    IMPORTANT: This repository has no update() or delete() methods because
    the audit trail is immutable. Every append() is its own transaction, so an
    event is durable when append() returns.

    Args:
        session_factory: Audit Wall session factory.
        clock: Returns the current time; injectable for tests.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._session_factory = session_factory
        self._clock = clock

    async def append(
        self,
        stream_id: str,
        event_type: str,
        payload: dict[str, Any],
        lawbook_version: str | None = None,
        lawbook_hash: str | None = None,
    ) -> AuditEvent:
        """Append an immutable, chained event to a stream.

        The payload must already be redacted; its hash is stored as given.
        A concurrent append to the same stream loses the unique
        (stream_id, sequence) race and is retried against the new tail.

        Args:
            stream_id: Stream to append to.
            event_type: Event type.
            payload: Redacted payload.
            lawbook_version: Lawbook version in force.
            lawbook_hash: Lawbook content hash in force.

        Returns:
            The persisted AuditEvent.

        Raises:
            AuditWriteFailure: If the event could not be persisted.
        """
        payload_hash = stable_hash(payload)
        last_error: Exception | None = None

        for attempt in range(1, _MAX_APPEND_ATTEMPTS + 1):
            try:
                async with self._session_factory() as session:
                    tail = await session.execute(
                        select(AuditEvent.sequence, AuditEvent.chain_hash)
                        .where(AuditEvent.stream_id == stream_id)
                        .order_by(AuditEvent.sequence.desc())
                        .limit(1)
                    )
                    row = tail.first()
                    sequence = (row.sequence if row else 0) + 1
                    prev_hash = row.chain_hash if row else None
                    created_at = self._clock()

                    entry = AuditEvent(
                        stream_id=stream_id,
                        sequence=sequence,
                        event_type=event_type,
                        payload=payload,
                        payload_hash=payload_hash,
                        prev_hash=prev_hash,
                        chain_hash=compute_chain_hash(
                            stream_id,
                            sequence,
                            event_type,
                            payload_hash,
                            prev_hash,
                            lawbook_version,
                            lawbook_hash,
                            created_at,
                        ),
                        lawbook_version=lawbook_version,
                        lawbook_hash=lawbook_hash,
                        created_at=created_at,
                    )
                    session.add(entry)
                    await session.commit()
            except IntegrityError as exc:
                last_error = exc
                logger.warning("Audit sequence conflict, retrying", stream_id=stream_id, attempt=attempt)
                continue
            except SQLAlchemyError as exc:
                logger.error("Audit write failed", stream_id=stream_id, event_type=event_type, error=str(exc))
                raise AuditWriteFailure(
                    f"Failed to write audit event {event_type} to stream {stream_id}",
                    stream_id=stream_id,
                    event_type=event_type,
                ) from exc

            logger.info(
                "Audit event written",
                stream_id=stream_id,
                sequence=sequence,
                event_type=event_type,
                payload_hash=payload_hash[:12],
            )
            return entry

        raise AuditWriteFailure(
            f"Failed to write audit event {event_type} to stream {stream_id} after {_MAX_APPEND_ATTEMPTS} attempts",
            stream_id=stream_id,
            event_type=event_type,
        ) from last_error

    async def query(self, stream_id: str, event_type_filter: str | None = None) -> list[AuditEvent]:
        """Return a stream's events in sequence (creation) order.

        Args:
            stream_id: Stream to read.
            event_type_filter: Optional exact event type filter.

        Returns:
            List of AuditEvent ordered by sequence ascending.
        """
        stmt = select(AuditEvent).where(AuditEvent.stream_id == stream_id)
        if event_type_filter:
            stmt = stmt.where(AuditEvent.event_type == event_type_filter)
        stmt = stmt.order_by(AuditEvent.sequence.asc())

        async with self._session_factory() as session:
            result = await session.execute(stmt)
            return list(result.scalars().all())

    async def count(self, stream_id: str) -> int:
        async with self._session_factory() as session:
            result = await session.execute(
                select(func.count()).select_from(AuditEvent).where(AuditEvent.stream_id == stream_id)
            )
            return int(result.scalar_one())

    async def verify_chain(self, stream_id: str) -> ChainVerification:
        """Recompute payload and chain hashes for a stream.

        Args:
            stream_id: Stream to verify.

        Returns:
            ChainVerification naming the first event that does not verify.
        """
        events = await self.query(stream_id)
        prev_hash: str | None = None

        for expected_sequence, entry in enumerate(events, start=1):
            reason: str | None = None
            if entry.sequence != expected_sequence:
                reason = f"sequence gap: expected {expected_sequence}, found {entry.sequence}"
            elif entry.prev_hash != prev_hash:
                reason = "prev_hash does not match the previous event"
            elif stable_hash(entry.payload) != entry.payload_hash:
                reason = "payload_hash does not match payload"
            elif entry.chain_hash != compute_chain_hash(
                entry.stream_id,
                entry.sequence,
                entry.event_type,
                entry.payload_hash,
                entry.prev_hash,
                entry.lawbook_version,
                entry.lawbook_hash,
                entry.created_at,
            ):
                reason = "chain_hash does not match event contents"

            if reason is not None:
                logger.warning("Audit chain verification failed", stream_id=stream_id, sequence=entry.sequence)
                return ChainVerification(
                    stream_id=stream_id,
                    valid=False,
                    event_count=len(events),
                    first_invalid_sequence=entry.sequence,
                    reason=reason,
                )
            prev_hash = entry.chain_hash

        return ChainVerification(stream_id=stream_id, valid=True, event_count=len(events))
