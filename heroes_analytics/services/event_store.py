"""
Local Event Store

Durable, append-only log of sanitized behavioral events backed by SQLite.
All writes go through one asyncio lock so that capture, sync and retention
can share the store without losing events; multi-step changes use
`transaction()` to run under the same boundary.
"""

import asyncio
import logging
from contextlib import asynccontextmanager
from datetime import datetime
from typing import List, Dict, Optional, Iterable, AsyncIterator, Callable

from sqlalchemy import select, update, delete, func, or_
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession

from heroes_analytics.core.config import Settings, settings as default_settings
from heroes_analytics.core.database import create_engine, create_session_factory, init_db
from heroes_analytics.core.exceptions import StoreIOError
from heroes_analytics.compliance.gate import has_compliance_marker
from heroes_analytics.models.behavioral_event import BehavioralEvent, EventSyncState
from heroes_analytics.models.sync_batch import SyncBatch

logger = logging.getLogger(__name__)

CAPTURE_ORDER = (BehavioralEvent.recorded_at, BehavioralEvent.id)


class LocalEventStore:
    """SQLite-backed event log with single-writer serialization."""

    def __init__(
        self,
        engine: AsyncEngine,
        max_events: int = 10000,
        trim_batch: int = 500,
        clock: Callable[[], datetime] = datetime.utcnow
    ):
        self.engine = engine
        self.session_factory = create_session_factory(engine)
        self.max_events = max_events
        self.trim_batch = trim_batch
        self._clock = clock
        self._write_lock = asyncio.Lock()
        self.trimmed_count = 0

    @classmethod
    async def open(cls, config: Settings = None, database_url: str = None) -> "LocalEventStore":
        """Create the engine, ensure the schema exists and return a ready store."""
        config = config or default_settings
        engine = create_engine(config, database_url=database_url)
        try:
            await init_db(engine)
        except SQLAlchemyError as e:
            await engine.dispose()
            raise StoreIOError(f"Failed to initialize event store: {e}", original_exception=e) from e

        return cls(
            engine,
            max_events=config.STORE_MAX_EVENTS,
            trim_batch=config.STORE_TRIM_BATCH
        )

    async def close(self):
        await self.engine.dispose()

    # === TRANSACTION BOUNDARY ===

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[AsyncSession]:
        """
        Serialized read-write unit of work.

        The lock is not reentrant: code running inside a transaction must
        use the yielded session rather than calling other store writers.
        """
        async with self._write_lock:
            try:
                async with self.session_factory() as session:
                    async with session.begin():
                        yield session
            except SQLAlchemyError as e:
                logger.error(f"Event store transaction failed: {e}")
                raise StoreIOError(f"Event store write failed: {e}", original_exception=e) from e

    @asynccontextmanager
    async def read_session(self) -> AsyncIterator[AsyncSession]:
        try:
            async with self.session_factory() as session:
                yield session
        except SQLAlchemyError as e:
            logger.error(f"Event store read failed: {e}")
            raise StoreIOError(f"Event store read failed: {e}", original_exception=e) from e

    # === WRITES ===

    async def append(
        self,
        event: BehavioralEvent,
        guard: Optional[Callable[[], bool]] = None
    ) -> Optional[str]:
        """
        Persist a sanitized event as Pending and return its id.

        `guard` is evaluated under the write lock; when it returns False the
        event is not written and None is returned.

        Raises:
            ValueError: the event does not carry the compliance marker
            StoreIOError: the write failed
        """
        if not has_compliance_marker(event.compliance_marker):
            raise ValueError("Event is missing the compliance provenance marker")

        event.sync_state = EventSyncState.PENDING
        event.sync_attempts = event.sync_attempts or 0
        event.requires_review = False
        event.batch_id = None
        if event.recorded_at is None:
            event.recorded_at = self._clock()

        async with self.transaction() as session:
            if guard is not None and not guard():
                return None
            await self._ensure_capacity(session)
            session.add(event)

        return event.id

    async def mark_synced(self, ids: Iterable[str]) -> int:
        ids = list(ids)
        if not ids:
            return 0
        async with self.transaction() as session:
            return await self.mark_synced_in(session, ids)

    async def mark_synced_in(self, session: AsyncSession, ids: List[str]) -> int:
        """Synced events are immutable, so only non-synced rows are touched."""
        result = await session.execute(
            update(BehavioralEvent)
            .where(
                BehavioralEvent.id.in_(ids),
                BehavioralEvent.sync_state != EventSyncState.SYNCED
            )
            .values(
                sync_state=EventSyncState.SYNCED,
                last_sync_attempt_at=self._clock(),
                next_attempt_at=None,
                sync_error=None,
                requires_review=False
            )
        )
        return result.rowcount

    async def mark_failed(self, ids: Iterable[str], reason: str) -> int:
        """Move events to the terminal Failed state."""
        ids = list(ids)
        if not ids:
            return 0
        async with self.transaction() as session:
            result = await session.execute(
                update(BehavioralEvent)
                .where(
                    BehavioralEvent.id.in_(ids),
                    BehavioralEvent.sync_state != EventSyncState.SYNCED
                )
                .values(
                    sync_state=EventSyncState.FAILED,
                    sync_error=reason,
                    next_attempt_at=None,
                    batch_id=None
                )
            )
            return result.rowcount

    async def delete_older_than(self, timestamp: datetime) -> int:
        """Delete Synced events recorded before `timestamp`."""
        async with self.transaction() as session:
            return await self.delete_older_than_in(session, timestamp)

    async def delete_older_than_in(self, session: AsyncSession, timestamp: datetime) -> int:
        result = await session.execute(
            delete(BehavioralEvent).where(
                BehavioralEvent.sync_state == EventSyncState.SYNCED,
                BehavioralEvent.recorded_at < timestamp
            )
        )
        return result.rowcount

    async def delete_all(self) -> int:
        """Delete every event and batch regardless of state."""
        async with self.transaction() as session:
            return await self.delete_all_in(session)

    async def delete_all_in(self, session: AsyncSession) -> int:
        result = await session.execute(delete(BehavioralEvent))
        await session.execute(delete(SyncBatch))
        return result.rowcount

    async def release_for_review(self, ids: Iterable[str] = None) -> int:
        """
        Operator release: clear the review flag on Pending events and
        re-queue Failed events with a fresh attempt budget.
        """
        async with self.transaction() as session:
            conditions = [
                or_(
                    BehavioralEvent.requires_review.is_(True),
                    BehavioralEvent.sync_state == EventSyncState.FAILED
                )
            ]
            if ids is not None:
                conditions.append(BehavioralEvent.id.in_(list(ids)))

            result = await session.execute(
                update(BehavioralEvent)
                .where(*conditions)
                .values(
                    sync_state=EventSyncState.PENDING,
                    requires_review=False,
                    sync_attempts=0,
                    next_attempt_at=None,
                    batch_id=None
                )
            )
            released = result.rowcount

        logger.info(f"Released {released} events for re-sync")
        return released

    async def purge_failed_older_than(self, timestamp: datetime) -> int:
        """Explicitly remove terminal Failed events recorded before `timestamp`."""
        async with self.transaction() as session:
            result = await session.execute(
                delete(BehavioralEvent).where(
                    BehavioralEvent.sync_state == EventSyncState.FAILED,
                    BehavioralEvent.recorded_at < timestamp
                )
            )
            return result.rowcount

    # === READS ===

    async def get(self, event_id: str) -> Optional[BehavioralEvent]:
        async with self.read_session() as session:
            return await session.get(BehavioralEvent, event_id)

    async def list_pending(self, limit: int = 100) -> List[BehavioralEvent]:
        """Pending events in capture order (recorded_at, then id)."""
        async with self.read_session() as session:
            result = await session.execute(
                select(BehavioralEvent)
                .where(BehavioralEvent.sync_state == EventSyncState.PENDING)
                .order_by(*CAPTURE_ORDER)
                .limit(limit)
            )
            return list(result.scalars().all())

    async def list_by_batch(self, batch_id: str) -> List[BehavioralEvent]:
        async with self.read_session() as session:
            result = await session.execute(
                select(BehavioralEvent)
                .where(BehavioralEvent.batch_id == batch_id)
                .order_by(*CAPTURE_ORDER)
            )
            return list(result.scalars().all())

    async def list_all(self) -> List[BehavioralEvent]:
        async with self.read_session() as session:
            result = await session.execute(select(BehavioralEvent).order_by(*CAPTURE_ORDER))
            return list(result.scalars().all())

    async def count_by_state(self) -> Dict[str, int]:
        async with self.read_session() as session:
            result = await session.execute(
                select(BehavioralEvent.sync_state, func.count(BehavioralEvent.id))
                .group_by(BehavioralEvent.sync_state)
            )
            counts = {state.value: 0 for state in EventSyncState}
            for state, count in result.all():
                counts[EventSyncState(state).value] = count
            return counts

    async def pending_count(self) -> int:
        async with self.read_session() as session:
            result = await session.execute(
                select(func.count(BehavioralEvent.id))
                .where(BehavioralEvent.sync_state == EventSyncState.PENDING)
            )
            return result.scalar_one()

    async def total_count(self) -> int:
        async with self.read_session() as session:
            result = await session.execute(select(func.count(BehavioralEvent.id)))
            return result.scalar_one()

    # === PRIVATE HELPER METHODS ===

    async def _ensure_capacity(self, session: AsyncSession):
        total = (await session.execute(select(func.count(BehavioralEvent.id)))).scalar_one()
        if total < self.max_events:
            return

        excess = total - self.max_events + 1
        result = await session.execute(
            select(BehavioralEvent.id)
            .where(BehavioralEvent.sync_state == EventSyncState.SYNCED)
            .order_by(*CAPTURE_ORDER)
            .limit(max(excess, self.trim_batch))
        )
        trim_ids = list(result.scalars().all())

        if not trim_ids:
            # Unsynced data is never trimmed; accept the write over capacity
            logger.warning(
                f"Event store over capacity ({total}/{self.max_events}) with no synced events to trim"
            )
            return

        await session.execute(delete(BehavioralEvent).where(BehavioralEvent.id.in_(trim_ids)))
        self.trimmed_count += len(trim_ids)
        logger.info(f"Trimmed {len(trim_ids)} oldest synced events to stay under capacity")
