"""
Batch Assembler

Claims Pending events into bounded, ordered sync batches and keeps batch
lifecycle state recoverable across crashes. Every state change runs inside
the event store's transaction so claims never race with capture or
retention.
"""

import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import List, Dict, Any, Optional, Callable

from sqlalchemy import select, update, delete, func, or_
from sqlalchemy.ext.asyncio import AsyncSession

from heroes_analytics.core.config import Settings, settings as default_settings
from heroes_analytics.models.behavioral_event import BehavioralEvent, EventSyncState
from heroes_analytics.models.sync_batch import SyncBatch, BatchStatus, TERMINAL_BATCH_STATUSES

logger = logging.getLogger(__name__)

# Batch health thresholds
MAX_HEALTHY_FAILED_BATCHES = 10
MAX_HEALTHY_OPEN_BATCHES = 20
MAX_HEALTHY_PENDING_EVENTS = 1000


async def delete_terminal_batches_in(session: AsyncSession, cutoff: datetime) -> int:
    """Delete committed / partially failed batches completed before `cutoff`."""
    result = await session.execute(
        delete(SyncBatch).where(
            SyncBatch.status.in_(TERMINAL_BATCH_STATUSES),
            SyncBatch.completed_at < cutoff
        )
    )
    return result.rowcount


@dataclass
class BatchHealthReport:
    is_healthy: bool
    open_batches: int
    in_flight_batches: int
    committed_batches: int
    failed_batches: int
    pending_events: int
    review_events: int
    issues: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "is_healthy": self.is_healthy,
            "open_batches": self.open_batches,
            "in_flight_batches": self.in_flight_batches,
            "committed_batches": self.committed_batches,
            "failed_batches": self.failed_batches,
            "pending_events": self.pending_events,
            "review_events": self.review_events,
            "issues": list(self.issues),
        }


class BatchAssembler:
    """Groups eligible Pending events into Open batches."""

    def __init__(
        self,
        store,
        config: Settings = None,
        clock: Callable[[], datetime] = datetime.utcnow
    ):
        self.store = store
        self.config = config or default_settings
        self._clock = clock

    async def claim_batch(
        self,
        max_events: Optional[int] = None,
        now: Optional[datetime] = None
    ) -> Optional[SyncBatch]:
        """
        Atomically claim up to `max_events` eligible events in capture order.

        Eligible events are Pending, not in another batch, not held for
        review and past their backoff time. Returns None when there is
        nothing to claim.
        """
        now = now or self._clock()
        if max_events is None:
            max_events = self.config.SYNC_BATCH_SIZE
        max_events = min(max_events, self.config.SYNC_MAX_BATCH_SIZE)
        if max_events <= 0:
            return None

        async with self.store.transaction() as session:
            result = await session.execute(
                select(BehavioralEvent.id)
                .where(
                    BehavioralEvent.sync_state == EventSyncState.PENDING,
                    BehavioralEvent.batch_id.is_(None),
                    BehavioralEvent.requires_review.is_(False),
                    or_(
                        BehavioralEvent.next_attempt_at.is_(None),
                        BehavioralEvent.next_attempt_at <= now
                    )
                )
                .order_by(BehavioralEvent.recorded_at, BehavioralEvent.id)
                .limit(max_events)
            )
            event_ids = list(result.scalars().all())
            if not event_ids:
                return None

            batch = SyncBatch(
                batch_id=str(uuid.uuid4()),
                event_ids=event_ids,
                event_count=len(event_ids),
                status=BatchStatus.OPEN,
                created_at=now,
                attempt_count=0,
                accepted_count=0,
                rejected_count=0
            )
            session.add(batch)
            await session.execute(
                update(BehavioralEvent)
                .where(BehavioralEvent.id.in_(event_ids))
                .values(batch_id=batch.batch_id)
            )

        logger.info(f"Claimed {len(event_ids)} events into batch {batch.batch_id}")
        return batch

    async def next_open_batch(self) -> Optional[SyncBatch]:
        """Oldest Open batch, e.g. one reverted after cancellation or a crash."""
        async with self.store.read_session() as session:
            result = await session.execute(
                select(SyncBatch)
                .where(SyncBatch.status == BatchStatus.OPEN)
                .order_by(SyncBatch.created_at, SyncBatch.batch_id)
                .limit(1)
            )
            return result.scalars().first()

    async def get_batch(self, batch_id: str) -> Optional[SyncBatch]:
        async with self.store.read_session() as session:
            return await session.get(SyncBatch, batch_id)

    async def recover_abandoned_batches(
        self,
        now: Optional[datetime] = None,
        timeout: Optional[timedelta] = None
    ) -> int:
        """
        Re-open InFlight batches older than the liveness timeout and release
        events whose batch no longer exists or has already finished.

        Pass ``timeout=timedelta(0)`` at startup: nothing can be in flight in
        a process that has just started.
        """
        now = now or self._clock()
        if timeout is None:
            timeout = timedelta(seconds=self.config.SYNC_INFLIGHT_TIMEOUT_SECONDS)
        cutoff = now - timeout

        async with self.store.transaction() as session:
            result = await session.execute(
                update(SyncBatch)
                .where(
                    SyncBatch.status == BatchStatus.IN_FLIGHT,
                    or_(SyncBatch.started_at.is_(None), SyncBatch.started_at <= cutoff)
                )
                .values(status=BatchStatus.OPEN, started_at=None)
            )
            reopened = result.rowcount

            live_batches = select(SyncBatch.batch_id).where(
                SyncBatch.status.in_((BatchStatus.OPEN, BatchStatus.IN_FLIGHT))
            )
            result = await session.execute(
                update(BehavioralEvent)
                .where(
                    BehavioralEvent.sync_state == EventSyncState.PENDING,
                    BehavioralEvent.batch_id.is_not(None),
                    BehavioralEvent.batch_id.not_in(live_batches)
                )
                .values(batch_id=None)
            )
            orphans = result.rowcount

        if reopened or orphans:
            logger.warning(
                f"Recovered {reopened} abandoned batches and released {orphans} orphaned events"
            )
        return reopened

    async def cleanup_old_batches(self, now: Optional[datetime] = None) -> int:
        """Drop terminal batch records past the batch history window."""
        now = now or self._clock()
        cutoff = now - timedelta(days=self.config.BATCH_HISTORY_DAYS)
        async with self.store.transaction() as session:
            deleted = await delete_terminal_batches_in(session, cutoff)

        if deleted:
            logger.info(f"Cleaned up {deleted} batch records older than {cutoff.isoformat()}")
        return deleted

    async def health_report(self) -> BatchHealthReport:
        async with self.store.read_session() as session:
            result = await session.execute(
                select(SyncBatch.status, func.count(SyncBatch.batch_id)).group_by(SyncBatch.status)
            )
            by_status = {BatchStatus(status): count for status, count in result.all()}

            pending_events = (await session.execute(
                select(func.count(BehavioralEvent.id))
                .where(BehavioralEvent.sync_state == EventSyncState.PENDING)
            )).scalar_one()
            review_events = (await session.execute(
                select(func.count(BehavioralEvent.id))
                .where(BehavioralEvent.requires_review.is_(True))
            )).scalar_one()

        failed_batches = by_status.get(BatchStatus.PARTIALLY_FAILED, 0)
        open_batches = by_status.get(BatchStatus.OPEN, 0)

        issues = []
        if failed_batches > MAX_HEALTHY_FAILED_BATCHES:
            issues.append(f"High number of failed batches: {failed_batches}")
        if open_batches > MAX_HEALTHY_OPEN_BATCHES:
            issues.append(f"Many batches waiting to sync: {open_batches}")
        if pending_events > MAX_HEALTHY_PENDING_EVENTS:
            issues.append(f"Large sync backlog: {pending_events} pending events")
        if review_events:
            issues.append(f"{review_events} events held for manual review")

        return BatchHealthReport(
            is_healthy=not issues,
            open_batches=open_batches,
            in_flight_batches=by_status.get(BatchStatus.IN_FLIGHT, 0),
            committed_batches=by_status.get(BatchStatus.COMMITTED, 0),
            failed_batches=failed_batches,
            pending_events=pending_events,
            review_events=review_events,
            issues=issues
        )
