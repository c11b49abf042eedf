"""
Sync Engine

Drains sync batches to the analytics service with at-least-once delivery.

Per batch: Open -> InFlight -> Committed | PartiallyFailed. Only events the
server explicitly acknowledges become Synced; every other member counts one
failed attempt and is re-queued with backoff, or becomes terminal Failed at
the attempt cap. A permanent (4xx) rejection returns members to Pending
flagged for review instead of retrying them.
"""

import asyncio
import logging
from datetime import datetime
from enum import Enum
from typing import List, Dict, Optional, Callable, Set

from sqlalchemy import select, update

from heroes_analytics.compliance.audit_service import ComplianceAuditService, AuditEventType, AuditSeverity
from heroes_analytics.core.circuit_breaker import CircuitBreaker, CircuitBreakerError
from heroes_analytics.core.config import Settings, settings as default_settings
from heroes_analytics.core.exceptions import TransientSyncFailure, PermanentSyncFailure
from heroes_analytics.models.behavioral_event import BehavioralEvent, EventSyncState
from heroes_analytics.models.sync_batch import SyncBatch, BatchStatus
from heroes_analytics.schemas.sync import SyncBatchRequest, DeviceMeta, SyncCycleResult
from heroes_analytics.services.sync.batch_assembler import BatchAssembler
from heroes_analytics.services.sync.connectivity import ConnectivityMonitor
from heroes_analytics.services.sync.retry import RetryPolicy, priority_for
from heroes_analytics.services.sync.transport import SyncTransport

logger = logging.getLogger(__name__)


class DeferReason(str, Enum):
    CONSENT_NOT_GRANTED = "consent_not_granted"
    OFFLINE = "offline"
    CIRCUIT_OPEN = "circuit_open"
    BATTERY_CRITICAL = "battery_critical"


class CycleStatus(str, Enum):
    IDLE = "idle"              # nothing eligible to send
    SKIPPED = "skipped"        # batch taken by a concurrent cycle
    DISCARDED = "discarded"    # batch deleted while in flight
    COMMITTED = BatchStatus.COMMITTED.value
    PARTIALLY_FAILED = BatchStatus.PARTIALLY_FAILED.value


class SyncEngine:
    """
    Transmits one batch per cycle under a concurrency cap.

    The ComplianceProfile is read through `consent_manager.profile` at the
    start of every cycle, so a withdrawal halts the engine immediately.
    """

    def __init__(
        self,
        store,
        assembler: BatchAssembler,
        transport: SyncTransport,
        consent_manager,
        connectivity: ConnectivityMonitor,
        retry_policy: Optional[RetryPolicy] = None,
        circuit_breaker: Optional[CircuitBreaker] = None,
        audit_service: Optional[ComplianceAuditService] = None,
        config: Settings = None,
        clock: Callable[[], datetime] = datetime.utcnow
    ):
        self.config = config or default_settings
        self.store = store
        self.assembler = assembler
        self.transport = transport
        self.consent_manager = consent_manager
        self.connectivity = connectivity
        self.retry_policy = retry_policy or RetryPolicy.from_settings(self.config)
        self.audit_service = audit_service or ComplianceAuditService(store)
        self.circuit_breaker = circuit_breaker or CircuitBreaker(
            failure_threshold=self.config.SYNC_FAILURE_THRESHOLD,
            recovery_timeout=self.config.SYNC_RECOVERY_TIMEOUT_SECONDS,
            trip_on=(TransientSyncFailure,),
            name="analytics_upload"
        )
        self._clock = clock
        self._semaphore = asyncio.Semaphore(self.config.SYNC_MAX_CONCURRENT_BATCHES)

        self.stats: Dict[str, int] = {
            "cycles": 0,
            "deferred": 0,
            "batches_committed": 0,
            "batches_partially_failed": 0,
            "events_synced": 0,
            "failed_attempts": 0,
            "events_failed_terminal": 0,
            "events_held_for_review": 0,
            "batches_cancelled": 0,
        }

    # === SYNC CYCLES ===

    async def sync_once(self) -> SyncCycleResult:
        """Run one cycle: resume or claim a batch and transmit it."""
        self.stats["cycles"] += 1

        deferred = self._deferral_reason()
        if deferred is not None:
            self.stats["deferred"] += 1
            logger.debug(f"Sync deferred: {deferred.value}")
            return SyncCycleResult(deferred_reason=deferred.value)

        async with self._semaphore:
            batch = await self.assembler.next_open_batch()
            if batch is None:
                batch = await self.assembler.claim_batch(
                    self.connectivity.batch_size(self.config.SYNC_MAX_BATCH_SIZE)
                )
            if batch is None:
                return SyncCycleResult(status=CycleStatus.IDLE.value)

            return await self._transmit(batch)

    async def drain(self, max_batches: Optional[int] = None) -> List[SyncCycleResult]:
        """Run cycles until nothing is left to send or a cycle makes no progress."""
        results = []
        while max_batches is None or len(results) < max_batches:
            result = await self.sync_once()
            if not result.had_work:
                break
            results.append(result)
            if result.status != CycleStatus.SKIPPED.value and result.accepted == 0:
                break
        return results

    # === TRANSMISSION ===

    async def _transmit(self, batch: SyncBatch) -> SyncCycleResult:
        """
        Fly one batch. Cancellation at any point before the outcome is
        committed returns the batch to Open with its attempt count restored.
        """
        batch_id = batch.batch_id
        try:
            return await self._fly(batch_id)
        except asyncio.CancelledError:
            if await asyncio.shield(self._revert_to_open(batch_id)):
                self.stats["batches_cancelled"] += 1
                logger.info(f"Sync of batch {batch_id} cancelled; batch re-opened")
            raise

    async def _fly(self, batch_id: str) -> SyncCycleResult:
        members = await self._begin_flight(batch_id)
        if members is None:
            return SyncCycleResult(batch_id=batch_id, status=CycleStatus.SKIPPED.value)

        member_ids = [event.id for event in members]
        if not member_ids:
            # Every member was deleted or finished elsewhere
            return await self._reconcile(batch_id, [], set(), {})

        request = SyncBatchRequest(
            batch_id=batch_id,
            device_meta=DeviceMeta(
                device_type=self.config.DEVICE_TYPE,
                app_version=self.config.APP_VERSION,
                connection_type=self.connectivity.connection_type
            ),
            events=[event.to_payload() for event in members]
        )

        logger.info(f"Uploading batch {batch_id} ({len(member_ids)} events)")
        try:
            response = await self.circuit_breaker.call(self.transport.upload_batch, request)
        except CircuitBreakerError:
            await self._revert_to_open(batch_id)
            self.stats["deferred"] += 1
            return SyncCycleResult(batch_id=batch_id, deferred_reason=DeferReason.CIRCUIT_OPEN.value)
        except TransientSyncFailure as e:
            logger.warning(f"Transient failure for batch {batch_id}: {e.message}")
            return await self._reconcile(batch_id, member_ids, set(), {}, error=e.message)
        except PermanentSyncFailure as e:
            logger.error(f"Permanent failure for batch {batch_id}: {e.message}")
            return await self._hold_for_review(batch_id, member_ids, e.message)
        except Exception:
            await asyncio.shield(self._revert_to_open(batch_id))
            raise

        return await self._reconcile(
            batch_id, member_ids, set(response.accepted), response.rejection_reasons()
        )

    async def _begin_flight(self, batch_id: str) -> Optional[List[BehavioralEvent]]:
        """Move an Open batch to InFlight and load its surviving members in order."""
        now = self._clock()
        async with self.store.transaction() as session:
            result = await session.execute(
                update(SyncBatch)
                .where(SyncBatch.batch_id == batch_id, SyncBatch.status == BatchStatus.OPEN)
                .values(
                    status=BatchStatus.IN_FLIGHT,
                    started_at=now,
                    attempt_count=SyncBatch.attempt_count + 1
                )
            )
            if result.rowcount == 0:
                return None

            batch = await session.get(SyncBatch, batch_id)
            result = await session.execute(
                select(BehavioralEvent).where(
                    BehavioralEvent.id.in_(batch.event_ids),
                    BehavioralEvent.batch_id == batch_id,
                    BehavioralEvent.sync_state == EventSyncState.PENDING
                )
            )
            by_id = {event.id: event for event in result.scalars().all()}

        return [by_id[event_id] for event_id in batch.event_ids if event_id in by_id]

    async def _revert_to_open(self, batch_id: str) -> bool:
        """Returns False when the batch is no longer InFlight."""
        async with self.store.transaction() as session:
            result = await session.execute(
                update(SyncBatch)
                .where(SyncBatch.batch_id == batch_id, SyncBatch.status == BatchStatus.IN_FLIGHT)
                .values(
                    status=BatchStatus.OPEN,
                    started_at=None,
                    attempt_count=SyncBatch.attempt_count - 1
                )
            )
            return result.rowcount > 0

    # === RECONCILIATION ===

    async def _reconcile(
        self,
        batch_id: str,
        member_ids: List[str],
        accepted: Set[str],
        rejections: Dict[str, str],
        error: Optional[str] = None
    ) -> SyncCycleResult:
        """
        Apply the server's per-event outcome. Acknowledged ids outside the
        batch are ignored; members the server did not mention count as
        failed attempts.
        """
        now = self._clock()
        acknowledged = [event_id for event_id in member_ids if event_id in accepted]
        unacknowledged = [event_id for event_id in member_ids if event_id not in accepted]

        stray = accepted.difference(member_ids)
        if stray:
            logger.warning(f"Ignoring {len(stray)} acknowledged ids not in batch {batch_id}")

        async with self.store.transaction() as session:
            batch = await session.get(SyncBatch, batch_id)
            if batch is None:
                logger.info(f"Batch {batch_id} was deleted in flight; outcome discarded")
                return SyncCycleResult(batch_id=batch_id, status=CycleStatus.DISCARDED.value)

            synced = await self.store.mark_synced_in(session, acknowledged) if acknowledged else 0

            failed_events = []
            if unacknowledged:
                result = await session.execute(
                    select(BehavioralEvent).where(
                        BehavioralEvent.id.in_(unacknowledged),
                        BehavioralEvent.sync_state == EventSyncState.PENDING
                    )
                )
                failed_events = list(result.scalars().all())

            terminal = 0
            for event in failed_events:
                attempts = (event.sync_attempts or 0) + 1
                event.sync_attempts = attempts
                event.last_sync_attempt_at = now
                event.batch_id = None
                event.sync_error = rejections.get(event.id) or error or "not acknowledged"

                if self.retry_policy.is_exhausted(attempts):
                    event.sync_state = EventSyncState.FAILED
                    event.next_attempt_at = None
                    terminal += 1
                else:
                    event.next_attempt_at = self.retry_policy.next_attempt_at(
                        attempts, now, priority_for(event)
                    )

            batch.status = BatchStatus.PARTIALLY_FAILED if failed_events else BatchStatus.COMMITTED
            batch.completed_at = now
            batch.accepted_count = len(acknowledged)
            batch.rejected_count = len(failed_events)
            batch.last_error = error or (
                f"{len(failed_events)} events not acknowledged" if failed_events else None
            )
            status = batch.status

        self.stats["events_synced"] += synced
        self.stats["failed_attempts"] += len(failed_events)
        self.stats["events_failed_terminal"] += terminal
        if status == BatchStatus.COMMITTED:
            self.stats["batches_committed"] += 1
        else:
            self.stats["batches_partially_failed"] += 1

        if terminal:
            logger.warning(f"{terminal} events reached the attempt cap and are now failed")
        logger.info(
            f"Batch {batch_id} {status.value}: {synced} synced, {len(failed_events)} failed"
        )

        return SyncCycleResult(
            batch_id=batch_id,
            status=status.value,
            accepted=len(acknowledged),
            failed=len(failed_events),
            terminal=terminal
        )

    async def _hold_for_review(self, batch_id: str, member_ids: List[str], error: str) -> SyncCycleResult:
        """Permanent rejection: members go back to Pending, flagged for inspection."""
        now = self._clock()
        async with self.store.transaction() as session:
            batch = await session.get(SyncBatch, batch_id)
            if batch is None:
                return SyncCycleResult(batch_id=batch_id, status=CycleStatus.DISCARDED.value)

            result = await session.execute(
                update(BehavioralEvent)
                .where(
                    BehavioralEvent.id.in_(member_ids),
                    BehavioralEvent.sync_state == EventSyncState.PENDING
                )
                .values(
                    requires_review=True,
                    batch_id=None,
                    last_sync_attempt_at=now,
                    sync_error=error
                )
            )
            held = result.rowcount

            batch.status = BatchStatus.PARTIALLY_FAILED
            batch.completed_at = now
            batch.rejected_count = held
            batch.last_error = error

            await self.audit_service.log_audit_event(
                event_type=AuditEventType.SYNC_REJECTED,
                event_category="sync",
                description=f"Analytics service rejected batch {batch_id}; {held} events held for review",
                severity_level=AuditSeverity.ERROR,
                technical_details={"batch_id": batch_id, "events_held": held, "error": error},
                requires_action=True,
                session=session
            )

        self.stats["batches_partially_failed"] += 1
        self.stats["events_held_for_review"] += held
        logger.warning(f"{held} events from batch {batch_id} held for manual review")

        return SyncCycleResult(
            batch_id=batch_id,
            status=CycleStatus.PARTIALLY_FAILED.value,
            failed=held
        )

    # === PRIVATE HELPER METHODS ===

    def _deferral_reason(self) -> Optional[DeferReason]:
        if not self.consent_manager.profile.consent_granted:
            return DeferReason.CONSENT_NOT_GRANTED
        if not self.connectivity.is_online:
            return DeferReason.OFFLINE
        if self.connectivity.battery_critical:
            return DeferReason.BATTERY_CRITICAL
        if not self.circuit_breaker.allows_requests:
            return DeferReason.CIRCUIT_OPEN
        return None

    def get_status(self) -> Dict[str, object]:
        return {
            "stats": dict(self.stats),
            "circuit_breaker": self.circuit_breaker.get_status(),
            "online": self.connectivity.is_online,
            "network_quality": self.connectivity.quality.value,
            "battery_level": self.connectivity.battery_level.value,
            "strategy": self.connectivity.strategy.value,
        }
