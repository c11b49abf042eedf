"""
Data Retention Engine

Bounded-retention lifecycle for analytics events. The scheduled sweep
hard-deletes Synced events older than the facilitator's retention window;
unsynced events are never aged out because they still need delivery.
Consent withdrawal purges everything and is delegated to the ConsentManager
so the purge and the profile revocation share one transaction.
"""

from typing import Dict, Any, Optional, Callable
from datetime import datetime, timedelta
from dataclasses import dataclass
import logging

from croniter import croniter

from heroes_analytics.core.config import Settings, settings as default_settings
from heroes_analytics.compliance.audit_service import (
    ComplianceAuditService, AuditEventType, AuditSeverity
)
from heroes_analytics.compliance.consent_manager import ConsentManager
from heroes_analytics.services.sync.batch_assembler import delete_terminal_batches_in

logger = logging.getLogger(__name__)


@dataclass
class RetentionSweepResult:
    """Outcome of one retention sweep"""
    swept_at: datetime
    cutoff: datetime
    events_deleted: int
    batches_deleted: int

    def to_dict(self) -> Dict[str, Any]:
        return {
            "swept_at": self.swept_at.isoformat(),
            "cutoff": self.cutoff.isoformat(),
            "events_deleted": self.events_deleted,
            "batches_deleted": self.batches_deleted,
        }


class RetentionEngine:
    """
    Runs retention sweeps against the local event store.

    Safe to run concurrently with an in-flight batch: reconciliation simply
    finds fewer rows for events deleted here.
    """

    def __init__(
        self,
        store,
        consent_manager: ConsentManager,
        audit_service: ComplianceAuditService,
        config: Settings = None,
        clock: Callable[[], datetime] = datetime.utcnow
    ):
        self.store = store
        self.consent_manager = consent_manager
        self.audit_service = audit_service
        self.config = config or default_settings
        self._clock = clock
        self.last_sweep: Optional[RetentionSweepResult] = None

    # === RETENTION ===

    async def run_retention_sweep(self, now: Optional[datetime] = None) -> RetentionSweepResult:
        """Delete Synced events older than retention_days, plus stale terminal batches."""
        now = now or self._clock()
        retention_days = self.consent_manager.profile.retention_days
        cutoff = now - timedelta(days=retention_days)
        batch_cutoff = now - timedelta(days=self.config.BATCH_HISTORY_DAYS)

        async with self.store.transaction() as session:
            events_deleted = await self.store.delete_older_than_in(session, cutoff)
            batches_deleted = await delete_terminal_batches_in(session, batch_cutoff)

            await self.audit_service.log_audit_event(
                event_type=AuditEventType.RETENTION_SWEEP,
                event_category="retention",
                description=f"Retention sweep removed {events_deleted} synced events",
                technical_details={
                    "retention_days": retention_days,
                    "cutoff": cutoff.isoformat(),
                    "events_deleted": events_deleted,
                    "batches_deleted": batches_deleted
                },
                session=session
            )

        self.last_sweep = RetentionSweepResult(
            swept_at=now,
            cutoff=cutoff,
            events_deleted=events_deleted,
            batches_deleted=batches_deleted
        )
        logger.info(
            f"Retention sweep complete: {events_deleted} events and "
            f"{batches_deleted} batches deleted (cutoff {cutoff.isoformat()})"
        )
        return self.last_sweep

    async def withdraw_consent(self) -> Dict[str, int]:
        """Unconditional, irreversible purge of all analytics data."""
        return await self.consent_manager.withdraw_consent()

    async def purge_failed_events(self, older_than_days: int, now: Optional[datetime] = None) -> int:
        """Operator action removing terminal Failed events that were never delivered."""
        now = now or self._clock()
        deleted = await self.store.purge_failed_older_than(now - timedelta(days=older_than_days))

        await self.audit_service.log_audit_event(
            event_type=AuditEventType.RETENTION_SWEEP,
            event_category="retention",
            description=f"Purged {deleted} undeliverable events",
            severity_level=AuditSeverity.WARNING if deleted else AuditSeverity.INFO,
            technical_details={"older_than_days": older_than_days, "events_deleted": deleted}
        )
        return deleted

    # === SCHEDULING ===

    def next_sweep_time(self, after: Optional[datetime] = None) -> datetime:
        """Next run of the retention cron schedule after `after`"""
        after = after or self._clock()
        return croniter(self.config.RETENTION_SCHEDULE_CRON, after).get_next(datetime)
