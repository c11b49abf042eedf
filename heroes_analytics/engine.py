"""
Analytics engine facade.

Wires the compliance, storage, sync and retention components together and
exposes the surface used by the rest of the application: fire-and-forget
capture, the facilitator settings API, connectivity hooks and aggregate
diagnostics.
"""

import logging
from dataclasses import replace, asdict
from datetime import datetime
from typing import Dict, Any, List, Optional, Mapping, Union

import httpx

from heroes_analytics.core.config import Settings, settings as default_settings
from heroes_analytics.core.logging import configure_logging
from heroes_analytics.compliance.audit_service import ComplianceAuditService
from heroes_analytics.compliance.consent_manager import ConsentManager, ComplianceProfile
from heroes_analytics.compliance.retention_engine import RetentionEngine, RetentionSweepResult
from heroes_analytics.schemas.sync import SyncCycleResult
from heroes_analytics.services.capture import CaptureService
from heroes_analytics.services.event_store import LocalEventStore
from heroes_analytics.services.sync.batch_assembler import BatchAssembler
from heroes_analytics.services.sync.connectivity import ConnectivityMonitor, NetworkQuality, BatteryLevel
from heroes_analytics.services.sync.retry import RetryPolicy
from heroes_analytics.services.sync.sync_engine import SyncEngine
from heroes_analytics.services.sync.transport import SyncTransport
from heroes_analytics.tasks.analytics_tasks import AnalyticsTaskManager

logger = logging.getLogger(__name__)


class AnalyticsEngine:
    """
    Offline-first behavioral analytics for one device.

    All state lives in the LocalEventStore and the ComplianceProfile owned
    by the ConsentManager; both are passed explicitly to the capture, sync
    and retention schedulers.
    """

    def __init__(
        self,
        store: LocalEventStore,
        config: Settings = None,
        http_transport: Optional[httpx.AsyncBaseTransport] = None,
        connectivity: Optional[ConnectivityMonitor] = None,
        retry_policy: Optional[RetryPolicy] = None
    ):
        self.config = config or default_settings
        self.store = store
        self.connectivity = connectivity or ConnectivityMonitor()

        self.audit_service = ComplianceAuditService(store)
        self.consent_manager = ConsentManager(store, self.audit_service, self.config)
        self.capture = CaptureService(
            store,
            self.consent_manager,
            self.audit_service,
            queue_size=self.config.CAPTURE_QUEUE_SIZE
        )
        self.assembler = BatchAssembler(store, self.config)
        self.transport = SyncTransport(self.config, transport=http_transport)
        self.sync_engine = SyncEngine(
            store,
            self.assembler,
            self.transport,
            self.consent_manager,
            self.connectivity,
            retry_policy=retry_policy,
            audit_service=self.audit_service,
            config=self.config
        )
        self.retention_engine = RetentionEngine(
            store, self.consent_manager, self.audit_service, self.config
        )
        self.tasks = AnalyticsTaskManager(
            self.capture,
            self.sync_engine,
            self.assembler,
            self.retention_engine,
            self.connectivity,
            self.config
        )

    @classmethod
    async def create(
        cls,
        config: Settings = None,
        database_url: str = None,
        **kwargs
    ) -> "AnalyticsEngine":
        """Open the store, load the persisted compliance profile and return the engine."""
        config = config or default_settings
        configure_logging(config.LOG_LEVEL)
        store = await LocalEventStore.open(config, database_url=database_url)
        engine = cls(store, config, **kwargs)
        await engine.consent_manager.load()
        return engine

    async def start(self):
        await self.transport.start()
        await self.tasks.start()

    async def stop(self):
        await self.tasks.stop()
        await self.transport.stop()

    async def close(self):
        await self.stop()
        await self.store.close()

    # === CAPTURE ===

    def record(
        self,
        event_type: str,
        category: str,
        indicators: Optional[Mapping[str, Any]] = None,
        context: Optional[Mapping[str, Any]] = None
    ) -> None:
        """Fire-and-forget capture. Never raises into the caller."""
        try:
            self.capture.record(event_type, category, indicators, context)
        except Exception as e:
            logger.error(f"Capture call failed for {event_type}: {e}")

    async def flush(self):
        """Wait for queued captures to be sanitized and stored."""
        await self.capture.flush()

    # === SETTINGS ===

    def get_compliance_profile(self) -> ComplianceProfile:
        return replace(self.consent_manager.profile)

    async def update_compliance_profile(self, **partial) -> ComplianceProfile:
        profile = await self.consent_manager.update_profile(**partial)
        return replace(profile)

    async def grant_consent(self, retention_days: Optional[int] = None) -> ComplianceProfile:
        profile = await self.consent_manager.grant_consent(retention_days=retention_days)
        return replace(profile)

    async def withdraw_consent(self) -> Dict[str, int]:
        """Stop capture and sync, then delete every stored event. Irreversible."""
        discarded = self.capture.discard_queued()
        self.tasks.cancel_in_flight()
        result = await self.retention_engine.withdraw_consent()
        result["captures_discarded"] = discarded
        return result

    # === LIFECYCLE TRIGGERS ===

    async def run_retention_sweep(self, now: Optional[datetime] = None) -> RetentionSweepResult:
        return await self.retention_engine.run_retention_sweep(now)

    async def sync_now(self) -> List[SyncCycleResult]:
        return await self.tasks.run_sync_cycle()

    def update_connectivity(
        self,
        quality: NetworkQuality,
        connection_type: Optional[str] = None,
        is_metered: Optional[bool] = None
    ):
        self.connectivity.update(quality, connection_type, is_metered)

    def update_battery(self, level: Union[BatteryLevel, int]):
        """Host-reported battery level or charge percentage; critical stops uploads."""
        self.connectivity.update_battery(level)
        if self.connectivity.battery_critical:
            self.tasks.cancel_in_flight()

    def go_offline(self):
        """User-requested offline mode; an in-flight upload is cancelled cleanly."""
        self.connectivity.go_offline()
        self.tasks.cancel_in_flight()

    def go_online(self):
        self.connectivity.go_online()

    # === DIAGNOSTICS ===

    async def diagnostics(self) -> Dict[str, Any]:
        """Facilitator-facing aggregate counts; never contains event content."""
        counts = await self.store.count_by_state()
        health = await self.assembler.health_report()
        status = self.consent_manager.get_compliance_status()
        last_sweep = self.retention_engine.last_sweep

        return {
            "events": counts,
            "pending_sync": counts["pending"],
            "held_for_review": health.review_events,
            "batches": health.to_dict(),
            "capture": dict(self.capture.stats),
            "sync": self.sync_engine.get_status(),
            "compliance": asdict(status),
            "compliance_violations": await self.audit_service.count_violations(),
            "last_sync_at": self.tasks.last_sync_at.isoformat() if self.tasks.last_sync_at else None,
            "last_retention_sweep": last_sweep.to_dict() if last_sweep else None,
            "store_trimmed": self.store.trimmed_count,
        }
