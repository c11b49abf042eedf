"""
Background task management for analytics capture, sync and retention.

Three independent loops share the local event store: the capture worker,
the sync loop (every SYNC_INTERVAL_SECONDS, or early on reconnect) and the
retention loop (on the RETENTION_SCHEDULE_CRON schedule). A failure in one
cycle is logged and the loop carries on with the next.
"""

import asyncio
import logging
from datetime import datetime, timedelta
from typing import Dict, Optional, Callable, List

from heroes_analytics.core.config import Settings, settings as default_settings
from heroes_analytics.compliance.retention_engine import RetentionEngine
from heroes_analytics.schemas.sync import SyncCycleResult
from heroes_analytics.services.capture import CaptureService
from heroes_analytics.services.sync.batch_assembler import BatchAssembler
from heroes_analytics.services.sync.connectivity import ConnectivityMonitor
from heroes_analytics.services.sync.sync_engine import SyncEngine

logger = logging.getLogger(__name__)


class AnalyticsTaskManager:
    """
    Manages the analytics background loops.
    """

    def __init__(
        self,
        capture: CaptureService,
        sync_engine: SyncEngine,
        assembler: BatchAssembler,
        retention_engine: RetentionEngine,
        connectivity: ConnectivityMonitor,
        config: Settings = None,
        clock: Callable[[], datetime] = datetime.utcnow
    ):
        self.capture = capture
        self.sync_engine = sync_engine
        self.assembler = assembler
        self.retention_engine = retention_engine
        self.connectivity = connectivity
        self.config = config or default_settings
        self._clock = clock

        self._running_tasks: Dict[str, asyncio.Task] = {}
        self._shutdown_event = asyncio.Event()
        self._current_cycle: Optional[asyncio.Task] = None
        self.last_sync_results: List[SyncCycleResult] = []
        self.last_sync_at: Optional[datetime] = None
        self.cycle_errors = 0

    @property
    def is_running(self) -> bool:
        return bool(self._running_tasks)

    async def start(self) -> None:
        """Recover crash leftovers, then start the background loops."""
        if self.is_running:
            return

        logger.info("Starting analytics task manager")
        self._shutdown_event.clear()

        # Nothing can be in flight in a process that just started
        await self.assembler.recover_abandoned_batches(timeout=timedelta(0))

        await self.capture.start()
        self._running_tasks['sync'] = asyncio.create_task(self._sync_loop())
        self._running_tasks['retention'] = asyncio.create_task(self._retention_loop())

        logger.info("Analytics task manager started")

    async def stop(self) -> None:
        """Stop all loops; an in-flight upload is cancelled and its batch re-opened."""
        logger.info("Stopping analytics task manager")

        self._shutdown_event.set()

        for task_name, task in self._running_tasks.items():
            if not task.done():
                logger.info(f"Cancelling task: {task_name}")
                task.cancel()
                try:
                    await task
                except asyncio.CancelledError:
                    pass

        self._running_tasks.clear()
        await self.capture.stop()
        logger.info("Analytics task manager stopped")

    def cancel_in_flight(self) -> bool:
        """Cancel the running sync cycle, if any (e.g. user chose to go offline)."""
        if self._current_cycle is not None and not self._current_cycle.done():
            self._current_cycle.cancel()
            return True
        return False

    async def run_sync_cycle(self) -> List[SyncCycleResult]:
        """Recovery pass followed by draining whatever is eligible."""
        await self.assembler.recover_abandoned_batches()
        results = await self.sync_engine.drain()
        self.last_sync_results = results
        self.last_sync_at = self._clock()
        return results

    # === LOOPS ===

    async def _sync_loop(self) -> None:
        logger.info("Started analytics sync loop")

        while not self._shutdown_event.is_set():
            cycle = asyncio.create_task(self.run_sync_cycle())
            self._current_cycle = cycle
            try:
                await asyncio.wait({cycle})
            except asyncio.CancelledError:
                cycle.cancel()
                await asyncio.wait({cycle})
                raise
            finally:
                self._current_cycle = None

            if cycle.cancelled():
                logger.info("Sync cycle cancelled")
            elif cycle.exception() is not None:
                self.cycle_errors += 1
                logger.error(f"Error in sync cycle: {cycle.exception()}")

            reconnected = await self._wait_for_next_sync()
            if reconnected:
                await self.sync_engine.circuit_breaker.reset("Connectivity regained")

        logger.info("Analytics sync loop stopped")

    async def _retention_loop(self) -> None:
        logger.info("Started retention loop")

        while not self._shutdown_event.is_set():
            next_run = self.retention_engine.next_sweep_time(self._clock())
            delay = max((next_run - self._clock()).total_seconds(), 0)

            try:
                await asyncio.wait_for(self._shutdown_event.wait(), timeout=delay)
                break  # Shutdown event was set
            except asyncio.TimeoutError:
                pass

            try:
                await self.retention_engine.run_retention_sweep()
            except Exception as e:
                self.cycle_errors += 1
                logger.error(f"Error in retention sweep: {e}")

        logger.info("Retention loop stopped")

    async def _wait_for_next_sync(self) -> bool:
        """Sleep until the next interval, a reconnect or shutdown. True on reconnect."""
        shutdown = asyncio.create_task(self._shutdown_event.wait())
        reconnect = asyncio.create_task(self.connectivity.wait_for_reconnect())
        try:
            done, _ = await asyncio.wait(
                {shutdown, reconnect},
                timeout=self.config.SYNC_INTERVAL_SECONDS,
                return_when=asyncio.FIRST_COMPLETED
            )
        finally:
            for task in (shutdown, reconnect):
                task.cancel()
            await asyncio.gather(shutdown, reconnect, return_exceptions=True)

        return reconnect in done and not self._shutdown_event.is_set()
