"""
Event capture service.

`record()` is the fire-and-forget entry point used by interactive code. It
only enqueues; a background worker sanitizes each request through the
Compliance Gate and appends it to the Local Event Store. Nothing raised in
that pipeline reaches the caller: rejections go to the audit channel and
storage failures are logged and counted.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Dict, Any, List, Optional, Mapping, Callable, Tuple

from heroes_analytics.core.exceptions import ComplianceViolation, StoreIOError
from heroes_analytics.compliance.audit_service import ComplianceAuditService
from heroes_analytics.compliance.gate import FieldCategory, generate_anonymous_session_id
from heroes_analytics.models.behavioral_event import (
    BehavioralEvent, InteractionType, BehavioralCategory, generate_event_id
)

logger = logging.getLogger(__name__)


@dataclass
class CaptureRequest:
    """A raw, unsanitized capture call waiting for the worker"""
    interaction_type: str
    behavioral_category: str
    indicators: Optional[Mapping[str, Any]]
    context: Mapping[str, Any]
    received_at: datetime
    event_id: str = field(default_factory=generate_event_id)


class CaptureService:
    """Queue-backed capture pipeline feeding the local event store."""

    def __init__(
        self,
        store,
        consent_manager,
        audit_service: ComplianceAuditService,
        queue_size: int = 1000,
        clock: Callable[[], datetime] = datetime.utcnow
    ):
        self.store = store
        self.consent_manager = consent_manager
        self.audit_service = audit_service
        self._clock = clock
        self._queue: asyncio.Queue = asyncio.Queue(maxsize=queue_size)
        self._worker: Optional[asyncio.Task] = None

        # Default anonymous session for callers that do not supply one
        self.session_id = generate_anonymous_session_id()

        self.stats: Dict[str, int] = {
            "recorded": 0,
            "stored": 0,
            "rejected": 0,
            "invalid": 0,
            "skipped_no_consent": 0,
            "dropped_queue_full": 0,
            "dropped_store_error": 0,
        }

    # === CAPTURE ENTRY POINT ===

    def record(
        self,
        event_type: str,
        category: str,
        indicators: Optional[Mapping[str, Any]] = None,
        context: Optional[Mapping[str, Any]] = None
    ) -> None:
        """Enqueue an interaction for background sanitization and storage."""
        if not self.consent_manager.profile.collection_allowed:
            self.stats["skipped_no_consent"] += 1
            return

        request = CaptureRequest(
            interaction_type=event_type,
            behavioral_category=category,
            indicators=dict(indicators) if indicators else {},
            context=dict(context) if context else {},
            received_at=self._clock()
        )

        try:
            self._queue.put_nowait(request)
        except asyncio.QueueFull:
            self.stats["dropped_queue_full"] += 1
            logger.warning(
                f"Capture queue full ({self._queue.maxsize}); dropped {event_type} event"
            )
            return

        self.stats["recorded"] += 1

    # === WORKER LIFECYCLE ===

    async def start(self):
        if self._worker is None or self._worker.done():
            self._worker = asyncio.create_task(self._worker_loop(), name="analytics-capture")
            logger.info("Capture worker started")

    async def stop(self, drain_timeout: float = 5.0):
        """Stop the worker, giving queued events a chance to be stored first."""
        if self._worker is None:
            return

        try:
            await asyncio.wait_for(self._queue.join(), timeout=drain_timeout)
        except asyncio.TimeoutError:
            logger.warning(f"Capture queue not drained on shutdown ({self._queue.qsize()} left)")

        self._worker.cancel()
        try:
            await self._worker
        except asyncio.CancelledError:
            pass
        self._worker = None
        logger.info("Capture worker stopped")

    async def flush(self):
        """Wait until every queued capture has been processed."""
        await self._queue.join()

    def discard_queued(self) -> int:
        """Drop queued, not yet sanitized captures (used on consent withdrawal)."""
        discarded = 0
        while True:
            try:
                self._queue.get_nowait()
            except asyncio.QueueEmpty:
                break
            self._queue.task_done()
            discarded += 1
        return discarded

    @property
    def queued(self) -> int:
        return self._queue.qsize()

    async def _worker_loop(self):
        while True:
            request = await self._queue.get()
            try:
                await self.process(request)
            except Exception as e:
                # Keep the worker alive; the request is lost but counted
                self.stats["dropped_store_error"] += 1
                logger.exception(f"Unexpected capture failure for {request.interaction_type}: {e}")
            finally:
                self._queue.task_done()

    # === PROCESSING ===

    async def process(self, request: CaptureRequest) -> Optional[str]:
        """
        Sanitize and persist one capture. Returns the stored event id, or
        None when the event was rejected, invalid or not stored.
        """
        profile = self.consent_manager.profile
        if not profile.collection_allowed:
            self.stats["skipped_no_consent"] += 1
            return None

        try:
            event, flagged_fields = self._build_event(request)
        except ComplianceViolation as violation:
            self.stats["rejected"] += 1
            logger.warning(f"Rejected {request.interaction_type} event: {violation.message}")
            await self.audit_service.log_violation(
                violation, context={"interaction_type": request.interaction_type}
            )
            return None
        except ValueError as e:
            self.stats["invalid"] += 1
            logger.warning(f"Invalid capture request: {e}")
            return None

        for category, fields in flagged_fields.items():
            if fields:
                await self.audit_service.log_flagged_fields(fields, category.value)

        try:
            event_id = await self.store.append(
                event, guard=lambda: self.consent_manager.profile.collection_allowed
            )
        except StoreIOError as e:
            self.stats["dropped_store_error"] += 1
            logger.error(f"Dropped {request.interaction_type} event after store failure: {e.message}")
            return None

        if event_id is None:
            self.stats["skipped_no_consent"] += 1
            return None

        self.stats["stored"] += 1
        return event_id

    def _build_event(self, request: CaptureRequest) -> Tuple[BehavioralEvent, Dict[FieldCategory, List[str]]]:
        interaction_type = InteractionType(request.interaction_type).value
        behavioral_category = BehavioralCategory(request.behavioral_category).value

        gate = self.consent_manager.gate
        context = request.context

        indicators = gate.sanitize(request.indicators, FieldCategory.BEHAVIORAL)
        metadata = gate.sanitize(context.get("metadata"), FieldCategory.METADATA)

        occurred_at = context.get("occurred_at") or request.received_at
        if isinstance(occurred_at, str):
            occurred_at = datetime.fromisoformat(occurred_at)

        classroom_id = context.get("classroom_id")

        event = BehavioralEvent(
            id=request.event_id,
            session_id=gate.hash_identifier(context.get("session_id") or self.session_id),
            classroom_id=gate.hash_identifier(classroom_id) if classroom_id else None,
            lesson_id=gate.check_text("lesson_id", context.get("lesson_id")),
            activity_id=gate.check_text("activity_id", context.get("activity_id")),
            interaction_type=interaction_type,
            behavioral_category=behavioral_category,
            behavioral_indicators=indicators.fields,
            event_metadata=metadata.fields,
            compliance_marker=indicators.marker,
            occurred_at=occurred_at,
            recorded_at=request.received_at
        )
        return event, {
            FieldCategory.BEHAVIORAL: indicators.flagged_fields,
            FieldCategory.METADATA: metadata.flagged_fields,
        }
