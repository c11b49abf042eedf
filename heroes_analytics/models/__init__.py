from .behavioral_event import (
    BehavioralEvent, EventSyncState, InteractionType, BehavioralCategory, generate_event_id
)
from .sync_batch import SyncBatch, BatchStatus, TERMINAL_BATCH_STATUSES
from .compliance import ComplianceProfileRecord, ComplianceAuditLog

__all__ = [
    "BehavioralEvent",
    "EventSyncState",
    "InteractionType",
    "BehavioralCategory",
    "generate_event_id",
    "SyncBatch",
    "BatchStatus",
    "TERMINAL_BATCH_STATUSES",
    "ComplianceProfileRecord",
    "ComplianceAuditLog",
]
