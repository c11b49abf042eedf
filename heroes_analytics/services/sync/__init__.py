"""
Analytics Synchronization

Delivers locally stored events to the analytics service.

Components:
- Batch assembly with crash recovery
- Bulk upload transport with failure classification
- Retry policy with exponential backoff and jitter
- Connectivity tracking and network-quality batch sizing
"""

from .batch_assembler import BatchAssembler, BatchHealthReport
from .connectivity import ConnectivityMonitor, NetworkQuality
from .retry import RetryPolicy
from .transport import SyncTransport
from .sync_engine import SyncEngine, DeferReason, CycleStatus

__all__ = [
    "BatchAssembler",
    "BatchHealthReport",
    "ConnectivityMonitor",
    "NetworkQuality",
    "RetryPolicy",
    "SyncTransport",
    "SyncEngine",
    "DeferReason",
    "CycleStatus",
]
