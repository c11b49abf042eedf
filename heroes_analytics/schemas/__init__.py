from .sync import DeviceMeta, SyncBatchRequest, RejectedEvent, SyncBatchResponse, SyncCycleResult

__all__ = [
    "DeviceMeta",
    "SyncBatchRequest",
    "RejectedEvent",
    "SyncBatchResponse",
    "SyncCycleResult",
]
