"""
Pydantic schemas for the analytics bulk upload
"""

from pydantic import BaseModel, Field, ConfigDict
from typing import List, Dict, Any, Optional


class DeviceMeta(BaseModel):
    """Non-identifying device context sent with every batch"""
    device_type: str = Field(alias="deviceType")
    app_version: str = Field(alias="appVersion")
    connection_type: str = Field(default="unknown", alias="connectionType")

    model_config = ConfigDict(populate_by_name=True)


class SyncBatchRequest(BaseModel):
    """Bulk upload request for one sync batch"""
    batch_id: str = Field(alias="batchId")
    device_meta: DeviceMeta = Field(alias="deviceMeta")
    events: List[Dict[str, Any]]

    model_config = ConfigDict(
        populate_by_name=True,
        json_schema_extra={
            "example": {
                "batchId": "5d1f0c4e-3a8b-4c55-9a61-0f2f1e9c2b10",
                "deviceMeta": {
                    "deviceType": "mobile",
                    "appVersion": "1.0.0",
                    "connectionType": "wifi"
                },
                "events": [
                    {
                        "id": "0b7c3f9e-4e0c-4d0a-8d4f-6f6a3c1b2d11",
                        "interactionType": "empathy_response",
                        "behavioralCategory": "empathy",
                        "behavioralIndicators": {"empathy_score": 4},
                        "occurredAt": "2024-03-01T10:30:00"
                    }
                ]
            }
        }
    )


class RejectedEvent(BaseModel):
    """Server-side rejection of a single event"""
    id: str
    reason: str = "rejected"


class SyncBatchResponse(BaseModel):
    """Per-event outcome reported by the server"""
    accepted: List[str] = Field(default_factory=list)
    rejected: List[RejectedEvent] = Field(default_factory=list)

    model_config = ConfigDict(extra="ignore")

    def rejection_reasons(self) -> Dict[str, str]:
        return {item.id: item.reason for item in self.rejected}


class SyncCycleResult(BaseModel):
    """Outcome of one sync cycle, suitable for facilitator diagnostics"""
    batch_id: Optional[str] = None
    status: Optional[str] = None
    accepted: int = 0
    failed: int = 0
    terminal: int = 0
    deferred_reason: Optional[str] = None

    @property
    def deferred(self) -> bool:
        return self.deferred_reason is not None

    @property
    def had_work(self) -> bool:
        return self.batch_id is not None
