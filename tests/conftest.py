"""
Shared fixtures for the analytics test suite.
"""

import json
from datetime import datetime, timedelta
from typing import Callable, List, Optional

import httpx
import pytest

from heroes_analytics.core.config import Settings
from heroes_analytics.compliance.audit_service import ComplianceAuditService
from heroes_analytics.compliance.consent_manager import ConsentManager
from heroes_analytics.compliance.gate import FieldCategory
from heroes_analytics.models.behavioral_event import BehavioralEvent, generate_event_id
from heroes_analytics.services.event_store import LocalEventStore


BASE_TIME = datetime(2024, 3, 1, 10, 0, 0)


@pytest.fixture
def base_time():
    """Fixed reference time for deterministic timestamps"""
    return BASE_TIME


@pytest.fixture
def test_settings(tmp_path):
    """Settings pointing at a throwaway SQLite file and a fake server"""
    return Settings(
        DATABASE_URL=f"sqlite+aiosqlite:///{tmp_path / 'analytics.db'}",
        SYNC_API_BASE_URL="http://analytics.test/api",
        SYNC_API_TOKEN="test-token",
        SYNC_INTERVAL_SECONDS=3600,
        SYNC_MAX_ATTEMPTS=3,
        SYNC_RETRY_JITTER_RATIO=0.0,
        CAPTURE_QUEUE_SIZE=10,
    )


@pytest.fixture
async def store(test_settings):
    """Open local event store on a temporary database"""
    store = await LocalEventStore.open(test_settings)
    yield store
    await store.close()


@pytest.fixture
def audit_service(store):
    return ComplianceAuditService(store)


@pytest.fixture
async def consent_manager(store, audit_service, test_settings):
    """Consent manager with facilitator consent granted"""
    manager = ConsentManager(store, audit_service, test_settings)
    await manager.load()
    await manager.grant_consent()
    return manager


@pytest.fixture
def make_event(consent_manager):
    """Factory for sanitized events ready to append"""
    counter = {"n": 0}

    def _make(
        interaction_type: str = "lesson_start",
        indicators: Optional[dict] = None,
        recorded_at: Optional[datetime] = None,
        event_id: Optional[str] = None
    ) -> BehavioralEvent:
        counter["n"] += 1
        sanitized = consent_manager.gate.sanitize(indicators or {}, FieldCategory.BEHAVIORAL)
        recorded_at = recorded_at or BASE_TIME + timedelta(seconds=counter["n"])
        return BehavioralEvent(
            id=event_id or generate_event_id(),
            session_id=consent_manager.gate.hash_identifier("session-1"),
            classroom_id=consent_manager.gate.hash_identifier("classroom-1"),
            interaction_type=interaction_type,
            behavioral_category="engagement",
            behavioral_indicators=sanitized.fields,
            event_metadata={},
            compliance_marker=sanitized.marker,
            occurred_at=recorded_at,
            recorded_at=recorded_at
        )

    return _make


class FakeAnalyticsServer:
    """
    In-process stand-in for the analytics ingestion endpoint.

    By default acknowledges every event it receives. Set `status_code`,
    `accept` or `error` to simulate other outcomes.
    """

    def __init__(self):
        self.requests: List[dict] = []
        self.headers: List[httpx.Headers] = []
        self.status_code = 200
        self.accept: Optional[Callable[[str], bool]] = None
        self.rejections: dict = {}
        self.extra_accepted: List[str] = []
        self.error: Optional[Exception] = None
        self.raw_body: Optional[bytes] = None

    def handler(self, request: httpx.Request) -> httpx.Response:
        body = json.loads(request.content)
        self.requests.append(body)
        self.headers.append(request.headers)

        if self.error is not None:
            raise self.error
        if self.status_code != 200:
            return httpx.Response(self.status_code, json={"detail": "error"})
        if self.raw_body is not None:
            return httpx.Response(200, content=self.raw_body)

        ids = [event["id"] for event in body["events"]]
        accepted = [i for i in ids if i not in self.rejections and (self.accept is None or self.accept(i))]
        rejected = [{"id": i, "reason": reason} for i, reason in self.rejections.items() if i in ids]
        return httpx.Response(200, json={"accepted": accepted + self.extra_accepted, "rejected": rejected})

    @property
    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self.handler)

    @property
    def received_ids(self) -> List[str]:
        return [event["id"] for body in self.requests for event in body["events"]]


@pytest.fixture
def fake_server():
    return FakeAnalyticsServer()
